import psycopg
from contextlib import contextmanager

from config import get_settings


@contextmanager
def get_conn(dsn=None):
    """
    context manager for a Postgres connection.
    autocommit is off; callers commit / rollback explicitly.
    """
    with psycopg.connect(dsn or get_settings().database_dsn) as conn:
        conn.autocommit = False
        yield conn

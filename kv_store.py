import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from db.db import get_conn
from db.repositories import kv_delete, kv_get, kv_put


class KeyValueStore(ABC):
    """
    string -> string storage. `put` must replace the whole value atomically.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class PostgresKeyValueStore(KeyValueStore):
    """
    durable store on the kv_store table; one short transaction per call.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def get(self, key: str) -> Optional[str]:
        with get_conn(self.dsn) as conn:
            return kv_get(conn, key)

    def put(self, key: str, value: str) -> None:
        with get_conn(self.dsn) as conn:
            try:
                kv_put(conn, key, value)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def delete(self, key: str) -> None:
        with get_conn(self.dsn) as conn:
            try:
                kv_delete(conn, key)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

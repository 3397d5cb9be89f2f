from decimal import Decimal
from typing import Optional, Dict, Any, List

from psycopg import Connection


# ---------
# key/value cache (pending stake intents)
# ---------

def kv_get(conn: Connection, key: str) -> Optional[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT value FROM kv_store WHERE key = %s", (key,))
        row = cur.fetchone()
        return row[0] if row else None


def kv_put(conn: Connection, key: str, value: str) -> None:
    """
    single-statement upsert: atomic per key, last writer wins.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO kv_store (key, value, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """,
            (key, value),
        )


def kv_delete(conn: Connection, key: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM kv_store WHERE key = %s", (key,))
        return cur.rowcount > 0


# ---------
# users / referral links
# ---------

def get_user_by_referral_code(conn: Connection, referral_code: str) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"No user found with referral_code={referral_code}")
        return row[0]


def get_user_referrer_id(conn: Connection, user_id: int) -> Optional[int]:
    """
    referrer_id for a user, or None if they have no referrer.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referrer_id FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"User {user_id} not found")
        return row[0]


def set_user_referrer_id(conn: Connection, child_id: int, parent_id: int) -> None:
    """
    link child under parent. checks happen in the caller.
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET referrer_id = %s, updated_at = NOW() WHERE id = %s",
            (parent_id, child_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to update referrer for child {child_id}")


def get_referral_relationships(conn: Connection) -> List[Dict[str, int]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT referrer_id, id
            FROM users
            WHERE referrer_id IS NOT NULL
            ORDER BY created_at, id
            """
        )
        rows = cur.fetchall()
    return [{"referrer_id": r[0], "referred_id": r[1]} for r in rows]


def get_users(conn: Connection) -> Dict[int, Dict[str, Any]]:
    """
    user_id -> {id, username, total_earned, joined_at}.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, username, created_at, total_earned FROM users"
        )
        rows = cur.fetchall()

    return {
        r[0]: {
            "id": r[0],
            "username": r[1],
            "joined_at": r[2].isoformat() if r[2] else None,
            "total_earned": r[3] if r[3] is not None else Decimal("0"),
        }
        for r in rows
    }

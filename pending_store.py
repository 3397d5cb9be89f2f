import time
from typing import Callable, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from kv_store import KeyValueStore
from models import PendingStakeIntent

PENDING_STAKE_TTL_MS = 24 * 60 * 60 * 1000
KEY_PREFIX = "pendingStaking_"


def now_ms() -> int:
    return int(time.time() * 1000)


def pending_key(user_id) -> str:
    return f"{KEY_PREFIX}{user_id}"


class PendingStakeStore:
    """
    at most one in-flight stake intent per user, kept for 24h.

    records are JSON with an inline `timestamp` (epoch ms). an expired or
    unreadable record reads as absent and is deleted on the way out.
    """

    def __init__(self, kv: KeyValueStore, clock: Optional[Callable[[], int]] = None):
        self.kv = kv
        self.clock = clock or now_ms

    def put(self, user_id, intent: PendingStakeIntent) -> None:
        # whole-record replace; a concurrent writer either wins or loses entirely
        self.kv.put(pending_key(user_id), intent.model_dump_json(by_alias=True))

    def lookup(self, user_id) -> Tuple[Optional[PendingStakeIntent], bool]:
        """
        returns (intent, expired). expired is True only when a record existed
        and was dropped because of its age.
        """
        key = pending_key(user_id)
        raw = self.kv.get(key)
        if raw is None:
            return None, False

        try:
            intent = PendingStakeIntent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable pending stake for user {user_id}: {e}")
            self._purge(key, raw)
            return None, False

        age = self.clock() - intent.created_at_ms
        if age >= PENDING_STAKE_TTL_MS:
            logger.warning(
                f"Pending stake for user {user_id} expired (tx {intent.tx_hash}, age {age} ms)"
            )
            self._purge(key, raw)
            return None, True

        return intent, False

    def _purge(self, key: str, raw: str) -> None:
        # only drop the record we judged; a fresh put from another client survives
        if self.kv.get(key) == raw:
            self.kv.delete(key)

    def get(self, user_id) -> Optional[PendingStakeIntent]:
        intent, _ = self.lookup(user_id)
        return intent

    def clear(self, user_id) -> None:
        self.kv.delete(pending_key(user_id))

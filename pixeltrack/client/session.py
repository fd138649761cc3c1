from __future__ import annotations
import json
import logging
import random
import time
from typing import Callable, Dict, Optional

from .storage import Storage

logger = logging.getLogger(__name__)

SESSION_KEY = "pixel_session_data"
SESSION_TIMEOUT = 30 * 60  # seconds of inactivity before a new session starts

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_session_id(now_ms: int, rng: Optional[random.Random] = None) -> str:
    """sess_ + 9 random base36 chars + base36(epoch ms)."""
    rng = rng or random
    return "sess_" + "".join(rng.choice(_BASE36) for _ in range(9)) + to_base36(now_ms)


class SessionManager:
    """
    Hands out the tracker's session id.

    The id is persisted together with its last activity time so that a
    restarted tracker within ``timeout`` seconds keeps reporting the same
    session. When the store is unavailable the id only lives on this instance.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        timeout: float = SESSION_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.timeout_ms = int(timeout * 1000)
        self.clock = clock
        self._memory_id: Optional[str] = None

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _durable(self) -> bool:
        return self.storage is not None and self.storage.available

    def _load(self) -> Optional[Dict]:
        raw = self.storage.get(SESSION_KEY)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            logger.warning("[session] invalid session data, creating new session")
            return None
        if (
            not isinstance(record, dict)
            or not isinstance(record.get("sessionId"), str)
            or not isinstance(record.get("lastActivity", 0), (int, float))
        ):
            logger.warning("[session] invalid session data, creating new session")
            return None
        return record

    def _save(self, record: Dict) -> bool:
        return self.storage.set(SESSION_KEY, json.dumps(record))

    def _fallback(self, now_ms: int) -> str:
        if self._memory_id is None:
            self._memory_id = generate_session_id(now_ms)
            logger.warning("[session] storage not available, using in-memory session %s", self._memory_id)
        return self._memory_id

    def get_or_create_session_id(self) -> str:
        now_ms = self._now_ms()
        if self._memory_id is not None:
            # once the store has failed us this instance stays in memory
            return self._memory_id
        if not self._durable():
            return self._fallback(now_ms)

        record = self._load()
        if record is not None:
            last = record.get("lastActivity", 0)
            if now_ms - last < self.timeout_ms:
                record["lastActivity"] = now_ms
                self._save(record)
                return record["sessionId"]
            logger.info("[session] session %s expired, creating new one", record["sessionId"])

        record = {"sessionId": generate_session_id(now_ms), "created": now_ms, "lastActivity": now_ms}
        if not self._save(record):
            self._memory_id = record["sessionId"]
            logger.warning("[session] could not persist session, keeping %s in memory", self._memory_id)
            return self._memory_id
        logger.info("[session] created new session %s", record["sessionId"])
        return record["sessionId"]

    def touch(self) -> None:
        """Push lastActivity to now. Silent when there is nothing stored or the store fails."""
        if not self._durable():
            return
        record = self._load()
        if record is None:
            return
        record["lastActivity"] = self._now_ms()
        self._save(record)

"""
Best-effort key/value stores for tracker state that should outlive the process.

Nothing here raises on a backend failure: ``get`` answers ``None`` and
``set``/``remove`` answer ``False``, so the session manager and tracker can
branch on the result and fall back to in-memory state.
"""
from __future__ import annotations
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

import redis

logger = logging.getLogger(__name__)


class Storage:
    @property
    def available(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> bool:
        raise NotImplementedError

    def remove(self, key: str) -> bool:
        raise NotImplementedError


class MemoryStorage(Storage):
    """Process-local store; also what the tracker uses when given nothing durable."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    def remove(self, key: str) -> bool:
        self._data.pop(key, None)
        return True


class FileStorage(Storage):
    """All keys in one JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @property
    def available(self) -> bool:
        directory = self.path.parent
        return directory.is_dir() and os.access(directory, os.W_OK)

    def _read(self) -> Optional[Dict[str, str]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.debug("[storage] cannot read %s: %r", self.path, e)
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.debug("[storage] corrupt store %s: %r", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> bool:
        try:
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        except OSError as e:
            logger.debug("[storage] cannot write %s: %r", self.path, e)
            return False
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp, self.path)
        except OSError as e:
            logger.debug("[storage] cannot write %s: %r", self.path, e)
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            return False
        return True

    def get(self, key: str) -> Optional[str]:
        data = self._read()
        if data is None:
            return None
        value = data.get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> bool:
        data = self._read()
        if data is None:
            return False
        data[key] = value
        return self._write(data)

    def remove(self, key: str) -> bool:
        data = self._read()
        if data is None:
            return False
        if key not in data:
            return True
        del data[key]
        return self._write(data)


class RedisStorage(Storage):
    """Keys live in Redis under ``prefix``; handy when several workers share one tracker identity."""

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "pixeltrack:"):
        self.r = client if client is not None else redis.Redis(host="localhost", port=6379, db=0)
        self.prefix = prefix

    @property
    def available(self) -> bool:
        try:
            return bool(self.r.ping())
        except redis.RedisError as e:
            logger.debug("[storage] redis unavailable: %r", e)
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self.r.get(self.prefix + key)
        except redis.RedisError as e:
            logger.debug("[storage] redis get %s failed: %r", key, e)
            return None
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def set(self, key: str, value: str) -> bool:
        try:
            self.r.set(self.prefix + key, value)
        except redis.RedisError as e:
            logger.debug("[storage] redis set %s failed: %r", key, e)
            return False
        return True

    def remove(self, key: str) -> bool:
        try:
            self.r.delete(self.prefix + key)
        except redis.RedisError as e:
            logger.debug("[storage] redis delete %s failed: %r", key, e)
            return False
        return True

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from solosession.logging import get_logger
from solosession.storage.codec import Decoded, decode_text, decode_value, encode_value
from solosession.storage.common import encode_items, key_prefix


class MemoryStore:
    """In-process key-value store with per-key expiry.

    Mirrors the RedisStore interface for TEST_MODE and local development.
    Every operation runs under one lock, which gives the multi-key methods the
    same all-or-nothing behavior the Redis scripts have.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or time.monotonic
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()
        self._connected = False

    @property
    def is_cluster(self) -> bool:
        return False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> "MemoryStore":
        self._connected = True
        return self

    async def quit(self) -> None:
        self._connected = False

    async def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def _touch(self, key: str, ttl_seconds: int) -> bool:
        value = self._live(key)
        if value is None:
            return False
        self._data[key] = (value, self._clock() + ttl_seconds)
        return True

    def keys(self) -> list[str]:
        """Live keys, for inspection in tests and debugging."""
        with self._data_lock:
            return [key for key in list(self._data) if self._live(key) is not None]

    async def get(self, key: str) -> Decoded:
        with self._data_lock:
            decoded = decode_value(self._live(key))
        if decoded.is_corrupt:
            self.logger.warning("memory_value_corrupt", slot=key_prefix(key))
        return decoded

    async def get_text(self, key: str) -> Optional[str]:
        with self._data_lock:
            return decode_text(self._live(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        text = encode_value(value)
        if text is None:
            raise ValueError(f"value for {key_prefix(key)} cannot be serialized")
        with self._data_lock:
            self._put(key, text, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._data_lock:
            return self._touch(key, ttl_seconds)

    async def ttl(self, key: str) -> int:
        with self._data_lock:
            if self._live(key) is None:
                return -2
            _, expires_at = self._data[key]
            if expires_at is None:
                return -1
            return int(round(expires_at - self._clock()))

    async def set_many(self, items: Mapping[str, Any], ttl_seconds: int) -> None:
        encoded = encode_items(items)
        with self._data_lock:
            for key, text in encoded:
                self._put(key, text, ttl_seconds)

    async def delete_if_equals(
        self, guard_key: str, expected: str, keys: Iterable[str]
    ) -> bool:
        with self._data_lock:
            if self._live(guard_key) != expected:
                return False
            for key in keys:
                self._data.pop(key, None)
            return True

    async def set_if_equals(
        self,
        guard_key: str,
        expected: str,
        items: Mapping[str, Any],
        ttl_seconds: int,
        expire_keys: Iterable[str] = (),
    ) -> bool:
        encoded = encode_items(items)
        with self._data_lock:
            if self._live(guard_key) != expected:
                return False
            for key, text in encoded:
                self._put(key, text, ttl_seconds)
            for key in expire_keys:
                self._touch(key, ttl_seconds)
            return True


__all__ = ["MemoryStore"]

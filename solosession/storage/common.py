"""Interface shared by the Redis and in-memory session stores."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol

from solosession.storage.codec import Decoded, encode_value


class KeyValueStore(Protocol):
    @property
    def is_cluster(self) -> bool: ...

    async def connect(self) -> Any: ...

    async def quit(self) -> None: ...

    async def verify_connection(self) -> None: ...

    async def get(self, key: str) -> Decoded: ...

    async def get_text(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def set_many(self, items: Mapping[str, Any], ttl_seconds: int) -> None: ...

    async def delete_if_equals(
        self, guard_key: str, expected: str, keys: Iterable[str]
    ) -> bool: ...

    async def set_if_equals(
        self,
        guard_key: str,
        expected: str,
        items: Mapping[str, Any],
        ttl_seconds: int,
        expire_keys: Iterable[str] = (),
    ) -> bool: ...


def encode_items(items: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Encode every value for storage, rejecting values that cannot be encoded."""
    encoded = []
    for key, value in items.items():
        text = encode_value(value)
        if text is None:
            raise ValueError(f"value for {key_prefix(key)} cannot be serialized")
        encoded.append((key, text))
    return encoded


def key_prefix(key: str) -> str:
    """Slot name of a key without the identity part, safe to log."""
    return key.split(":", 1)[0]


__all__ = ["KeyValueStore", "encode_items", "key_prefix"]

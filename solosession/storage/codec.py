"""Conversion between structured values and Redis string values.

Redis only stores strings. Session records are written as compact JSON,
while pointers and indexes are plain strings (session ids, user ids).
Reading a value never raises: the outcome is reported through ``Decoded``
so callers can tell a missing key from a legacy plain string and from a
payload that looked like JSON but could not be parsed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from solosession.logging import get_logger

logger = get_logger(__name__)

# Written by older clients that stringified objects without serializing them
_LEGACY_OBJECT_MARKER = "[object Object]"


class DecodeStatus(str, Enum):
    MISSING = "missing"
    PARSED = "parsed"
    RAW = "raw"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class Decoded:
    status: DecodeStatus
    raw: Optional[str] = None
    value: Any = None

    @property
    def found(self) -> bool:
        return self.status in (DecodeStatus.PARSED, DecodeStatus.RAW)

    @property
    def is_corrupt(self) -> bool:
        return self.status == DecodeStatus.CORRUPT

    def as_dict(self) -> Optional[dict]:
        if self.status == DecodeStatus.PARSED and isinstance(self.value, dict):
            return self.value
        return None


MISSING = Decoded(DecodeStatus.MISSING)


def encode_value(value: Any) -> Optional[str]:
    """Render ``value`` as a Redis string; ``None`` when it cannot be encoded."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        logger.error("value_encode_failed", value_type=type(value).__name__, error=str(exc))
        return None


def decode_value(raw: Union[str, bytes, None]) -> Decoded:
    if raw is None:
        return MISSING
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return Decoded(DecodeStatus.CORRUPT)
    if raw == "":
        return MISSING
    if raw == _LEGACY_OBJECT_MARKER:
        return Decoded(DecodeStatus.CORRUPT, raw=raw)

    stripped = raw.lstrip()
    if stripped.startswith(("{", "[")):
        try:
            return Decoded(DecodeStatus.PARSED, raw=raw, value=json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValueError):
            return Decoded(DecodeStatus.CORRUPT, raw=raw)
    # Scalars stay text so numeric-looking ids round-trip unchanged
    return Decoded(DecodeStatus.RAW, raw=raw, value=raw)


def decode_text(raw: Union[str, bytes, None]) -> Optional[str]:
    """Stored text as-is, for slots that only ever hold plain identifiers."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw or None


__all__ = ["DecodeStatus", "Decoded", "MISSING", "encode_value", "decode_value", "decode_text"]

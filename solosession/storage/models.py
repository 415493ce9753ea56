from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

# Fixed metadata slots; anything else the caller supplies is kept alongside
METADATA_FIELDS = ("userAgent", "ipAddress", "deviceInfo")

_METADATA_ALIASES = {
    "user_agent": "userAgent",
    "ip_address": "ipAddress",
    "ip_addr": "ipAddress",
    "device_info": "deviceInfo",
}


def build_metadata(metadata: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge caller metadata into the fixed session metadata shape."""
    merged: Dict[str, Any] = {name: "" for name in METADATA_FIELDS}
    for key, value in (metadata or {}).items():
        key = _METADATA_ALIASES.get(key, key)
        if key in METADATA_FIELDS and value is None:
            value = ""
        merged[key] = value
    return merged


@dataclass
class SessionRecord:
    user_id: str
    session_id: str
    created_at: int
    last_activity: int
    metadata: Dict[str, Any] = field(default_factory=build_metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionRecord":
        """Build a record from its stored JSON form.

        Raises ``ValueError`` when required fields are missing or malformed.
        """
        try:
            user_id = data["userId"]
            session_id = data["sessionId"]
            created_at = data.get("createdAt", data["lastActivity"])
            last_activity = data["lastActivity"]
        except KeyError as exc:
            raise ValueError(f"session record missing field {exc.args[0]}") from exc
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session record has no sessionId")
        if isinstance(last_activity, bool) or not isinstance(last_activity, (int, float)):
            raise ValueError("session record lastActivity is not numeric")
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            raise ValueError("session record createdAt is not numeric")
        metadata = data.get("metadata")
        return cls(
            user_id=str(user_id),
            session_id=session_id,
            created_at=int(created_at),
            last_activity=int(last_activity),
            metadata=build_metadata(metadata if isinstance(metadata, Mapping) else None),
        )


@dataclass
class CreatedSession:
    session_id: str
    expires_in: int
    record: SessionRecord


__all__ = ["METADATA_FIELDS", "build_metadata", "SessionRecord", "CreatedSession"]

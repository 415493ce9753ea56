from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

SESSION_PREFIX = "session:"
SESSION_ID_PREFIX = "sessionId:"
USER_SESSIONS_PREFIX = "user_sessions:"
ACTIVE_SESSION_PREFIX = "active_session:"


@dataclass(frozen=True)
class KeySpace:
    """Key names for the four session slots.

    With ``hash_tags`` the user id is wrapped in ``{}`` so the three user-keyed
    slots hash to the same Redis Cluster slot and can be changed by one script.
    The reverse index is keyed by session id alone and never shares that slot.
    """

    hash_tags: bool = False

    def _user(self, user_id: str) -> str:
        return f"{{{user_id}}}" if self.hash_tags else str(user_id)

    def session(self, user_id: str) -> str:
        return f"{SESSION_PREFIX}{self._user(user_id)}"

    def active_session(self, user_id: str) -> str:
        return f"{ACTIVE_SESSION_PREFIX}{self._user(user_id)}"

    def user_sessions(self, user_id: str) -> str:
        return f"{USER_SESSIONS_PREFIX}{self._user(user_id)}"

    def session_id(self, session_id: str) -> str:
        return f"{SESSION_ID_PREFIX}{session_id}"

    def user_keys(self, user_id: str) -> Tuple[str, str, str]:
        """Pointer, index and record keys, pointer first."""
        return (
            self.active_session(user_id),
            self.user_sessions(user_id),
            self.session(user_id),
        )


__all__ = ["KeySpace"]

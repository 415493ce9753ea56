from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from solosession.config import DEFAULT_SESSION_TTL_SECONDS, Settings
from solosession.logging import get_logger, session_hint
from solosession.service.errors import SessionCreationError, ValidationError
from solosession.storage.common import KeyValueStore
from solosession.storage.errors import StoreUnavailableError
from solosession.storage.keys import KeySpace
from solosession.storage.models import CreatedSession, SessionRecord, build_metadata

SESSION_ID_BYTES = 32


class SessionErrorCode(str, Enum):
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    UPDATE_FAILED = "UPDATE_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"


SESSION_ERROR_MESSAGES: Dict[SessionErrorCode, str] = {
    SessionErrorCode.INVALID_PARAMETERS: "Missing session credentials.",
    SessionErrorCode.INVALID_SESSION: (
        "You were signed out because your account was used on another device."
    ),
    SessionErrorCode.SESSION_NOT_FOUND: "Your session could not be found. Please sign in again.",
    SessionErrorCode.SESSION_EXPIRED: "Your session timed out. Please sign in again.",
    SessionErrorCode.UPDATE_FAILED: "Your session could not be refreshed. Please retry.",
    SessionErrorCode.VALIDATION_ERROR: (
        "Session service is temporarily unavailable. Please retry."
    ),
}


@dataclass
class SessionValidation:
    is_valid: bool
    session: Optional[SessionRecord] = None
    error: Optional[SessionErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def failure(cls, code: SessionErrorCode) -> "SessionValidation":
        return cls(is_valid=False, error=code, message=SESSION_ERROR_MESSAGES[code])

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"isValid": self.is_valid}
        if self.session is not None:
            result["session"] = self.session.to_dict()
        if self.error is not None:
            result["error"] = self.error.value
        if self.message is not None:
            result["message"] = self.message
        return result


def generate_session_id() -> str:
    """64 hex characters from 32 CSPRNG bytes."""
    return secrets.token_hex(SESSION_ID_BYTES)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _blank(value: Any) -> bool:
    return value is None or value == ""


def _same_id(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class SessionAuthority:
    """Single-active-session bookkeeping over four key slots per user.

    Slots: the session record, the active session pointer, the user-session
    index (both pointers hold the session id) and the reverse index from
    session id to user id. The pointer is authoritative; every change to the
    pointer, index and record runs as one atomic store operation, guarded on
    the pointer's value where a newer login must win.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        idle_timeout_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        keys: Optional[KeySpace] = None,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.idle_timeout_ms = idle_timeout_seconds * 1000
        self.keys = keys or KeySpace()
        self._clock = clock or _now_ms
        self._new_session_id = id_factory or generate_session_id
        self.logger = get_logger(__name__)
        # The reverse index hashes to its own cluster slot, so it cannot join
        # a script with the user-keyed slots
        self._split_reverse_index = bool(store.is_cluster)

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> "SessionAuthority":
        return cls(
            store,
            ttl_seconds=settings.session_ttl_seconds,
            idle_timeout_seconds=settings.session_idle_timeout_seconds,
            keys=KeySpace(
                hash_tags=settings.cluster_mode and settings.redis_cluster_hash_tags
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _active_session_id(self, user_id: str) -> Optional[str]:
        return await self.store.get_text(self.keys.active_session(user_id))

    async def _indexed_session_id(self, user_id: str) -> Optional[str]:
        return await self.store.get_text(self.keys.user_sessions(user_id))

    async def _load_record(self, user_id: str) -> Optional[SessionRecord]:
        """Read the session record; corrupt payloads count as absent."""
        decoded = await self.store.get(self.keys.session(user_id))
        if not decoded.found:
            if decoded.is_corrupt:
                self.logger.warning("session_record_corrupt", user_id=user_id)
            return None
        data = decoded.as_dict()
        if data is None:
            self.logger.warning("session_record_not_object", user_id=user_id)
            return None
        try:
            return SessionRecord.from_dict(data)
        except ValueError as exc:
            self.logger.warning("session_record_invalid", user_id=user_id, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _refresh(self, record: SessionRecord) -> bool:
        """Persist ``record`` and restore the full TTL on every slot.

        Applied only while the pointer still names ``record.session_id``;
        returns False when a newer login has replaced it.
        """
        pointer_key, index_key, record_key = self.keys.user_keys(record.user_id)
        reverse_key = self.keys.session_id(record.session_id)
        items: Dict[str, Any] = {
            index_key: record.session_id,
            record_key: record.to_dict(),
        }
        if not self._split_reverse_index:
            items[reverse_key] = record.user_id
        applied = await self.store.set_if_equals(
            pointer_key,
            record.session_id,
            items,
            self.ttl_seconds,
            expire_keys=[pointer_key],
        )
        if applied and self._split_reverse_index:
            await self.store.set(reverse_key, record.user_id, self.ttl_seconds)
        return applied

    async def _purge_session(self, user_id: str, session_id: str) -> bool:
        """Remove the user's slots only while ``session_id`` is the active one."""
        reverse_key = self.keys.session_id(session_id)
        keys = list(self.keys.user_keys(user_id))
        if not self._split_reverse_index:
            keys.append(reverse_key)
        removed = await self.store.delete_if_equals(
            self.keys.active_session(user_id), session_id, keys
        )
        if removed and not self._split_reverse_index:
            return True
        # A leftover reverse entry is dropped only when it names this user
        if removed or await self.store.get_text(reverse_key) == user_id:
            await self.store.delete(reverse_key)
        return removed

    async def _purge_user(self, user_id: str) -> bool:
        """Remove every slot for the user; True when any session id was found."""
        session_ids = {
            sid
            for sid in (
                await self._active_session_id(user_id),
                await self._indexed_session_id(user_id),
            )
            if sid
        }
        reverse_keys = [self.keys.session_id(sid) for sid in sorted(session_ids)]
        user_keys = list(self.keys.user_keys(user_id))
        if self._split_reverse_index:
            await self.store.delete(*user_keys)
            for reverse_key in reverse_keys:
                await self.store.delete(reverse_key)
        else:
            await self.store.delete(*user_keys, *reverse_keys)
        return bool(session_ids)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_session(
        self, user_id: Any, metadata: Optional[Mapping[str, Any]] = None
    ) -> CreatedSession:
        """Start the only valid session for ``user_id``, superseding any other."""
        if _blank(user_id):
            raise ValidationError("user_id is required")
        user_id = str(user_id)

        if not await self.remove_all_user_sessions(user_id):
            raise SessionCreationError(
                "failed to clear existing session state", detail={"stage": "purge"}
            )

        session_id = self._new_session_id()
        now = self._clock()
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            last_activity=now,
            metadata=build_metadata(metadata),
        )
        pointer_key, index_key, record_key = self.keys.user_keys(user_id)
        reverse_key = self.keys.session_id(session_id)
        items: Dict[str, Any] = {
            record_key: record.to_dict(),
            pointer_key: session_id,
            index_key: session_id,
        }
        if not self._split_reverse_index:
            items[reverse_key] = user_id

        try:
            await self.store.set_many(items, self.ttl_seconds)
        except (StoreUnavailableError, ValueError) as exc:
            self.logger.error(
                "session_create_write_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise SessionCreationError(
                "failed to persist session", detail={"stage": "write"}
            ) from exc

        if self._split_reverse_index:
            try:
                await self.store.set(reverse_key, user_id, self.ttl_seconds)
            except StoreUnavailableError as exc:
                self.logger.error(
                    "session_create_reverse_index_failed", user_id=user_id, error=str(exc)
                )
                try:
                    await self._purge_session(user_id, session_id)
                except StoreUnavailableError as cleanup_exc:
                    self.logger.warning(
                        "session_create_cleanup_failed",
                        user_id=user_id,
                        error=str(cleanup_exc),
                    )
                raise SessionCreationError(
                    "failed to persist session", detail={"stage": "reverse_index"}
                ) from exc

        self.logger.info(
            "session_created",
            user_id=user_id,
            session_hint=session_hint(session_id),
            ttl_seconds=self.ttl_seconds,
        )
        return CreatedSession(session_id=session_id, expires_in=self.ttl_seconds, record=record)

    async def validate_session(self, user_id: Any, session_id: Optional[str]) -> SessionValidation:
        """Check that ``session_id`` is the user's active session and refresh it.

        Never raises; every failure is reported as a SessionValidation.
        """
        if _blank(user_id) or not session_id:
            return SessionValidation.failure(SessionErrorCode.INVALID_PARAMETERS)
        user_id = str(user_id)
        try:
            return await self._validate(user_id, session_id)
        except Exception as exc:
            self.logger.error(
                "session_validation_error",
                user_id=user_id,
                session_hint=session_hint(session_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SessionValidation.failure(SessionErrorCode.VALIDATION_ERROR)

    async def _validate(self, user_id: str, session_id: str) -> SessionValidation:
        active = await self._active_session_id(user_id)
        if not _same_id(active, session_id):
            self.logger.info(
                "session_superseded" if active else "session_not_active",
                user_id=user_id,
                session_hint=session_hint(session_id),
            )
            return SessionValidation.failure(SessionErrorCode.INVALID_SESSION)

        record = await self._load_record(user_id)
        if record is None or record.session_id != session_id:
            self.logger.warning(
                "session_record_missing",
                user_id=user_id,
                session_hint=session_hint(session_id),
            )
            return SessionValidation.failure(SessionErrorCode.SESSION_NOT_FOUND)

        now = self._clock()
        idle_ms = now - record.last_activity
        if idle_ms > self.idle_timeout_ms:
            await self._purge_session(user_id, session_id)
            self.logger.info(
                "session_expired",
                user_id=user_id,
                session_hint=session_hint(session_id),
                idle_seconds=idle_ms // 1000,
            )
            return SessionValidation.failure(SessionErrorCode.SESSION_EXPIRED)

        record.last_activity = now
        try:
            refreshed = await self._refresh(record)
        except (StoreUnavailableError, ValueError) as exc:
            self.logger.error(
                "session_refresh_failed",
                user_id=user_id,
                session_hint=session_hint(session_id),
                error=str(exc),
            )
            return SessionValidation.failure(SessionErrorCode.UPDATE_FAILED)
        if not refreshed:
            self.logger.info(
                "session_refresh_superseded",
                user_id=user_id,
                session_hint=session_hint(session_id),
            )
            return SessionValidation.failure(SessionErrorCode.UPDATE_FAILED)

        return SessionValidation(is_valid=True, session=record)

    async def validate_session_id(self, session_id: Optional[str]) -> SessionValidation:
        """Validate a bare session token by resolving its owner first."""
        if not session_id:
            return SessionValidation.failure(SessionErrorCode.INVALID_PARAMETERS)
        try:
            owner = await self.store.get_text(self.keys.session_id(session_id))
        except Exception as exc:
            self.logger.error(
                "session_owner_lookup_failed",
                session_hint=session_hint(session_id),
                error=str(exc),
            )
            return SessionValidation.failure(SessionErrorCode.VALIDATION_ERROR)
        if owner is None:
            return SessionValidation.failure(SessionErrorCode.INVALID_SESSION)
        return await self.validate_session(owner, session_id)

    async def remove_session(self, user_id: Any, session_id: Optional[str] = None) -> bool:
        """Log out. With ``session_id``, only that session is removed, never a newer one.

        Returns whether anything was removed. Store failures propagate as
        StoreUnavailableError.
        """
        if _blank(user_id):
            return False
        user_id = str(user_id)
        if session_id:
            removed = await self._purge_session(user_id, session_id)
        else:
            removed = await self._purge_user(user_id)
        self.logger.info(
            "session_removed" if removed else "session_remove_noop",
            user_id=user_id,
            session_hint=session_hint(session_id),
        )
        return removed

    async def remove_all_user_sessions(self, user_id: Any) -> bool:
        """Unconditionally clear every slot for the user; False if the store failed."""
        if _blank(user_id):
            return False
        user_id = str(user_id)
        try:
            await self._purge_user(user_id)
        except Exception as exc:
            self.logger.error(
                "remove_all_user_sessions_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    async def update_last_activity(self, user_id: Any) -> bool:
        if _blank(user_id):
            return False
        user_id = str(user_id)
        try:
            record = await self._load_record(user_id)
            if record is None:
                self.logger.info("update_last_activity_no_session", user_id=user_id)
                return False
            record.last_activity = self._clock()
            refreshed = await self._refresh(record)
        except Exception as exc:
            self.logger.error(
                "update_last_activity_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not refreshed:
            self.logger.info("update_last_activity_superseded", user_id=user_id)
        return refreshed

    async def get_active_session(self, user_id: Any) -> Optional[SessionRecord]:
        """Current session record, healing a pointer whose record has vanished."""
        if _blank(user_id):
            return None
        user_id = str(user_id)
        try:
            active = await self._active_session_id(user_id)
            if active is None:
                return None
            record = await self._load_record(user_id)
            if record is None or record.session_id != active:
                healed = await self._purge_session(user_id, active)
                self.logger.warning(
                    "session_pointer_dangling",
                    user_id=user_id,
                    session_hint=session_hint(active),
                    healed=healed,
                )
                return None
            return record
        except Exception as exc:
            self.logger.error(
                "get_active_session_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def lookup_session(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """Find the record for a session token through the reverse index.

        Read-only apart from dropping reverse entries whose session is no
        longer active; does not refresh activity or TTLs.
        """
        if not session_id:
            return None
        reverse_key = self.keys.session_id(session_id)
        try:
            user_id = await self.store.get_text(reverse_key)
            if user_id is None:
                return None
            active = await self._active_session_id(user_id)
            if not _same_id(active, session_id):
                await self.store.delete(reverse_key)
                self.logger.info(
                    "session_reverse_index_stale",
                    user_id=user_id,
                    session_hint=session_hint(session_id),
                )
                return None
            record = await self._load_record(user_id)
        except Exception as exc:
            self.logger.error(
                "lookup_session_failed",
                session_hint=session_hint(session_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if record is None or record.session_id != session_id:
            return None
        return record


__all__ = [
    "SESSION_ERROR_MESSAGES",
    "SessionAuthority",
    "SessionErrorCode",
    "SessionValidation",
    "generate_session_id",
]

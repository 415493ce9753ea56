from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from solosession.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session authority and its store."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_cluster_nodes: str = env_field(
        "",
        "REDIS_CLUSTER_NODES",
        description="Comma separated host:port seeds; empty means standalone Redis",
    )
    redis_cluster_hash_tags: bool = env_field(
        True,
        "REDIS_CLUSTER_HASH_TAGS",
        description="Wrap user ids in {} so per-user keys share a cluster slot",
    )
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    redis_connect_max_attempts: int = env_field(5, "REDIS_CONNECT_MAX_ATTEMPTS")
    redis_connect_backoff_base_ms: int = env_field(100, "REDIS_CONNECT_BACKOFF_BASE_MS")
    redis_connect_backoff_cap_ms: int = env_field(2000, "REDIS_CONNECT_BACKOFF_CAP_MS")
    session_ttl_seconds: int = env_field(
        DEFAULT_SESSION_TTL_SECONDS,
        "SESSION_TTL_SECONDS",
        description="Hard TTL applied to every session key",
    )
    session_idle_timeout_seconds: int = env_field(
        DEFAULT_SESSION_TTL_SECONDS,
        "SESSION_IDLE_TIMEOUT_SECONDS",
        description="Soft expiry measured from the record's lastActivity",
    )
    session_issuer_secret: str | None = env_field(
        None,
        "SESSION_ISSUER_SECRET",
        description="Shared secret the login service presents in X-Session-Issuer-Key; unset disables issuing over HTTP",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory store fallback and runtime resets",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("session_ttl_seconds", "session_idle_timeout_seconds")
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session timeouts must be positive")
        return value

    @field_validator("redis_connect_max_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("redis_connect_max_attempts must be at least 1")
        return value

    @field_validator("redis_cluster_nodes")
    @classmethod
    def _validate_cluster_nodes(cls, value: str) -> str:
        for node in filter(None, (part.strip() for part in value.split(","))):
            host, sep, port = node.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"invalid cluster node '{node}', expected host:port")
        return value

    @model_validator(mode="after")
    def _validate_backoff(self) -> "Settings":
        if self.redis_connect_backoff_base_ms < 0:
            raise ValueError("redis_connect_backoff_base_ms must not be negative")
        if self.redis_connect_backoff_cap_ms < self.redis_connect_backoff_base_ms:
            raise ValueError("redis_connect_backoff_cap_ms must be >= base")
        return self

    @model_validator(mode="after")
    def _require_hash_tags_in_cluster(self) -> "Settings":
        # Per-user scripts touch three keys that must share one cluster slot
        if self.cluster_mode and not self.redis_cluster_hash_tags:
            raise ValueError("REDIS_CLUSTER_HASH_TAGS must stay enabled with REDIS_CLUSTER_NODES")
        return self

    @field_validator("session_issuer_secret")
    @classmethod
    def _validate_issuer_secret(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if len(value) < 16:
            raise ValueError("session_issuer_secret must be at least 16 characters")
        return value

    @property
    def cluster_nodes(self) -> list[tuple[str, int]]:
        nodes = []
        for node in filter(None, (part.strip() for part in self.redis_cluster_nodes.split(","))):
            host, _, port = node.rpartition(":")
            nodes.append((host, int(port)))
        return nodes

    @property
    def cluster_mode(self) -> bool:
        return bool(self.cluster_nodes)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            cluster_mode=_settings_cache.cluster_mode,
            use_memory_store=_settings_cache.use_memory_store,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

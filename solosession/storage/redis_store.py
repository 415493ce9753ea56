from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.exceptions import RedisClusterException, RedisError

from solosession.logging import get_logger
from solosession.storage.codec import Decoded, decode_text, decode_value, encode_value
from solosession.storage.common import encode_items, key_prefix
from solosession.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

# RedisClusterException (e.g. client-side CROSSSLOT rejection) is not a RedisError
_STORE_ERRORS = (RedisError, RedisClusterException, OSError, asyncio.TimeoutError)


class RedisStore:
    """Redis (standalone or cluster) client for session state.

    The connection is opened lazily on first use. Concurrent callers that arrive
    while a connect is in flight await the same attempt instead of opening
    parallel clients. Multi-key changes run as Lua scripts so they execute
    atomically; in cluster mode every key passed to a script must hash to the
    same slot.
    """

    # Set every key with one TTL. ARGV[1] = ttl, ARGV[i + 1] = value of KEYS[i]
    _SET_MANY_SCRIPT = """
local ttl = tonumber(ARGV[1])
for i = 1, #KEYS do
  redis.call('SET', KEYS[i], ARGV[i + 1], 'EX', ttl)
end
return #KEYS
"""

    # Delete KEYS[2..] only while KEYS[1] still holds ARGV[1]
    _DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
  return 0
end
for i = 2, #KEYS do
  redis.call('DEL', KEYS[i])
end
return 1
"""

    # While KEYS[1] holds ARGV[1]: set the first ARGV[3] keys after the guard,
    # then re-apply the TTL to the remaining keys
    _SET_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
  return 0
end
local ttl = tonumber(ARGV[2])
local count = tonumber(ARGV[3])
for i = 1, count do
  redis.call('SET', KEYS[i + 1], ARGV[i + 3], 'EX', ttl)
end
for i = count + 2, #KEYS do
  redis.call('EXPIRE', KEYS[i], ttl)
end
return 1
"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        cluster_nodes: Optional[Sequence[Tuple[str, int]]] = None,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        max_connect_attempts: int = 5,
        backoff_base_ms: int = 100,
        backoff_cap_ms: int = 2000,
        client_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.redis_url = redis_url
        self.cluster_nodes = list(cluster_nodes or [])
        self.password = password
        self.socket_timeout = socket_timeout
        self.max_connect_attempts = max(1, max_connect_attempts)
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._client_factory = client_factory or self._build_client
        self._client: Any = None
        self._connect_task: Optional[asyncio.Future] = None
        self._connect_lock = asyncio.Lock()

    @property
    def is_cluster(self) -> bool:
        return bool(self.cluster_nodes)

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _build_client(self) -> Any:
        extra: dict[str, Any] = {}
        if self.password:
            extra["password"] = self.password
        if self.cluster_nodes:
            return RedisCluster(
                startup_nodes=[ClusterNode(host, port) for host, port in self.cluster_nodes],
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
                **extra,
            )
        return aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
            **extra,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based), doubling up to the cap."""
        delay_ms = min(self.backoff_cap_ms, self.backoff_base_ms * (2 ** attempt))
        return delay_ms / 1000.0

    async def connect(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._connect_lock:
            if self._client is not None:
                return self._client
            if self._connect_task is None:
                self._connect_task = asyncio.ensure_future(self._establish())
            task = self._connect_task
        # Shielded so one cancelled caller does not abort the shared attempt
        return await asyncio.shield(task)

    async def _establish(self) -> Any:
        last_error: Optional[BaseException] = None
        try:
            for attempt in range(self.max_connect_attempts):
                client = None
                try:
                    client = self._client_factory()
                    await client.ping()
                except _STORE_ERRORS as exc:
                    last_error = exc
                    if client is not None:
                        await self._close_client(client)
                    if attempt + 1 >= self.max_connect_attempts:
                        break
                    delay = self.backoff_seconds(attempt)
                    logger.warning(
                        "redis_connect_retry",
                        attempt=attempt + 1,
                        max_attempts=self.max_connect_attempts,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)
                    continue
                self._client = client
                logger.info("redis_connected", cluster=self.is_cluster, attempts=attempt + 1)
                return client
        finally:
            self._connect_task = None

        logger.error(
            "redis_connect_failed",
            cluster=self.is_cluster,
            attempts=self.max_connect_attempts,
            error=str(last_error),
        )
        raise StoreUnavailableError(
            "unable to connect to redis",
            detail={"attempts": self.max_connect_attempts, "cluster": self.is_cluster},
        ) from last_error

    @staticmethod
    async def _close_client(client: Any) -> None:
        try:
            await client.aclose()
        except _STORE_ERRORS as exc:
            logger.debug("redis_client_close_failed", error=str(exc))

    async def quit(self) -> None:
        """Release the connection; the next operation reconnects."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except _STORE_ERRORS as exc:
            logger.error("redis_quit_failed", error=str(exc))
            raise StoreUnavailableError("redis quit failed") from exc
        logger.info("redis_connection_closed")

    async def _run(
        self, op: str, key: Optional[str], call: Callable[[Any], Awaitable[Any]]
    ) -> Any:
        client = await self.connect()
        try:
            return await call(client)
        except _STORE_ERRORS as exc:
            slot = key_prefix(key) if key else None
            logger.error(
                "redis_operation_failed",
                op=op,
                slot=slot,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                f"redis {op} failed", detail={"op": op, "slot": slot}
            ) from exc

    async def verify_connection(self) -> None:
        """Assert Redis connectivity, for health checks."""
        await self._run("ping", None, lambda client: client.ping())

    async def get(self, key: str) -> Decoded:
        raw = await self._run("get", key, lambda client: client.get(key))
        decoded = decode_value(raw)
        if decoded.is_corrupt:
            logger.warning("redis_value_corrupt", slot=key_prefix(key))
        return decoded

    async def get_text(self, key: str) -> Optional[str]:
        return decode_text(await self._run("get", key, lambda client: client.get(key)))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        text = encode_value(value)
        if text is None:
            raise ValueError(f"value for {key_prefix(key)} cannot be serialized")
        if ttl_seconds:
            await self._run("set", key, lambda client: client.set(key, text, ex=ttl_seconds))
        else:
            await self._run("set", key, lambda client: client.set(key, text))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("del", keys[0], lambda client: client.delete(*keys)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(
            await self._run("expire", key, lambda client: client.expire(key, ttl_seconds))
        )

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", key, lambda client: client.ttl(key)))

    async def set_many(self, items: Mapping[str, Any], ttl_seconds: int) -> None:
        encoded = encode_items(items)
        if not encoded:
            return
        keys = [key for key, _ in encoded]
        args = [ttl_seconds, *(text for _, text in encoded)]
        await self._run(
            "set_many",
            keys[0],
            lambda client: client.eval(self._SET_MANY_SCRIPT, len(keys), *keys, *args),
        )

    async def delete_if_equals(
        self, guard_key: str, expected: str, keys: Iterable[str]
    ) -> bool:
        script_keys = [guard_key, *keys]
        result = await self._run(
            "delete_if_equals",
            guard_key,
            lambda client: client.eval(
                self._DELETE_IF_EQUALS_SCRIPT, len(script_keys), *script_keys, expected
            ),
        )
        return bool(int(result))

    async def set_if_equals(
        self,
        guard_key: str,
        expected: str,
        items: Mapping[str, Any],
        ttl_seconds: int,
        expire_keys: Iterable[str] = (),
    ) -> bool:
        encoded = encode_items(items)
        script_keys = [guard_key, *(key for key, _ in encoded), *expire_keys]
        args = [expected, ttl_seconds, len(encoded), *(text for _, text in encoded)]
        result = await self._run(
            "set_if_equals",
            guard_key,
            lambda client: client.eval(
                self._SET_IF_EQUALS_SCRIPT, len(script_keys), *script_keys, *args
            ),
        )
        return bool(int(result))


__all__ = ["RedisStore"]

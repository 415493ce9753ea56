"""Tests for the Redis store client using mocked redis clients."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisClusterException
from redis.exceptions import TimeoutError as RedisTimeoutError

from solosession.storage.errors import StoreUnavailableError
from solosession.storage.redis_store import RedisStore


def _client(**overrides):
    client = AsyncMock()
    client.ping.return_value = True
    for name, value in overrides.items():
        setattr(client, name, value)
    return client


def _store(client=None, **kwargs):
    client = client or _client()
    return RedisStore(client_factory=lambda: client, **kwargs), client


@pytest.fixture
def sleeps(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("solosession.storage.redis_store.asyncio.sleep", fake_sleep)
    return delays


class TestConnect:
    async def test_concurrent_connects_share_one_client(self):
        created = []

        async def slow_ping():
            await asyncio.sleep(0.01)
            return True

        def factory():
            client = _client()
            client.ping.side_effect = slow_ping
            created.append(client)
            return client

        store = RedisStore(client_factory=factory)
        results = await asyncio.gather(*(store.connect() for _ in range(5)))

        assert len(created) == 1
        assert all(result is created[0] for result in results)
        assert store.connected

    async def test_connect_is_reused_after_success(self):
        store, client = _store()
        first = await store.connect()
        second = await store.connect()
        assert first is second is client
        client.ping.assert_awaited_once()

    async def test_retries_with_capped_backoff_then_fails(self, sleeps):
        clients = []

        def factory():
            client = _client()
            client.ping.side_effect = RedisConnectionError("refused")
            clients.append(client)
            return client

        store = RedisStore(
            client_factory=factory,
            max_connect_attempts=4,
            backoff_base_ms=100,
            backoff_cap_ms=250,
        )
        with pytest.raises(StoreUnavailableError) as excinfo:
            await store.connect()

        assert sleeps == [0.1, 0.2, 0.25]
        assert len(clients) == 4
        assert all(client.aclose.await_count == 1 for client in clients)
        assert excinfo.value.detail == {"attempts": 4, "cluster": False}
        assert not store.connected

    async def test_recovers_when_server_comes_back(self, sleeps):
        attempts = {"count": 0}

        async def flaky_ping():
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise RedisConnectionError("loading")
            return True

        client = _client()
        client.ping.side_effect = flaky_ping
        store = RedisStore(client_factory=lambda: client, max_connect_attempts=5)

        assert await store.connect() is client
        assert sleeps == [0.1, 0.2]

    async def test_failed_connect_can_be_retried_later(self, sleeps):
        healthy = _client()
        broken = _client()
        broken.ping.side_effect = RedisConnectionError("down")
        clients = iter([broken, healthy])

        store = RedisStore(client_factory=lambda: next(clients), max_connect_attempts=1)
        with pytest.raises(StoreUnavailableError):
            await store.connect()
        assert await store.connect() is healthy

    async def test_quit_closes_and_allows_reconnect(self):
        store, client = _store()
        await store.connect()
        await store.quit()
        client.aclose.assert_awaited_once()
        assert not store.connected
        await store.quit()  # no-op when already closed


class TestBackoff:
    def test_backoff_doubles_until_cap(self):
        store = RedisStore(backoff_base_ms=100, backoff_cap_ms=2000)
        assert [store.backoff_seconds(n) for n in range(6)] == [0.1, 0.2, 0.4, 0.8, 1.6, 2.0]

    def test_cluster_mode_follows_nodes(self):
        assert RedisStore(cluster_nodes=[("redis-a", 7000)]).is_cluster
        assert not RedisStore().is_cluster


class TestOperations:
    async def test_get_decodes_json(self):
        client = _client()
        client.get.return_value = '{"sessionId":"s1","userId":"u1"}'
        store, _ = _store(client)
        decoded = await store.get("session:u1")
        assert decoded.as_dict() == {"sessionId": "s1", "userId": "u1"}
        client.get.assert_awaited_once_with("session:u1")

    async def test_get_reports_corrupt_payload(self):
        client = _client()
        client.get.return_value = "[object Object]"
        store, _ = _store(client)
        assert (await store.get("session:u1")).is_corrupt

    async def test_set_applies_ttl(self):
        store, client = _store()
        await store.set("sessionId:abc", "u1", 86400)
        client.set.assert_awaited_once_with("sessionId:abc", "u1", ex=86400)

    async def test_operation_errors_become_store_unavailable(self):
        client = _client()
        client.get.side_effect = RedisTimeoutError("timed out")
        store, _ = _store(client)
        with pytest.raises(StoreUnavailableError) as excinfo:
            await store.get("session:u1")
        assert excinfo.value.detail == {"op": "get", "slot": "session"}

    async def test_get_text_keeps_bracketed_values(self):
        client = _client()
        client.get.return_value = "[admin]"
        store, _ = _store(client)
        assert await store.get_text("sessionId:abc") == "[admin]"
        client.get.return_value = None
        assert await store.get_text("sessionId:abc") is None

    async def test_cluster_client_errors_become_store_unavailable(self):
        client = _client()
        client.eval.side_effect = RedisClusterException("Keys in request don't hash to the same slot")
        store, _ = _store(client)
        with pytest.raises(StoreUnavailableError) as excinfo:
            await store.set_many({"active_session:u1": "s1", "sessionId:abc": "u1"}, 60)
        assert excinfo.value.detail == {"op": "set_many", "slot": "active_session"}

    async def test_delete_without_keys_skips_round_trip(self):
        store, client = _store()
        assert await store.delete() == 0
        client.delete.assert_not_awaited()

    async def test_set_many_runs_one_script(self):
        client = _client()
        client.eval.return_value = 2
        store, _ = _store(client)
        await store.set_many({"active_session:u1": "s1", "session:u1": {"n": 1}}, 60)
        client.eval.assert_awaited_once_with(
            RedisStore._SET_MANY_SCRIPT,
            2,
            "active_session:u1",
            "session:u1",
            60,
            "s1",
            '{"n":1}',
        )

    async def test_delete_if_equals_reports_guard_result(self):
        client = _client()
        client.eval.return_value = 0
        store, _ = _store(client)
        removed = await store.delete_if_equals(
            "active_session:u1", "s1", ["active_session:u1", "session:u1"]
        )
        assert removed is False
        client.eval.assert_awaited_once_with(
            RedisStore._DELETE_IF_EQUALS_SCRIPT,
            3,
            "active_session:u1",
            "active_session:u1",
            "session:u1",
            "s1",
        )

    async def test_set_if_equals_orders_keys_and_args(self):
        client = _client()
        client.eval.return_value = 1
        store, _ = _store(client)
        applied = await store.set_if_equals(
            "active_session:u1",
            "s1",
            {"session:u1": {"n": 2}},
            30,
            expire_keys=["active_session:u1"],
        )
        assert applied is True
        client.eval.assert_awaited_once_with(
            RedisStore._SET_IF_EQUALS_SCRIPT,
            3,
            "active_session:u1",
            "session:u1",
            "active_session:u1",
            "s1",
            30,
            1,
            '{"n":2}',
        )

    async def test_verify_connection_pings(self):
        store, client = _store()
        await store.verify_connection()
        assert client.ping.await_count == 2

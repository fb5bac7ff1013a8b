"""
Tests for the rate-limit store backends.
"""
from unittest.mock import MagicMock

import pytest

from config import Settings
from models.security import RateLimitRecord
from repositories.rate_limit_repository import (
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    SupabaseRateLimitStore,
    create_rate_limit_store,
    escape_like,
    from_iso,
    to_iso,
)
from utils.exceptions import ConfigurationError, StoreUnavailableError

NOW = 1_700_000_000_000
NOW_ISO = "2023-11-14T22:13:20+00:00"


def _row(**overrides):
    row = {
        "key": "login:1.2.3.4",
        "count": 2,
        "window_ms": 900000,
        "max_requests": 5,
        "created_at": NOW_ISO,
        "updated_at": None,
        "successful": False,
        "failed": True,
    }
    row.update(overrides)
    return row


def test_iso_round_trip():
    assert to_iso(NOW) == NOW_ISO
    assert from_iso(NOW_ISO) == NOW
    assert from_iso("2023-11-14T22:13:20Z") == NOW
    assert from_iso(None) is None


@pytest.mark.parametrize("value,expected", [
    ("2023-11-14T22:13:20.12+00:00", NOW + 120),
    ("2023-11-14T22:13:20.5Z", NOW + 500),
    ("2023-11-14T22:13:20.1234+00:00", NOW + 123),
    ("2023-11-14T22:13:20.123456789+00:00", NOW + 123),
])
def test_from_iso_accepts_postgres_fractions(value, expected):
    assert from_iso(value) == expected
    assert from_iso(to_iso(expected)) == expected


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_increment_creates_then_updates_bucket(self, memory_store):
        first = await memory_store.increment_rate_record("k", NOW - 60000, 900000, 5, NOW)
        second = await memory_store.increment_rate_record("k", NOW - 59000, 900000, 5, NOW + 1000)

        assert first.count == 1
        assert second.count == 2
        assert second.created_at == NOW
        assert second.updated_at == NOW + 1000

    @pytest.mark.asyncio
    async def test_increment_starts_new_bucket_after_sub_window(self, memory_store):
        await memory_store.increment_rate_record("k", NOW - 60000, 900000, 5, NOW)
        record = await memory_store.increment_rate_record("k", NOW + 1, 900000, 5, NOW + 60001)

        assert record.count == 1
        assert len(await memory_store.query_rate_records("k", 0)) == 2

    @pytest.mark.asyncio
    async def test_query_is_newest_first_and_bounded(self, memory_store):
        for offset in (0, 1000, 2000):
            await memory_store.insert_rate_record(
                RateLimitRecord(key="k", count=1, window_ms=5000, max_requests=5, created_at=NOW + offset)
            )

        records = await memory_store.query_rate_records("k", NOW + 1000)

        assert [r.created_at for r in records] == [NOW + 2000, NOW + 1000]

    @pytest.mark.asyncio
    async def test_delete_by_pattern(self, memory_store):
        for key in ("login:a_b", "login:axb", "file_upload:a_b"):
            await memory_store.increment_rate_record(key, NOW, 1000, 5, NOW)

        deleted = await memory_store.delete_rate_records(escape_like("login:a_b"))

        assert deleted == 1
        assert await memory_store.query_rate_records("login:axb", 0)
        assert await memory_store.delete_rate_records("%:" + escape_like("a_b")) == 1

    @pytest.mark.asyncio
    async def test_delete_older_than(self, memory_store):
        await memory_store.increment_rate_record("old", NOW - 10000, 1000, 5, NOW - 10000)
        await memory_store.increment_rate_record("new", NOW, 1000, 5, NOW)

        assert await memory_store.delete_rate_records_older_than(NOW - 5000) == 1
        assert [r.key for r in await memory_store.query_all_rate_records(0)] == ["new"]

    @pytest.mark.asyncio
    async def test_mark_latest_outcome(self, memory_store):
        await memory_store.increment_rate_record("k", NOW, 1000, 5, NOW)

        await memory_store.mark_latest_outcome("k", NOW - 1000, successful=True)

        assert (await memory_store.query_rate_records("k", 0))[0].successful is True

    @pytest.mark.asyncio
    async def test_security_events_are_appended(self, memory_store):
        await memory_store.insert_security_event({"event_type": "rate_limit_exceeded"})

        assert memory_store.security_events == [{"event_type": "rate_limit_exceeded"}]


class TestSupabaseStore:

    @pytest.mark.asyncio
    async def test_query_maps_rows(self, mock_supabase_client):
        mock_table = mock_supabase_client.table.return_value
        mock_table.execute.return_value = MagicMock(data=[_row()])
        store = SupabaseRateLimitStore(mock_supabase_client)

        records = await store.query_rate_records("login:1.2.3.4", NOW - 900000)
        await store.close()

        mock_supabase_client.table.assert_called_with("rate_limits")
        mock_table.eq.assert_called_with("key", "login:1.2.3.4")
        mock_table.gte.assert_called_with("created_at", to_iso(NOW - 900000))
        assert records[0].created_at == NOW
        assert records[0].count == 2
        assert records[0].failed is True

    @pytest.mark.asyncio
    async def test_increment_calls_rpc(self, mock_supabase_client):
        mock_supabase_client.rpc.return_value.execute.return_value = MagicMock(data=[_row(count=3)])
        store = SupabaseRateLimitStore(mock_supabase_client)

        record = await store.increment_rate_record("login:1.2.3.4", NOW - 60000, 900000, 5, NOW)
        await store.close()

        name, params = mock_supabase_client.rpc.call_args[0]
        assert name == "increment_rate_limit"
        assert params["p_key"] == "login:1.2.3.4"
        assert params["p_bucket_since"] == to_iso(NOW - 60000)
        assert record.count == 3

    @pytest.mark.asyncio
    async def test_empty_rpc_result_is_an_error(self, mock_supabase_client):
        store = SupabaseRateLimitStore(mock_supabase_client)

        with pytest.raises(StoreUnavailableError):
            await store.increment_rate_record("k", NOW, 1000, 5, NOW)
        await store.close()

    @pytest.mark.asyncio
    async def test_client_errors_are_wrapped(self, mock_supabase_client):
        mock_supabase_client.table.return_value.execute.side_effect = Exception("connection refused")
        store = SupabaseRateLimitStore(mock_supabase_client)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.query_all_rate_records(NOW)
        await store.close()

        assert exc_info.value.backend == "supabase"
        assert exc_info.value.operation == "query_all_rate_records"

    @pytest.mark.asyncio
    async def test_delete_by_pattern_uses_like(self, mock_supabase_client):
        mock_table = mock_supabase_client.table.return_value
        mock_table.execute.return_value = MagicMock(data=[_row(), _row()])
        store = SupabaseRateLimitStore(mock_supabase_client)

        deleted = await store.delete_rate_records("%:1.2.3.4")
        await store.close()

        mock_table.like.assert_called_with("key", "%:1.2.3.4")
        assert deleted == 2

    @pytest.mark.asyncio
    async def test_security_event_goes_to_events_table(self, mock_supabase_client):
        store = SupabaseRateLimitStore(mock_supabase_client, security_events_table="audit_events")

        await store.insert_security_event({"event_type": "input_threat_detected"})
        await store.close()

        mock_supabase_client.table.assert_called_with("audit_events")
        mock_supabase_client.table.return_value.insert.assert_called_with({"event_type": "input_threat_detected"})


class TestRedisStore:

    @pytest.mark.asyncio
    async def test_increment_runs_script(self, mock_redis_client):
        script = mock_redis_client.register_script.return_value
        script.return_value = [
            "key", "login:1.2.3.4", "count", "3", "window_ms", "900000", "max_requests", "5",
            "created_at", str(NOW), "successful", "0", "failed", "1",
        ]
        store = RedisRateLimitStore(mock_redis_client, key_prefix="test:")

        record = await store.increment_rate_record("login:1.2.3.4", NOW - 60000, 900000, 5, NOW)

        kwargs = script.call_args.kwargs
        assert kwargs["keys"] == ["test:index:login:1.2.3.4", "test:keys"]
        assert kwargs["args"][-1] == "test:record:login:1.2.3.4:"
        assert record.count == 3
        assert record.created_at == NOW
        assert record.failed is True

    @pytest.mark.asyncio
    async def test_query_reads_indexed_buckets(self, mock_redis_client):
        mock_redis_client.zrevrangebyscore.return_value = [str(NOW)]
        mock_redis_client.pipeline.return_value.execute.return_value = [{
            "key": "k", "count": "2", "window_ms": "1000", "max_requests": "5", "created_at": str(NOW),
        }]
        store = RedisRateLimitStore(mock_redis_client, key_prefix="test:")

        records = await store.query_rate_records("k", NOW - 1000)

        mock_redis_client.zrevrangebyscore.assert_awaited_with("test:index:k", "+inf", NOW - 1000)
        assert records[0].count == 2

    @pytest.mark.asyncio
    async def test_delete_by_pattern_only_touches_matching_keys(self, mock_redis_client):
        mock_redis_client.smembers.return_value = {"login:1.2.3.4", "login:1.2.3.40"}
        mock_redis_client.zrangebyscore.return_value = [str(NOW)]
        store = RedisRateLimitStore(mock_redis_client, key_prefix="test:")

        deleted = await store.delete_rate_records("%:1.2.3.4")

        assert deleted == 1
        mock_redis_client.delete.assert_awaited_once_with(f"test:record:login:1.2.3.4:{NOW}")
        mock_redis_client.srem.assert_awaited_once_with("test:keys", "login:1.2.3.4")

    @pytest.mark.asyncio
    async def test_redis_errors_are_wrapped(self, mock_redis_client):
        mock_redis_client.zrevrangebyscore.side_effect = ConnectionError("redis down")
        store = RedisRateLimitStore(mock_redis_client)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.query_rate_records("k", NOW)

        assert exc_info.value.backend == "redis"

    @pytest.mark.asyncio
    async def test_security_events_are_capped(self, mock_redis_client):
        store = RedisRateLimitStore(mock_redis_client, key_prefix="test:")

        await store.insert_security_event({"event_type": "rate_limit_exceeded"})

        pipeline = mock_redis_client.pipeline.return_value
        pipeline.lpush.assert_called_once()
        pipeline.ltrim.assert_called_once_with("test:security_events", 0, store.max_security_events - 1)


class TestStoreFactory:

    def test_memory_backend(self):
        settings = Settings(_env_file=None, RATE_LIMIT_BACKEND="memory")

        assert isinstance(create_rate_limit_store(settings), InMemoryRateLimitStore)

    def test_redis_backend(self):
        settings = Settings(_env_file=None, RATE_LIMIT_BACKEND="redis", REDIS_URL="redis://localhost:6379/0")

        assert isinstance(create_rate_limit_store(settings), RedisRateLimitStore)

    @pytest.mark.parametrize("backend", ["redis", "supabase", "carrier-pigeon"])
    def test_missing_configuration(self, backend):
        settings = Settings(_env_file=None, RATE_LIMIT_BACKEND=backend, SUPABASE_URL=None, REDIS_URL=None)

        with pytest.raises(ConfigurationError):
            create_rate_limit_store(settings)

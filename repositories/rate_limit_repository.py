"""
Durable storage for rate-limit counters and security events.

Every backend exposes an atomic increment-or-create primitive so concurrent
requests for the same limiter key never lose an update:
- Supabase: the increment_rate_limit RPC (migrations/001_rate_limits.sql)
- Redis: a Lua script
- Memory: a process-local lock
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from models.security import RateLimitRecord
from utils.exceptions import ConfigurationError, StoreUnavailableError

logger = logging.getLogger(__name__)

RECORD_COLUMNS = "key, count, window_ms, max_requests, created_at, updated_at, successful, failed"


def to_iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


# Postgres trims trailing zeros from fractional seconds (".12"); Python 3.10
# fromisoformat only takes 3 or 6 digits
_FRACTION = re.compile(r"\.(\d+)")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def from_iso(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.replace("Z", "+00:00"), count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (parsed - _EPOCH) // timedelta(milliseconds=1)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def like_to_regex(pattern: str) -> "re.Pattern":
    """Translate a SQL LIKE pattern ('%', '_' and backslash escapes) into a compiled regex."""
    parts = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


class RateLimitStore(ABC):
    """Storage contract required by the rate limiter and the audit logger."""

    backend_name = "abstract"

    @abstractmethod
    async def insert_rate_record(self, record: RateLimitRecord) -> None:
        ...

    @abstractmethod
    async def query_rate_records(self, key: str, since: int) -> List[RateLimitRecord]:
        """Records for ``key`` created at or after ``since`` (epoch ms), newest first."""

    @abstractmethod
    async def increment_rate_record(
        self,
        key: str,
        bucket_since: int,
        window_ms: int,
        max_requests: int,
        now: int
    ) -> RateLimitRecord:
        """
        Atomically increment the newest record of ``key`` created at or after
        ``bucket_since``, or create one with count 1 at ``now``.
        """

    @abstractmethod
    async def delete_rate_records_older_than(self, timestamp: int) -> int:
        ...

    @abstractmethod
    async def delete_rate_records(self, key_pattern: str) -> int:
        """Delete every record whose key matches a LIKE pattern ('%' wildcard)."""

    @abstractmethod
    async def query_all_rate_records(self, since: int) -> List[RateLimitRecord]:
        ...

    @abstractmethod
    async def mark_latest_outcome(self, key: str, since: int, successful: bool) -> None:
        """Tag the newest record of ``key`` created since ``since`` as successful or failed."""

    @abstractmethod
    async def insert_security_event(self, event: Dict[str, Any]) -> None:
        """Append-only security event write."""

    async def close(self) -> None:
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store for development and tests."""

    backend_name = "memory"

    def __init__(self):
        self._records: Dict[str, List[RateLimitRecord]] = defaultdict(list)
        self._events: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    @property
    def security_events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    async def insert_rate_record(self, record: RateLimitRecord) -> None:
        async with self._lock:
            self._records[record.key].append(replace(record))

    async def query_rate_records(self, key: str, since: int) -> List[RateLimitRecord]:
        async with self._lock:
            records = [replace(r) for r in self._records.get(key, []) if r.created_at >= since]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def increment_rate_record(
        self,
        key: str,
        bucket_since: int,
        window_ms: int,
        max_requests: int,
        now: int
    ) -> RateLimitRecord:
        async with self._lock:
            candidates = [r for r in self._records[key] if r.created_at >= bucket_since]
            if candidates:
                record = max(candidates, key=lambda r: r.created_at)
                record.count += 1
                record.updated_at = now
            else:
                record = RateLimitRecord(
                    key=key,
                    count=1,
                    window_ms=window_ms,
                    max_requests=max_requests,
                    created_at=now,
                )
                self._records[key].append(record)
            return replace(record)

    async def delete_rate_records_older_than(self, timestamp: int) -> int:
        deleted = 0
        async with self._lock:
            for key in list(self._records):
                kept = [r for r in self._records[key] if r.created_at >= timestamp]
                deleted += len(self._records[key]) - len(kept)
                if kept:
                    self._records[key] = kept
                else:
                    del self._records[key]
        return deleted

    async def delete_rate_records(self, key_pattern: str) -> int:
        matcher = like_to_regex(key_pattern)
        deleted = 0
        async with self._lock:
            for key in [k for k in self._records if matcher.match(k)]:
                deleted += len(self._records.pop(key))
        return deleted

    async def query_all_rate_records(self, since: int) -> List[RateLimitRecord]:
        async with self._lock:
            return [replace(r) for records in self._records.values() for r in records if r.created_at >= since]

    async def mark_latest_outcome(self, key: str, since: int, successful: bool) -> None:
        async with self._lock:
            candidates = [r for r in self._records.get(key, []) if r.created_at >= since]
            if not candidates:
                return
            latest = max(candidates, key=lambda r: r.created_at)
            if successful:
                latest.successful = True
            else:
                latest.failed = True

    async def insert_security_event(self, event: Dict[str, Any]) -> None:
        async with self._lock:
            self._events.append(dict(event))


class SupabaseRateLimitStore(RateLimitStore):
    """
    Supabase-backed store.

    The supabase client is synchronous, so calls run in a small thread pool to keep
    the event loop free.
    """

    backend_name = "supabase"

    def __init__(
        self,
        client,
        rate_limits_table: str = "rate_limits",
        security_events_table: str = "security_events",
        max_workers: int = 8
    ):
        self.client = client
        self.rate_limits_table = rate_limits_table
        self.security_events_table = security_events_table
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rate_limit_store")

    async def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn)
        except Exception as e:
            raise StoreUnavailableError(
                f"Supabase {operation} failed: {e}",
                operation=operation,
                backend=self.backend_name
            ) from e

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> RateLimitRecord:
        return RateLimitRecord(
            key=row["key"],
            count=int(row.get("count") or 1),
            window_ms=int(row.get("window_ms") or 0),
            max_requests=int(row.get("max_requests") or 0),
            created_at=from_iso(row.get("created_at")) or 0,
            updated_at=from_iso(row.get("updated_at")),
            successful=bool(row.get("successful")),
            failed=bool(row.get("failed")),
        )

    def _table(self, name: str):
        return self.client.table(name)

    async def insert_rate_record(self, record: RateLimitRecord) -> None:
        row = {
            "key": record.key,
            "count": record.count,
            "window_ms": record.window_ms,
            "max_requests": record.max_requests,
            "created_at": to_iso(record.created_at),
            "successful": record.successful,
            "failed": record.failed,
        }
        await self._run("insert_rate_record", lambda: self._table(self.rate_limits_table).insert(row).execute())

    async def query_rate_records(self, key: str, since: int) -> List[RateLimitRecord]:
        response = await self._run(
            "query_rate_records",
            lambda: self._table(self.rate_limits_table)
            .select(RECORD_COLUMNS)
            .eq("key", key)
            .gte("created_at", to_iso(since))
            .order("created_at", desc=True)
            .execute()
        )
        return [self._record_from_row(row) for row in (response.data or [])]

    async def increment_rate_record(
        self,
        key: str,
        bucket_since: int,
        window_ms: int,
        max_requests: int,
        now: int
    ) -> RateLimitRecord:
        params = {
            "p_key": key,
            "p_bucket_since": to_iso(bucket_since),
            "p_window_ms": window_ms,
            "p_max_requests": max_requests,
            "p_now": to_iso(now),
        }
        response = await self._run(
            "increment_rate_record",
            lambda: self.client.rpc("increment_rate_limit", params).execute()
        )
        data = response.data
        row = data[0] if isinstance(data, list) and data else data
        if not row:
            raise StoreUnavailableError(
                "increment_rate_limit returned no row",
                operation="increment_rate_record",
                backend=self.backend_name
            )
        return self._record_from_row(row)

    async def delete_rate_records_older_than(self, timestamp: int) -> int:
        response = await self._run(
            "delete_rate_records_older_than",
            lambda: self._table(self.rate_limits_table).delete().lt("created_at", to_iso(timestamp)).execute()
        )
        return len(response.data or [])

    async def delete_rate_records(self, key_pattern: str) -> int:
        response = await self._run(
            "delete_rate_records",
            lambda: self._table(self.rate_limits_table).delete().like("key", key_pattern).execute()
        )
        return len(response.data or [])

    async def query_all_rate_records(self, since: int) -> List[RateLimitRecord]:
        response = await self._run(
            "query_all_rate_records",
            lambda: self._table(self.rate_limits_table)
            .select(RECORD_COLUMNS)
            .gte("created_at", to_iso(since))
            .execute()
        )
        return [self._record_from_row(row) for row in (response.data or [])]

    async def mark_latest_outcome(self, key: str, since: int, successful: bool) -> None:
        response = await self._run(
            "mark_latest_outcome",
            lambda: self._table(self.rate_limits_table)
            .select("created_at")
            .eq("key", key)
            .gte("created_at", to_iso(since))
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return
        column = "successful" if successful else "failed"
        await self._run(
            "mark_latest_outcome",
            lambda: self._table(self.rate_limits_table)
            .update({column: True})
            .eq("key", key)
            .eq("created_at", rows[0]["created_at"])
            .execute()
        )

    async def insert_security_event(self, event: Dict[str, Any]) -> None:
        await self._run(
            "insert_security_event",
            lambda: self._table(self.security_events_table).insert(event).execute()
        )

    async def close(self) -> None:
        self._executor.shutdown(wait=False)


# Increment-or-create for one limiter key.
# KEYS[1] = per-key index (sorted set of bucket timestamps), KEYS[2] = set of limiter keys
# ARGV = key, bucket_since, window_ms, max_requests, now, record key prefix
_INCREMENT_SCRIPT = """
local latest = redis.call('ZREVRANGEBYSCORE', KEYS[1], '+inf', ARGV[2], 'LIMIT', 0, 1)
local created_at = ARGV[5]
local record_key
if #latest > 0 then
  created_at = latest[1]
  record_key = ARGV[6] .. created_at
  redis.call('HINCRBY', record_key, 'count', 1)
  redis.call('HSET', record_key, 'updated_at', ARGV[5])
else
  record_key = ARGV[6] .. created_at
  redis.call('HSET', record_key, 'key', ARGV[1], 'count', 1, 'window_ms', ARGV[3],
             'max_requests', ARGV[4], 'created_at', created_at, 'successful', 0, 'failed', 0)
  redis.call('ZADD', KEYS[1], created_at, created_at)
  redis.call('SADD', KEYS[2], ARGV[1])
end
redis.call('PEXPIRE', record_key, ARGV[3])
redis.call('PEXPIRE', KEYS[1], ARGV[3])
return redis.call('HGETALL', record_key)
"""


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed store: one hash per bucket record, a sorted-set index per limiter key."""

    backend_name = "redis"
    max_security_events = 10000

    def __init__(self, redis_client, key_prefix: str = "claims:rate_limit:"):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._increment = redis_client.register_script(_INCREMENT_SCRIPT)

    def _index_key(self, key: str) -> str:
        return f"{self.key_prefix}index:{key}"

    def _record_prefix(self, key: str) -> str:
        return f"{self.key_prefix}record:{key}:"

    @property
    def _keys_set(self) -> str:
        return f"{self.key_prefix}keys"

    @property
    def _events_key(self) -> str:
        return f"{self.key_prefix}security_events"

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except Exception as e:
            raise StoreUnavailableError(
                f"Redis {operation} failed: {e}",
                operation=operation,
                backend=self.backend_name
            ) from e

    @staticmethod
    def _record_from_hash(data: Dict[str, Any]) -> RateLimitRecord:
        return RateLimitRecord(
            key=data["key"],
            count=int(data.get("count", 1)),
            window_ms=int(data.get("window_ms", 0)),
            max_requests=int(data.get("max_requests", 0)),
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]) if data.get("updated_at") else None,
            successful=str(data.get("successful", "0")) == "1",
            failed=str(data.get("failed", "0")) == "1",
        )

    async def _records_for(self, key: str, since: int) -> List[RateLimitRecord]:
        members = await self.redis.zrevrangebyscore(self._index_key(key), "+inf", since)
        if not members:
            return []
        pipe = self.redis.pipeline()
        for member in members:
            pipe.hgetall(self._record_prefix(key) + str(member))
        rows = await pipe.execute()
        return [self._record_from_hash(row) for row in rows if row]

    async def insert_rate_record(self, record: RateLimitRecord) -> None:
        record_key = self._record_prefix(record.key) + str(record.created_at)
        pipe = self.redis.pipeline()
        pipe.hset(record_key, mapping={
            "key": record.key,
            "count": record.count,
            "window_ms": record.window_ms,
            "max_requests": record.max_requests,
            "created_at": record.created_at,
            "successful": int(record.successful),
            "failed": int(record.failed),
        })
        pipe.pexpire(record_key, record.window_ms)
        pipe.zadd(self._index_key(record.key), {str(record.created_at): record.created_at})
        pipe.sadd(self._keys_set, record.key)
        await self._call("insert_rate_record", pipe.execute())

    async def query_rate_records(self, key: str, since: int) -> List[RateLimitRecord]:
        return await self._call("query_rate_records", self._records_for(key, since))

    async def increment_rate_record(
        self,
        key: str,
        bucket_since: int,
        window_ms: int,
        max_requests: int,
        now: int
    ) -> RateLimitRecord:
        flat = await self._call(
            "increment_rate_record",
            self._increment(
                keys=[self._index_key(key), self._keys_set],
                args=[key, bucket_since, window_ms, max_requests, now, self._record_prefix(key)],
            )
        )
        return self._record_from_hash(dict(zip(flat[::2], flat[1::2])))

    async def _delete_for_key(self, key: str, upper: str) -> int:
        index_key = self._index_key(key)
        members = await self.redis.zrangebyscore(index_key, "-inf", upper)
        if members:
            await self.redis.delete(*[self._record_prefix(key) + str(m) for m in members])
            await self.redis.zremrangebyscore(index_key, "-inf", upper)
        if not await self.redis.zcard(index_key):
            await self.redis.srem(self._keys_set, key)
        return len(members)

    async def delete_rate_records_older_than(self, timestamp: int) -> int:
        async def run():
            deleted = 0
            for key in await self.redis.smembers(self._keys_set):
                deleted += await self._delete_for_key(key, f"({timestamp}")
            return deleted
        return await self._call("delete_rate_records_older_than", run())

    async def delete_rate_records(self, key_pattern: str) -> int:
        matcher = like_to_regex(key_pattern)

        async def run():
            deleted = 0
            for key in await self.redis.smembers(self._keys_set):
                if matcher.match(key):
                    deleted += await self._delete_for_key(key, "+inf")
            return deleted
        return await self._call("delete_rate_records", run())

    async def query_all_rate_records(self, since: int) -> List[RateLimitRecord]:
        async def run():
            records: List[RateLimitRecord] = []
            for key in await self.redis.smembers(self._keys_set):
                records.extend(await self._records_for(key, since))
            return records
        return await self._call("query_all_rate_records", run())

    async def mark_latest_outcome(self, key: str, since: int, successful: bool) -> None:
        async def run():
            latest = await self.redis.zrevrangebyscore(self._index_key(key), "+inf", since, start=0, num=1)
            if latest:
                field = "successful" if successful else "failed"
                await self.redis.hset(self._record_prefix(key) + str(latest[0]), field, 1)
        await self._call("mark_latest_outcome", run())

    async def insert_security_event(self, event: Dict[str, Any]) -> None:
        pipe = self.redis.pipeline()
        pipe.lpush(self._events_key, json.dumps(event, default=str))
        pipe.ltrim(self._events_key, 0, self.max_security_events - 1)
        await self._call("insert_security_event", pipe.execute())

    async def close(self) -> None:
        await self.redis.aclose()


def create_rate_limit_store(settings) -> RateLimitStore:
    """Build the store selected by RATE_LIMIT_BACKEND."""
    backend = settings.rate_limit_backend.lower()

    if backend == "memory":
        return InMemoryRateLimitStore()

    if backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("REDIS_URL is required for the redis rate-limit backend", config_key="REDIS_URL")
        import redis.asyncio as aioredis
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        logger.info("✅ [RATE-LIMIT-STORE] Using Redis backend")
        return RedisRateLimitStore(client, key_prefix=settings.redis_key_prefix)

    if backend == "supabase":
        key = settings.supabase_service_role_key or settings.supabase_anon_key
        if not settings.supabase_url or not key:
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase rate-limit backend",
                config_key="SUPABASE_URL"
            )
        from supabase import create_client
        client = create_client(settings.supabase_url, key)
        logger.info("✅ [RATE-LIMIT-STORE] Using Supabase backend")
        return SupabaseRateLimitStore(
            client,
            rate_limits_table=settings.rate_limits_table,
            security_events_table=settings.security_events_table
        )

    raise ConfigurationError(f"Unknown rate-limit backend: {settings.rate_limit_backend}", config_key="RATE_LIMIT_BACKEND")

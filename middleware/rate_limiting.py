"""
Sliding-Window Rate Limiting
Durable per-key counters with sub-window buckets, fail-open store access and
opportunistic cleanup of expired buckets.
"""
import asyncio
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from typing import Callable, Dict, Iterable, Optional, Set

from config import RATE_LIMIT_POLICIES, RateLimitPolicy, get_policy
from models.security import (
    RateLimitRecord,
    RateLimitResetResponse,
    RateLimitResult,
    RateLimitStatsResponse,
    RequestCount,
)
from repositories.rate_limit_repository import RateLimitStore, create_rate_limit_store, escape_like
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

STATS_TIMEFRAMES_MS = {
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "7d": 7 * 24 * 60 * 60 * 1000,
}
TOP_ENTRIES = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_key(operation: str, identifier: str) -> str:
    return f"{operation}:{identifier}"


class RateLimiter:
    """
    Sliding-window rate limiter over a durable RateLimitStore.

    Usage for a key is the sum of bucket counts created within the window. An
    allowed request increments the bucket of the current sub-window, so storage
    grows with elapsed sub-windows rather than with request volume. Read, decide
    and write are serialized per key inside the process, and the store increment
    is atomic across processes.
    """

    def __init__(
        self,
        store: RateLimitStore,
        clock: Optional[Callable[[], int]] = None,
        sub_window_ms: int = 60000,
        store_timeout: float = 2.0,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        cleanup_interval: float = 60.0,
        enabled: bool = True
    ):
        self.store = store
        self.clock = clock or _now_ms
        self.sub_window_ms = sub_window_ms
        self.store_timeout = store_timeout
        self.policies = policies if policies is not None else dict(RATE_LIMIT_POLICIES)
        self.cleanup_interval_ms = int(cleanup_interval * 1000)
        self.enabled = enabled

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_waiters: Dict[str, int] = {}
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self._last_cleanup: Optional[int] = None
        self._max_window_ms = max((p.window_ms for p in self.policies.values()), default=0)

    @classmethod
    def from_settings(cls, settings, store: Optional[RateLimitStore] = None) -> "RateLimiter":
        return cls(
            store=store or create_rate_limit_store(settings),
            sub_window_ms=settings.rate_limit_sub_window_ms,
            store_timeout=settings.rate_limit_store_timeout,
            policies=settings.get_rate_limit_policies(),
            cleanup_interval=settings.rate_limit_cleanup_interval,
            enabled=settings.rate_limit_enabled,
        )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _key_lock(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[key] -= 1
            if not self._lock_waiters[key]:
                del self._lock_waiters[key]
                self._locks.pop(key, None)

    async def _store_call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.store_timeout)

    @staticmethod
    def _usage(records: Iterable[RateLimitRecord], skip_successful: bool, skip_failed: bool) -> int:
        usage = 0
        for record in records:
            if skip_successful and record.successful:
                continue
            if skip_failed and record.failed:
                continue
            usage += record.count or 1
        return usage

    async def _evaluate(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        skip_successful: bool,
        skip_failed: bool,
        increment: bool
    ) -> RateLimitResult:
        now = self.clock()
        reset_time = now + window_ms

        if not self.enabled:
            return RateLimitResult.fail_open(max_requests, now, window_ms)

        self._max_window_ms = max(self._max_window_ms, window_ms)

        try:
            async with self._key_lock(key):
                records = await self._store_call(self.store.query_rate_records(key, now - window_ms))
                usage = self._usage(records, skip_successful, skip_failed)

                if usage >= max_requests:
                    logger.warning(f"🚫 [RATE-LIMITER] Limit reached for {key}: {usage}/{max_requests}")
                    return RateLimitResult(
                        allowed=False,
                        count=usage,
                        remaining=0,
                        reset_time=reset_time,
                        retry_after=RateLimitResult.retry_after_for(window_ms),
                    )

                if not increment:
                    return RateLimitResult(
                        allowed=True,
                        count=usage,
                        remaining=max_requests - usage,
                        reset_time=reset_time,
                    )

                granularity = min(self.sub_window_ms, window_ms)
                await self._store_call(
                    self.store.increment_rate_record(key, now - granularity + 1, window_ms, max_requests, now)
                )
                return RateLimitResult(
                    allowed=True,
                    count=usage + 1,
                    remaining=max_requests - usage - 1,
                    reset_time=reset_time,
                )

        except asyncio.TimeoutError:
            logger.error(f"❌ [RATE-LIMITER] Store timed out after {self.store_timeout}s for {key}, failing open")
            return RateLimitResult.fail_open(max_requests, now, window_ms)
        except Exception as e:
            logger.error(f"❌ [RATE-LIMITER] Store error for {key}, failing open: {e}")
            return RateLimitResult.fail_open(max_requests, now, window_ms)
        finally:
            if increment:
                self._schedule_cleanup(now)

    async def check(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        skip_successful: bool = False,
        skip_failed: bool = False
    ) -> RateLimitResult:
        """Read-only decision: nothing is recorded."""
        return await self._evaluate(key, max_requests, window_ms, skip_successful, skip_failed, increment=False)

    async def consume(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        skip_successful: bool = False,
        skip_failed: bool = False
    ) -> RateLimitResult:
        """Decide and, when allowed, record the request."""
        return await self._evaluate(key, max_requests, window_ms, skip_successful, skip_failed, increment=True)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _schedule_cleanup(self, now: int) -> None:
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval_ms:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._last_cleanup = now
        task = loop.create_task(self._cleanup(now - self._max_window_ms))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _cleanup(self, cutoff: int) -> None:
        try:
            deleted = await self._store_call(self.store.delete_rate_records_older_than(cutoff))
            if deleted:
                logger.debug(f"🧹 [RATE-LIMITER] Removed {deleted} expired rate-limit records")
        except asyncio.TimeoutError:
            logger.warning("⚠️ [RATE-LIMITER] Cleanup timed out")
        except Exception as e:
            logger.warning(f"⚠️ [RATE-LIMITER] Cleanup failed: {e}")

    async def wait_for_cleanup(self) -> None:
        """Wait for scheduled cleanup tasks to finish."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.wait_for_cleanup()
        await self.store.close()

    # ------------------------------------------------------------------
    # Outcome tagging
    # ------------------------------------------------------------------

    async def _mark_outcome(self, key: str, successful: bool) -> None:
        since = self.clock() - self.sub_window_ms
        try:
            await self._store_call(self.store.mark_latest_outcome(key, since, successful))
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [RATE-LIMITER] Timed out tagging outcome for {key}")
        except Exception as e:
            logger.warning(f"⚠️ [RATE-LIMITER] Failed to tag outcome for {key}: {e}")

    async def record_success(self, key: str) -> None:
        await self._mark_outcome(key, successful=True)

    async def record_failure(self, key: str) -> None:
        await self._mark_outcome(key, successful=False)

    # ------------------------------------------------------------------
    # Named operations
    # ------------------------------------------------------------------

    def policy_for(self, operation: str) -> RateLimitPolicy:
        return get_policy(operation, self.policies)

    async def check_operation(self, operation: str, identifier: str) -> RateLimitResult:
        policy = self.policy_for(operation)
        return await self.check(make_key(operation, identifier), policy.max_requests, policy.window_ms)

    async def apply_operation(
        self,
        operation: str,
        identifier: str,
        success: Optional[bool] = None
    ) -> RateLimitResult:
        policy = self.policy_for(operation)
        key = make_key(operation, identifier)
        result = await self.consume(key, policy.max_requests, policy.window_ms)

        if result.allowed and success is not None:
            if success:
                await self.record_success(key)
            else:
                await self.record_failure(key)

        return result

    async def get_status(self, identifier: str, operations: Iterable[str]) -> Dict[str, RateLimitResult]:
        """Read-only status of several operations for one identifier."""
        operations = list(operations)
        for operation in operations:
            self.policy_for(operation)
        results = await asyncio.gather(*(self.check_operation(op, identifier) for op in operations))
        return dict(zip(operations, results))

    async def reset(self, identifier: str, operation: Optional[str] = None) -> RateLimitResetResponse:
        """Delete the counters of one identifier, for one operation or all of them."""
        operations = [operation] if operation else list(self.policies)
        if operation:
            self.policy_for(operation)

        deleted = 0
        try:
            for name in operations:
                deleted += await self._store_call(
                    self.store.delete_rate_records(escape_like(make_key(name, identifier)))
                )
        except asyncio.TimeoutError:
            logger.error(f"❌ [RATE-LIMITER] Reset timed out for {identifier}")
            return RateLimitResetResponse(success=False, error="Rate-limit store timed out")
        except Exception as e:
            logger.error(f"❌ [RATE-LIMITER] Reset failed for {identifier}: {e}")
            return RateLimitResetResponse(success=False, error="Failed to reset rate limit")

        logger.info(f"🔄 [RATE-LIMITER] Reset {deleted} records for {identifier} ({operation or 'all operations'})")
        return RateLimitResetResponse(success=True)

    async def get_stats(self, timeframe: str = "24h") -> RateLimitStatsResponse:
        """Usage totals, failed-tagged totals, and the busiest identifiers and operations."""
        if timeframe not in STATS_TIMEFRAMES_MS:
            raise ValidationError(
                f"Unsupported timeframe '{timeframe}'",
                field="timeframe",
                user_message=f"timeframe must be one of {', '.join(STATS_TIMEFRAMES_MS)}"
            )

        since = self.clock() - STATS_TIMEFRAMES_MS[timeframe]
        try:
            records = await self._store_call(self.store.query_all_rate_records(since))
        except asyncio.TimeoutError:
            logger.error("❌ [RATE-LIMITER] Stats query timed out")
            return RateLimitStatsResponse(total_requests=0, blocked_requests=0)
        except Exception as e:
            logger.error(f"❌ [RATE-LIMITER] Stats query failed: {e}")
            return RateLimitStatsResponse(total_requests=0, blocked_requests=0)

        total = 0
        blocked = 0
        identifiers: Counter = Counter()
        operations: Counter = Counter()
        for record in records:
            count = record.count or 1
            total += count
            if record.failed:
                blocked += count
            operation, _, identifier = record.key.partition(":")
            identifiers[identifier] += count
            operations[operation] += count

        return RateLimitStatsResponse(
            total_requests=total,
            blocked_requests=blocked,
            top_identifiers=[RequestCount(name=n, requests=c) for n, c in identifiers.most_common(TOP_ENTRIES)],
            top_operations=[RequestCount(name=n, requests=c) for n, c in operations.most_common(TOP_ENTRIES)],
        )


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter, building it from settings on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        from config import settings
        _rate_limiter = RateLimiter.from_settings(settings)
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _rate_limiter
    _rate_limiter = limiter

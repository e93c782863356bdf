"""
BatchScheduler - cached, deduplicated and batched requests.

Combines:
- CacheStore for fresh hits (no network)
- RequestDeduplicator so each key has at most one fetch in flight
- RetryRecoveryEngine around every RequestExecutor call
- Batch groups dispatched after a short window or once full
- A periodic self-tuning step for the batch window and retry budget
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from storefront.services.cache import CacheStore
from storefront.services.deduplicator import RequestDeduplicator
from storefront.services.executor import RequestExecutor, RequestOptions
from storefront.services.recovery import ErrorContext, RetryRecoveryEngine
from storefront.services.tasks import BackgroundTasks

CACHEABLE_METHODS = {"GET"}


@dataclass
class BatchItem:
    endpoint: str
    options: RequestOptions | None = None


@dataclass
class BatchOutcome:
    """Per-member result of a batch, in submission order."""

    success: bool
    data: Any = None
    error: str | None = None
    exception: Exception | None = None


@dataclass
class BatchGroup:
    id: str
    members: list[BatchItem]
    done: asyncio.Future[list[BatchOutcome]]
    dispatched: bool = False


@dataclass
class RequestStats:
    requests: int = 0  # Logical request() calls
    cached: int = 0  # Served from cache
    shared: int = 0  # Joined an in-flight fetch
    network: int = 0  # Fetches actually started
    batched: int = 0  # Requests that went through a batch
    failed: int = 0  # Fetches that failed after recovery

    @property
    def cache_hit_rate(self) -> float:
        return self.cached / self.requests if self.requests else 0.0

    @property
    def batch_rate(self) -> float:
        return self.batched / self.requests if self.requests else 0.0

    @property
    def failure_rate(self) -> float:
        return self.failed / self.network if self.network else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "cached": self.cached,
            "shared": self.shared,
            "network": self.network,
            "batched": self.batched,
            "failed": self.failed,
            "cache_hit_rate": f"{self.cache_hit_rate:.2%}",
            "batch_rate": f"{self.batch_rate:.2%}",
            "failure_rate": f"{self.failure_rate:.2%}",
        }


class BatchScheduler:
    """
    Usage:
        scheduler = BatchScheduler(executor, cache, engine)

        products = await scheduler.request(
            "/products",
            RequestOptions(params={"category": "bags"}, cache_ttl=timedelta(seconds=10)),
        )
        outcomes = await scheduler.batch_requests([
            BatchItem("/admin/dashboard"),
            BatchItem("/admin/orders", RequestOptions(params={"page": 1})),
        ])
    """

    def __init__(
        self,
        executor: RequestExecutor,
        cache: CacheStore,
        engine: RetryRecoveryEngine,
        page_url: str | None = None,
        batch_window_ms: float = 100,
        max_batch_size: int = 10,
        optimize_interval_seconds: int = 120,
        stats_interval_seconds: int = 30,
        debug: bool = False,
    ):
        self._executor = executor
        self._cache = cache
        self._engine = engine
        self._page_url = page_url
        self.batch_window = batch_window_ms / 1000
        self.max_batch_size = max_batch_size
        self._optimize_interval = optimize_interval_seconds
        self._stats_interval = stats_interval_seconds
        self._deduplicator = RequestDeduplicator(debug=debug)
        self._background = BackgroundTasks("batch")
        self._groups: dict[str, BatchGroup] = {}
        self._accumulating: BatchGroup | None = None
        self._stats = RequestStats()
        self._scheduler: AsyncIOScheduler | None = None

    # Lifecycle

    def start(self, scheduler: AsyncIOScheduler) -> None:
        scheduler.add_job(
            self._optimize_job,
            trigger="interval",
            seconds=self._optimize_interval,
            id="request_optimize_job",
            name="Batch/retry self-tuning",
            replace_existing=True,
        )
        scheduler.add_job(
            self._stats_job,
            trigger="interval",
            seconds=self._stats_interval,
            id="request_stats_job",
            name="Request stats logger",
            replace_existing=True,
        )
        self._scheduler = scheduler

    async def stop(self) -> None:
        if self._scheduler is not None:
            for job_id in ("request_optimize_job", "request_stats_job"):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
            self._scheduler = None
        await self.clear_queues()

    # Single-call path

    async def request(self, endpoint: str, options: RequestOptions | None = None) -> Any:
        """
        Cached, deduplicated request.

        A fresh cache hit returns without network. Otherwise concurrent
        callers for the same key share one fetch; a successful GET is cached
        with ``options.cache_ttl`` (or the cache default).
        """
        options = options or RequestOptions()
        method = options.method.upper()
        self._stats.requests += 1

        if method not in CACHEABLE_METHODS:
            return await self._fetch(endpoint, options, key=None)

        key = self._cache.generate_key(method, endpoint, options.params)
        if not options.skip_cache:
            cached = await self._cache.get(key)
            if cached is not None:
                self._stats.cached += 1
                return cached

        if self._deduplicator.is_in_flight(key):
            self._stats.shared += 1
        return await self._deduplicator.dedupe(
            key, lambda: self._fetch(endpoint, options, key=key)
        )

    async def _fetch(self, endpoint: str, options: RequestOptions, key: str | None) -> Any:
        self._stats.network += 1
        context = ErrorContext(
            endpoint=endpoint, page_context=options.page_context or self._page_url
        )
        started = time.monotonic()
        try:
            data = await self._engine.run(
                lambda: self._executor.execute(endpoint, options), context
            )
        except Exception:
            self._stats.failed += 1
            raise

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug(f"Request to {endpoint} succeeded ({elapsed_ms:.0f}ms)")
        if key is not None and not options.skip_cache and data is not None:
            await self._cache.set(key, data, options.cache_ttl)
        return data

    # Batch path

    async def batch_requests(self, items: list[BatchItem]) -> list[BatchOutcome]:
        """Run ``items`` as one group; outcomes come back in submission order."""
        if not items:
            return []
        group = self._new_group(list(items))
        if len(group.members) >= self.max_batch_size:
            self._dispatch(group)
        else:
            self._background.spawn(self._dispatch_after_window(group), name=group.id)
        return await group.done

    async def submit(self, endpoint: str, options: RequestOptions | None = None) -> BatchOutcome:
        """Add one request to the group currently accumulating; flushed by window or size."""
        group = self._accumulating
        if group is None or group.dispatched:
            group = self._new_group([])
            self._accumulating = group
            self._background.spawn(self._dispatch_after_window(group), name=group.id)

        index = len(group.members)
        group.members.append(BatchItem(endpoint, options))
        if len(group.members) >= self.max_batch_size:
            self._dispatch(group)

        outcomes = await group.done
        return outcomes[index]

    async def preload(self, items: list[BatchItem]) -> list[BatchOutcome]:
        """Warm the cache for ``items`` through one batch."""
        logger.info(f"Preloading {len(items)} endpoints...")
        outcomes = await self.batch_requests(items)
        loaded = sum(1 for o in outcomes if o.success)
        logger.info(f"Preloaded {loaded}/{len(items)} endpoints")
        return outcomes

    def _new_group(self, members: list[BatchItem]) -> BatchGroup:
        group = BatchGroup(
            id=f"batch_{uuid.uuid4().hex[:12]}",
            members=members,
            done=asyncio.get_running_loop().create_future(),
        )
        self._groups[group.id] = group
        return group

    async def _dispatch_after_window(self, group: BatchGroup) -> None:
        await asyncio.sleep(self.batch_window)
        self._dispatch(group)

    def _dispatch(self, group: BatchGroup) -> None:
        if group.dispatched:
            return
        group.dispatched = True
        if self._accumulating is group:
            self._accumulating = None
        self._background.spawn(self._process(group), name=f"{group.id}:process")

    async def _process(self, group: BatchGroup) -> None:
        logger.debug(f"Processing {group.id} with {len(group.members)} requests")
        try:
            outcomes = await asyncio.gather(*(self._run_member(m) for m in group.members))
            self._stats.batched += len(group.members)
            if not group.done.done():
                group.done.set_result(list(outcomes))
        finally:
            self._groups.pop(group.id, None)
            if not group.done.done():
                group.done.cancel()

    async def _run_member(self, item: BatchItem) -> BatchOutcome:
        try:
            data = await self.request(item.endpoint, item.options)
        except Exception as e:
            return BatchOutcome(success=False, error=str(e), exception=e)
        return BatchOutcome(success=True, data=data)

    # Tuning & stats

    def optimize(self) -> None:
        """Adjust batch window and retry budget from observed batch and failure rates."""
        stats = self._stats
        if stats.requests:
            if stats.batch_rate > 0.3:
                self.batch_window = max(0.05, self.batch_window * 0.8)
                logger.info(f"Reduced batch window to {self.batch_window * 1000:.0f}ms")
            elif stats.batch_rate < 0.1:
                self.batch_window = min(0.2, self.batch_window * 1.2)
                logger.info(f"Increased batch window to {self.batch_window * 1000:.0f}ms")

        if stats.network:
            if stats.failure_rate > 0.1:
                self._engine.max_retries = min(5, self._engine.max_retries + 1)
                logger.info(f"Increased max retries to {self._engine.max_retries}")
            elif stats.failure_rate < 0.01:
                self._engine.max_retries = max(1, self._engine.max_retries - 1)
                logger.info(f"Decreased max retries to {self._engine.max_retries}")

        if stats.requests:
            self._cache.optimize(stats.cache_hit_rate)

    async def _optimize_job(self) -> None:
        self.optimize()

    async def _stats_job(self) -> None:
        self.log_performance_stats()

    def log_performance_stats(self) -> None:
        if not self._stats.requests:
            return
        s = self._stats.to_dict()
        logger.info(
            f"API stats: {s['requests']} requests, cache hit {s['cache_hit_rate']}, "
            f"batched {s['batch_rate']}, failures {s['failure_rate']}"
        )

    def get_request_stats(self) -> RequestStats:
        return self._stats

    def get_dedup_stats(self) -> dict[str, Any]:
        return self._deduplicator.get_stats().to_dict()

    def reset_stats(self) -> None:
        self._stats = RequestStats()
        logger.debug("Request statistics reset")

    async def clear_queues(self) -> None:
        """Cancel in-flight fetches, batch timers and undelivered batches."""
        await self._deduplicator.cancel_all()
        await self._background.cancel_all()
        for group in list(self._groups.values()):
            if not group.done.done():
                group.done.cancel()
        self._groups.clear()
        self._accumulating = None
        logger.debug("Request queues cleared")

"""
StorefrontCore - wires the client modules together and owns their lifecycle.

Initialization order:
    storage → credentials/resolver → executor → auth → recovery → cache → batching
Logging out (or any auth loss) clears the cache and pending request queues.
"""

from datetime import timedelta
from typing import Any, Awaitable, Callable

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from storefront.datastore import KeyValueStore, MemoryKeyValueStore, SQLKeyValueStore
from storefront.services.auth import AuthListener, AuthManager, AuthState, LoginResult, Navigator
from storefront.services.cache import CacheStats, CacheStore
from storefront.services.circuit_breaker import ErrorRateConfig
from storefront.services.credentials import CredentialStore, Role
from storefront.services.executor import RequestExecutor, RequestFilter, RequestOptions
from storefront.services.recovery import (
    ErrorContext,
    ErrorObserver,
    Notifier,
    RetryRecoveryEngine,
)
from storefront.services.scheduler import BatchItem, BatchOutcome, BatchScheduler
from storefront.services.token_resolver import TokenResolver
from storefront.settings import Settings, global_settings
from storefront.utils import resolve_api_base_url

DEFAULT_WARMUP = [
    BatchItem("/admin/dashboard", RequestOptions(cache_ttl=timedelta(minutes=2))),
    BatchItem("/admin/orders", RequestOptions(cache_ttl=timedelta(minutes=1))),
    BatchItem("/admin/products", RequestOptions(cache_ttl=timedelta(minutes=5))),
]


class StorefrontCore:
    """
    Usage:
        async with StorefrontCore() as core:
            await core.login("a@laiq.shop", "secret", Role.ADMIN)
            orders = await core.request("/admin/orders", RequestOptions(params={"page": 1}))
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: KeyValueStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        navigator: Navigator | None = None,
        notifier: Notifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.settings = settings or global_settings
        s = self.settings

        if storage is None:
            storage = (
                SQLKeyValueStore(s.storage_url, echo=s.storage_echo)
                if s.cache_persistent
                else MemoryKeyValueStore()
            )
        self.storage = storage
        self.scheduler = AsyncIOScheduler()

        self.credentials = CredentialStore(storage)
        self.resolver = TokenResolver(
            self.credentials,
            admin_page_patterns=s.admin_page_pattern_list,
            admin_route_prefix=s.admin_route_prefix,
        )
        self.executor = RequestExecutor(
            base_url=s.api_base_url or resolve_api_base_url(s.page_url),
            resolver=self.resolver,
            credentials=self.credentials,
            page_url=s.page_url,
            default_timeout_ms=s.request_timeout_ms,
            request_filter=RequestFilter.parse(s.blocked_request_patterns),
            http_client=http_client,
        )
        self.auth = AuthManager(
            self.credentials,
            self.executor,
            navigator=navigator,
            refresh_interval_seconds=s.auth_refresh_interval_seconds,
        )
        engine_kwargs: dict[str, Any] = {}
        if sleep is not None:
            engine_kwargs["sleep"] = sleep
        self.engine = RetryRecoveryEngine(
            auth=self.auth,
            resolver=self.resolver,
            notifier=notifier,
            max_retries=s.max_retries,
            max_delay=s.retry_max_delay,
            breaker_config=ErrorRateConfig(
                max_errors=s.error_threshold,
                window=timedelta(seconds=s.error_window_seconds),
            ),
            **engine_kwargs,
        )
        self.cache = CacheStore(
            storage=storage if s.cache_persistent else None,
            max_size=s.cache_max_size,
            default_ttl=timedelta(seconds=s.cache_default_ttl_seconds),
            cleanup_interval=timedelta(seconds=s.cache_cleanup_interval_seconds),
            debug=s.debug,
        )
        self.batch = BatchScheduler(
            self.executor,
            self.cache,
            self.engine,
            page_url=s.page_url,
            batch_window_ms=s.batch_window_ms,
            max_batch_size=s.max_batch_size,
            optimize_interval_seconds=s.optimize_interval_seconds,
            stats_interval_seconds=s.stats_interval_seconds,
            debug=s.debug,
        )
        self._initialized = False
        self._unsubscribe_auth: Callable[[], None] | None = None

    # Lifecycle

    async def initialize(self, warmup: bool = False) -> None:
        if self._initialized:
            return
        logger.info("Initializing storefront core...")

        await self.storage.initialize()
        await self.auth.initialize(self.scheduler)
        await self.cache.start(self.scheduler)
        self.batch.start(self.scheduler)
        self._unsubscribe_auth = self.auth.on_auth_change(self._on_auth_change)
        self.scheduler.start()
        self._initialized = True

        if warmup:
            await self.warmup_cache()
        logger.info(f"Storefront core ready (API: {self.executor.base_url})")

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        logger.info("Shutting down storefront core...")
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        await self.batch.stop()
        await self.cache.stop()
        await self.auth.stop()
        await self.engine.close()
        await self.executor.close()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.storage.close()
        self._initialized = False
        logger.info("Storefront core stopped")

    async def __aenter__(self) -> "StorefrontCore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def _on_auth_change(self, state: AuthState) -> None:
        logger.debug(f"Authentication state changed: authenticated={state.is_authenticated}")
        if not state.is_authenticated:
            await self.cache.clear()
            await self.batch.clear_queues()

    # Requests

    async def request(self, endpoint: str, options: RequestOptions | None = None) -> Any:
        return await self.batch.request(endpoint, options)

    async def batch_requests(self, items: list[BatchItem]) -> list[BatchOutcome]:
        return await self.batch.batch_requests(items)

    async def warmup_cache(self, items: list[BatchItem] | None = None) -> list[BatchOutcome]:
        """Preload common data. The admin defaults are only fetched for an admin session."""
        if items is None:
            if not self.auth.has_role("admin"):
                logger.debug("Skipping cache warmup: no admin session")
                return []
            items = DEFAULT_WARMUP
        logger.info("Warming up cache with common data...")
        outcomes = await self.batch.preload(items)
        failed = [o for o in outcomes if not o.success]
        if failed:
            logger.warning(f"Cache warmup: {len(failed)} endpoints failed")
        return outcomes

    # Cache

    async def cache_get(self, key: str) -> Any | None:
        return await self.cache.get(key)

    async def cache_set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        await self.cache.set(key, value, ttl)

    async def cache_delete(self, key: str) -> bool:
        return await self.cache.delete(key)

    async def cache_clear(self) -> int:
        return await self.cache.clear()

    async def cache_invalidate_pattern(self, pattern: str) -> int:
        return await self.cache.invalidate_pattern(pattern)

    def cache_get_stats(self) -> CacheStats:
        return self.cache.get_stats()

    # Auth

    async def check_auth(self, role: Role | str) -> bool:
        return await self.auth.check_auth(role)

    async def login(self, email: str, password: str, role: Role | str = Role.ADMIN) -> LoginResult:
        return await self.auth.login(email, password, role)

    async def logout(self) -> bool:
        return await self.auth.logout()

    def get_auth_header(self) -> dict[str, str]:
        return self.auth.get_auth_header()

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        return self.auth.on_auth_change(callback)

    # Errors

    def on_error(self, callback: ErrorObserver) -> Callable[[], None]:
        return self.engine.on_error(callback)

    def wrap_async(self, fn: Callable[..., Awaitable[Any]], context: ErrorContext | None = None):
        return self.engine.wrap_async(fn, context)

    def wrap_sync(self, fn: Callable[..., Any], context: ErrorContext | None = None):
        return self.engine.wrap_sync(fn, context)

    # Status

    def optimize_performance(self) -> None:
        logger.info("Optimizing system performance...")
        self.batch.optimize()

    def get_system_status(self) -> dict[str, Any]:
        state = self.auth.get_auth_state()
        return {
            "initialized": self._initialized,
            "api_base_url": self.executor.base_url,
            "auth": {
                "is_authenticated": state.is_authenticated,
                "user_role": state.user_role,
                "slot": state.slot.value if state.slot else None,
            },
            "cache": self.cache.get_stats().to_dict(),
            "api": self.batch.get_request_stats().to_dict(),
            "dedup": self.batch.get_dedup_stats(),
            "error": self.engine.get_error_stats(),
        }

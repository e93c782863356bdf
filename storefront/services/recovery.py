"""
RetryRecoveryEngine - matches failures against recovery strategies and retries.

Flow per error:
    record in ErrorRateBreaker → (breaker open: one critical notice, give up)
    → first matching RecoveryStrategy runs its action
    → observers notified → user notice chosen by error kind
``run()`` wraps a call and retries it transparently while strategies say so.
"""

import asyncio
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from storefront.services.auth import AuthManager
from storefront.services.circuit_breaker import (
    CircuitState,
    ErrorRateBreaker,
    ErrorRateConfig,
)
from storefront.services.credentials import Role
from storefront.services.errors import (
    AuthError,
    BlockedRequestError,
    HttpError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
)
from storefront.services.tasks import BackgroundTasks
from storefront.services.token_resolver import TokenResolver

T = TypeVar("T")

CRITICAL_MESSAGE = "Too many errors occurred. Please reload the page or contact support."


class NextAction(str, Enum):
    RETRY = "retry"
    REDIRECT = "redirect"
    NONE = "none"


@dataclass(frozen=True)
class RecoveryResult:
    recovered: bool
    next_action: NextAction = NextAction.NONE
    strategy: str | None = None


@dataclass(frozen=True)
class ErrorContext:
    """Where an error happened. ``attempt`` counts retries already made."""

    endpoint: str | None = None
    page_context: str | None = None
    source: str = "request"
    attempt: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


RecoveryAction = Callable[[Exception, ErrorContext], Awaitable[RecoveryResult]]
ErrorObserver = Callable[[Exception, ErrorContext, RecoveryResult], Any]
Notifier = Callable[[str, str], Any]


@dataclass
class RecoveryStrategy:
    """Maps an error pattern to an automated remediation."""

    name: str
    action: RecoveryAction
    pattern: re.Pattern[str] | None = None
    statuses: frozenset[int] = frozenset()
    error_types: tuple[type[Exception], ...] = ()
    exclude_types: tuple[type[Exception], ...] = ()

    def matches(self, error: Exception) -> bool:
        if self.exclude_types and isinstance(error, self.exclude_types):
            return False
        status = getattr(error, "status", None)
        if status is not None and status in self.statuses:
            return True
        if self.error_types and isinstance(error, self.error_types):
            return True
        return bool(self.pattern and self.pattern.search(str(error)))


def classify(error: Exception) -> str:
    """Error kind used to pick the user-facing notice."""
    if isinstance(error, AuthError):
        return "auth"
    if isinstance(error, RateLimitError):
        return "rateLimit"
    if isinstance(error, (NetworkError, RequestTimeoutError)):
        return "network"
    if isinstance(error, HttpError):
        if error.status == 403:
            return "auth"
        if error.status >= 500:
            return "server"
    return "unknown"


USER_MESSAGES = {
    "auth": ("Authentication required. Please login again.", "warning"),
    "network": (
        "Network connection issue. Please check your internet connection.",
        "error",
    ),
    "server": ("Server temporarily unavailable. Please try again later.", "error"),
    "rateLimit": (
        "Too many requests. Please wait a moment before trying again.",
        "warning",
    ),
}


def _log_notice(message: str, level: str) -> None:
    logger.info(f"[notice:{level}] {message}")


class RetryRecoveryEngine:
    """
    Usage:
        engine = RetryRecoveryEngine(auth=auth, resolver=resolver)
        data = await engine.run(
            lambda: executor.execute("/admin/orders"),
            ErrorContext(endpoint="/admin/orders"),
        )
    """

    def __init__(
        self,
        auth: AuthManager | None = None,
        resolver: TokenResolver | None = None,
        notifier: Notifier | None = None,
        max_retries: int = 3,
        max_delay: float = 10.0,
        breaker_config: ErrorRateConfig | None = None,
        breaker: ErrorRateBreaker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._auth = auth
        self._resolver = resolver
        self._notifier = notifier or _log_notice
        self.max_retries = max_retries
        self.max_delay = max_delay
        self.breaker = breaker or ErrorRateBreaker(breaker_config)
        self._sleep = sleep
        self._observers: list[ErrorObserver] = []
        self._strategies: list[RecoveryStrategy] = []
        self._background = BackgroundTasks("error-handling")
        self._setup_default_strategies()

    # Strategies

    def _setup_default_strategies(self) -> None:
        self.add_strategy(
            RecoveryStrategy(
                name="auth",
                action=self._recover_auth,
                pattern=re.compile(
                    r"unauthorized|forbidden|token expired|authentication", re.I
                ),
                statuses=frozenset({401, 403}),
            )
        )
        self.add_strategy(
            RecoveryStrategy(
                name="network",
                action=self._wait_then_retry("network", 2.0),
                pattern=re.compile(r"network|fetch|timeout|connection", re.I),
                error_types=(NetworkError, RequestTimeoutError),
                exclude_types=(BlockedRequestError,),
            )
        )
        self.add_strategy(
            RecoveryStrategy(
                name="rateLimit",
                action=self._wait_then_retry("rateLimit", 10.0),
                pattern=re.compile(r"rate limit|too many requests|429", re.I),
                statuses=frozenset({429}),
            )
        )
        self.add_strategy(
            RecoveryStrategy(
                name="server",
                action=self._wait_then_retry("server", 5.0),
                pattern=re.compile(r"500|502|503|504|internal server error", re.I),
                statuses=frozenset({500, 502, 503, 504}),
            )
        )

    def add_strategy(self, strategy: RecoveryStrategy) -> None:
        """Append ``strategy``; an existing one with the same name is replaced in place."""
        for index, existing in enumerate(self._strategies):
            if existing.name == strategy.name:
                self._strategies[index] = strategy
                break
        else:
            self._strategies.append(strategy)
        logger.debug(f"Added recovery strategy: {strategy.name}")

    def remove_strategy(self, name: str) -> bool:
        before = len(self._strategies)
        self._strategies = [s for s in self._strategies if s.name != name]
        removed = len(self._strategies) < before
        if removed:
            logger.debug(f"Removed recovery strategy: {name}")
        return removed

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def login_role_for(self, context: ErrorContext) -> Role:
        if self._resolver is None:
            return Role.ADMIN
        if context.endpoint and self._resolver.is_admin_endpoint(context.endpoint):
            return Role.ADMIN
        if self._resolver.is_admin_context(context.page_context):
            return Role.ADMIN
        return Role.CUSTOMER

    async def _recover_auth(self, error: Exception, context: ErrorContext) -> RecoveryResult:
        logger.info("Attempting authentication recovery...")
        if self._auth is not None and await self._auth.refresh_token():
            return RecoveryResult(True, NextAction.RETRY)
        if self._auth is not None:
            if isinstance(error, AuthError):
                # Stored credentials are already wiped; drop the in-memory session too
                await self._auth.clear_all_auth()
            self._auth.redirect_to_login(self.login_role_for(context))
        return RecoveryResult(False, NextAction.REDIRECT)

    def _wait_then_retry(self, name: str, delay: float) -> RecoveryAction:
        async def action(error: Exception, context: ErrorContext) -> RecoveryResult:
            if context.attempt >= self.max_retries:
                logger.info(f"{name} error persists after {context.attempt} retries")
                return RecoveryResult(False, NextAction.NONE)
            wait =min(delay * (2**context.attempt), max(delay, self.max_delay))
            logger.info(f"{name} error detected, waiting {wait:g}s before retry")
            await self._sleep(wait)
            return RecoveryResult(True, NextAction.RETRY)

        return action

    # Error handling

    async def attempt_recovery(
        self, error: Exception, context: ErrorContext | None = None
    ) -> RecoveryResult:
        """Run the first matching strategy. A strategy that raises falls through to the next."""
        context = context or ErrorContext()
        for strategy in list(self._strategies):
            if not strategy.matches(error):
                continue
            try:
                logger.debug(f"Attempting {strategy.name} recovery strategy")
                result = await strategy.action(error, context)
            except Exception as e:
                logger.error(f"Recovery strategy {strategy.name} failed: {e}")
                continue
            result = replace(result, strategy=strategy.name)
            logger.info(
                f"Recovery strategy {strategy.name}: recovered={result.recovered}, "
                f"next={result.next_action.value}"
            )
            return result

        return RecoveryResult(False, NextAction.NONE)

    async def handle_error(
        self, error: Exception, context: ErrorContext | None = None
    ) -> RecoveryResult:
        """Count, log, recover, notify observers and the user. Never raises."""
        context = context or ErrorContext()
        just_tripped = self.breaker.record_error()
        self._log_error(error, context)

        if self.breaker.state == CircuitState.OPEN:
            if just_tripped:
                logger.error("Too many errors, suppressing automated recovery")
                self._notify_user(CRITICAL_MESSAGE, "critical")
            result = RecoveryResult(False, NextAction.NONE, strategy="circuit_open")
        else:
            result = await self.attempt_recovery(error, context)
            self._show_user_error(error, result)

        await self._notify_observers(error, context, result)
        return result

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        context: ErrorContext | None = None,
    ) -> T:
        """
        Await ``call()``, retrying while recovery says so (up to max_retries).

        On give-up the last RecoveryResult is attached to ``error.recovery``
        and the error is re-raised.
        """
        context = context or ErrorContext()
        attempt = 0
        while True:
            try:
                return await call()
            except Exception as error:
                result = await self.handle_error(error, replace(context, attempt=attempt))
                if result.next_action == NextAction.RETRY and attempt < self.max_retries:
                    attempt += 1
                    logger.info(
                        f"Retrying {context.endpoint or 'call'} (attempt {attempt + 1})"
                    )
                    continue
                if isinstance(error, ServiceError):
                    error.recovery = result
                if attempt:
                    logger.error(
                        f"{context.endpoint or 'call'} failed after {attempt + 1} attempts: {error}"
                    )
                raise

    def wrap_async(
        self, fn: Callable[..., Awaitable[T]], context: ErrorContext | None = None
    ) -> Callable[..., Awaitable[T]]:
        """Route ``fn``'s exceptions through handle_error, then re-raise."""
        base = context or ErrorContext(source="wrapped-function")

        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await fn(*args, **kwargs)
            except Exception as error:
                await self.handle_error(
                    error, replace(base, extra={**base.extra, "function": fn.__name__})
                )
                raise

        wrapper.__name__ = getattr(fn, "__name__", "wrapped")
        return wrapper

    def wrap_sync(
        self, fn: Callable[..., T], context: ErrorContext | None = None
    ) -> Callable[..., T]:
        """Sync variant: error handling runs in the background on a running loop."""
        base = context or ErrorContext(source="wrapped-function")

        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return fn(*args, **kwargs)
            except Exception as error:
                ctx = replace(base, extra={**base.extra, "function": fn.__name__})
                try:
                    asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(self.handle_error(error, ctx))
                else:
                    self._background.spawn(self.handle_error(error, ctx))
                raise

        wrapper.__name__ = getattr(fn, "__name__", "wrapped")
        return wrapper

    # Observers

    def on_error(self, callback: ErrorObserver) -> Callable[[], None]:
        """Register an error observer (sync or async). Returns an unsubscribe callable."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    async def _notify_observers(
        self, error: Exception, context: ErrorContext, result: RecoveryResult
    ) -> None:
        for callback in list(self._observers):
            try:
                outcome = callback(error, context, result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Error in error callback: {e}")

    # Notices

    def _show_user_error(self, error: Exception, result: RecoveryResult) -> None:
        if result.recovered:
            self._notify_user(f"Issue resolved automatically. {error}", "info")
            return
        message, level = USER_MESSAGES.get(classify(error), (str(error), "error"))
        self._notify_user(message or "An unexpected error occurred", level)

    def _notify_user(self, message: str, level: str) -> None:
        try:
            self._notifier(message, level)
        except Exception as e:
            logger.error(f"Notifier failed: {e}")

    @staticmethod
    def _log_error(error: Exception, context: ErrorContext) -> None:
        logger.error(
            f"Error caught ({type(error).__name__}) at {context.source} "
            f"{context.endpoint or ''} attempt={context.attempt}: {error}"
        )

    # Stats

    def get_error_stats(self) -> dict[str, Any]:
        return {
            "breaker": self.breaker.get_status(),
            "max_retries": self.max_retries,
            "recovery_strategies": len(self._strategies),
            "error_callbacks": len(self._observers),
        }

    def reset_error_count(self) -> None:
        self.breaker.reset()

    async def close(self) -> None:
        await self._background.cancel_all()
        self._observers.clear()

"""Tests for RetryRecoveryEngine."""

import asyncio
import re
from typing import Any

import pytest

from storefront.services.circuit_breaker import CircuitState, ErrorRateConfig
from storefront.services.credentials import Role
from storefront.services.errors import (
    AuthError,
    BlockedRequestError,
    HttpError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)
from storefront.services.recovery import (
    CRITICAL_MESSAGE,
    ErrorContext,
    NextAction,
    RecoveryResult,
    RecoveryStrategy,
    RetryRecoveryEngine,
    classify,
)
from storefront.services.token_resolver import TokenResolver
from tests.conftest import RecordingSleep


class StubAuth:
    def __init__(self, refresh_ok: bool):
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0
        self.redirects: list[Role] = []
        self.cleared = 0

    async def clear_all_auth(self) -> None:
        self.cleared += 1

    async def refresh_token(self) -> bool:
        self.refresh_calls += 1
        return self.refresh_ok

    def redirect_to_login(self, role: Role) -> bool:
        self.redirects.append(role)
        return True


class Notices:
    def __init__(self) -> None:
        self.items: list[tuple[str, str]] = []

    def __call__(self, message: str, level: str) -> None:
        self.items.append((message, level))


class Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, errors: list[Exception], result: Any = "ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def notices() -> Notices:
    return Notices()


@pytest.fixture
def make_engine(resolver: TokenResolver, notices: Notices, no_sleep: RecordingSleep):
    def factory(auth: StubAuth | None = None, **kwargs: Any) -> RetryRecoveryEngine:
        return RetryRecoveryEngine(
            auth=auth, resolver=resolver, notifier=notices, sleep=no_sleep, **kwargs
        )

    return factory


def test_classify() -> None:
    assert classify(AuthError("/x")) == "auth"
    assert classify(HttpError(403, "Forbidden")) == "auth"
    assert classify(RateLimitError("/x")) == "rateLimit"
    assert classify(NetworkError("down")) == "network"
    assert classify(RequestTimeoutError("/x", 1.0)) == "network"
    assert classify(HttpError(502, "Bad gateway")) == "server"
    assert classify(HttpError(404, "Not found")) == "unknown"
    assert classify(ValueError("boom")) == "unknown"


def test_default_strategy_order(make_engine) -> None:
    assert make_engine().strategy_names == ["auth", "network", "rateLimit", "server"]


async def test_network_error_is_retried(make_engine, no_sleep: RecordingSleep, notices: Notices) -> None:
    engine = make_engine()
    call = Flaky([NetworkError("Network error - connection refused")])

    assert await engine.run(call, ErrorContext(endpoint="/products")) == "ok"
    assert call.calls == 2
    assert no_sleep.delays == [2.0]
    assert notices.items[0][1] == "info"
    assert notices.items[0][0].startswith("Issue resolved automatically.")


async def test_backoff_doubles_and_is_capped(make_engine, no_sleep: RecordingSleep) -> None:
    """Server errors wait 5s, then double up to the 10s cap; exhausting retries re-raises."""
    engine = make_engine(max_retries=3)
    error = HttpError(503, "HTTP 503", endpoint="/products")
    call = Flaky([error] * 4)

    with pytest.raises(HttpError) as exc_info:
        await engine.run(call, ErrorContext(endpoint="/products"))

    assert call.calls == 4
    assert no_sleep.delays == [5.0, 10.0, 10.0]
    recovery = exc_info.value.recovery
    assert recovery is not None
    assert recovery.strategy == "server"
    assert recovery.next_action == NextAction.NONE


async def test_rate_limit_waits_ten_seconds(make_engine, no_sleep: RecordingSleep) -> None:
    engine = make_engine()
    call = Flaky([RateLimitError("/products", retry_after=30)])
    assert await engine.run(call, ErrorContext(endpoint="/products")) == "ok"
    assert no_sleep.delays == [10.0]


async def test_auth_error_refreshes_and_retries(make_engine) -> None:
    auth = StubAuth(refresh_ok=True)
    engine = make_engine(auth=auth)
    call = Flaky([AuthError("/admin/orders")], result={"orders": []})

    assert await engine.run(call, ErrorContext(endpoint="/admin/orders")) == {"orders": []}
    assert auth.refresh_calls == 1
    assert auth.redirects == []


async def test_auth_failure_redirects_to_matching_login(make_engine, notices: Notices) -> None:
    auth = StubAuth(refresh_ok=False)
    engine = make_engine(auth=auth)

    with pytest.raises(AuthError) as exc_info:
        await engine.run(Flaky([AuthError("/admin/orders")]), ErrorContext(endpoint="/admin/orders"))
    with pytest.raises(HttpError):
        await engine.run(
            Flaky([HttpError(403, "Forbidden")]),
            ErrorContext(endpoint="/orders/mine", page_context="https://www.laiq.shop/my-orders.html"),
        )

    assert auth.redirects == [Role.ADMIN, Role.CUSTOMER]
    assert auth.cleared == 1  # only the 401 drops the session
    recovery = exc_info.value.recovery
    assert recovery is not None and recovery.next_action == NextAction.REDIRECT
    assert ("Authentication required. Please login again.", "warning") in notices.items


async def test_admin_page_context_redirects_to_admin_login(make_engine) -> None:
    auth = StubAuth(refresh_ok=False)
    engine = make_engine(auth=auth)
    context = ErrorContext(endpoint="/products", page_context="/enhanced-order-management.html")

    await engine.handle_error(AuthError("/products"), context)
    assert auth.redirects == [Role.ADMIN]


async def test_unmatched_error_is_not_retried(make_engine, notices: Notices) -> None:
    engine = make_engine()
    call = Flaky([HttpError(404, "Product not found")])

    with pytest.raises(HttpError):
        await engine.run(call)
    assert call.calls == 1
    assert notices.items == [("Product not found", "error")]


async def test_breaker_suppresses_recovery_with_one_critical_notice(
    make_engine, notices: Notices, no_sleep: RecordingSleep
) -> None:
    engine = make_engine(breaker_config=ErrorRateConfig(max_errors=2))
    results = [await engine.handle_error(NetworkError("connection reset")) for _ in range(4)]

    assert [r.strategy for r in results] == ["network", "network", "circuit_open", "circuit_open"]
    assert engine.breaker.state == CircuitState.OPEN
    assert notices.items.count((CRITICAL_MESSAGE, "critical")) == 1
    assert len(no_sleep.delays) == 2

    engine.reset_error_count()
    assert (await engine.handle_error(NetworkError("connection reset"))).strategy == "network"


async def test_custom_strategy_replaces_by_name(make_engine) -> None:
    engine = make_engine()
    handled: list[Exception] = []

    async def ignore(error: Exception, context: ErrorContext) -> RecoveryResult:
        handled.append(error)
        return RecoveryResult(False, NextAction.NONE)

    engine.add_strategy(RecoveryStrategy(name="network", action=ignore, error_types=(NetworkError,)))
    assert engine.strategy_names == ["auth", "network", "rateLimit", "server"]

    result = await engine.handle_error(NetworkError("offline"))
    assert result == RecoveryResult(False, NextAction.NONE, strategy="network")
    assert len(handled) == 1

    assert engine.remove_strategy("network") is True
    assert engine.remove_strategy("network") is False


async def test_failing_strategy_falls_through(make_engine) -> None:
    engine = make_engine()

    async def broken(error: Exception, context: ErrorContext) -> RecoveryResult:
        raise RuntimeError("strategy bug")

    engine.add_strategy(RecoveryStrategy(name="auth", action=broken, pattern=re.compile("timeout")))
    assert engine.strategy_names[0] == "auth"

    result = await engine.handle_error(RequestTimeoutError("/products", 5.0))
    assert result.strategy == "network"
    assert result.next_action == NextAction.RETRY


async def test_observers_notified_and_unsubscribed(make_engine) -> None:
    engine = make_engine()
    seen: list[tuple[str, str | None, str | None]] = []

    async def observer(error: Exception, context: ErrorContext, result: RecoveryResult) -> None:
        seen.append((str(error), context.endpoint, result.strategy))

    unsubscribe = engine.on_error(observer)
    await engine.handle_error(HttpError(500, "boom"), ErrorContext(endpoint="/cart"))
    unsubscribe()
    await engine.handle_error(HttpError(500, "boom"), ErrorContext(endpoint="/cart"))

    assert seen == [("boom", "/cart", "server")]


async def test_observer_errors_are_contained(make_engine) -> None:
    engine = make_engine()

    def broken(error: Exception, context: ErrorContext, result: RecoveryResult) -> None:
        raise RuntimeError("observer bug")

    engine.on_error(broken)
    result = await engine.handle_error(ValueError("boom"))
    assert result == RecoveryResult(False, NextAction.NONE)


async def test_wrap_async_reports_and_reraises(make_engine) -> None:
    engine = make_engine()
    contexts: list[ErrorContext] = []
    engine.on_error(lambda error, context, result: contexts.append(context))

    async def load_dashboard() -> None:
        raise ValueError("render failed")

    wrapped = engine.wrap_async(load_dashboard)
    with pytest.raises(ValueError):
        await wrapped()

    assert wrapped.__name__ == "load_dashboard"
    assert contexts[0].source == "wrapped-function"
    assert contexts[0].extra == {"function": "load_dashboard"}


async def test_wrap_sync_reports_in_background(make_engine) -> None:
    engine = make_engine()
    errors: list[Exception] = []
    engine.on_error(lambda error, context, result: errors.append(error))

    def parse_price(raw: str) -> float:
        return float(raw)

    wrapped = engine.wrap_sync(parse_price)
    assert wrapped("12.5") == 12.5
    with pytest.raises(ValueError):
        wrapped("twelve")

    for _ in range(5):
        await asyncio.sleep(0)
    assert len(errors) == 1
    await engine.close()


def test_error_stats(make_engine) -> None:
    engine = make_engine(max_retries=4)
    stats = engine.get_error_stats()
    assert stats["max_retries"] == 4
    assert stats["recovery_strategies"] == 4
    assert stats["breaker"]["state"] == "CLOSED"


async def test_blocked_request_is_not_retried(make_engine, no_sleep: RecordingSleep) -> None:
    engine = make_engine()
    call = Flaky([BlockedRequestError("http://api.test/api/checkout/data", "/checkout/data!order_id")])

    with pytest.raises(BlockedRequestError):
        await engine.run(call)
    assert call.calls == 1
    assert no_sleep.delays == []

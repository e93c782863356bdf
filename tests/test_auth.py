"""Tests for AuthManager."""

import json

import httpx
import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from storefront.datastore import MemoryKeyValueStore
from storefront.services.auth import AuthManager, AuthState, decode_token_payload
from storefront.services.credentials import CredentialStore, Role
from tests.conftest import credential, make_jwt

NOW = 1_700_000_000
VALID = make_jwt({"id": "u1", "iat": NOW - 60, "exp": NOW + 3600})
EXPIRED = make_jwt({"id": "u1", "iat": NOW - 7200, "exp": NOW - 3600})
REFRESHED = make_jwt({"id": "u1", "iat": NOW, "exp": NOW + 7200})


class Backend:
    """Routes auth endpoints; records every request."""

    def __init__(self, refresh_status: int = 200, logout_status: int = 200):
        self.refresh_status = refresh_status
        self.logout_status = logout_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/auth/admin/login":
            body = json.loads(request.content)
            if body["password"] != "secret":
                return httpx.Response(401, json={"message": "Invalid credentials"})
            user = {"_id": "u1", "role": "admin", "email": body["email"]}
            return httpx.Response(200, json={"success": True, "token": VALID, "user": user})
        if path == "/api/auth/customer/login":
            user = {"_id": "u2", "role": "user", "email": "c@laiq.shop"}
            return httpx.Response(200, json={"success": True, "token": VALID, "user": user})
        if path == "/api/auth/refresh":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status)
            return httpx.Response(200, json={"success": True, "token": REFRESHED})
        if path == "/api/auth/logout":
            return httpx.Response(self.logout_status, json={"success": True})
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def pages() -> list[str]:
    return []


@pytest.fixture
def make_auth(make_executor, credentials: CredentialStore, pages: list[str]):
    def factory(backend: Backend, scheduler: AsyncIOScheduler | None = None) -> AuthManager:
        auth = AuthManager(
            credentials,
            make_executor(backend),
            navigator=pages.append,
            clock=lambda: NOW,
        )
        auth._scheduler = scheduler
        return auth

    return factory


async def test_admin_login_stores_credentials_and_notifies(
    make_auth, storage: MemoryKeyValueStore
) -> None:
    auth = make_auth(Backend())
    states: list[AuthState] = []
    auth.on_auth_change(states.append)

    result = await auth.login("a@laiq.shop", "secret", Role.ADMIN)

    assert result.success
    assert result.user is not None and result.user.is_admin
    assert await storage.get("token") == VALID
    assert json.loads(await storage.get("user"))["email"] == "a@laiq.shop"
    assert states[-1].is_authenticated and states[-1].user_role == "admin"
    assert auth.get_auth_header() == {"Authorization": f"Bearer {VALID}"}
    assert auth.has_role("admin") and auth.has_permission("orders:write")


async def test_customer_login_uses_customer_slot(make_auth, storage: MemoryKeyValueStore) -> None:
    auth = make_auth(Backend())
    result = await auth.login("c@laiq.shop", "pw", "customer")

    assert result.success
    assert await storage.get("customerToken") == VALID
    assert await storage.get("token") is None
    assert auth.get_auth_state().slot == Role.CUSTOMER
    assert not auth.has_permission("orders:write")


async def test_failed_login_returns_error(make_auth, storage: MemoryKeyValueStore) -> None:
    auth = make_auth(Backend())
    result = await auth.login("a@laiq.shop", "wrong", Role.ADMIN)

    assert not result.success
    assert result.error == "Unauthorized - Please login again"
    assert await storage.keys() == []
    assert not auth.get_auth_state().is_authenticated


async def test_check_auth_passes_for_matching_role(make_auth, pages: list[str]) -> None:
    auth = make_auth(Backend())
    await auth.login("a@laiq.shop", "secret", Role.ADMIN)

    assert await auth.check_auth(Role.ADMIN) is True
    assert await auth.check_auth(Role.CUSTOMER) is False
    assert pages == ["/customer-login.html"]


async def test_redirect_fires_once_until_next_login(make_auth, pages: list[str]) -> None:
    auth = make_auth(Backend())

    assert await auth.check_auth(Role.ADMIN) is False
    assert await auth.check_auth(Role.ADMIN) is False
    assert auth.redirect_to_login(Role.ADMIN) is False
    assert pages == ["/admin-login.html"]
    assert auth.redirect_pending

    await auth.login("a@laiq.shop", "secret", Role.ADMIN)
    assert not auth.redirect_pending
    assert auth.redirect_to_login(Role.ADMIN) is True
    assert pages == ["/admin-login.html", "/admin-login.html"]


async def test_expired_token_is_refreshed(
    make_auth, credentials: CredentialStore, storage: MemoryKeyValueStore, pages: list[str]
) -> None:
    await credentials.save(credential(Role.ADMIN, EXPIRED, "admin", email="a@laiq.shop"))
    backend = Backend()
    auth = make_auth(backend)

    assert await auth.check_auth(Role.ADMIN) is True

    refresh = backend.requests[0]
    assert refresh.url.path == "/api/auth/refresh"
    assert refresh.headers["Authorization"] == f"Bearer {EXPIRED}"
    assert await storage.get("token") == REFRESHED
    assert json.loads(await storage.get("user"))["email"] == "a@laiq.shop"
    assert auth.get_auth_state().token == REFRESHED
    assert pages == []


async def test_failed_refresh_redirects(
    make_auth, credentials: CredentialStore, pages: list[str]
) -> None:
    await credentials.save(credential(Role.CUSTOMER, EXPIRED, "user"))
    auth = make_auth(Backend(refresh_status=401))

    assert await auth.check_auth(Role.CUSTOMER) is False
    assert pages == ["/customer-login.html"]
    # Refresh sends its own header, so a rejected refresh does not wipe storage
    assert await credentials.load_token(Role.CUSTOMER) == EXPIRED


async def test_existing_admin_in_customer_slot(make_auth, credentials: CredentialStore) -> None:
    await credentials.save(credential(Role.CUSTOMER, VALID, "admin"))
    auth = make_auth(Backend())

    assert await auth.check_existing_auth() is True
    state = auth.get_auth_state()
    assert state.user_role == "admin"
    assert state.slot == Role.CUSTOMER


async def test_logout_clears_session_even_when_server_fails(
    make_auth, storage: MemoryKeyValueStore
) -> None:
    backend = Backend(logout_status=500)
    auth = make_auth(backend)
    await auth.login("a@laiq.shop", "secret", Role.ADMIN)
    states: list[AuthState] = []
    auth.on_auth_change(states.append)

    assert await auth.logout() is True

    logout = backend.requests[-1]
    assert logout.url.path == "/api/auth/logout"
    assert logout.headers["Authorization"] == f"Bearer {VALID}"
    assert await storage.keys() == []
    assert states == [AuthState()]
    assert auth.get_auth_header() == {}


async def test_listener_unsubscribe_and_async_listeners(make_auth) -> None:
    auth = make_auth(Backend())
    seen: list[bool] = []

    async def listener(state: AuthState) -> None:
        seen.append(state.is_authenticated)

    unsubscribe = auth.on_auth_change(listener)
    await auth.login("a@laiq.shop", "secret", Role.ADMIN)
    unsubscribe()
    await auth.clear_all_auth()
    assert seen == [True]


async def test_token_expiry_rules(make_auth) -> None:
    auth = make_auth(Backend())
    await auth.login("a@laiq.shop", "secret", Role.ADMIN)
    assert not auth.is_token_expired()

    auth._state = AuthState(is_authenticated=True, user_role="admin", token=make_jwt({"id": "u1"}))
    assert not auth.is_token_expired()

    auth._state = AuthState(is_authenticated=True, user_role="admin", token="not-a-jwt")
    assert auth.is_token_expired()

    auth._state = AuthState(
        is_authenticated=True, user_role="admin", token=make_jwt({"id": "u1", "exp": "soon"})
    )
    assert auth.is_token_expired()


async def test_validate_token(make_auth) -> None:
    auth = make_auth(Backend())
    assert auth.validate_token(VALID)
    assert not auth.validate_token(make_jwt({"id": "u1", "exp": NOW}))
    assert not auth.validate_token("a.b")


def test_decode_token_payload_rejects_non_objects() -> None:
    assert decode_token_payload(VALID)["id"] == "u1"
    with pytest.raises(ValueError):
        decode_token_payload(make_jwt([1, 2]))  # type: ignore[arg-type]


async def test_auto_refresh_job_follows_session(make_auth) -> None:
    scheduler = AsyncIOScheduler()
    auth = make_auth(Backend(), scheduler=scheduler)

    await auth.login("a@laiq.shop", "secret", Role.ADMIN)
    assert scheduler.get_job("auth_refresh_job") is not None

    await auth.logout()
    assert scheduler.get_job("auth_refresh_job") is None

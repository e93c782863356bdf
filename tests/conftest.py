"""Shared pytest fixtures for the storefront test suite."""

import base64
import json
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import pytest

from storefront.datastore import MemoryKeyValueStore
from storefront.services.credentials import Credential, CredentialStore, Role, UserRecord
from storefront.services.executor import RequestExecutor, RequestFilter
from storefront.services.token_resolver import TokenResolver

API_BASE = "http://api.test/api"
ADMIN_PAGE_PATTERNS = ["admin", "enhanced-order-management", "billing-management"]

Handler = Callable[[httpx.Request], httpx.Response]


class FakeClock:
    """Manually advanced datetime clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Drop-in for asyncio.sleep that returns immediately and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_jwt(payload: dict[str, Any]) -> str:
    """Unsigned JWT carrying ``payload``."""

    def segment(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{segment({'alg': 'HS256', 'typ': 'JWT'})}.{segment(payload)}.signature"


def credential(role: Role, token: str, user_role: str = "user", **user: Any) -> Credential:
    return Credential(role=role, token=token, subject=UserRecord(role=user_role, **user))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def storage() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def credentials(storage: MemoryKeyValueStore) -> CredentialStore:
    return CredentialStore(storage)


@pytest.fixture
def resolver(credentials: CredentialStore) -> TokenResolver:
    return TokenResolver(credentials, admin_page_patterns=ADMIN_PAGE_PATTERNS)


@pytest.fixture
async def make_executor(resolver: TokenResolver, credentials: CredentialStore):
    """Factory building a RequestExecutor over an httpx MockTransport."""
    created: list[RequestExecutor] = []
    clients: list[httpx.AsyncClient] = []

    def factory(
        handler: Handler,
        page_url: str | None = "http://api.test/products.html",
        base_url: str = API_BASE,
        blocked: str = "",
        default_timeout_ms: int = 60000,
    ) -> RequestExecutor:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = RequestExecutor(
            base_url=base_url,
            resolver=resolver,
            credentials=credentials,
            page_url=page_url,
            default_timeout_ms=default_timeout_ms,
            request_filter=RequestFilter.parse(blocked),
            http_client=client,
        )
        created.append(executor)
        clients.append(client)
        return executor

    yield factory

    for executor in created:
        await executor.close()
    for client in clients:
        await client.aclose()

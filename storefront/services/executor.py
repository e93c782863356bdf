"""
RequestExecutor - performs one HTTP call and turns every failure into a typed error.

- Attaches the credential chosen by TokenResolver
- Enforces a per-request deadline (cancels the call on expiry)
- 401 wipes both credential slots, 429 schedules a warm-up replay
- Rejects URLs matched by the RequestFilter before any I/O
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
from loguru import logger

from storefront.services.credentials import CredentialStore
from storefront.services.errors import (
    AuthError,
    BlockedRequestError,
    HttpError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)
from storefront.services.tasks import BackgroundTasks
from storefront.services.token_resolver import TokenResolver
from storefront.utils import is_secure_page

DEFAULT_TIMEOUT_MS = 60000
DEFAULT_RETRY_AFTER = 1.0
MAX_REPLAY_DELAY = 5.0


@dataclass
class RequestOptions:
    """Per-call options."""

    method: str = "GET"
    params: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    body: Any = None
    timeout_ms: int | None = None
    cache_ttl: timedelta | None = None
    skip_cache: bool = False
    keepalive: bool = False  # no-op: httpx always pools connections
    skip_auth: bool = False
    page_context: str | None = None


@dataclass(frozen=True)
class FilterRule:
    """Block URLs containing ``pattern`` unless they also contain ``unless``."""

    pattern: str
    unless: str | None = None

    def matches(self, url: str) -> bool:
        if self.pattern not in url:
            return False
        return self.unless is None or self.unless not in url

    def __str__(self) -> str:
        return f"{self.pattern}!{self.unless}" if self.unless else self.pattern


@dataclass
class RequestFilter:
    """Deny-list applied to every outgoing URL."""

    rules: list[FilterRule] = field(default_factory=list)

    @classmethod
    def parse(cls, rules_text: str) -> "RequestFilter":
        """Parse ``"pattern,pattern!unless,..."``."""
        rules = []
        for item in rules_text.split(","):
            item = item.strip()
            if not item:
                continue
            pattern, _, unless = item.partition("!")
            rules.append(FilterRule(pattern=pattern, unless=unless or None))
        return cls(rules=rules)

    def check(self, url: str) -> None:
        for rule in self.rules:
            if rule.matches(url):
                logger.debug(f"Blocking request: {url}")
                raise BlockedRequestError(url, str(rule))


class RequestExecutor:
    """
    Single-call HTTP executor.

    Usage:
        executor = RequestExecutor(
            base_url="https://www.laiq.shop/api",
            resolver=resolver,
            credentials=credentials,
        )
        data = await executor.execute("/products", RequestOptions(params={"page": 1}))
    """

    def __init__(
        self,
        base_url: str,
        resolver: TokenResolver,
        credentials: CredentialStore,
        page_url: str | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        request_filter: RequestFilter | None = None,
        http_client: httpx.AsyncClient | None = None,
        background: BackgroundTasks | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._resolver = resolver
        self._credentials = credentials
        self._page_url = page_url
        self._default_timeout_ms = default_timeout_ms
        self._filter = request_filter or RequestFilter()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._background = background or BackgroundTasks("rate-limit-replay")

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(follow_redirects=True)
        return self._http_client

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}{endpoint}"

    async def execute(self, endpoint: str, options: RequestOptions | None = None) -> Any:
        """
        Send one request and return the parsed JSON body.

        Raises:
            BlockedRequestError: URL rejected by the request filter
            RequestTimeoutError: deadline exceeded
            NetworkError: no HTTP response (mixed_content set for https page -> http API)
            AuthError: 401, after clearing all stored credentials
            RateLimitError: 429, with the server's Retry-After hint
            HttpError: any other non-2xx status
        """
        options = options or RequestOptions()
        url = self.build_url(endpoint)
        self._filter.check(url)

        page_context = options.page_context or self._page_url
        headers = {"Content-Type": "application/json"}
        if options.headers:
            headers.update(options.headers)
        if not options.skip_auth and "Authorization" not in headers:
            credential = await self._resolver.resolve_credential(endpoint, page_context)
            if credential is not None:
                headers["Authorization"] = f"Bearer {credential.token}"

        timeout_ms = (
            options.timeout_ms if options.timeout_ms is not None else self._default_timeout_ms
        )
        timeout = timeout_ms / 1000 if timeout_ms > 0 else None
        request_kwargs = self._request_kwargs(options, headers)

        client = await self._get_http_client()
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.request(options.method.upper(), url, timeout=timeout, **request_kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            elapsed = time.monotonic() - started
            logger.warning(f"Request to {url} timed out after {elapsed:.2f}s")
            raise RequestTimeoutError(endpoint, timeout or 0, elapsed) from e
        except httpx.RequestError as e:
            raise self._network_error(endpoint, url, page_context, e) from e

        elapsed = time.monotonic() - started
        logger.debug(
            f"{options.method.upper()} {endpoint} -> {response.status_code} ({elapsed * 1000:.0f}ms)"
        )

        if response.is_success:
            return self._parse_body(endpoint, response)

        if response.status_code == 401:
            if not options.skip_auth:
                # A rejected token on one role invalidates the sibling slot as well
                await self._credentials.clear_all()
            raise AuthError(endpoint)

        if response.status_code == 429:
            retry_after = self._retry_after(response)
            logger.warning(f"Rate limit exceeded for {endpoint}, scheduling replay")
            self._schedule_replay(options.method.upper(), url, request_kwargs, retry_after)
            raise RateLimitError(endpoint, retry_after)

        raise HttpError(
            response.status_code, self._error_message(response), endpoint=endpoint
        )

    @staticmethod
    def _request_kwargs(options: RequestOptions, headers: dict[str, str]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": headers}
        if options.params:
            kwargs["params"] = {k: v for k, v in options.params.items() if v is not None}
        if options.body is not None and options.method.upper() not in ("GET", "HEAD"):
            if isinstance(options.body, (str, bytes)):
                kwargs["content"] = options.body
            else:
                kwargs["json"] = options.body
        return kwargs

    @staticmethod
    def _parse_body(endpoint: str, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise HttpError(
                response.status_code, "Invalid JSON in response body", endpoint=endpoint
            ) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        fallback = f"HTTP {response.status_code}"
        try:
            data = response.json()
        except ValueError:
            logger.error(f"Could not parse error response ({fallback})")
            return fallback
        logger.error(f"API error response: {data}")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return fallback

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if not raw:
            return DEFAULT_RETRY_AFTER
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return DEFAULT_RETRY_AFTER

    def _network_error(
        self, endpoint: str, url: str, page_context: str | None, error: Exception
    ) -> NetworkError:
        if is_secure_page(page_context) and self.base_url.startswith("http://"):
            logger.warning("Mixed content blocked: page is HTTPS but API is HTTP")
            return NetworkError(
                "Mixed content blocked - Use HTTPS for both site and API",
                endpoint=endpoint,
                mixed_content=True,
            )
        logger.error(f"Network error for {url}: {error}")
        return NetworkError(
            f"Network error - could not reach {url}: {error}", endpoint=endpoint
        )

    def _schedule_replay(
        self, method: str, url: str, request_kwargs: dict[str, Any], retry_after: float
    ) -> None:
        delay = min(retry_after, MAX_REPLAY_DELAY)
        self._background.spawn(
            self._replay(method, url, request_kwargs, delay), name=f"replay {url}"
        )

    async def _replay(
        self, method: str, url: str, request_kwargs: dict[str, Any], delay: float
    ) -> None:
        """Re-send a rate-limited call once; the outcome is discarded."""
        await asyncio.sleep(delay)
        client = await self._get_http_client()
        try:
            await client.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            logger.debug(f"Rate-limit replay to {url} failed: {e}")

    async def close(self) -> None:
        """Cancel pending replays and close the HTTP client if we created it."""
        await self._background.cancel_all()
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

"""
Service layer - authenticated, cached and resilient calls to the storefront API.

Provides:
- TokenResolver: Picks the credential for an endpoint and page
- CacheStore: TTL cache with persistence and cross-tab sync
- RequestExecutor: One HTTP call with typed errors
- RetryRecoveryEngine: Strategy-based recovery and retries
- BatchScheduler: Cached, deduplicated and batched requests
"""

from storefront.services.errors import (
    ServiceError,
    NetworkError,
    BlockedRequestError,
    RequestTimeoutError,
    HttpError,
    AuthError,
    RateLimitError,
)
from storefront.services.credentials import Credential, CredentialStore, Role, UserRecord
from storefront.services.token_resolver import TokenResolver
from storefront.services.cache import CacheStore, CacheEntry, CacheStats
from storefront.services.executor import RequestExecutor, RequestFilter, RequestOptions
from storefront.services.circuit_breaker import (
    CircuitState,
    ErrorRateBreaker,
    ErrorRateConfig,
)
from storefront.services.auth import AuthManager, AuthState, LoginResult
from storefront.services.recovery import (
    ErrorContext,
    NextAction,
    RecoveryResult,
    RecoveryStrategy,
    RetryRecoveryEngine,
)
from storefront.services.deduplicator import RequestDeduplicator
from storefront.services.scheduler import BatchItem, BatchOutcome, BatchScheduler

__all__ = [
    # Errors
    "ServiceError",
    "NetworkError",
    "BlockedRequestError",
    "RequestTimeoutError",
    "HttpError",
    "AuthError",
    "RateLimitError",
    # Credentials
    "Credential",
    "CredentialStore",
    "Role",
    "UserRecord",
    "TokenResolver",
    # Cache
    "CacheStore",
    "CacheEntry",
    "CacheStats",
    # Executor
    "RequestExecutor",
    "RequestFilter",
    "RequestOptions",
    # Error-rate breaker
    "CircuitState",
    "ErrorRateBreaker",
    "ErrorRateConfig",
    # Auth
    "AuthManager",
    "AuthState",
    "LoginResult",
    # Recovery
    "ErrorContext",
    "NextAction",
    "RecoveryResult",
    "RecoveryStrategy",
    "RetryRecoveryEngine",
    # Scheduling
    "RequestDeduplicator",
    "BatchItem",
    "BatchOutcome",
    "BatchScheduler",
]

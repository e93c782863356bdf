import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_base_url: str | None = Field(default=None, alias="API_BASE_URL")
    page_url: str = Field(default="http://localhost:3001/", alias="PAGE_URL")
    request_timeout_ms: int = Field(default=60000, alias="REQUEST_TIMEOUT_MS")
    blocked_request_patterns: str = Field(
        default="EMPTY_WORDMARK,/checkout/data!order_id",
        alias="BLOCKED_REQUEST_PATTERNS",
    )

    # Cache Configuration
    cache_default_ttl_seconds: float = Field(default=300, alias="CACHE_DEFAULT_TTL")
    cache_max_size: int = Field(default=100, alias="CACHE_MAX_SIZE")
    cache_cleanup_interval_seconds: int = Field(
        default=60, alias="CACHE_CLEANUP_INTERVAL"
    )
    cache_persistent: bool = Field(default=True, alias="CACHE_PERSISTENT")

    # Storage Configuration
    storage_url: str = Field(
        default="sqlite+aiosqlite:///./storefront.db", alias="STORAGE_URL"
    )
    storage_echo: bool = Field(default=False, alias="STORAGE_ECHO")

    # Batching Configuration
    batch_window_ms: float = Field(default=100, alias="BATCH_WINDOW_MS")
    max_batch_size: int = Field(default=10, alias="MAX_BATCH_SIZE")
    optimize_interval_seconds: int = Field(default=120, alias="OPTIMIZE_INTERVAL")
    stats_interval_seconds: int = Field(default=30, alias="STATS_INTERVAL")

    # Retry / Recovery Configuration
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    retry_max_delay: float = Field(default=10.0, alias="RETRY_MAX_DELAY")
    error_threshold: int = Field(default=5, alias="ERROR_THRESHOLD")
    error_window_seconds: float = Field(default=60, alias="ERROR_WINDOW")

    # Auth Configuration
    auth_refresh_interval_seconds: int = Field(
        default=60, alias="AUTH_REFRESH_INTERVAL"
    )
    admin_route_prefix: str = Field(default="/admin/", alias="ADMIN_ROUTE_PREFIX")
    admin_page_patterns: str = Field(
        default="admin,enhanced-order-management,billing-management,shipping-management",
        alias="ADMIN_PAGE_PATTERNS",
    )

    debug: bool = Field(default=False, alias="DEBUG")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (aliases are env names)."""
        return cls.model_validate(dict(os.environ))

    @property
    def admin_page_pattern_list(self) -> list[str]:
        return [p.strip() for p in self.admin_page_patterns.split(",") if p.strip()]


global_settings = Settings.from_env()

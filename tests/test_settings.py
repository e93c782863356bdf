"""Tests for settings and environment helpers."""

import pytest

from storefront.settings import Settings
from storefront.utils import is_admin_context, is_secure_page, page_path, resolve_api_base_url


@pytest.mark.parametrize(
    ("page_url", "expected"),
    [
        ("https://www.laiq.shop/products.html", "https://www.laiq.shop/api"),
        ("http://localhost:3001/index.html", "http://localhost:3001/api"),
        ("https://localhost:3443/admin-dashboard.html", "https://localhost:3443/api"),
        ("http://127.0.0.1:5500/index.html", "http://localhost:3001/api"),
        ("https://localhost:8443/index.html", "https://localhost:3443/api"),
        (None, "http://localhost:3001/api"),
        ("not a url", "http://localhost:3001/api"),
    ],
)
def test_resolve_api_base_url(page_url: str | None, expected: str) -> None:
    assert resolve_api_base_url(page_url) == expected


def test_page_helpers() -> None:
    assert page_path("https://www.laiq.shop/admin-dashboard.html?tab=orders") == "/admin-dashboard.html"
    assert page_path("/customer-login.html") == "/customer-login.html"
    assert is_admin_context("/Billing-Management.html", ["billing-management"])
    assert not is_admin_context("/cart.html", ["admin"])
    assert is_secure_page("https://www.laiq.shop/")
    assert not is_secure_page("http://localhost:3001/")
    assert not is_secure_page(None)


def test_settings_defaults() -> None:
    settings = Settings.model_validate({})
    assert settings.api_base_url is None
    assert settings.request_timeout_ms == 60000
    assert settings.cache_max_size == 100
    assert settings.error_threshold == 5
    assert settings.admin_page_pattern_list == [
        "admin",
        "enhanced-order-management",
        "billing-management",
        "shipping-management",
    ]


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "https://www.laiq.shop/api")
    monkeypatch.setenv("MAX_BATCH_SIZE", "25")
    monkeypatch.setenv("CACHE_PERSISTENT", "false")
    monkeypatch.setenv("ADMIN_PAGE_PATTERNS", "admin, reports ,")

    settings = Settings.from_env()
    assert settings.api_base_url == "https://www.laiq.shop/api"
    assert settings.max_batch_size == 25
    assert settings.cache_persistent is False
    assert settings.admin_page_pattern_list == ["admin", "reports"]

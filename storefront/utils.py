"""
Environment helpers: API base URL resolution and page context detection.
"""

import re
from urllib.parse import urlsplit

LOCAL_HOSTS = {"localhost", "127.0.0.1"}
DEV_SERVER_PORTS = {3001, 3443}


def resolve_api_base_url(page_url: str | None) -> str:
    """
    Pick the API base URL from the page the client runs on.

    Production pages and the local Express dev server use same-origin
    ``<origin>/api``. Other local pages get the dev API on https or http to
    match the page protocol, so the browser never blocks mixed content.
    """
    if not page_url:
        return "http://localhost:3001/api"

    parts = urlsplit(page_url)
    if not parts.scheme or not parts.hostname:
        return "http://localhost:3001/api"

    origin = f"{parts.scheme}://{parts.netloc}"
    is_local = parts.hostname in LOCAL_HOSTS

    if is_local and parts.port in DEV_SERVER_PORTS:
        return f"{origin}/api"
    if not is_local:
        return f"{origin}/api"
    if parts.scheme == "https":
        return "https://localhost:3443/api"
    return "http://localhost:3001/api"


def page_path(page_context: str | None) -> str:
    """Path component of a page URL (or the value itself if it is a bare path)."""
    if not page_context:
        return ""
    return urlsplit(page_context).path or page_context


def is_admin_context(page_context: str | None, patterns: list[str]) -> bool:
    """True when the page path matches any admin page pattern (case-insensitive)."""
    path = page_path(page_context)
    return any(re.search(re.escape(p), path, re.IGNORECASE) for p in patterns)


def is_secure_page(page_context: str | None) -> bool:
    return bool(page_context) and urlsplit(page_context).scheme == "https"

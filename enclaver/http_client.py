"""HTTP clients that send every request through a proxy."""

from __future__ import annotations

import httpx


def new_http_proxy_client(proxy_uri: str) -> httpx.AsyncClient:
    """Create an async client that routes all requests through ``proxy_uri``."""
    return httpx.AsyncClient(proxy=str(proxy_uri), trust_env=False)
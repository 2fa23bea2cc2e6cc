from __future__ import annotations

from collections.abc import Generator

import httpx

from identitysync.core.config import get_settings


def build_destination_client() -> httpx.Client:
    settings = get_settings()
    return httpx.Client(timeout=settings.DESTINATION_HTTP_TIMEOUT_SECONDS)


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Centralize HTTP client configuration (timeouts, etc) so we can override in tests.
    with build_destination_client() as client:
        yield client

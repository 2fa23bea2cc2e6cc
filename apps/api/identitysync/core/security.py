from __future__ import annotations

import base64
import hashlib
import hmac
import os

from identitysync.core.config import get_settings

API_KEY_PREFIX = "isk_"


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep headers compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def new_api_key() -> str:
    return f"{API_KEY_PREFIX}{new_random_token()}"


def hash_api_key(raw_key: str) -> bytes:
    settings = get_settings()
    # HMAC adds a server-side pepper; DB compromise alone is not enough to use keys.
    return hmac.new(
        settings.API_KEY_PEPPER.encode("utf-8"),
        raw_key.encode("utf-8"),
        hashlib.sha256,
    ).digest()

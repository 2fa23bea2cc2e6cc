from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

import orjson

from identitysync.core.config import get_settings

# Properties carrying a storefront transaction id, most specific first.
TRANSACTION_ID_KEYS = (
    "checkout_id",
    "checkout_token",
    "cart_token",
    "order_id",
    "order_number",
    "token",
)


class PayloadTooLargeError(ValueError):
    pass


class MissingIdentifierError(ValueError):
    pass


def json_depth(value: Any, *, limit: int) -> int:
    """Nesting depth of a JSON-like value, capped at ``limit + 1``.

    Walks iteratively so a hostile payload can't blow the interpreter stack.
    """
    deepest = 0
    stack: list[tuple[Any, int]] = [(value, 1)]
    while stack:
        node, depth = stack.pop()
        if isinstance(node, dict):
            children = list(node.values())
        elif isinstance(node, list):
            children = node
        else:
            continue
        deepest = max(deepest, depth)
        if deepest > limit:
            return deepest
        stack.extend((child, depth + 1) for child in children)
    return deepest


def ensure_bounded(payload: dict[str, Any] | None, *, field: str) -> None:
    if not payload:
        return
    settings = get_settings()
    size = len(orjson.dumps(payload))
    if size > settings.MAX_TRAITS_BYTES:
        raise PayloadTooLargeError(
            f"{field} is {size} bytes; limit is {settings.MAX_TRAITS_BYTES}"
        )
    if json_depth(payload, limit=settings.MAX_JSON_DEPTH) > settings.MAX_JSON_DEPTH:
        raise PayloadTooLargeError(f"{field} nests deeper than {settings.MAX_JSON_DEPTH} levels")


def fingerprint(*, client_ip: str | None, user_agent: str | None) -> str | None:
    if not client_ip:
        return None
    digest = hashlib.sha256(f"{client_ip}|{user_agent or ''}".encode("utf-8")).hexdigest()
    return f"fp_{digest[:16]}"


def transaction_id(properties: dict[str, Any]) -> str | None:
    for key in TRANSACTION_ID_KEYS:
        value = properties.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def compute_dedupe_key(
    *,
    workspace_id: str,
    event_name: str,
    properties: dict[str, Any],
    anonymous_id: str | None,
    session_id: str | None,
    occurred_at: datetime,
) -> str:
    txn_id = transaction_id(properties)
    if txn_id is not None:
        raw = f"{workspace_id}::{event_name}::{txn_id}"
    else:
        bucket_seconds = max(1, get_settings().DEDUPE_TIME_BUCKET_SECONDS)
        bucket = int(occurred_at.timestamp()) // bucket_seconds * bucket_seconds
        raw = f"{workspace_id}::{event_name}::{anonymous_id or ''}::{session_id or ''}::{bucket}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()

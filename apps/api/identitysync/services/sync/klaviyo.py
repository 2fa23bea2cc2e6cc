from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from identitysync.core.config import get_settings

PERMANENT_STATUS_CODES = frozenset({401, 403})

ENGAGEMENT_METRICS = (
    "Opened Email",
    "Clicked Email",
    "Received Email",
    "Subscribed to List",
    "Unsubscribed",
    "Clicked SMS",
)


@dataclass(frozen=True)
class KlaviyoProfile:
    id: str
    created: bool


@dataclass(frozen=True)
class KlaviyoEngagementEvent:
    id: str
    metric_name: str
    email: str | None
    occurred_at: datetime | None
    properties: dict[str, Any]


@dataclass(frozen=True)
class KlaviyoEventPage:
    events: list[KlaviyoEngagementEvent]
    next_url: str | None


class KlaviyoApiError(RuntimeError):
    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def permanent(self) -> bool:
        return self.status_code in PERMANENT_STATUS_CODES


def _headers(api_key: str) -> dict[str, str]:
    settings = get_settings()
    return {
        "Authorization": f"Klaviyo-API-Key {api_key}",
        "revision": settings.KLAVIYO_API_REVISION,
        "accept": "application/vnd.api+json",
        "content-type": "application/vnd.api+json",
    }


def _url(path: str) -> str:
    return f"{get_settings().KLAVIYO_API_BASE_URL.rstrip('/')}{path}"


def upsert_profile(
    client: httpx.Client,
    *,
    api_key: str,
    email: str,
    external_id: str,
    phone: str | None,
    properties: dict[str, Any],
) -> KlaviyoProfile:
    attributes: dict[str, Any] = {
        "email": email,
        "external_id": external_id,
        "properties": properties,
    }
    if phone:
        attributes["phone_number"] = phone

    res = client.post(
        _url("/api/profiles/"),
        json={"data": {"type": "profile", "attributes": attributes}},
        headers=_headers(api_key),
    )
    if res.status_code == 409:
        duplicate_id = _duplicate_profile_id(res)
        if duplicate_id is None:
            raise KlaviyoApiError(status_code=409, message="Klaviyo profile conflict without duplicate id")
        patch = client.patch(
            _url(f"/api/profiles/{duplicate_id}/"),
            json={"data": {"type": "profile", "id": duplicate_id, "attributes": attributes}},
            headers=_headers(api_key),
        )
        _raise_for_klaviyo_error(patch, default_message="Klaviyo profile update failed")
        return KlaviyoProfile(id=duplicate_id, created=False)

    _raise_for_klaviyo_error(res, default_message="Klaviyo profile create failed")
    payload = res.json()
    return KlaviyoProfile(id=str((payload.get("data") or {}).get("id") or ""), created=True)


def track_event(
    client: httpx.Client,
    *,
    api_key: str,
    metric_name: str,
    email: str,
    external_id: str,
    properties: dict[str, Any],
    occurred_at: datetime,
    unique_id: str,
    value: float | None = None,
) -> None:
    attributes: dict[str, Any] = {
        "properties": properties,
        "time": occurred_at.isoformat(),
        "unique_id": unique_id,
        "metric": {"data": {"type": "metric", "attributes": {"name": metric_name}}},
        "profile": {
            "data": {
                "type": "profile",
                "attributes": {"email": email, "external_id": external_id},
            }
        },
    }
    if value is not None:
        attributes["value"] = value

    res = client.post(
        _url("/api/events/"),
        json={"data": {"type": "event", "attributes": attributes}},
        headers=_headers(api_key),
    )
    _raise_for_klaviyo_error(res, default_message="Klaviyo event track failed")


def list_engagement_events(
    client: httpx.Client,
    *,
    api_key: str,
    since: datetime,
    page_url: str | None = None,
) -> KlaviyoEventPage:
    if page_url:
        res = client.get(page_url, headers=_headers(api_key))
    else:
        res = client.get(
            _url("/api/events/"),
            params={
                "filter": f"greater-than(datetime,{since.isoformat()})",
                "include": "metric,profile",
                "sort": "datetime",
            },
            headers=_headers(api_key),
        )
    _raise_for_klaviyo_error(res, default_message="Klaviyo event list failed")

    payload = res.json()
    metric_names: dict[str, str] = {}
    profile_emails: dict[str, str | None] = {}
    for item in payload.get("included") or []:
        attrs = item.get("attributes") or {}
        if item.get("type") == "metric":
            metric_names[str(item.get("id"))] = attrs.get("name") or ""
        elif item.get("type") == "profile":
            profile_emails[str(item.get("id"))] = attrs.get("email")

    events: list[KlaviyoEngagementEvent] = []
    for item in payload.get("data") or []:
        event_id = item.get("id")
        if not event_id:
            continue
        attrs = item.get("attributes") or {}
        relationships = item.get("relationships") or {}
        metric_id = ((relationships.get("metric") or {}).get("data") or {}).get("id")
        profile_id = ((relationships.get("profile") or {}).get("data") or {}).get("id")
        events.append(
            KlaviyoEngagementEvent(
                id=str(event_id),
                metric_name=metric_names.get(str(metric_id), ""),
                email=profile_emails.get(str(profile_id)),
                occurred_at=_parse_datetime(attrs.get("datetime")),
                properties=attrs.get("event_properties") or {},
            )
        )

    return KlaviyoEventPage(
        events=events,
        next_url=(payload.get("links") or {}).get("next"),
    )


def _duplicate_profile_id(res: httpx.Response) -> str | None:
    try:
        errors = res.json().get("errors") or []
    except ValueError:
        return None
    for error in errors:
        duplicate_id = (error.get("meta") or {}).get("duplicate_profile_id")
        if duplicate_id:
            return str(duplicate_id)
    return None


def _raise_for_klaviyo_error(res: httpx.Response, *, default_message: str) -> None:
    if res.status_code < 400:
        return

    message = default_message
    try:
        payload = res.json()
        errors = payload.get("errors") or []
        if errors:
            message = errors[0].get("detail") or errors[0].get("title") or default_message
    except Exception:  # noqa: BLE001
        message = default_message

    raise KlaviyoApiError(status_code=res.status_code, message=message)


def _parse_datetime(v: object) -> datetime | None:
    if not isinstance(v, str) or not v:
        return None
    try:
        return datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None

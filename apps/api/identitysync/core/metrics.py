from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "identitysync_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "identitysync_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "identitysync_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("method", "path"),
)
_EVENTS_INGESTED_TOTAL = Counter(
    "identitysync_events_ingested_total",
    "Events accepted by the ingestor, split by outcome.",
    labelnames=("outcome",),
)
_IDENTITY_MERGES_TOTAL = Counter(
    "identitysync_identity_merges_total",
    "Unified identities merged into another identity.",
)
_SYNC_JOBS_TOTAL = Counter(
    "identitysync_sync_jobs_total",
    "Sync jobs processed by the destination worker, split by outcome.",
    labelnames=("job_type", "outcome"),
)
_MAINTENANCE_STEP_FAILURES_TOTAL = Counter(
    "identitysync_maintenance_step_failures_total",
    "Maintenance sub-steps that raised.",
    labelnames=("step",),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )
    if rate_limited:
        _HTTP_RATE_LIMITED_TOTAL.labels(method=safe_method, path=safe_path).inc()


def observe_event_ingested(*, duplicate: bool) -> None:
    _EVENTS_INGESTED_TOTAL.labels(outcome="duplicate" if duplicate else "accepted").inc()


def observe_identity_merge() -> None:
    _IDENTITY_MERGES_TOTAL.inc()


def observe_sync_job(*, job_type: str, outcome: str) -> None:
    _SYNC_JOBS_TOTAL.labels(job_type=job_type, outcome=outcome).inc()


def observe_maintenance_failure(*, step: str) -> None:
    _MAINTENANCE_STEP_FAILURES_TOTAL.labels(step=step).inc()

"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


push_sends_total = Counter("push_sends_total", "Per-token push send outcomes", ["service", "outcome"])
push_tokens_removed_total = Counter(
    "push_tokens_removed_total",
    "Push tokens removed after not-registered responses",
    ["service"],
)
push_credential_reinit_total = Counter(
    "push_credential_reinit_total",
    "Push gateway credential reinitializations",
    ["service", "result"],
)
push_batch_seconds = Histogram("push_batch_seconds", "Push batch dispatch duration seconds", ["service"])
notification_status_total = Counter(
    "notification_status_total",
    "Notification record status changes",
    ["service", "status"],
)
notification_retries_total = Counter(
    "notification_retries_total",
    "Notification records re-dispatched by the retry scheduler",
    ["service", "result"],
)
receipts_total = Counter("receipts_total", "Fiscal receipt generation outcomes", ["service", "result"])
receipt_latency_seconds = Histogram(
    "receipt_latency_seconds",
    "Fiscal authority request latency seconds",
    ["service"],
)
receipt_archive_sync_total = Counter(
    "receipt_archive_sync_total",
    "Receipt archive sync outcomes",
    ["service", "result"],
)
sms_sent_total = Counter("sms_sent_total", "Receipt SMS outcomes", ["service", "provider", "result"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Background job executions",
    ["service", "kind", "result"],
)
jobs_pending_total = Gauge(
    "jobs_pending_total",
    "Current count of background jobs not yet finished",
    ["service"],
)
jobs_oldest_pending_age_seconds = Gauge(
    "jobs_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending background job",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")

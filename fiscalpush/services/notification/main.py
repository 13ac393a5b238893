"""Notification service API + worker lifecycle.

Serves push token registration for client apps, notification status updates,
and runs the event consumers, the dispatch job worker and the retry
scheduler alongside the API.
"""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Header, HTTPException

from fiscalpush.common.config import settings
from fiscalpush.common.db import SessionLocal
from fiscalpush.common.http import enforce_api_key, install_metrics_middleware
from fiscalpush.common.jobs import JobRunner
from fiscalpush.common.logging import configure_logging
from fiscalpush.common.metrics import metrics_response
from fiscalpush.common.startup import log_startup_config
from fiscalpush.common.tracing import instrument_app, setup_tracing
from fiscalpush.services.notification.dispatcher import NotificationDispatcher
from fiscalpush.services.notification.gateway import GatewayHandle, firebase_gateway_factory
from fiscalpush.services.notification.schemas import (
    NotificationResponse,
    NotificationSendRequest,
    TokenRegisterRequest,
    TokenRegisterResponse,
    TokenRemoveRequest,
)
from fiscalpush.services.notification.service import NotificationService
from fiscalpush.services.notification.tokens import TokenRecord, TokenStore

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "ENVIRONMENT",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "FIREBASE_PROJECT_ID",
        "FIREBASE_CREDENTIALS_PATH",
    ],
)
token_store = TokenStore(SessionLocal, cache=redis.Redis.from_url(settings.redis_url, decode_responses=True))
gateway = GatewayHandle(firebase_gateway_factory(settings), service_name=settings.service_name)
dispatcher = NotificationDispatcher(gateway, token_store, service_name=settings.service_name)
service = NotificationService(SessionLocal, dispatcher, token_store, service_name=settings.service_name)
job_runner = JobRunner(
    SessionLocal,
    [service.dispatch_job],
    service_name=settings.service_name,
    batch_size=settings.job_batch_size,
    processing_timeout_seconds=settings.job_processing_timeout_seconds,
    poll_interval_seconds=settings.job_poll_interval_seconds,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumers, job worker and retry scheduler with app lifecycle."""

    tasks = [
        asyncio.create_task(service.start_consumers()),
        asyncio.create_task(job_runner.run_forever()),
        asyncio.create_task(service.run_retry_scheduler()),
    ]
    yield
    for task in tasks:
        task.cancel()


app = FastAPI(title="fiscalpush Notification Service", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app, settings.service_name)


@app.post("/users/{user_id}/push-tokens", response_model=TokenRegisterResponse)
def register_token(user_id: str, req: TokenRegisterRequest, x_api_key: str | None = Header(default=None)):
    """Register a client token; an invalid token is reported, never raised."""

    enforce_api_key(x_api_key)
    return TokenRegisterResponse(stored=token_store.add_token(user_id, req.token, req.device_id))


@app.get("/users/{user_id}/push-tokens", response_model=list[TokenRecord])
def list_tokens(user_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return token_store.get_tokens_with_metadata(user_id)


@app.post("/users/{user_id}/push-tokens/remove")
def remove_token(user_id: str, req: TokenRemoveRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"removed": token_store.remove_token(user_id, req.token)}


@app.delete("/users/{user_id}/push-tokens")
def clear_tokens(user_id: str, x_api_key: str | None = Header(default=None)):
    """Logout path: drop every token of the user."""

    enforce_api_key(x_api_key)
    return {"cleared": token_store.clear_tokens(user_id)}


@app.post("/notifications", response_model=NotificationResponse)
def create_notification(req: NotificationSendRequest, x_api_key: str | None = Header(default=None)):
    """Persist a pending notification and queue its dispatch."""

    enforce_api_key(x_api_key)
    try:
        return service.create_notification(req.user_id, req.type, req.title, req.body, req.data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/notifications/{notification_id}", response_model=NotificationResponse)
def get_notification(notification_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    record = service.get_notification(notification_id)
    if record is None:
        raise HTTPException(status_code=404, detail="notification not found")
    return record


def _status_update(method, notification_id: str):
    try:
        record = method(notification_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=404, detail="notification not found")
    return record


@app.post("/notifications/{notification_id}/delivered", response_model=NotificationResponse)
def mark_delivered(notification_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return _status_update(service.mark_as_delivered, notification_id)


@app.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_read(notification_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return _status_update(service.mark_as_read, notification_id)


@app.get("/users/{user_id}/notifications/unread-count")
def unread_count(user_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"user_id": user_id, "unread": service.unread_count(user_id)}


@app.post("/ops/notifications/retry-failed")
def retry_failed(x_api_key: str | None = Header(default=None)):
    """Run one retry scheduler pass on demand."""

    enforce_api_key(x_api_key)
    return service.retry_failed_notifications()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()

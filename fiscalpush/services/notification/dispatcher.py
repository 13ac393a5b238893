"""Per-token push fan-out with outcome classification.

One batch sends the same payload to many tokens. Each token is attempted
independently; results are aggregated only after every send has settled, and
dead tokens are removed from the token store in one pass after the batch.
"""

import json
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from fiscalpush.common.config import settings
from fiscalpush.common.logging import logger, mask_token
from fiscalpush.common.metrics import push_batch_seconds, push_sends_total, push_tokens_removed_total
from fiscalpush.common.tracing import tracer
from fiscalpush.services.notification.gateway import (
    GatewayAuthError,
    GatewayHandle,
    GatewayReinitError,
    InvalidMessageError,
    PushGatewayError,
    TokenNotRegisteredError,
    is_credential_expiry,
)


class PushPayload(BaseModel):
    """Message content plus optional per-platform overrides."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    title: str
    body: str
    type: str = "general"
    data: dict[str, Any] = Field(default_factory=dict)
    android: dict[str, Any] = Field(default_factory=dict)
    apns: dict[str, Any] = Field(default_factory=dict)
    webpush: dict[str, Any] = Field(default_factory=dict)
    # Called with the DispatchResult once the batch has settled.
    on_sent: Callable[[Any], None] | None = Field(default=None, exclude=True)


class TokenOutcome(BaseModel):
    token: str
    success: bool
    outcome: str
    delivery_id: str | None = None
    error: str | None = None


class DispatchResult(BaseModel):
    results: list[TokenOutcome] = Field(default_factory=list)
    invalid_tokens_removed: int = 0
    abandoned: bool = False

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count

    def first_error(self) -> str | None:
        return next((result.error for result in self.results if result.error), None)


def _merge(defaults: dict, overrides: dict) -> dict:
    merged = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def build_push_message(token: str, payload: PushPayload, config=settings) -> dict:
    """Single-token message with platform defaults under caller overrides."""

    data = {key: _stringify(value) for key, value in payload.data.items()}
    data.update(
        {
            "type": payload.type,
            "title": payload.title,
            "body": payload.body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    android = {
        "priority": "high",
        "notification": {
            "title": payload.title,
            "body": payload.body,
            "channel_id": config.push_default_channel_id,
            "sound": config.push_default_sound,
            "icon": config.push_default_icon,
            "color": config.push_default_color,
            "click_action": config.push_default_click_action,
        },
    }
    apns = {
        "headers": {"apns-push-type": "alert", "apns-priority": "10"},
        "payload": {
            "aps": {
                "alert": {"title": payload.title, "body": payload.body},
                "badge": 1,
                "sound": config.push_default_sound,
                "mutable-content": 1,
            }
        },
    }
    webpush = {
        "headers": {"Urgency": "high"},
        "notification": {"title": payload.title, "body": payload.body, "icon": config.push_default_icon},
    }
    return {
        "token": token,
        "notification": {"title": payload.title, "body": payload.body},
        "data": data,
        "android": _merge(android, payload.android),
        "apns": _merge(apns, payload.apns),
        "webpush": _merge(webpush, payload.webpush),
    }


class NotificationDispatcher:
    """Sends one payload to many tokens through the leased gateway."""

    def __init__(
        self,
        gateway: GatewayHandle,
        token_store,
        service_name: str = "notification",
        concurrency: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.token_store = token_store
        self.service_name = service_name
        self.concurrency = concurrency or settings.push_send_concurrency

    def _ensure_credentials(self) -> bool:
        """Pre-flight credential check; `False` means abandon the batch."""

        try:
            with self.gateway.lease() as (client, generation):
                try:
                    client.verify_credentials()
                    return True
                except GatewayAuthError as exc:
                    if not is_credential_expiry(exc):
                        logger.warning("push credential check failed generation=%s error=%s", generation, exc)
                        return True
                    failed_generation = generation
                except PushGatewayError as exc:
                    logger.warning("push credential check inconclusive generation=%s error=%s", generation, exc)
                    return True
        except GatewayReinitError:
            return False
        logger.warning("push credentials expired generation=%s, reinitializing", failed_generation)
        try:
            self.gateway.reinitialize(failed_generation)
        except GatewayReinitError:
            return False
        return True

    def _attempt(self, token: str, message: dict, retried: bool) -> tuple[TokenOutcome | None, int | None]:
        """One leased send; `(None, generation)` asks for a credential refresh."""

        with self.gateway.lease() as (client, generation):
            try:
                delivery_id = client.send(message)
                return TokenOutcome(token=token, success=True, outcome="success", delivery_id=delivery_id), None
            except InvalidMessageError as exc:
                logger.error("push payload rejected token=%s error=%s", mask_token(token), exc)
                outcome = TokenOutcome(
                    token=token, success=False, outcome="invalid_message", error=f"Invalid message: {exc}"
                )
            except TokenNotRegisteredError as exc:
                logger.info("push token not registered token=%s", mask_token(token))
                outcome = TokenOutcome(
                    token=token, success=False, outcome="not_registered", error=f"Token not registered: {exc}"
                )
            except GatewayAuthError as exc:
                if not retried and is_credential_expiry(exc):
                    return None, generation
                logger.error("push authentication error token=%s error=%s", mask_token(token), exc)
                outcome = TokenOutcome(
                    token=token, success=False, outcome="auth_error", error=f"Authentication error: {exc}"
                )
            except Exception as exc:
                logger.error("push send failed token=%s error=%s", mask_token(token), exc)
                outcome = TokenOutcome(token=token, success=False, outcome="error", error=f"Failed to send: {exc}")
        return outcome, None

    def _send_one(self, token: str, payload: PushPayload) -> TokenOutcome:
        message = build_push_message(token, payload)
        retried = False
        while True:
            try:
                outcome, failed_generation = self._attempt(token, message, retried)
                if outcome is not None:
                    return outcome
                retried = True
                self.gateway.reinitialize(failed_generation)
            except GatewayReinitError as exc:
                return TokenOutcome(
                    token=token, success=False, outcome="auth_error", error=f"Authentication error: {exc}"
                )

    def send(self, tokens: list[str], payload: PushPayload, recipient_user_ids) -> DispatchResult:
        """Deliver `payload` to every token; never fails fast on one token."""

        tokens = list(dict.fromkeys(tokens))
        result = DispatchResult()
        if not tokens:
            logger.info("push batch skipped: no tokens recipients=%s", list(recipient_user_ids))
            return result

        started = time.perf_counter()
        with tracer.start_as_current_span("push.dispatch") as span:
            span.set_attribute("push.tokens", len(tokens))
            if not self._ensure_credentials():
                logger.critical(
                    "push batch abandoned: gateway credentials unusable tokens=%s recipients=%s",
                    len(tokens),
                    list(recipient_user_ids),
                )
                result.abandoned = True
                result.results = [
                    TokenOutcome(
                        token=token,
                        success=False,
                        outcome="abandoned",
                        error="Push gateway credentials unavailable",
                    )
                    for token in tokens
                ]
                push_sends_total.labels(service=self.service_name, outcome="abandoned").inc(len(tokens))
                return result

            with ThreadPoolExecutor(max_workers=max(1, min(self.concurrency, len(tokens)))) as pool:
                result.results = list(pool.map(lambda token: self._send_one(token, payload), tokens))

        for outcome in result.results:
            push_sends_total.labels(service=self.service_name, outcome=outcome.outcome).inc()

        dead = [outcome.token for outcome in result.results if outcome.outcome == "not_registered"]
        delivered = [outcome.token for outcome in result.results if outcome.success]
        # Sends already went out; bookkeeping errors are logged only.
        if dead:
            try:
                result.invalid_tokens_removed = self.token_store.remove_tokens(recipient_user_ids, dead)
                push_tokens_removed_total.labels(service=self.service_name).inc(result.invalid_tokens_removed)
            except SQLAlchemyError as exc:
                logger.error("push dead token removal failed tokens=%s error=%s", len(dead), exc)
        if delivered:
            try:
                self.token_store.touch_tokens(recipient_user_ids, delivered)
            except SQLAlchemyError as exc:
                logger.error("push token touch failed tokens=%s error=%s", len(delivered), exc)

        push_batch_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        logger.info(
            "push batch sent total_recipients=%s successful=%s failed=%s invalid_tokens_removed=%s",
            result.total,
            result.success_count,
            result.failure_count,
            result.invalid_tokens_removed,
        )
        if payload.on_sent is not None:
            payload.on_sent(result)
        return result

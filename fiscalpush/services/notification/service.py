"""Notification records, dispatch jobs, retry scheduler and event consumers."""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update

from fiscalpush.common.config import settings
from fiscalpush.common.db import utcnow
from fiscalpush.common.events import EventEnvelope, consume_forever
from fiscalpush.common.jobs import JobHandler
from fiscalpush.common.logging import logger
from fiscalpush.common.metrics import (
    duplicate_events_skipped_total,
    notification_retries_total,
    notification_status_total,
)
from fiscalpush.common.models import InboxEvent
from fiscalpush.common.state_machine import (
    NOTIFICATION_RETRY_TRANSITIONS,
    NOTIFICATION_TRANSITIONS,
    validate_transition,
)
from fiscalpush.services.notification.dispatcher import DispatchResult, PushPayload
from fiscalpush.services.notification.models import NotificationRecord


NOTIFICATION_TYPES = {
    "new_order",
    "new_parcel_order",
    "new_user_by_referral",
    "status_changed",
    "order_refunded",
    "wallet_top_up",
    "wallet_withdraw",
    "new_in_table",
    "booking_status",
    "new_booking",
    "news_publish",
    "add_cashback",
    "shop_approved",
    "call_waiter",
    "out_of_stock",
    "vfd_receipt",
}

ORDER_STATUS_TITLES = {
    "new": "New Order #{order_id}",
    "accepted": "Order #{order_id} Accepted",
    "processing": "Order #{order_id} is Being Prepared",
    "cooking": "Order #{order_id} is Being Cooked",
    "ready": "Order #{order_id} is Ready",
    "shipped": "Order #{order_id} Has Shipped",
    "on_a_way": "Order #{order_id} is on the way",
    "delivered": "Order #{order_id} has been Delivered",
    "canceled": "Order #{order_id} has been Canceled",
}

ORDER_STATUS_MESSAGES = {
    "new": "Your order has been received and is being processed.",
    "accepted": "Restaurant has accepted your order and started preparing it.",
    "processing": "Your order is being prepared by our kitchen staff.",
    "cooking": "Your food is being cooked with care.",
    "ready": "Your order is ready for {fulfilment}.",
    "shipped": "Your order has been shipped and is on its way to you.",
    "on_a_way": "Your order is on the way to your location.",
    "delivered": "Your order has been delivered. Enjoy your meal!",
    "canceled": "Your order has been canceled. Contact support for details.",
}

ERROR_MESSAGE_LIMIT = 255


class DispatchNotificationJob(JobHandler):
    """Queue job delivering one pending notification record."""

    kind = "notifications.dispatch"
    max_attempts = 3
    backoff_seconds = (30, 60, 120)

    def __init__(self, service: "NotificationService") -> None:
        self.service = service

    @classmethod
    def unique_key(cls, payload: dict) -> str | None:
        return f"notification-dispatch-{payload['notification_id']}"

    def handle(self, payload: dict) -> None:
        self.service.dispatch_record(payload["notification_id"])

    def failed(self, payload: dict, error: str) -> None:
        self.service.record_dispatch_error(payload["notification_id"], error)


def order_status_content(order_id, status: str, delivery_type: str = "delivery", reason: str | None = None) -> tuple[str, str]:
    """Title/body for an order status notification."""

    title = ORDER_STATUS_TITLES.get(status, "Order #{order_id} Update").format(order_id=order_id)
    if status == "canceled" and reason:
        return title, f"Your order has been canceled. Reason: {reason}"
    fulfilment = "delivery" if delivery_type == "delivery" else "pickup"
    default = "Your order status has been updated to: " + status.replace("_", " ").capitalize()
    return title, ORDER_STATUS_MESSAGES.get(status, default).format(fulfilment=fulfilment)


class NotificationService:
    """Owns notification records and drives dispatch and retry."""

    def __init__(
        self,
        session_factory,
        dispatcher,
        token_store,
        service_name: str = "notification",
        now=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.token_store = token_store
        self.service_name = service_name
        self.now = now
        self.dispatch_job = DispatchNotificationJob(self)

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    def _new_record(self, db, user_id, notification_type: str, title: str, body: str, data: dict | None) -> NotificationRecord:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {notification_type}")
        record = NotificationRecord(
            user_id=str(user_id) if user_id is not None else None,
            type=notification_type,
            title=title,
            body=body,
            data=dict(data or {}),
            status="pending",
            retry_attempts=0,
        )
        db.add(record)
        db.flush()
        return record

    def create_notification(self, user_id, notification_type: str, title: str, body: str, data: dict | None = None) -> NotificationRecord:
        """Persist a pending record and queue its dispatch in one transaction."""

        with self.session_factory() as db:
            record = self._new_record(db, user_id, notification_type, title, body, data)
            self.dispatch_job.enqueue(db, {"notification_id": record.id})
            db.commit()
        logger.info("notification queued notification_id=%s user_id=%s type=%s", record.id, user_id, notification_type)
        return record

    def send_to_user(self, user_id, notification_type: str, title: str, body: str, data: dict | None = None) -> NotificationRecord:
        """Create a record and dispatch it immediately."""

        with self.session_factory() as db:
            record = self._new_record(db, user_id, notification_type, title, body, data)
            db.commit()
        self.dispatch_record(record.id)
        return self.get_notification(record.id)

    def get_notification(self, notification_id: str) -> NotificationRecord | None:
        with self.session_factory() as db:
            return db.get(NotificationRecord, notification_id)

    def _payload(self, record: NotificationRecord) -> PushPayload:
        data = dict(record.data or {})
        data["notification_id"] = record.id
        return PushPayload(title=record.title, body=record.body, type=record.type, data=data)

    def _transition(
        self,
        db,
        record: NotificationRecord,
        new_status: str,
        transitions: dict[str, set[str]] = NOTIFICATION_TRANSITIONS,
        **values,
    ) -> None:
        """Apply one validated status change guarded by the current status."""

        validate_transition(record.status, new_status, transitions)
        result = db.execute(
            update(NotificationRecord)
            .where(NotificationRecord.id == record.id, NotificationRecord.status == record.status)
            .values(status=new_status, **values)
        )
        if result.rowcount != 1:
            raise RuntimeError(f"concurrent status change for notification {record.id} (expected {record.status})")
        record.status = new_status
        for key, value in values.items():
            setattr(record, key, value)
        notification_status_total.labels(service=self.service_name, status=new_status).inc()

    def _deliver(self, record: NotificationRecord) -> DispatchResult:
        tokens = self.token_store.get_tokens(record.user_id) if record.user_id else []
        return self.dispatcher.send(tokens, self._payload(record), [record.user_id] if record.user_id else [])

    def _apply_result(self, notification_id: str, result: DispatchResult, transitions: dict[str, set[str]]) -> None:
        with self.session_factory() as db:
            record = db.get(NotificationRecord, notification_id)
            if result.success_count:
                self._transition(db, record, "sent", transitions, sent_at=self.now(), error_message=None)
            else:
                error = result.first_error() or "No registered push tokens"
                self._transition(db, record, "failed", transitions, error_message=error[:ERROR_MESSAGE_LIMIT])
            db.commit()
        logger.info(
            "notification dispatched notification_id=%s status=%s successful=%s failed=%s",
            notification_id,
            record.status,
            result.success_count,
            result.failure_count,
        )

    def dispatch_record(self, notification_id: str) -> DispatchResult | None:
        """Deliver a pending record; a no-op for records already handled."""

        record = self.get_notification(notification_id)
        if record is None:
            logger.warning("notification missing notification_id=%s", notification_id)
            return None
        if record.status != "pending":
            logger.info("notification already dispatched notification_id=%s status=%s", notification_id, record.status)
            return None
        result = self._deliver(record)
        self._apply_result(notification_id, result, NOTIFICATION_TRANSITIONS)
        return result

    def record_dispatch_error(self, notification_id: str, error: str) -> None:
        with self.session_factory() as db:
            record = db.get(NotificationRecord, notification_id)
            if record is None or record.status != "pending":
                return
            self._transition(db, record, "failed", error_message=error[:ERROR_MESSAGE_LIMIT])
            db.commit()

    def mark_as_delivered(self, notification_id: str) -> NotificationRecord | None:
        with self.session_factory() as db:
            record = db.get(NotificationRecord, notification_id)
            if record is None:
                return None
            self._transition(db, record, "delivered", delivered_at=self.now())
            db.commit()
            return record

    def mark_as_read(self, notification_id: str) -> NotificationRecord | None:
        with self.session_factory() as db:
            record = db.get(NotificationRecord, notification_id)
            if record is None:
                return None
            self._transition(db, record, "read", read_at=self.now())
            db.commit()
            return record

    def unread_count(self, user_id) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(NotificationRecord)
                .where(
                    NotificationRecord.user_id == str(user_id),
                    NotificationRecord.status.in_(("sent", "delivered")),
                )
            ).scalar_one()

    def select_retry_candidates(self, now: datetime | None = None, limit: int = 500) -> list[str]:
        """Failed records still inside the retry window and attempt budget."""

        now = now or self.now()
        window_start = now - timedelta(hours=settings.notification_retry_window_hours)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(NotificationRecord.id)
                    .where(
                        NotificationRecord.status == "failed",
                        NotificationRecord.created_at >= window_start,
                        or_(
                            NotificationRecord.retry_attempts.is_(None),
                            NotificationRecord.retry_attempts < settings.notification_retry_max_attempts,
                        ),
                    )
                    .order_by(NotificationRecord.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def _retry_one(self, notification_id: str, now: datetime) -> str:
        record = self.get_notification(notification_id)
        if record is None or record.status != "failed":
            return "skipped"
        resolvable = record.user_id is not None and self.token_store.has_token_row(record.user_id)

        with self.session_factory() as db:
            record = db.execute(
                select(NotificationRecord).where(NotificationRecord.id == notification_id).with_for_update()
            ).scalar_one_or_none()
            if record is None or record.status != "failed":
                return "skipped"
            if not resolvable:
                record.retry_attempts = settings.notification_retry_max_attempts
                record.error_message = "Recipient not resolvable"
                db.commit()
                logger.warning(
                    "notification retry skipped: no recipient notification_id=%s user_id=%s",
                    notification_id,
                    record.user_id,
                )
                return "skipped"
            record.retry_attempts = (record.retry_attempts or 0) + 1
            record.last_retry_at = now
            db.commit()

        logger.info(
            "notification retry notification_id=%s attempt=%s",
            notification_id,
            record.retry_attempts,
        )
        result = self._deliver(record)
        self._apply_result(notification_id, result, NOTIFICATION_RETRY_TRANSITIONS)
        return "succeeded" if result.success_count else "failed"

    def retry_failed_notifications(self, now: datetime | None = None) -> dict[str, int]:
        """One scheduler pass; returns per-outcome counts."""

        now = now or self.now()
        summary = {"selected": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        candidates = self.select_retry_candidates(now)
        summary["selected"] = len(candidates)
        for notification_id in candidates:
            try:
                outcome = self._retry_one(notification_id, now)
            except Exception as exc:
                logger.error("notification retry error notification_id=%s error=%s", notification_id, exc)
                outcome = "failed"
            summary[outcome] += 1
            notification_retries_total.labels(service=self.service_name, result=outcome).inc()
        logger.info("notification retry pass %s", " ".join(f"{key}={value}" for key, value in summary.items()))
        return summary

    def cleanup_old_notifications(self, days: int = 30, dry_run: bool = False) -> int:
        cutoff = self.now() - timedelta(days=days)
        with self.session_factory() as db:
            count = db.execute(
                select(func.count()).select_from(NotificationRecord).where(NotificationRecord.created_at < cutoff)
            ).scalar_one()
            if dry_run or not count:
                return count
            db.execute(delete(NotificationRecord).where(NotificationRecord.created_at < cutoff))
            db.commit()
        logger.info("notification cleanup deleted=%s older_than_days=%s", count, days)
        return count

    def send_order_status_update(
        self,
        order_id,
        user_id,
        status: str,
        delivery_type: str = "delivery",
        reason: str | None = None,
    ) -> NotificationRecord:
        """Queue a status_changed notification for one order."""

        title, body = order_status_content(order_id, status, delivery_type, reason)
        data = {"order_id": order_id, "status": status, "delivery_type": delivery_type}
        return self.create_notification(user_id, "status_changed", title, body, data)

    def _consume(self, event: EventEnvelope, build) -> None:
        """Inbox-deduped record creation shared by the event handlers."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            self._mark_inbox(db, event.event_id)
            user_id, notification_type, title, body, data = build(event.payload)
            if user_id is None:
                logger.warning("event without recipient dropped event_id=%s", event.event_id)
                db.commit()
                return
            record = self._new_record(db, user_id, notification_type, title, body, data)
            self.dispatch_job.enqueue(db, {"notification_id": record.id})
            db.commit()

    async def handle_order_status_changed(self, event: EventEnvelope) -> None:
        """Queue an order status notification for the order's customer."""

        def build(payload: dict):
            order_id = payload.get("order_id", event.aggregate_id)
            status = payload.get("status", "")
            title, body = order_status_content(
                order_id,
                status,
                payload.get("delivery_type", "delivery"),
                payload.get("reason"),
            )
            data = {
                "order_id": order_id,
                "status": status,
                "delivery_type": payload.get("delivery_type", "delivery"),
            }
            return payload.get("user_id"), "status_changed", title, body, data

        self._consume(event, build)

    async def handle_notification_requested(self, event: EventEnvelope) -> None:
        """Queue an arbitrary notification published by another domain."""

        def build(payload: dict):
            return (
                payload.get("user_id"),
                payload.get("type", "status_changed"),
                payload.get("title", ""),
                payload.get("body", ""),
                payload.get("data") or {},
            )

        self._consume(event, build)

    async def run_retry_scheduler(self) -> None:
        """Periodic retry pass inside the service process."""

        while True:
            try:
                await asyncio.to_thread(self.retry_failed_notifications)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("notification retry scheduler error: %s", exc)
            await asyncio.sleep(settings.notification_retry_interval_seconds)

    async def start_consumers(self) -> None:
        """Start order-status and generic notification consumers."""

        await asyncio.gather(
            consume_forever("orders.status_changed", "notification-order-status", self.handle_order_status_changed),
            consume_forever("notifications.requested", "notification-requested", self.handle_notification_requested),
        )

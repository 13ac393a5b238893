"""Fiscal receipt generation for delivery fees and subscription charges.

Generation is driven by domain events (order delivered, subscription charged)
through the durable job queue. A receipt row is written in `pending` before
the fiscal authority is called, so every attempt leaves a trace even when the
call fails. Entering `generated` schedules the archive job in the same
transaction.
"""

import asyncio
import secrets
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from fiscalpush.common.config import settings
from fiscalpush.common.db import as_utc, utcnow
from fiscalpush.common.events import EventEnvelope, consume_forever
from fiscalpush.common.jobs import JobHandler, NonRetryableJobError, RetryableJobError
from fiscalpush.common.logging import logger
from fiscalpush.common.metrics import duplicate_events_skipped_total, receipt_latency_seconds, receipts_total, sms_sent_total
from fiscalpush.common.models import InboxEvent
from fiscalpush.common.state_machine import RECEIPT_TRANSITIONS, validate_transition
from fiscalpush.common.tracing import tracer
from fiscalpush.services.receipts.archive import ArchiveReceiptJob
from fiscalpush.services.receipts.fiscal import build_receipt_request, minor_to_major
from fiscalpush.services.receipts.models import VfdReceipt
from fiscalpush.services.receipts.subjects import resolve_receipt_type, resolve_subject


class ReceiptResult(BaseModel):
    """Outcome of a generation request; `error_kind` says what went wrong."""

    status: bool
    message: str
    data: dict | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False


class GenerateReceiptJob(JobHandler):
    """Queue job issuing one fiscal receipt."""

    kind = "receipts.generate"
    max_attempts = 3
    backoff_seconds = (30, 60, 120)

    def __init__(self, service: "ReceiptService") -> None:
        self.service = service

    @classmethod
    def unique_key(cls, payload: dict) -> str | None:
        data = payload["data"]
        return f"vfd-generate-{data['model_type']}-{data['model_id']}-{payload['receipt_type']}"

    def handle(self, payload: dict) -> None:
        result = self.service.generate_receipt(payload["receipt_type"], payload["data"])
        if result.status:
            return
        if result.retryable:
            raise RetryableJobError(result.message)
        raise NonRetryableJobError(result.message)

    def failed(self, payload: dict, error: str) -> None:
        data = payload["data"]
        logger.critical(
            "receipt generation failed permanently model_type=%s model_id=%s receipt_type=%s error=%s",
            data.get("model_type"),
            data.get("model_id"),
            payload.get("receipt_type"),
            error,
        )


def receipt_sms_message(receipt: VfdReceipt) -> str:
    label = resolve_receipt_type(receipt.receipt_type).label
    return (
        f"Your {label} receipt #{receipt.receipt_number} for TZS {minor_to_major(receipt.amount):.2f} "
        f"is ready. View it at: {receipt.receipt_url}"
    )


def _clean_optional(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def validate_receipt_request(receipt_type: str, data: dict) -> dict:
    """Normalized receipt fields; raises `ValueError` on bad input."""

    resolve_receipt_type(receipt_type)
    model_type = data.get("model_type")
    resolve_subject(model_type)
    model_id = _clean_optional(data.get("model_id"))
    if model_id is None:
        raise ValueError("model_id is required")
    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer in minor units")
    payment_method = _clean_optional(data.get("payment_method"))
    if payment_method is None:
        raise ValueError("payment_method is required")
    return {
        "model_type": model_type,
        "model_id": model_id,
        "amount": amount,
        "payment_method": payment_method,
        "customer_name": _clean_optional(data.get("customer_name")) or "Customer",
        "customer_phone": _clean_optional(data.get("customer_phone")),
        "customer_email": _clean_optional(data.get("customer_email")),
    }


class ReceiptService:
    """Issues fiscal receipts and answers operator queries about them."""

    def __init__(
        self,
        session_factory,
        fiscal_client,
        archive,
        sms_gateway=None,
        service_name: str = "receipts",
        now=utcnow,
        config=settings,
    ) -> None:
        self.session_factory = session_factory
        self.fiscal = fiscal_client
        self.archive = archive
        self.sms_gateway = sms_gateway
        self.service_name = service_name
        self.now = now
        self.config = config
        self.generate_job = GenerateReceiptJob(self)
        self.archive_job = ArchiveReceiptJob(archive)

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

    def _new_receipt_number(self) -> str:
        return f"VFD-{int(self.now().timestamp())}-{1000 + secrets.randbelow(9000)}"

    def _subject_query(self, model_type: str, model_id, receipt_type: str | None = None):
        query = select(VfdReceipt).where(
            VfdReceipt.model_type == model_type,
            VfdReceipt.model_id == str(model_id),
            VfdReceipt.deleted_at.is_(None),
        )
        if receipt_type is not None:
            query = query.where(VfdReceipt.receipt_type == receipt_type)
        return query

    def _transition(self, db, receipt: VfdReceipt, new_status: str, **values) -> None:
        """Apply one validated status change; entering `generated` queues archiving."""

        validate_transition(receipt.status, new_status, RECEIPT_TRANSITIONS)
        result = db.execute(
            update(VfdReceipt)
            .where(VfdReceipt.id == receipt.id, VfdReceipt.status == receipt.status)
            .values(status=new_status, **values)
        )
        if result.rowcount != 1:
            raise RuntimeError(f"concurrent status change for receipt {receipt.id} (expected {receipt.status})")
        receipt.status = new_status
        for key, value in values.items():
            setattr(receipt, key, value)
        if new_status == "generated" and receipt.synced_to_archive_at is None and self.archive.active:
            self.archive_job.enqueue(
                db,
                {"receipt_id": receipt.id},
                delay_seconds=self.config.vfd_archive_delay_seconds,
                now=self.now(),
            )

    def _stale_pending(self, receipt: VfdReceipt) -> bool:
        updated_at = as_utc(receipt.updated_at or receipt.created_at)
        if updated_at is None:
            return True
        return self.now() - updated_at > timedelta(seconds=self.config.vfd_timeout_seconds * 2)

    def _stamp_stale_claim(self, db, receipt: VfdReceipt) -> bool:
        """Take over an abandoned pending row; only one caller's stamp lands."""

        now = self.now()
        cutoff = now - timedelta(seconds=self.config.vfd_timeout_seconds * 2)
        result = db.execute(
            update(VfdReceipt)
            .where(
                VfdReceipt.id == receipt.id,
                VfdReceipt.status == "pending",
                or_(VfdReceipt.updated_at.is_(None), VfdReceipt.updated_at < cutoff),
            )
            .values(updated_at=now)
        )
        if result.rowcount != 1:
            return False
        receipt.updated_at = now
        return True

    def _claim_receipt(self, receipt_type: str, fields: dict) -> tuple[VfdReceipt | None, ReceiptResult | None]:
        """Pending row to issue against, or the result to return instead."""

        with self.session_factory() as db:
            existing = db.execute(
                self._subject_query(fields["model_type"], fields["model_id"], receipt_type).with_for_update()
            ).scalar_one_or_none()
            if existing is not None:
                if existing.status == "generated":
                    return None, ReceiptResult(status=True, message="Receipt already generated", data=existing.to_dict())
                if existing.status == "pending" and not self._stale_pending(existing):
                    return None, ReceiptResult(
                        status=False,
                        message="Receipt generation in progress",
                        data=existing.to_dict(),
                        error_kind="in_progress",
                        retryable=True,
                    )
                if existing.status == "failed":
                    self._transition(db, existing, "pending", error_message=None, updated_at=self.now())
                elif not self._stamp_stale_claim(db, existing):
                    db.rollback()
                    return None, ReceiptResult(
                        status=False,
                        message="Receipt generation in progress",
                        data=existing.to_dict(),
                        error_kind="in_progress",
                        retryable=True,
                    )
                for key in ("amount", "payment_method", "customer_name", "customer_phone", "customer_email"):
                    setattr(existing, key, fields[key])
                db.commit()
                logger.info("receipt re-attempt receipt_id=%s receipt_number=%s", existing.id, existing.receipt_number)
                return existing, None

            receipt = VfdReceipt(
                receipt_number=self._new_receipt_number(),
                receipt_type=receipt_type,
                status="pending",
                **fields,
            )
            db.add(receipt)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None, ReceiptResult(
                    status=False,
                    message="Receipt generation in progress",
                    error_kind="conflict",
                    retryable=True,
                )
        logger.info("receipt created receipt_id=%s receipt_number=%s", receipt.id, receipt.receipt_number)
        return receipt, None

    def generate_receipt(self, receipt_type: str, data: dict) -> ReceiptResult:
        """Issue one fiscal receipt for a delivery fee or subscription charge."""

        try:
            fields = validate_receipt_request(receipt_type, data)
        except ValueError as exc:
            receipts_total.labels(service=self.service_name, result="invalid").inc()
            return ReceiptResult(status=False, message=str(exc), error=str(exc), error_kind="validation")

        problem = self.fiscal.configuration_error()
        if problem:
            receipts_total.labels(service=self.service_name, result="not_configured").inc()
            logger.error("receipt generation not configured: %s", problem)
            return ReceiptResult(
                status=False,
                message=f"Failed to generate receipt: {problem}",
                error=problem,
                error_kind="configuration",
            )

        receipt, early = self._claim_receipt(receipt_type, fields)
        if early is not None:
            return early

        with tracer.start_as_current_span("vfd.submit_receipt"):
            body = build_receipt_request(receipt, self.fiscal.tin, self.now())
            with receipt_latency_seconds.labels(service=self.service_name).time():
                response = self.fiscal.submit_receipt(body)

        if response.ok:
            return self._record_generated(receipt.id, response)
        return self._record_failed(receipt.id, response)

    def _record_generated(self, receipt_id: str, response) -> ReceiptResult:
        body = response.body if isinstance(response.body, dict) else {}
        with self.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            self._transition(
                db,
                receipt,
                "generated",
                receipt_url=body.get("receiptUrl"),
                provider_response=response.body if response.body is not None else response.text,
                receipt_number=body.get("receiptNumber") or receipt.receipt_number,
                error_message=None,
            )
            db.commit()
        receipts_total.labels(service=self.service_name, result="generated").inc()
        logger.info(
            "receipt generated receipt_id=%s receipt_number=%s sandbox=%s",
            receipt.id,
            receipt.receipt_number,
            response.sandbox,
        )
        self.send_receipt_sms(receipt)
        data = receipt.to_dict()
        data["sandbox"] = response.sandbox
        return ReceiptResult(status=True, message="Receipt generated successfully", data=data)

    def _record_failed(self, receipt_id: str, response) -> ReceiptResult:
        error = response.error or "Unknown fiscal authority error"
        with self.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            self._transition(
                db,
                receipt,
                "failed",
                error_message=error,
                provider_response=response.body if response.body is not None else (response.text or None),
            )
            db.commit()
        receipts_total.labels(service=self.service_name, result="failed").inc()
        logger.error(
            "receipt generation failed receipt_id=%s status_code=%s kind=%s error=%s",
            receipt.id,
            response.status_code,
            response.error_kind,
            error,
        )
        return ReceiptResult(
            status=False,
            message=f"Failed to generate receipt: {error}",
            data=receipt.to_dict(),
            error=error,
            error_kind=response.error_kind,
            retryable=response.retryable,
        )

    def send_receipt_sms(self, receipt: VfdReceipt) -> bool:
        """Best-effort SMS with the receipt link; never raises."""

        if not self.config.vfd_receipt_sms_enabled:
            return False
        if not receipt.customer_phone or not receipt.receipt_url:
            logger.warning(
                "receipt sms skipped receipt_id=%s has_phone=%s has_url=%s",
                receipt.id,
                bool(receipt.customer_phone),
                bool(receipt.receipt_url),
            )
            return False
        if self.sms_gateway is None:
            logger.warning("receipt sms skipped: no default sms provider receipt_id=%s", receipt.id)
            return False
        try:
            result = self.sms_gateway.send_sms(receipt.customer_phone, receipt_sms_message(receipt))
        except Exception as exc:
            logger.error("receipt sms error receipt_id=%s provider=%s error=%s", receipt.id, self.sms_gateway.name, exc)
            sms_sent_total.labels(service=self.service_name, provider=self.sms_gateway.name, result="error").inc()
            return False
        sms_sent_total.labels(
            service=self.service_name,
            provider=self.sms_gateway.name,
            result="sent" if result.status else "failed",
        ).inc()
        if not result.status:
            logger.error("receipt sms failed receipt_id=%s provider=%s message=%s", receipt.id, result.provider, result.message)
        return result.status

    def resend_receipt_sms(self, receipt_id: str) -> bool | None:
        receipt = self.get_receipt(receipt_id)
        if receipt is None:
            return None
        return self.send_receipt_sms(receipt)

    def get_receipt(self, receipt_id: str) -> VfdReceipt | None:
        with self.session_factory() as db:
            return db.get(VfdReceipt, receipt_id)

    def get_for_subject(self, model_type: str, model_id, receipt_type: str | None = None) -> VfdReceipt | None:
        with self.session_factory() as db:
            return db.execute(self._subject_query(model_type, model_id, receipt_type).limit(1)).scalar_one_or_none()

    def has_receipt(self, model_type: str, model_id, receipt_type: str) -> bool:
        receipt = self.get_for_subject(model_type, model_id, receipt_type)
        return receipt is not None and receipt.status in ("pending", "generated")

    def get_receipt_url(self, model_type: str, model_id, receipt_type: str) -> str | None:
        receipt = self.get_for_subject(model_type, model_id, receipt_type)
        return receipt.receipt_url if receipt is not None and receipt.status == "generated" else None

    def _queue_generation(self, db, receipt_type: str, data: dict) -> ReceiptResult:
        """Validate and enqueue a generation job inside the caller's transaction."""

        try:
            fields = validate_receipt_request(receipt_type, data)
        except ValueError as exc:
            return ReceiptResult(status=False, message=str(exc), error=str(exc), error_kind="validation")
        existing = db.execute(
            self._subject_query(fields["model_type"], fields["model_id"], receipt_type)
        ).scalar_one_or_none()
        if existing is not None and existing.status in ("pending", "generated"):
            return ReceiptResult(status=True, message="Receipt already generated", data=existing.to_dict())
        job = self.generate_job.enqueue(db, {"receipt_type": receipt_type, "data": fields}, now=self.now())
        message = "Receipt generation queued" if job is not None else "Receipt generation already queued"
        return ReceiptResult(status=True, message=message)

    def _queue_and_commit(self, receipt_type: str, data: dict) -> ReceiptResult:
        with self.session_factory() as db:
            result = self._queue_generation(db, receipt_type, data)
            db.commit()
        return result

    def generate_for_order(self, order: dict) -> ReceiptResult:
        """Queue a delivery-fee receipt for a delivered order."""

        if not order.get("delivery_fee"):
            return ReceiptResult(status=False, message="Order has no delivery fee", error_kind="validation")
        return self._queue_and_commit("delivery", order_receipt_data(order))

    def generate_for_subscription(self, subscription: dict) -> ReceiptResult:
        return self._queue_and_commit("subscription", subscription_receipt_data(subscription))

    def retry_failed_receipts(self, limit: int = 10, dry_run: bool = False) -> dict:
        """Re-queue generation for failed receipts, newest first."""

        with self.session_factory() as db:
            receipts = (
                db.execute(
                    select(VfdReceipt)
                    .where(VfdReceipt.status == "failed", VfdReceipt.deleted_at.is_(None))
                    .order_by(VfdReceipt.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            summary = {
                "selected": len(receipts),
                "queued": 0,
                "receipt_numbers": [receipt.receipt_number for receipt in receipts],
                "dry_run": dry_run,
            }
            if dry_run:
                return summary
            for receipt in receipts:
                fields = {
                    "model_type": receipt.model_type,
                    "model_id": receipt.model_id,
                    "amount": receipt.amount,
                    "payment_method": receipt.payment_method,
                    "customer_name": receipt.customer_name,
                    "customer_phone": receipt.customer_phone,
                    "customer_email": receipt.customer_email,
                }
                if self.generate_job.enqueue(db, {"receipt_type": receipt.receipt_type, "data": fields}, now=self.now()):
                    summary["queued"] += 1
            db.commit()
        logger.info("failed receipts re-queued selected=%s queued=%s", summary["selected"], summary["queued"])
        return summary

    def receipt_summary(self, hours: int = 24, status: str = "all", limit: int = 50) -> dict:
        """Status counts and recent receipts for the monitor command."""

        since = self.now() - timedelta(hours=hours)
        with self.session_factory() as db:
            counts = dict(
                db.execute(
                    select(VfdReceipt.status, func.count())
                    .where(VfdReceipt.created_at >= since, VfdReceipt.deleted_at.is_(None))
                    .group_by(VfdReceipt.status)
                ).all()
            )
            query = select(VfdReceipt).where(VfdReceipt.created_at >= since, VfdReceipt.deleted_at.is_(None))
            if status != "all":
                query = query.where(VfdReceipt.status == status)
            receipts = db.execute(query.order_by(VfdReceipt.created_at.desc()).limit(limit)).scalars().all()
        return {
            "since": since.isoformat(),
            "counts": {name: counts.get(name, 0) for name in ("pending", "generated", "failed")},
            "receipts": [receipt.to_dict() for receipt in receipts],
        }

    def cleanup_old_receipts(self, days: int = 90, dry_run: bool = False, now: datetime | None = None) -> int:
        """Soft-delete receipts older than the retention window."""

        cutoff = (now or self.now()) - timedelta(days=days)
        condition = (VfdReceipt.created_at < cutoff, VfdReceipt.deleted_at.is_(None))
        with self.session_factory() as db:
            count = db.execute(select(func.count()).select_from(VfdReceipt).where(*condition)).scalar_one()
            if dry_run or not count:
                return count
            db.execute(update(VfdReceipt).where(*condition).values(deleted_at=self.now()))
            db.commit()
        logger.info("receipt cleanup soft_deleted=%s older_than_days=%s", count, days)
        return count

    def _consume(self, event: EventEnvelope, receipt_type: str, data: dict) -> None:
        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            self._mark_inbox(db, event.event_id)
            result = self._queue_generation(db, receipt_type, data)
            db.commit()
        logger.info(
            "receipt event handled event_type=%s aggregate_id=%s result=%s",
            event.event_type,
            event.aggregate_id,
            result.message,
        )

    async def handle_order_delivered(self, event: EventEnvelope) -> None:
        """Delivered orders with a delivery fee get a delivery receipt."""

        payload = dict(event.payload)
        payload.setdefault("order_id", event.aggregate_id)
        if not payload.get("delivery_fee"):
            logger.info("order delivered without delivery fee order_id=%s", payload["order_id"])
            return
        self._consume(event, "delivery", order_receipt_data(payload))

    async def handle_subscription_charged(self, event: EventEnvelope) -> None:
        payload = dict(event.payload)
        payload.setdefault("subscription_id", event.aggregate_id)
        self._consume(event, "subscription", subscription_receipt_data(payload))

    async def start_consumers(self) -> None:
        """Start order-delivered and subscription-charged consumers."""

        await asyncio.gather(
            consume_forever("orders.delivered", "receipts-order-delivered", self.handle_order_delivered),
            consume_forever("subscriptions.charged", "receipts-subscription-charged", self.handle_subscription_charged),
        )


def order_receipt_data(order: dict) -> dict:
    return {
        "model_type": "order",
        "model_id": order.get("order_id", order.get("id")),
        "amount": order.get("delivery_fee"),
        "payment_method": order.get("payment_method") or "cash",
        "customer_name": order.get("customer_name"),
        "customer_phone": order.get("customer_phone"),
        "customer_email": order.get("customer_email"),
    }


def subscription_receipt_data(subscription: dict) -> dict:
    return {
        "model_type": "subscription",
        "model_id": subscription.get("subscription_id", subscription.get("id")),
        "amount": subscription.get("amount"),
        "payment_method": subscription.get("payment_method") or "card",
        "customer_name": subscription.get("customer_name"),
        "customer_phone": subscription.get("customer_phone"),
        "customer_email": subscription.get("customer_email"),
    }

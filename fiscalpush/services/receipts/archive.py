"""Forwarding of generated receipts to the long-term archive service.

Archive bookkeeping (`synced_to_archive_at`, `sync_error`) is kept apart from
the receipt's generation `status`: a failed archive sync never changes it.
"""

import json
import traceback
from datetime import datetime, timedelta

import httpx
from pydantic import BaseModel
from sqlalchemy import select

from fiscalpush.common.config import settings
from fiscalpush.common.db import utcnow
from fiscalpush.common.jobs import JobHandler, NonRetryableJobError, RetryableJobError
from fiscalpush.common.logging import logger
from fiscalpush.common.metrics import receipt_archive_sync_total
from fiscalpush.services.receipts.fiscal import CURRENCY, HEALTH_TIMEOUT_SECONDS
from fiscalpush.services.receipts.models import VfdReceipt


ARCHIVE_TIMEOUT_SECONDS = 30.0


class ArchiveResult(BaseModel):
    success: bool
    message: str
    sandbox: bool = False
    status: int | None = None
    error_kind: str | None = None
    exception: dict | None = None


def _exception_details(exc: BaseException) -> dict:
    frames = traceback.extract_tb(exc.__traceback__)
    last = frames[-1] if frames else None
    return {
        "message": str(exc),
        "type": exc.__class__.__name__,
        "file": last.filename if last else None,
        "line": last.lineno if last else None,
    }


def _parsed_response(value):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def build_archive_payload(receipt: VfdReceipt) -> dict:
    return {
        "receipt_number": receipt.receipt_number,
        "receipt_type": receipt.receipt_type,
        "amount": receipt.amount,
        "currency": CURRENCY,
        "customer_name": receipt.customer_name,
        "customer_phone": receipt.customer_phone,
        "customer_email": receipt.customer_email,
        "payment_method": receipt.payment_method,
        "status": receipt.status,
        "issued_at": receipt.created_at.isoformat() if receipt.created_at else None,
        "metadata": {
            "model_type": receipt.model_type,
            "model_id": receipt.model_id,
            "vfd_response": _parsed_response(receipt.provider_response),
        },
    }


class ReceiptArchiveSync:
    """Pushes receipts to the archive and records the outcome on the row."""

    def __init__(
        self,
        session_factory,
        config=settings,
        transport: httpx.BaseTransport | None = None,
        service_name: str = "receipts",
        now=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.enabled = config.vfd_archive_enabled
        self.sandbox = config.vfd_sandbox
        self.endpoint = config.vfd_archive_endpoint.rstrip("/")
        self.api_key = config.vfd_archive_api_key
        self.verify_ssl = config.vfd_archive_verify_ssl
        self.transport = transport
        self.service_name = service_name
        self.now = now

    @property
    def active(self) -> bool:
        return self.enabled or self.sandbox

    def is_configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, verify=self.verify_ssl, transport=self.transport)

    def _finish(self, result: ArchiveResult, outcome: str) -> ArchiveResult:
        receipt_archive_sync_total.labels(service=self.service_name, result=outcome).inc()
        return result

    def _record_success(self, receipt_id: str) -> None:
        with self.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            if receipt.synced_to_archive_at is None:
                receipt.synced_to_archive_at = self.now()
            receipt.sync_error = None
            db.commit()

    def record_sync_error(self, receipt_id: str, error: str) -> None:
        with self.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            if receipt is None:
                return
            receipt.sync_error = error
            db.commit()

    def sync_to_archive(self, receipt_id: str) -> ArchiveResult:
        """Archive one receipt; failures are returned, never raised."""

        with self.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            if receipt is None:
                return self._finish(
                    ArchiveResult(success=False, message="Receipt not found", error_kind="not_found"),
                    "missing",
                )
            if receipt.synced_to_archive_at is not None:
                return self._finish(ArchiveResult(success=True, message="Receipt already archived"), "already_synced")
            payload = build_archive_payload(receipt)
            receipt_number = receipt.receipt_number

        if not self.active:
            return self._finish(ArchiveResult(success=True, message="Archive integration disabled"), "disabled")
        if self.sandbox:
            self._record_success(receipt_id)
            logger.info("receipt archived (sandbox) receipt_number=%s", receipt_number)
            return self._finish(
                ArchiveResult(success=True, message="Sandbox mode: receipt archive simulated", sandbox=True),
                "sandbox",
            )
        if not self.is_configured():
            return self._finish(
                ArchiveResult(success=False, message="Archive service not configured", error_kind="configuration"),
                "not_configured",
            )

        try:
            with self._client(ARCHIVE_TIMEOUT_SECONDS) as client:
                resp = client.post(
                    self.endpoint,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
            self.record_sync_error(receipt_id, error)
            logger.error("receipt archive sync error receipt_number=%s error=%s", receipt_number, error)
            return self._finish(
                ArchiveResult(
                    success=False,
                    message=f"Archive sync failed: {error}",
                    error_kind="transport",
                    exception=_exception_details(exc),
                ),
                "error",
            )

        if resp.is_success:
            self._record_success(receipt_id)
            logger.info("receipt archived receipt_number=%s status=%s", receipt_number, resp.status_code)
            return self._finish(ArchiveResult(success=True, message="Receipt synced to archive", status=resp.status_code), "synced")

        error = f"HTTP {resp.status_code}: {resp.text or 'No response body'}"
        self.record_sync_error(receipt_id, error)
        logger.error("receipt archive sync rejected receipt_number=%s error=%s", receipt_number, error)
        return self._finish(
            ArchiveResult(success=False, message=error, status=resp.status_code, error_kind="provider"),
            "failed",
        )

    def pending_receipt_ids(
        self,
        days: int = 7,
        limit: int = 100,
        retry_failed: bool = False,
        now: datetime | None = None,
    ) -> list[str]:
        """Generated, unsynced receipts from the last `days` days."""

        since = (now or self.now()) - timedelta(days=days)
        query = select(VfdReceipt.id).where(
            VfdReceipt.status == "generated",
            VfdReceipt.synced_to_archive_at.is_(None),
            VfdReceipt.deleted_at.is_(None),
            VfdReceipt.created_at >= since,
        )
        if retry_failed:
            query = query.where(VfdReceipt.sync_error.is_not(None))
        with self.session_factory() as db:
            return list(db.execute(query.order_by(VfdReceipt.created_at).limit(limit)).scalars().all())

    def sync_pending_receipts(self, days: int = 7, limit: int = 100, retry_failed: bool = False, dry_run: bool = False) -> dict:
        receipt_ids = self.pending_receipt_ids(days=days, limit=limit, retry_failed=retry_failed)
        summary = {"selected": len(receipt_ids), "synced": 0, "failed": 0, "dry_run": dry_run}
        if dry_run:
            return summary
        for receipt_id in receipt_ids:
            result = self.sync_to_archive(receipt_id)
            summary["synced" if result.success else "failed"] += 1
        logger.info(
            "receipt archive resync selected=%s synced=%s failed=%s",
            summary["selected"],
            summary["synced"],
            summary["failed"],
        )
        return summary

    def test_connection(self) -> dict:
        if self.sandbox:
            return {"success": True, "message": "Sandbox mode: Connection test skipped", "sandbox": True}
        if not self.is_configured():
            return {"success": False, "message": "Archive service not configured"}
        try:
            with self._client(HEALTH_TIMEOUT_SECONDS) as client:
                resp = client.get(f"{self.endpoint}/health", headers={"Authorization": f"Bearer {self.api_key}"})
        except httpx.HTTPError as exc:
            return {"success": False, "message": f"Connection failed: {exc}", "exception": _exception_details(exc)}
        if resp.is_success:
            return {"success": True, "message": "Archive connection successful", "status": resp.status_code}
        return {"success": False, "message": "Archive connection failed", "status": resp.status_code, "body": resp.text}


class ArchiveReceiptJob(JobHandler):
    """Queue job archiving one generated receipt."""

    kind = "receipts.archive"
    max_attempts = 3
    backoff_seconds = (60, 300, 900)

    def __init__(self, archive: ReceiptArchiveSync) -> None:
        self.archive = archive

    @classmethod
    def unique_key(cls, payload: dict) -> str | None:
        return f"vfd-archive-{payload['receipt_id']}"

    def handle(self, payload: dict) -> None:
        receipt_id = payload["receipt_id"]
        with self.archive.session_factory() as db:
            receipt = db.get(VfdReceipt, receipt_id)
            if receipt is None:
                logger.warning("archive job: receipt missing receipt_id=%s", receipt_id)
                return
            if receipt.synced_to_archive_at is not None:
                logger.info("archive job: already synced receipt_id=%s", receipt_id)
                return
            if receipt.status != "generated":
                logger.warning("archive job: receipt not generated receipt_id=%s status=%s", receipt_id, receipt.status)
                return
        result = self.archive.sync_to_archive(receipt_id)
        if result.success:
            return
        if result.error_kind == "configuration":
            raise NonRetryableJobError(result.message)
        raise RetryableJobError(result.message)

    def failed(self, payload: dict, error: str) -> None:
        receipt_id = payload["receipt_id"]
        logger.error("archive job exhausted receipt_id=%s error=%s", receipt_id, error)
        self.archive.record_sync_error(receipt_id, error)

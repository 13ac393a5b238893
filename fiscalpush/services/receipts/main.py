"""Receipt service API + worker lifecycle.

Consumes order-delivered and subscription-charged events, runs the
generation/archive job worker, and exposes operator endpoints.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException

from fiscalpush.common.config import settings
from fiscalpush.common.db import SessionLocal
from fiscalpush.common.http import enforce_api_key, install_metrics_middleware
from fiscalpush.common.jobs import JobRunner
from fiscalpush.common.logging import configure_logging
from fiscalpush.common.metrics import metrics_response
from fiscalpush.common.startup import log_startup_config
from fiscalpush.common.tracing import instrument_app, setup_tracing
from fiscalpush.services.receipts.archive import ReceiptArchiveSync
from fiscalpush.services.receipts.fiscal import FiscalAuthorityClient
from fiscalpush.services.receipts.schemas import ArchiveSyncRequest, ReceiptGenerateRequest, ReceiptRetryRequest
from fiscalpush.services.receipts.service import ReceiptService
from fiscalpush.services.receipts.sms import build_sms_gateway

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "ENVIRONMENT",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "VFD_SANDBOX",
        "VFD_BASE_URL",
        "VFD_API_KEY",
        "VFD_ARCHIVE_ENABLED",
        "VFD_ARCHIVE_ENDPOINT",
        "SMS_DEFAULT_PROVIDER",
    ],
)
archive = ReceiptArchiveSync(SessionLocal, service_name=settings.service_name)
service = ReceiptService(
    SessionLocal,
    FiscalAuthorityClient(settings),
    archive,
    sms_gateway=build_sms_gateway(settings),
    service_name=settings.service_name,
)
job_runner = JobRunner(
    SessionLocal,
    [service.generate_job, service.archive_job],
    service_name=settings.service_name,
    batch_size=settings.job_batch_size,
    processing_timeout_seconds=settings.job_processing_timeout_seconds,
    poll_interval_seconds=settings.job_poll_interval_seconds,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumers and the job worker with app lifecycle."""

    tasks = [
        asyncio.create_task(service.start_consumers()),
        asyncio.create_task(job_runner.run_forever()),
    ]
    yield
    for task in tasks:
        task.cancel()


app = FastAPI(title="fiscalpush Receipt Service", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app, settings.service_name)


@app.post("/receipts")
def generate_receipt(req: ReceiptGenerateRequest, x_api_key: str | None = Header(default=None)):
    """Issue a receipt synchronously; failures come back in the body."""

    enforce_api_key(x_api_key)
    result = service.generate_receipt(req.receipt_type, req.model_dump(exclude={"receipt_type"}))
    if result.error_kind == "validation":
        raise HTTPException(status_code=400, detail=result.message)
    return result


@app.get("/receipts/{receipt_id}")
def get_receipt(receipt_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    receipt = service.get_receipt(receipt_id)
    if receipt is None:
        raise HTTPException(status_code=404, detail="receipt not found")
    return receipt.to_dict()


@app.get("/subjects/{model_type}/{model_id}/receipt")
def get_subject_receipt(
    model_type: str,
    model_id: str,
    receipt_type: str | None = None,
    x_api_key: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    receipt = service.get_for_subject(model_type, model_id, receipt_type)
    if receipt is None:
        raise HTTPException(status_code=404, detail="receipt not found")
    return receipt.to_dict()


@app.post("/receipts/{receipt_id}/sms")
def resend_sms(receipt_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    sent = service.resend_receipt_sms(receipt_id)
    if sent is None:
        raise HTTPException(status_code=404, detail="receipt not found")
    return {"sent": sent}


@app.post("/receipts/{receipt_id}/archive")
def archive_receipt(receipt_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return archive.sync_to_archive(receipt_id)


@app.post("/ops/receipts/retry-failed")
def retry_failed(req: ReceiptRetryRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.retry_failed_receipts(limit=req.limit, dry_run=req.dry_run)


@app.post("/ops/receipts/sync-archive")
def sync_archive(req: ArchiveSyncRequest, x_api_key: str | None = Header(default=None)):
    """Push unsynced generated receipts to the archive now."""

    enforce_api_key(x_api_key)
    return archive.sync_pending_receipts(
        days=req.days,
        limit=req.limit,
        retry_failed=req.retry_failed,
        dry_run=req.dry_run,
    )


@app.get("/ops/receipts/summary")
def summary(hours: int = 24, status: str = "all", x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.receipt_summary(hours=hours, status=status)


@app.get("/ops/vfd/connection")
def vfd_connection(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"fiscal_authority": service.fiscal.test_connection(), "archive": archive.test_connection()}


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()

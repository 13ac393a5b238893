"""Archive sync: idempotence, sandbox, configuration gaps, HTTP outcomes."""

import json

import httpx
import pytest

from conftest import make_receipt

from fiscalpush.common.jobs import RetryableJobError
from fiscalpush.services.receipts.archive import ArchiveReceiptJob, ReceiptArchiveSync
from fiscalpush.services.receipts.models import VfdReceipt


def _get(session_factory, receipt_id):
    with session_factory() as db:
        return db.get(VfdReceipt, receipt_id)


@pytest.fixture
def archive_config(test_config):
    return test_config.model_copy(
        update={
            "vfd_sandbox": False,
            "vfd_archive_enabled": True,
            "vfd_archive_endpoint": "https://archive.example.test/api/receipts",
            "vfd_archive_api_key": "archive-key",
        }
    )


def test_sandbox_sync_stamps_and_is_idempotent(session_factory, test_config):
    receipt = make_receipt(session_factory, sync_error="old failure")
    archive = ReceiptArchiveSync(session_factory, config=test_config)

    first = archive.sync_to_archive(receipt.id)

    assert first.success is True
    assert first.sandbox is True
    stamped = _get(session_factory, receipt.id)
    assert stamped.synced_to_archive_at is not None
    assert stamped.sync_error is None

    second = archive.sync_to_archive(receipt.id)
    assert second.message == "Receipt already archived"
    assert _get(session_factory, receipt.id).synced_to_archive_at == stamped.synced_to_archive_at


def test_disabled_archive_is_a_no_op(session_factory, test_config):
    config = test_config.model_copy(update={"vfd_sandbox": False, "vfd_archive_enabled": False})
    receipt = make_receipt(session_factory)

    result = ReceiptArchiveSync(session_factory, config=config).sync_to_archive(receipt.id)

    assert result.success is True
    assert result.message == "Archive integration disabled"
    assert _get(session_factory, receipt.id).synced_to_archive_at is None


def test_missing_endpoint_is_a_configuration_failure(session_factory, archive_config):
    config = archive_config.model_copy(update={"vfd_archive_api_key": ""})
    receipt = make_receipt(session_factory)

    result = ReceiptArchiveSync(session_factory, config=config).sync_to_archive(receipt.id)

    assert result.success is False
    assert result.error_kind == "configuration"


def test_successful_post_sends_payload_and_stamps(session_factory, archive_config):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"stored": True})

    receipt = make_receipt(session_factory, provider_response=json.dumps({"receiptNumber": "TRA-9"}))
    archive = ReceiptArchiveSync(session_factory, config=archive_config, transport=httpx.MockTransport(handler))

    result = archive.sync_to_archive(receipt.id)

    assert result.success is True
    assert result.status == 200
    sent = json.loads(requests[0].content)
    assert requests[0].headers["Authorization"] == "Bearer archive-key"
    assert sent["receipt_number"] == "VFD-1700000000-1234"
    assert sent["currency"] == "TZS"
    assert sent["amount"] == 150000
    assert sent["metadata"] == {"model_type": "order", "model_id": "42", "vfd_response": {"receiptNumber": "TRA-9"}}
    assert _get(session_factory, receipt.id).synced_to_archive_at is not None


def test_rejected_post_records_sync_error(session_factory, archive_config):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text=""))
    receipt = make_receipt(session_factory)

    result = ReceiptArchiveSync(session_factory, config=archive_config, transport=transport).sync_to_archive(receipt.id)

    assert result.success is False
    assert result.message == "HTTP 500: No response body"
    stored = _get(session_factory, receipt.id)
    assert stored.sync_error == "HTTP 500: No response body"
    assert stored.status == "generated"
    assert stored.synced_to_archive_at is None


def test_transport_error_reports_exception_details(session_factory, archive_config):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    receipt = make_receipt(session_factory)
    archive = ReceiptArchiveSync(session_factory, config=archive_config, transport=httpx.MockTransport(handler))

    result = archive.sync_to_archive(receipt.id)

    assert result.error_kind == "transport"
    assert result.exception["type"] == "ConnectError"
    assert result.exception["message"] == "connection refused"
    assert _get(session_factory, receipt.id).sync_error == "connection refused"


def test_archive_job_skips_and_retries(session_factory, archive_config):
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
    archive = ReceiptArchiveSync(session_factory, config=archive_config, transport=transport)
    job = ArchiveReceiptJob(archive)
    pending = make_receipt(session_factory, receipt_number="VFD-P", model_id="1", status="pending")
    generated = make_receipt(session_factory)

    job.handle({"receipt_id": pending.id})
    job.handle({"receipt_id": "missing"})
    with pytest.raises(RetryableJobError, match="HTTP 502"):
        job.handle({"receipt_id": generated.id})

    job.failed({"receipt_id": generated.id}, "HTTP 502: bad gateway")
    assert _get(session_factory, generated.id).sync_error == "HTTP 502: bad gateway"
    assert _get(session_factory, generated.id).status == "generated"


def test_sync_pending_receipts_filters(session_factory, test_config):
    make_receipt(session_factory, receipt_number="VFD-A", model_id="1")
    make_receipt(session_factory, receipt_number="VFD-B", model_id="2", sync_error="HTTP 500")
    make_receipt(session_factory, receipt_number="VFD-C", model_id="3", status="failed")
    archive = ReceiptArchiveSync(session_factory, config=test_config)

    assert archive.sync_pending_receipts(retry_failed=True, dry_run=True)["selected"] == 1
    summary = archive.sync_pending_receipts()
    assert (summary["selected"], summary["synced"], summary["failed"]) == (2, 2, 0)
    assert archive.pending_receipt_ids() == []


def test_connection_check(archive_config, session_factory):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    archive = ReceiptArchiveSync(session_factory, config=archive_config, transport=transport)

    assert archive.test_connection()["success"] is True

"""End to end: order delivered event to archived fiscal receipt."""

import asyncio
from datetime import timedelta

from fiscalpush.common.db import utcnow
from fiscalpush.common.events import EventEnvelope
from fiscalpush.common.jobs import JobRunner
from fiscalpush.services.receipts.archive import ReceiptArchiveSync
from fiscalpush.services.receipts.fiscal import FiscalAuthorityClient
from fiscalpush.services.receipts.models import VfdReceipt
from fiscalpush.services.receipts.service import ReceiptService


def _delivered(order_id, delivery_fee=250000, event_id=None):
    fields = {
        "event_type": "orders.delivered",
        "aggregate_id": str(order_id),
        "payload": {
            "order_id": order_id,
            "delivery_fee": delivery_fee,
            "payment_method": "cash",
            "customer_name": "Juma",
            "customer_phone": "+255 712 345 678",
        },
    }
    if event_id:
        fields["event_id"] = event_id
    return EventEnvelope(**fields)


def _wire(session_factory, config):
    archive = ReceiptArchiveSync(session_factory, config=config)
    service = ReceiptService(session_factory, FiscalAuthorityClient(config), archive, config=config)
    runner = JobRunner(session_factory, [service.generate_job, service.archive_job], service_name="test")
    return service, runner


def test_order_delivered_to_archived_receipt(session_factory, test_config):
    """One receipt, generated with a URL, archived by the delayed job."""

    service, runner = _wire(session_factory, test_config)
    event = _delivered(1001, event_id="evt-1001")

    asyncio.run(service.handle_order_delivered(event))
    asyncio.run(service.handle_order_delivered(event))

    assert runner.run_once() == 1
    with session_factory() as db:
        (receipt,) = db.query(VfdReceipt).all()
    assert receipt.status == "generated"
    assert receipt.receipt_url
    assert receipt.amount == 250000
    assert receipt.synced_to_archive_at is None

    # Archive job is not due yet.
    assert runner.run_once() == 0
    assert runner.run_once(now=utcnow() + timedelta(minutes=2)) == 1

    with session_factory() as db:
        archived = db.get(VfdReceipt, receipt.id)
    assert archived.synced_to_archive_at is not None
    assert archived.sync_error is None


def test_order_without_delivery_fee_is_ignored(session_factory, test_config):
    service, runner = _wire(session_factory, test_config)

    asyncio.run(service.handle_order_delivered(_delivered(1002, delivery_fee=0)))

    assert runner.run_once() == 0


def test_subscription_charge_issues_subscription_receipt(session_factory, test_config):
    service, runner = _wire(session_factory, test_config)
    event = EventEnvelope(
        event_type="subscriptions.charged",
        aggregate_id="s-7",
        payload={"amount": 990000, "payment_method": "card"},
    )

    asyncio.run(service.handle_subscription_charged(event))
    runner.run_once()

    receipt = service.get_for_subject("subscription", "s-7", "subscription")
    assert receipt.status == "generated"
    assert receipt.customer_name == "Customer"

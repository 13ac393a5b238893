"""Kafka envelope + consumer helpers.

Domain services (orders, subscriptions) publish events that trigger push
notifications and fiscal receipts. This module standardizes the event
structure, metadata propagation, and the resilient consumer loop.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer
from pydantic import BaseModel, Field

from fiscalpush.common.config import settings
from fiscalpush.common.logging import event_id_ctx, logger, subject_id_ctx, trace_id_ctx
from fiscalpush.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape received from Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    payload: dict[str, Any]


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def _observe_queue_delay(topic: str, event: EventEnvelope) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def consume_forever(
    topic: str,
    group_id: str,
    handler,
) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; commit is
    done in batches to keep throughput reasonable.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            event = EventEnvelope(**json.loads(msg.value.decode("utf-8")))
                            _observe_queue_delay(topic, event)
                            trace_token = trace_id_ctx.set(event.trace_id or event.event_id)
                            event_token = event_id_ctx.set(event.event_id)
                            subject_token = subject_id_ctx.set(event.aggregate_id)
                            try:
                                logger.info(
                                    "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
                                    topic,
                                    group_id,
                                    event.event_type,
                                    event.aggregate_id,
                                )
                                await handler(event)
                            finally:
                                trace_id_ctx.reset(trace_token)
                                event_id_ctx.reset(event_token)
                                subject_id_ctx.reset(subject_token)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)

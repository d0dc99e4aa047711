"""Kafka envelope + producer/consumer helpers.

Every ledger event crosses Kafka in the same envelope; consumer loops restore
the trace/operation context before calling a handler.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from vouchpay.common.config import settings
from vouchpay.common.logging import bind_context, logger
from vouchpay.common.metrics import event_queue_delay_seconds

OPERATIONS_COMMITTED_TOPIC = "ledger.operations.committed"
SETTLEMENTS_CONFIRMED_TOPIC = "bank.settlements.confirmed"


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


def _observe_delay(topic: str, event: EventEnvelope) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def dispatch(topic: str, raw: bytes, handler) -> None:
    """Decode one message and run `handler` with correlation context set."""

    event = EventEnvelope(**json.loads(raw.decode("utf-8")))
    _observe_delay(topic, event)
    with bind_context(trace_id=event.trace_id, operation_id=event.aggregate_id):
        logger.info("event_received topic=%s event_type=%s aggregate_id=%s", topic, event.event_type, event.aggregate_id)
        await handler(event)


async def consume_forever(topic: str, group_id: str, handler) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; offsets
    are committed per batch.
    """

    while True:
        consumer = None
        try:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=settings.kafka_bootstrap_servers,
                group_id=group_id,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            await consumer.start()
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for messages in results.values():
                    for msg in messages:
                        try:
                            await dispatch(topic, msg.value, handler)
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

"""Transactional outbox helpers.

Rows are written in the same database transaction as the ledger mutation they
describe, then claimed and published by a background loop. Helpers take the
outbox model as an argument and only touch its `__table__`.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from vouchpay.common.events import EventEnvelope
from vouchpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(db, outbox_model, topic: str, event: EventEnvelope, aggregate_type: str = "operation") -> None:
    """Stage one envelope for publishing; it commits or rolls back with `db`."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=event.aggregate_id,
            event_type=event.event_type,
            topic=topic,
            payload=event.model_dump(),
            status=PENDING,
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending (or stale processing) rows for publishing.

    Uses `FOR UPDATE SKIP LOCKED` so concurrent publishers never claim the same
    row.
    """

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = or_(
        table.c.status == PENDING,
        (table.c.status == PROCESSING) & table.c.sent_at.is_not(None) & (table.c.sent_at < stale_before),
    )
    claim_ids = (
        select(table.c.id)
        .where(claimable)
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status=PROCESSING, sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def _set_status(db, outbox_model, event_id: str, status: str, sent_at) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=status, sent_at=sent_at)
    )


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    _set_status(db, outbox_model, event_id, SENT, datetime.now(timezone.utc))


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    _set_status(db, outbox_model, event_id, PENDING, None)


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest pending age."""

    table = outbox_model.__table__
    backlog = table.c.status.in_((PENDING, PROCESSING))
    pending_count, oldest_pending = db.execute(
        select(func.count(), func.min(table.c.created_at)).select_from(table).where(backlog)
    ).one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)

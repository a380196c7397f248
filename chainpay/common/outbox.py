"""Transactional outbox helpers.

Rows are written in the same database transaction as the state change they
describe and delivered to Kafka afterwards. Delivery is at-least-once; consumers
dedupe on `event_id`.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from chainpay.common.events import EventEnvelope, KafkaBus
from chainpay.common.logging import logger
from chainpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, event: EventEnvelope, aggregate_type: str) -> None:
    """Stage one envelope for publishing; committed with the caller's transaction."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=event.aggregate_id,
            event_type=event.event_type,
            topic=event.event_type,
            payload=event.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending/stale rows for publishing.

    Rows are locked with `SKIP LOCKED` so concurrent publishers never claim the
    same row; stale `PROCESSING` rows are reclaimed after the timeout.
    """

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    rows = db.execute(
        select(table.c.id, table.c.topic, table.c.payload)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()
    if rows:
        db.execute(
            update(table).where(table.c.id.in_([row.id for row in rows])).values(status="PROCESSING", sent_at=now)
        )
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_outbox_batch(session_factory, outbox_model, bus: KafkaBus, service_name: str, limit: int = 100) -> int:
    """Claim one batch, publish each row, and mark or requeue it. Returns rows sent."""

    with session_factory() as db:
        rows = claim_outbox_batch(db, outbox_model, limit=limit)
        update_outbox_backlog_metrics(db, outbox_model, service_name)
        db.commit()
    sent = 0
    for row in rows:
        try:
            await bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            with session_factory() as db:
                mark_outbox_sent(db, outbox_model, row["id"])
                update_outbox_backlog_metrics(db, outbox_model, service_name)
                db.commit()
            sent += 1
        except Exception as exc:
            logger.exception("outbox publish failed id=%s topic=%s: %s", row["id"], row["topic"], exc)
            with session_factory() as db:
                requeue_outbox_event(db, outbox_model, row["id"])
                update_outbox_backlog_metrics(db, outbox_model, service_name)
                db.commit()
    return sent

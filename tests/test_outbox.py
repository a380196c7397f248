"""Outbox delivery: sent rows are marked, failed rows go back to PENDING."""

import asyncio

from sqlalchemy import select

from chainpay.common.events import EventEnvelope
from chainpay.common.outbox import enqueue_event, publish_outbox_batch
from chainpay.services.deposits.models import OutboxEvent


class FakeBus:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.published.append((topic, event))


def stage(session_factory, aggregate_id="transfer-1"):
    with session_factory() as db:
        enqueue_event(
            db,
            OutboxEvent,
            EventEnvelope(event_type="deposits.credited", aggregate_id=aggregate_id, payload={"amount": "1.000000"}),
            aggregate_type="observed_transfer",
        )
        db.commit()


def statuses(session_factory):
    with session_factory() as db:
        return [row.status for row in db.execute(select(OutboxEvent)).scalars()]


def test_publish_marks_rows_sent(session_factory):
    stage(session_factory)
    bus = FakeBus()

    sent = asyncio.run(publish_outbox_batch(session_factory, OutboxEvent, bus, "deposit-scanner"))

    assert sent == 1
    topic, event = bus.published[0]
    assert topic == "deposits.credited"
    assert event.aggregate_id == "transfer-1"
    assert event.payload == {"amount": "1.000000"}
    assert statuses(session_factory) == ["SENT"]


def test_failed_publish_is_requeued(session_factory):
    stage(session_factory)

    sent = asyncio.run(publish_outbox_batch(session_factory, OutboxEvent, FakeBus(fail=True), "deposit-scanner"))

    assert sent == 0
    assert statuses(session_factory) == ["PENDING"]
    assert asyncio.run(publish_outbox_batch(session_factory, OutboxEvent, FakeBus(), "deposit-scanner")) == 1

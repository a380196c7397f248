"""Confirmation counting and forward-only status advancement."""

import pytest

from chainpay.services.deposits import store
from chainpay.services.deposits.chain import RawTransfer
from chainpay.services.deposits.confirmations import ConfirmationTracker, classify
from chainpay.services.deposits.models import ObservedTransfer

from conftest import SENDER, TREASURY


def record(session_factory, block_number: int, status: str = "PENDING") -> str:
    raw = RawTransfer(
        tx_hash="0x" + f"{block_number:064x}",
        log_index=0,
        from_address=SENDER,
        to_address=TREASURY,
        amount_units=1_000_000,
        block_number=block_number,
    )
    with session_factory() as db:
        transfer = store.insert_transfer(db, raw, None)
        transfer.status = status
        db.commit()
        return transfer.transfer_id


def load(session_factory, transfer_id: str) -> ObservedTransfer:
    with session_factory() as db:
        return db.get(ObservedTransfer, transfer_id)


@pytest.mark.parametrize(
    "confirmations,expected",
    [(0, "PENDING"), (5, "PENDING"), (6, "CONFIRMING"), (11, "CONFIRMING"), (12, "CONFIRMED"), (40, "CONFIRMED")],
)
def test_classify_boundaries(confirmations, expected):
    assert classify(confirmations, 6, 12) == expected


def test_pending_to_confirming_to_confirmed(session_factory):
    tracker = ConfirmationTracker(session_factory)
    transfer_id = record(session_factory, 995)

    tracker.advance(1000)
    transfer = load(session_factory, transfer_id)
    assert (transfer.status, transfer.confirmations) == ("PENDING", 5)

    tracker.advance(1002)
    transfer = load(session_factory, transfer_id)
    assert (transfer.status, transfer.confirmations) == ("CONFIRMING", 7)

    result = tracker.advance(1007)
    transfer = load(session_factory, transfer_id)
    assert (transfer.status, transfer.confirmations) == ("CONFIRMED", 12)
    assert result.newly_confirmed == [transfer_id]


def test_counts_persist_without_status_change(session_factory):
    tracker = ConfirmationTracker(session_factory)
    transfer_id = record(session_factory, 998)

    assert tracker.advance(1000).updated == 1
    assert tracker.advance(1001).updated == 1
    assert load(session_factory, transfer_id).confirmations == 3


def test_confirmations_never_decrease(session_factory):
    tracker = ConfirmationTracker(session_factory)
    transfer_id = record(session_factory, 990)

    tracker.advance(1000)
    # A lagging node reports a lower height.
    tracker.advance(994)
    transfer = load(session_factory, transfer_id)
    assert transfer.confirmations == 10
    assert transfer.status == "CONFIRMING"


def test_confirmed_and_credited_rows_are_left_alone(session_factory):
    tracker = ConfirmationTracker(session_factory)
    confirmed = record(session_factory, 900, status="CONFIRMED")
    credited = record(session_factory, 901, status="CREDITED")

    result = tracker.advance(1000)

    assert result.updated == 0
    assert load(session_factory, confirmed).status == "CONFIRMED"
    assert load(session_factory, credited).status == "CREDITED"

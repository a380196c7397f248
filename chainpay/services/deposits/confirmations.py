"""Confirmation depth tracking for observed, not-yet-credited transfers."""

from dataclasses import dataclass, field

from sqlalchemy import update

from chainpay.common.db import utcnow
from chainpay.common.logging import logger
from chainpay.common.state_machine import TRANSFER_PROGRESS, validate_transition
from chainpay.services.deposits import store
from chainpay.services.deposits.models import ObservedTransfer


def classify(confirmations: int, confirming_threshold: int, confirmation_threshold: int) -> str:
    if confirmations >= confirmation_threshold:
        return "CONFIRMED"
    if confirmations >= confirming_threshold:
        return "CONFIRMING"
    return "PENDING"


@dataclass
class TrackerResult:
    updated: int = 0
    newly_confirmed: list[str] = field(default_factory=list)


class ConfirmationTracker:
    """Recomputes confirmations and advances `PENDING -> CONFIRMING -> CONFIRMED`.

    Safe to run any number of times: counts are persisted on every pass but
    never lowered, and a transfer never moves back to an earlier state.
    """

    def __init__(self, session_factory, confirmation_threshold: int = 12, confirming_threshold: int = 6) -> None:
        self.session_factory = session_factory
        self.confirmation_threshold = confirmation_threshold
        self.confirming_threshold = confirming_threshold

    def target_status(self, current_status: str, confirmations: int) -> str:
        target = classify(confirmations, self.confirming_threshold, self.confirmation_threshold)
        if TRANSFER_PROGRESS[target] < TRANSFER_PROGRESS[current_status]:
            return current_status
        return target

    def advance(self, current_height: int) -> TrackerResult:
        result = TrackerResult()
        with self.session_factory() as db:
            for transfer in store.transfers_in_status(db, ("PENDING", "CONFIRMING")):
                confirmations = max(transfer.confirmations, current_height - transfer.block_number, 0)
                target = self.target_status(transfer.status, confirmations)
                if target != transfer.status:
                    validate_transition(transfer.status, target)
                # Guarded on the status we read: a concurrent pass may have moved it on.
                written = db.execute(
                    update(ObservedTransfer)
                    .where(
                        ObservedTransfer.transfer_id == transfer.transfer_id,
                        ObservedTransfer.status == transfer.status,
                        ObservedTransfer.confirmations <= confirmations,
                    )
                    .values(status=target, confirmations=confirmations, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                ).rowcount
                if written != 1:
                    logger.info("confirmation update skipped, row moved on tx_key=%s", transfer.natural_key)
                    continue
                if target != transfer.status:
                    logger.info(
                        "transfer_status_advanced tx_key=%s from=%s to=%s confirmations=%s",
                        transfer.natural_key,
                        transfer.status,
                        target,
                        confirmations,
                    )
                    if target == "CONFIRMED":
                        result.newly_confirmed.append(transfer.transfer_id)
                result.updated += 1
            db.commit()
        return result

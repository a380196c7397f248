"""Exactly-once crediting of confirmed transfers to user balances.

One credit is one database transaction: ledger entry insert, balance update,
transfer and intent status changes and the outbox event commit together or not
at all. The ledger's unique `idempotency_key` (`deposit:{txHash}:{logIndex}`)
is what makes the operation safe to retry or race: a second attempt fails on
the insert and is reported as "not applied".
"""

from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from chainpay.common.amounts import format_units
from chainpay.common.db import utcnow
from chainpay.common.events import EventEnvelope
from chainpay.common.logging import logger, trace_id_ctx
from chainpay.common.metrics import (
    credit_deferred_total,
    deposits_credited_total,
    deposits_credited_units_total,
)
from chainpay.common.outbox import enqueue_event
from chainpay.common.state_machine import INTENT_TRANSITIONS, can_transition, validate_transition
from chainpay.services.deposits import store
from chainpay.services.deposits.models import (
    DepositIntent,
    LedgerEntry,
    ObservedTransfer,
    OutboxEvent,
    UserAccount,
)


class StaleStateError(RuntimeError):
    """A guarded write found the row changed since it was read."""


@dataclass(frozen=True)
class CreditResult:
    applied: bool
    reason: str
    user_id: str | None = None
    balance_after_units: int | None = None


class CreditingEngine:
    """Applies one confirmed transfer to its owner's balance, at most once."""

    def __init__(self, session_factory, token_decimals: int = 6, service_name: str = "deposit-scanner") -> None:
        self.session_factory = session_factory
        self.token_decimals = token_decimals
        self.service_name = service_name

    def _resolve_user(self, db, transfer: ObservedTransfer) -> tuple[UserAccount | None, DepositIntent | None]:
        """Prefer the linked intent's owner, fall back to the sender's registered wallet."""

        intent = db.get(DepositIntent, transfer.deposit_intent_id) if transfer.deposit_intent_id else None
        if intent is not None:
            user = db.get(UserAccount, intent.user_id, with_for_update=True)
            if user is not None:
                return user, intent
        return store.find_user_by_wallet(db, transfer.from_address, for_update=True), intent

    def _defer(self, transfer_key: str, reason: str, **fields) -> CreditResult:
        credit_deferred_total.labels(service=self.service_name, reason=reason).inc()
        logger.info("deposit_credit_not_applied tx_key=%s reason=%s", transfer_key, reason)
        return CreditResult(applied=False, reason=reason, **fields)

    def credit(self, transfer_id: str) -> CreditResult:
        """Credit one `CONFIRMED` transfer.

        Returns `applied=False` (never raises) when the transfer is already
        credited, is not yet confirmed, has no resolvable owner, or lost a race
        on the idempotency key. Raises `LookupError` for an unknown transfer;
        any other exception rolls the whole unit back.
        """

        with self.session_factory() as db:
            transfer = db.get(ObservedTransfer, transfer_id, with_for_update=True)
            if transfer is None:
                raise LookupError(f"observed transfer not found: {transfer_id}")
            transfer_key = transfer.natural_key
            if transfer.status == "CREDITED":
                return self._defer(transfer_key, "already_credited")
            if transfer.status != "CONFIRMED":
                return self._defer(transfer_key, f"status_{transfer.status.lower()}")

            user, intent = self._resolve_user(db, transfer)
            if user is None:
                return self._defer(transfer_key, "unresolved_user")

            user_id = user.user_id
            idempotency_key = store.deposit_idempotency_key(transfer.tx_hash, transfer.log_index)
            previous_balance = user.balance_units
            new_balance = previous_balance + transfer.amount_units
            try:
                db.add(
                    LedgerEntry(
                        user_id=user_id,
                        entry_type="DEPOSIT",
                        amount_units=transfer.amount_units,
                        balance_after_units=new_balance,
                        reference_type="observed_transfer",
                        reference_id=transfer.transfer_id,
                        idempotency_key=idempotency_key,
                    )
                )
                db.flush()
            except IntegrityError:
                db.rollback()
                if store.ledger_entry_exists(db, idempotency_key):
                    return self._defer(transfer_key, "duplicate", user_id=user_id)
                raise

            self._apply(db, transfer, user, intent, previous_balance, new_balance)
            db.commit()

        deposits_credited_total.labels(service=self.service_name).inc()
        deposits_credited_units_total.labels(service=self.service_name).inc(transfer.amount_units)
        logger.info(
            "deposit_credited tx_key=%s user_id=%s amount_units=%s balance_after_units=%s",
            transfer_key,
            user_id,
            transfer.amount_units,
            new_balance,
        )
        return CreditResult(applied=True, reason="credited", user_id=user_id, balance_after_units=new_balance)

    def _apply(
        self,
        db,
        transfer: ObservedTransfer,
        user: UserAccount,
        intent: DepositIntent | None,
        previous_balance: int,
        new_balance: int,
    ) -> None:
        """Balance, status and outbox writes that share the ledger insert's transaction."""

        balance_rows = db.execute(
            update(UserAccount)
            .where(UserAccount.user_id == user.user_id, UserAccount.balance_units == previous_balance)
            .values(balance_units=new_balance)
            .execution_options(synchronize_session=False)
        ).rowcount
        if balance_rows != 1:
            raise StaleStateError(f"balance changed concurrently for user {user.user_id}")

        validate_transition(transfer.status, "CREDITED")
        credited_at = utcnow()
        transfer_rows = db.execute(
            update(ObservedTransfer)
            .where(ObservedTransfer.transfer_id == transfer.transfer_id, ObservedTransfer.status == "CONFIRMED")
            .values(status="CREDITED", credited_at=credited_at, updated_at=credited_at)
            .execution_options(synchronize_session=False)
        ).rowcount
        if transfer_rows != 1:
            raise StaleStateError(f"transfer {transfer.natural_key} left CONFIRMED concurrently")

        if intent is not None:
            if can_transition(intent.status, "CREDITED", INTENT_TRANSITIONS):
                db.execute(
                    update(DepositIntent)
                    .where(DepositIntent.intent_id == intent.intent_id, DepositIntent.status == intent.status)
                    .values(status="CREDITED")
                    .execution_options(synchronize_session=False)
                )
            else:
                logger.warning(
                    "linked intent not credited intent_id=%s status=%s tx_key=%s",
                    intent.intent_id,
                    intent.status,
                    transfer.natural_key,
                )

        enqueue_event(
            db,
            OutboxEvent,
            EventEnvelope(
                event_type="deposits.credited",
                aggregate_id=transfer.transfer_id,
                trace_id=trace_id_ctx.get(),
                payload={
                    "user_id": user.user_id,
                    "tx_hash": transfer.tx_hash,
                    "log_index": transfer.log_index,
                    "amount": format_units(transfer.amount_units, self.token_decimals),
                    "amount_units": str(transfer.amount_units),
                    "balance_after_units": str(new_balance),
                    "deposit_intent_id": transfer.deposit_intent_id,
                },
            ),
            aggregate_type="observed_transfer",
        )

"""Deposit store models.

This database is the source of truth for observed treasury transfers, deposit
intents, user balances, the append-only ledger, the scan cursor, and the
service-local outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from chainpay.common.db import Base, JSONPayload, TokenUnits, utcnow


class UserAccount(Base):
    """A user with an optional linked wallet and a materialized balance.

    `balance_units` caches the sum of the user's ledger entries; it is only ever
    written in the same transaction as the entry that changes it.
    """

    __tablename__ = "user_accounts"

    user_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    wallet_address: Mapped[str | None] = mapped_column(String(42), unique=True, nullable=True)
    balance_units: Mapped[int] = mapped_column(TokenUnits, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DepositIntent(Base):
    """A user's declared expectation of an incoming transfer."""

    __tablename__ = "deposit_intents"

    intent_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.user_id"), index=True)
    expected_amount_units: Mapped[int] = mapped_column(TokenUnits)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    # Python-side default: matching orders by this column and needs sub-second precision.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ObservedTransfer(Base):
    """One token transfer log addressed to the treasury."""

    __tablename__ = "observed_transfers"
    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_observed_transfer_natural_key"),)

    transfer_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tx_hash: Mapped[str] = mapped_column(String(66))
    log_index: Mapped[int] = mapped_column(Integer)
    from_address: Mapped[str] = mapped_column(String(42), index=True)
    to_address: Mapped[str] = mapped_column(String(42))
    amount_units: Mapped[int] = mapped_column(TokenUnits)
    block_number: Mapped[int] = mapped_column(BigInteger, index=True)
    block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    deposit_intent_id: Mapped[str | None] = mapped_column(
        ForeignKey("deposit_intents.intent_id"), nullable=True, unique=True
    )
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def natural_key(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"


class LedgerEntry(Base):
    """Immutable, append-only record of one balance change."""

    __tablename__ = "ledger_entries"

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.user_id"), index=True)
    entry_type: Mapped[str] = mapped_column(String, index=True)
    amount_units: Mapped[int] = mapped_column(TokenUnits)
    balance_after_units: Mapped[int] = mapped_column(TokenUnits)
    reference_type: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ScanCursor(Base):
    """Durable "last scanned block" per scanner name."""

    __tablename__ = "scan_cursors"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    last_scanned_block: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OutboxEvent(Base):
    """Events waiting to be published to Kafka by the scanner."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONPayload)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

"""Durable record of observed transfers, ledger entries and the scan cursor.

Uniqueness constraints do the deduplication: `(tx_hash, log_index)` for
transfers and `idempotency_key` for ledger entries. Helpers here take an open
session and never commit; the caller owns the transaction boundary.
"""

from sqlalchemy import case, func, select, update

from chainpay.services.deposits.chain import RawTransfer, normalize_address
from chainpay.services.deposits.models import LedgerEntry, ObservedTransfer, ScanCursor, UserAccount


SCANNER_CURSOR = "treasury-transfers"
TRANSFER_STATUSES = ("PENDING", "CONFIRMING", "CONFIRMED", "CREDITED", "REORGED")
LEDGER_ENTRY_TYPES = ("DEPOSIT", "PURCHASE", "REFUND", "ADJUSTMENT")


def deposit_idempotency_key(tx_hash: str, log_index: int) -> str:
    return f"deposit:{tx_hash}:{log_index}"


def find_transfer(db, tx_hash: str, log_index: int) -> ObservedTransfer | None:
    return db.execute(
        select(ObservedTransfer).where(
            ObservedTransfer.tx_hash == tx_hash,
            ObservedTransfer.log_index == log_index,
        )
    ).scalar_one_or_none()


def insert_transfer(db, raw: RawTransfer, deposit_intent_id: str | None) -> ObservedTransfer:
    """Stage a new `PENDING` transfer row; flushing surfaces natural-key conflicts."""

    transfer = ObservedTransfer(
        tx_hash=raw.tx_hash,
        log_index=raw.log_index,
        from_address=normalize_address(raw.from_address),
        to_address=normalize_address(raw.to_address),
        amount_units=raw.amount_units,
        block_number=raw.block_number,
        block_hash=raw.block_hash,
        confirmations=0,
        status="PENDING",
        deposit_intent_id=deposit_intent_id,
    )
    db.add(transfer)
    db.flush()
    return transfer


def transfers_in_status(db, statuses: tuple[str, ...]) -> list[ObservedTransfer]:
    return (
        db.execute(
            select(ObservedTransfer)
            .where(ObservedTransfer.status.in_(statuses))
            .order_by(ObservedTransfer.block_number, ObservedTransfer.log_index)
        )
        .scalars()
        .all()
    )


def find_user_by_wallet(db, address: str, for_update: bool = False) -> UserAccount | None:
    query = select(UserAccount).where(UserAccount.wallet_address == normalize_address(address))
    if for_update:
        query = query.with_for_update()
    return db.execute(query).scalar_one_or_none()


def ledger_entry_exists(db, idempotency_key: str) -> bool:
    return (
        db.execute(select(LedgerEntry.entry_id).where(LedgerEntry.idempotency_key == idempotency_key)).first()
        is not None
    )


# --- scan cursor ---------------------------------------------------------


def read_cursor(db, name: str = SCANNER_CURSOR) -> int | None:
    cursor = db.get(ScanCursor, name)
    return cursor.last_scanned_block if cursor else None


def max_observed_block(db) -> int | None:
    return db.execute(select(func.max(ObservedTransfer.block_number))).scalar_one()


def bootstrap_cursor(db, current_height: int, lookback_blocks: int) -> int:
    """Starting point for a deployment without a persisted cursor.

    Rewinds `lookback_blocks` from the newest recorded transfer, or from the
    chain head when nothing has been recorded yet.
    """

    anchor = max_observed_block(db)
    if anchor is None:
        anchor = current_height
    return max(0, anchor - lookback_blocks)


def advance_cursor(db, to_block: int, name: str = SCANNER_CURSOR) -> None:
    """Move the cursor forward to `to_block`; never moves it backward."""

    result = db.execute(
        update(ScanCursor)
        .where(ScanCursor.name == name, ScanCursor.last_scanned_block < to_block)
        .values(last_scanned_block=to_block)
    )
    if result.rowcount == 0 and db.get(ScanCursor, name) is None:
        db.add(ScanCursor(name=name, last_scanned_block=to_block))


# --- read-side queries ---------------------------------------------------


def list_transfers(db, status: str | None, page: int, limit: int) -> tuple[list[ObservedTransfer], int]:
    query = select(ObservedTransfer)
    count_query = select(func.count()).select_from(ObservedTransfer)
    if status:
        query = query.where(ObservedTransfer.status == status)
        count_query = count_query.where(ObservedTransfer.status == status)
    rows = (
        db.execute(
            query.order_by(ObservedTransfer.created_at.desc(), ObservedTransfer.transfer_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return rows, db.execute(count_query).scalar_one()


def transfer_summary(db) -> dict:
    """Counts per transfer status plus the total credited amount in base units."""

    counts = {status: 0 for status in TRANSFER_STATUSES}
    for status, count in db.execute(
        select(ObservedTransfer.status, func.count()).group_by(ObservedTransfer.status)
    ).all():
        counts[status] = int(count)
    total_credited = db.execute(
        select(func.coalesce(func.sum(ObservedTransfer.amount_units), 0)).where(
            ObservedTransfer.status == "CREDITED"
        )
    ).scalar_one()
    return {"counts": counts, "total_credited_units": int(total_credited)}


def list_ledger_entries(db, entry_type: str | None, page: int, limit: int) -> tuple[list[LedgerEntry], int]:
    query = select(LedgerEntry)
    count_query = select(func.count()).select_from(LedgerEntry)
    if entry_type:
        query = query.where(LedgerEntry.entry_type == entry_type)
        count_query = count_query.where(LedgerEntry.entry_type == entry_type)
    rows = (
        db.execute(
            query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.entry_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return rows, db.execute(count_query).scalar_one()


def balance_report(db, limit: int = 1000) -> tuple[int, list[dict]]:
    """Check `balance == sum(ledger amounts)` for every user.

    Returns the number of users checked and the ones that disagree.
    """

    ledger_sum = func.coalesce(func.sum(LedgerEntry.amount_units), 0)
    rows = db.execute(
        select(
            UserAccount.user_id,
            UserAccount.balance_units,
            ledger_sum.label("ledger_units"),
            func.count(LedgerEntry.entry_id).label("entry_count"),
            func.sum(case((LedgerEntry.entry_type == "DEPOSIT", 1), else_=0)).label("deposit_count"),
        )
        .outerjoin(LedgerEntry, LedgerEntry.user_id == UserAccount.user_id)
        .group_by(UserAccount.user_id, UserAccount.balance_units)
        .order_by(UserAccount.user_id)
        .limit(limit)
    ).all()
    mismatched = [
        {
            "user_id": row.user_id,
            "balance_units": int(row.balance_units),
            "ledger_units": int(row.ledger_units or 0),
            "entry_count": int(row.entry_count or 0),
            "deposit_count": int(row.deposit_count or 0),
        }
        for row in rows
        if int(row.balance_units) != int(row.ledger_units or 0)
    ]
    return len(rows), mismatched

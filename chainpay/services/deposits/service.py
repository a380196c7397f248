"""Deposit reconciliation passes and the read/write operations around them.

One pass: read chain height, fetch treasury transfers for the next block
window, record them idempotently (binding deposit intents), advance
confirmations for every open transfer, credit everything confirmed, and only
then move the durable scan cursor. A pass that dies midway leaves the cursor
where it was; the next pass re-reads an overlapping window, which is harmless
because every write is keyed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from math import ceil
from time import perf_counter
from uuid import uuid4

import redis
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from chainpay.common.amounts import format_units, to_base_units
from chainpay.common.config import CommonSettings, settings as default_settings
from chainpay.common.db import as_utc, utcnow
from chainpay.common.events import KafkaBus
from chainpay.common.logging import logger, pass_id_ctx, transfer_key_ctx
from chainpay.common.metrics import (
    blocks_scanned_total,
    chain_height_block,
    confirmations_updated_total,
    credit_errors_total,
    reorgs_detected_total,
    rpc_errors_total,
    scan_cursor_block,
    scan_pass_duration_seconds,
    scan_passes_total,
    transfer_record_errors_total,
    transfers_observed_total,
)
from chainpay.common.outbox import publish_outbox_batch
from chainpay.common.state_machine import validate_transition
from chainpay.common.tracing import tracer
from chainpay.services.deposits import matcher, store
from chainpay.services.deposits.chain import ChainReadError, ChainReader, RawTransfer, normalize_address
from chainpay.services.deposits.confirmations import ConfirmationTracker
from chainpay.services.deposits.crediting import CreditingEngine
from chainpay.services.deposits.models import DepositIntent, ObservedTransfer, OutboxEvent, UserAccount
from chainpay.services.deposits.schemas import (
    AdminDepositsResponse,
    AdminLedgerResponse,
    BalanceMismatch,
    DepositHistoryItem,
    DepositInstructionsResponse,
    DepositIntentResponse,
    DepositStatusResponse,
    DepositSummary,
    LedgerEntryView,
    Pagination,
    ReconciliationResponse,
    ScanPassResult,
    TransferView,
)


DEPOSIT_WARNINGS = [
    "Send only the configured token on the configured network",
    "Wrong network or token = permanent loss",
    "Verify address character-by-character",
    "Transaction is irreversible",
]
OPEN_TRANSFER_STATUSES = ("PENDING", "CONFIRMING", "CONFIRMED")


class RateLimitedError(Exception):
    """Too many deposit intents for one user in the current window."""


class DepositScanService:
    """Owns the scan cursor, the reconciliation pass and deposit queries."""

    def __init__(
        self,
        session_factory,
        reader=None,
        rdb=None,
        app_settings: CommonSettings | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = app_settings or default_settings
        self.service_name = service_name or self.settings.service_name
        self._reader = reader
        self.rdb = rdb if rdb is not None else redis.Redis.from_url(self.settings.redis_url, decode_responses=True)
        self.kafka = KafkaBus()
        self.tracker = ConfirmationTracker(
            session_factory,
            confirmation_threshold=self.settings.confirmation_threshold,
            confirming_threshold=self.settings.confirming_threshold,
        )
        self.engine = CreditingEngine(
            session_factory,
            token_decimals=self.settings.token_decimals,
            service_name=self.service_name,
        )

    @property
    def reader(self):
        if self._reader is None:
            self._reader = ChainReader(
                self.settings.rpc_url,
                self.settings.token_contract,
                timeout_seconds=self.settings.rpc_timeout_seconds,
            )
        return self._reader

    def _units(self, units: int) -> str:
        return format_units(units, self.settings.token_decimals)

    # --- reconciliation pass ---------------------------------------------

    def run_pass(self) -> ScanPassResult:
        """Run one reconciliation pass.

        Raises `ChainReadError` when the node is unreachable; nothing durable
        beyond already-committed keyed inserts has happened at that point.
        """

        pass_id = str(uuid4())
        pass_token = pass_id_ctx.set(pass_id)
        started = perf_counter()
        outcome = "error"
        try:
            with tracer.start_as_current_span("deposit_scan_pass") as span:
                result = self._run_pass(pass_id)
                span.set_attribute("deposit.pass_status", result.status)
                span.set_attribute("deposit.newly_credited", result.newly_credited)
            outcome = result.status
            return result
        except ChainReadError as exc:
            outcome = "rpc_error"
            logger.warning("scan_pass_aborted rpc_error=%s", exc)
            raise
        finally:
            scan_passes_total.labels(service=self.service_name, outcome=outcome).inc()
            scan_pass_duration_seconds.labels(service=self.service_name).observe(perf_counter() - started)
            pass_id_ctx.reset(pass_token)

    def _run_pass(self, pass_id: str) -> ScanPassResult:
        problems = self.settings.configuration_errors()
        if problems:
            logger.error("scan_pass_refused not_configured reasons=%s", "; ".join(problems))
            return ScanPassResult(status="not_configured", pass_id=pass_id)

        treasury = normalize_address(self.settings.treasury_address)
        height = self._read_height()
        chain_height_block.labels(service=self.service_name).set(height)

        with self.session_factory() as db:
            expired = matcher.expire_stale_intents(db)
            last_scanned = store.read_cursor(db)
            if last_scanned is None:
                last_scanned = store.bootstrap_cursor(db, height, self.settings.scan_lookback_blocks)
                logger.info("scan_cursor_bootstrapped block=%s height=%s", last_scanned, height)
            db.commit()
        if expired:
            logger.info("deposit_intents_expired count=%s", expired)

        from_block = last_scanned + 1
        # One-block buffer below the head; cap the window per pass.
        to_block = min(height - 1, from_block + self.settings.scan_chunk_blocks - 1)
        if from_block > to_block:
            logger.info("scan_pass_idle from_block=%s height=%s", from_block, height)
            return ScanPassResult(status="idle", pass_id=pass_id, chain_height=height, expired_intents=expired)

        try:
            raw_transfers = self.reader.transfers_to(treasury, from_block, to_block)
        except ChainReadError:
            rpc_errors_total.labels(service=self.service_name, operation="get_logs").inc()
            raise

        new_transfers = record_errors = 0
        first_failed_block = None
        for raw in raw_transfers:
            if normalize_address(raw.to_address) != treasury:
                logger.warning("transfer ignored, not to treasury tx_key=%s to=%s", raw.natural_key, raw.to_address)
                continue
            try:
                if self._record_transfer(raw):
                    new_transfers += 1
            except Exception as exc:
                record_errors += 1
                transfer_record_errors_total.labels(service=self.service_name).inc()
                logger.exception(
                    "transfer_record_failed tx_key=%s block=%s error=%s", raw.natural_key, raw.block_number, exc
                )
                if first_failed_block is None or raw.block_number < first_failed_block:
                    first_failed_block = raw.block_number

        # The cursor must stay below any transfer that was not recorded so the next pass re-reads it.
        if first_failed_block is not None:
            to_block = min(to_block, first_failed_block - 1)

        tracked = self.tracker.advance(height)
        credited, reorged, credit_errors = self._credit_confirmed()
        if to_block >= from_block:
            self._advance_cursor(to_block)

        blocks_scanned = max(to_block - from_block + 1, 0)
        blocks_scanned_total.labels(service=self.service_name).inc(blocks_scanned)
        transfers_observed_total.labels(service=self.service_name).inc(new_transfers)
        confirmations_updated_total.labels(service=self.service_name).inc(tracked.updated)
        logger.info(
            "scan_pass_complete blocks=%s-%s height=%s new_transfers=%s confirmations_updated=%s "
            "newly_confirmed=%s credited=%s reorged=%s credit_errors=%s record_errors=%s",
            from_block,
            to_block,
            height,
            new_transfers,
            tracked.updated,
            len(tracked.newly_confirmed),
            credited,
            reorged,
            credit_errors,
            record_errors,
        )
        return ScanPassResult(
            status="ok",
            pass_id=pass_id,
            chain_height=height,
            from_block=from_block,
            to_block=to_block,
            blocks_scanned=blocks_scanned,
            new_transfers=new_transfers,
            confirmations_updated=tracked.updated,
            newly_credited=credited,
            reorged=reorged,
            credit_errors=credit_errors,
            record_errors=record_errors,
            expired_intents=expired,
        )

    def _read_height(self) -> int:
        try:
            return self.reader.current_height()
        except ChainReadError:
            rpc_errors_total.labels(service=self.service_name, operation="block_number").inc()
            raise

    def _record_transfer(self, raw: RawTransfer) -> bool:
        """Insert one observed transfer keyed by `(tx_hash, log_index)`.

        Returns False when the transfer was already recorded. A matched intent
        is bound and moved to `DETECTED` in the same transaction.
        """

        key_token = transfer_key_ctx.set(raw.natural_key)
        try:
            with self.session_factory() as db:
                if store.find_transfer(db, raw.tx_hash, raw.log_index) is not None:
                    return False
                intent = matcher.find_pending_intent(db, raw.from_address)
                try:
                    store.insert_transfer(db, raw, intent.intent_id if intent else None)
                    if intent is not None:
                        matcher.mark_detected(db, intent)
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    if store.find_transfer(db, raw.tx_hash, raw.log_index) is not None:
                        logger.info("transfer already recorded tx_key=%s", raw.natural_key)
                        return False
                    # The intent was bound to another transfer concurrently; keep this one unassigned.
                    logger.info("intent bind lost, recording unassigned tx_key=%s", raw.natural_key)
                    intent = None
                    store.insert_transfer(db, raw, None)
                    db.commit()
            logger.info(
                "transfer_observed tx_key=%s from=%s amount_units=%s block=%s intent_id=%s",
                raw.natural_key,
                raw.from_address,
                raw.amount_units,
                raw.block_number,
                intent.intent_id if intent else None,
            )
            return True
        finally:
            transfer_key_ctx.reset(key_token)

    def _credit_confirmed(self) -> tuple[int, int, int]:
        """Credit every `CONFIRMED` transfer, including ones deferred by earlier passes."""

        with self.session_factory() as db:
            candidates = [
                (t.transfer_id, t.natural_key, t.block_number, t.block_hash)
                for t in store.transfers_in_status(db, ("CONFIRMED",))
            ]

        credited = reorged = errors = 0
        for transfer_id, natural_key, block_number, block_hash in candidates:
            key_token = transfer_key_ctx.set(natural_key)
            try:
                if self._flag_if_reorged(transfer_id, natural_key, block_number, block_hash):
                    reorged += 1
                    continue
                if self.engine.credit(transfer_id).applied:
                    credited += 1
            except ChainReadError as exc:
                rpc_errors_total.labels(service=self.service_name, operation="get_block").inc()
                logger.warning("credit deferred, block check failed tx_key=%s block=%s error=%s", natural_key, block_number, exc)
            except Exception as exc:
                errors += 1
                credit_errors_total.labels(service=self.service_name).inc()
                logger.exception("deposit_credit_failed tx_key=%s block=%s error=%s", natural_key, block_number, exc)
            finally:
                transfer_key_ctx.reset(key_token)
        return credited, reorged, errors

    def _flag_if_reorged(self, transfer_id: str, natural_key: str, block_number: int, block_hash: str | None) -> bool:
        """Compare the recorded block hash with the canonical one at that height.

        A mismatch moves the transfer to the terminal `REORGED` state.
        """

        if not block_hash:
            return False
        canonical = self.reader.block_hash(block_number)
        if canonical is None:
            raise ChainReadError(f"block {block_number} not available from node")
        if canonical == block_hash.lower():
            return False

        validate_transition("CONFIRMED", "REORGED")
        with self.session_factory() as db:
            rows = db.execute(
                update(ObservedTransfer)
                .where(ObservedTransfer.transfer_id == transfer_id, ObservedTransfer.status == "CONFIRMED")
                .values(status="REORGED", updated_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        if rows == 1:
            reorgs_detected_total.labels(service=self.service_name).inc()
            logger.warning(
                "transfer_reorged tx_key=%s block=%s recorded_hash=%s canonical_hash=%s",
                natural_key,
                block_number,
                block_hash,
                canonical,
            )
        return rows == 1

    def _advance_cursor(self, to_block: int) -> None:
        with self.session_factory() as db:
            try:
                store.advance_cursor(db, to_block)
                db.commit()
            except IntegrityError:
                # A concurrent pass created the cursor row first.
                db.rollback()
                store.advance_cursor(db, to_block)
                db.commit()
        scan_cursor_block.labels(service=self.service_name).set(to_block)

    async def run_forever(self) -> None:
        """Run passes on a fixed interval; a failed pass is a skipped interval."""

        while True:
            try:
                await asyncio.to_thread(self.run_pass)
            except asyncio.CancelledError:
                raise
            except ChainReadError as exc:
                logger.warning("scan_pass_skipped rpc_unavailable error=%s", exc)
            except Exception as exc:
                logger.exception("scan_pass_failed error=%s", exc)
            await asyncio.sleep(self.settings.scan_interval_seconds)

    async def outbox_publisher(self) -> None:
        """Continuously publish credited-deposit events to Kafka."""

        while True:
            try:
                await publish_outbox_batch(self.session_factory, OutboxEvent, self.kafka, self.service_name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("outbox publisher iteration failed: %s", exc)
            await asyncio.sleep(0.5)

    # --- deposit intents -------------------------------------------------

    def _within_intent_rate(self, user_id: str) -> bool:
        """Fixed hourly window per user; fails open when Redis is unavailable."""

        hour_key = datetime.now(timezone.utc).strftime("%Y%m%d%H")
        key = f"deposit_intents:{user_id}:{hour_key}"
        try:
            count = self.rdb.incr(key)
            self.rdb.expire(key, 7200)
        except Exception as exc:
            logger.warning("intent_rate_limit_unavailable user_id=%s error=%s", user_id, exc)
            return True
        return int(count) <= self.settings.deposit_intent_rate_per_hour

    def _intent_view(self, intent: DepositIntent) -> DepositIntentResponse:
        return DepositIntentResponse(
            intent_id=intent.intent_id,
            user_id=intent.user_id,
            expected_amount=self._units(intent.expected_amount_units),
            status=intent.status,
            created_at=as_utc(intent.created_at),
            expires_at=as_utc(intent.expires_at),
        )

    def _transfer_view(self, transfer: ObservedTransfer, confirmations: int | None = None) -> TransferView:
        return TransferView(
            transfer_id=transfer.transfer_id,
            tx_hash=transfer.tx_hash,
            log_index=transfer.log_index,
            from_address=transfer.from_address,
            amount=self._units(transfer.amount_units),
            block_number=transfer.block_number,
            confirmations=transfer.confirmations if confirmations is None else confirmations,
            status=transfer.status,
            credited_at=as_utc(transfer.credited_at),
            created_at=as_utc(transfer.created_at),
        )

    def create_intent(self, user_id: str, amount: Decimal) -> DepositInstructionsResponse:
        """Register a deposit intent and return the transfer instructions."""

        units = to_base_units(amount, self.settings.token_decimals)
        if units <= 0:
            raise ValueError("amount must be positive")
        with self.session_factory() as db:
            if db.get(UserAccount, user_id) is None:
                raise LookupError(f"user not found: {user_id}")
            if not self._within_intent_rate(user_id):
                raise RateLimitedError("too many deposit requests, please wait")
            intent = DepositIntent(
                user_id=user_id,
                expected_amount_units=units,
                status="PENDING",
                expires_at=utcnow() + timedelta(seconds=self.settings.deposit_intent_ttl_seconds),
            )
            db.add(intent)
            db.commit()
        logger.info("deposit_intent_created intent_id=%s user_id=%s amount_units=%s", intent.intent_id, user_id, units)
        return DepositInstructionsResponse(
            **self._intent_view(intent).model_dump(),
            deposit_address=normalize_address(self.settings.treasury_address),
            chain_id=self.settings.chain_id,
            token_contract=self.settings.token_contract,
            warnings=DEPOSIT_WARNINGS,
        )

    def intent_history(self, user_id: str, limit: int = 20) -> list[DepositHistoryItem]:
        with self.session_factory() as db:
            intents = (
                db.execute(
                    select(DepositIntent)
                    .where(DepositIntent.user_id == user_id)
                    .order_by(DepositIntent.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            items = []
            for intent in intents:
                transfers = (
                    db.execute(select(ObservedTransfer).where(ObservedTransfer.deposit_intent_id == intent.intent_id))
                    .scalars()
                    .all()
                )
                items.append(
                    DepositHistoryItem(
                        **self._intent_view(intent).model_dump(),
                        transactions=[self._transfer_view(t) for t in transfers],
                    )
                )
            return items

    def deposit_status(self, intent_id: str) -> DepositStatusResponse:
        """Intent status with live confirmation counts for its open transfers.

        Falls back to the stored counts when the node cannot be reached.
        """

        with self.session_factory() as db:
            intent = db.get(DepositIntent, intent_id)
            if intent is None:
                raise LookupError(f"deposit intent not found: {intent_id}")
            transfers = (
                db.execute(
                    select(ObservedTransfer)
                    .where(ObservedTransfer.deposit_intent_id == intent_id)
                    .order_by(ObservedTransfer.created_at.desc())
                )
                .scalars()
                .all()
            )

        height = None
        if any(t.status in OPEN_TRANSFER_STATUSES for t in transfers):
            try:
                height = self.reader.current_height()
            except ChainReadError as exc:
                logger.warning("live confirmations unavailable intent_id=%s error=%s", intent_id, exc)
        views = []
        for transfer in transfers:
            confirmations = None
            if height is not None and transfer.status in OPEN_TRANSFER_STATUSES:
                confirmations = max(transfer.confirmations, height - transfer.block_number)
            views.append(self._transfer_view(transfer, confirmations))
        return DepositStatusResponse(
            deposit_intent=self._intent_view(intent),
            transactions=views,
            confirmation_threshold=self.settings.confirmation_threshold,
        )

    # --- operator views --------------------------------------------------

    def admin_deposits(self, status: str | None = None, page: int = 1, limit: int = 50) -> AdminDepositsResponse:
        if status and status not in store.TRANSFER_STATUSES:
            raise ValueError(f"unknown transfer status: {status}")
        with self.session_factory() as db:
            rows, total = store.list_transfers(db, status, page, limit)
            summary = store.transfer_summary(db)
        counts = summary["counts"]
        return AdminDepositsResponse(
            deposits=[self._transfer_view(t) for t in rows],
            summary=DepositSummary(
                pending=counts["PENDING"],
                confirming=counts["CONFIRMING"],
                confirmed=counts["CONFIRMED"],
                credited=counts["CREDITED"],
                reorged=counts["REORGED"],
                total_credited=self._units(summary["total_credited_units"]),
            ),
            pagination=Pagination(page=page, limit=limit, total=total, pages=ceil(total / limit)),
        )

    def admin_ledger(self, entry_type: str | None = None, page: int = 1, limit: int = 50) -> AdminLedgerResponse:
        if entry_type and entry_type not in store.LEDGER_ENTRY_TYPES:
            raise ValueError(f"unknown ledger entry type: {entry_type}")
        with self.session_factory() as db:
            rows, total = store.list_ledger_entries(db, entry_type, page, limit)
        return AdminLedgerResponse(
            transactions=[
                LedgerEntryView(
                    entry_id=e.entry_id,
                    user_id=e.user_id,
                    entry_type=e.entry_type,
                    amount=self._units(e.amount_units),
                    balance_after=self._units(e.balance_after_units),
                    reference_type=e.reference_type,
                    reference_id=e.reference_id,
                    idempotency_key=e.idempotency_key,
                    created_at=as_utc(e.created_at),
                )
                for e in rows
            ],
            pagination=Pagination(page=page, limit=limit, total=total, pages=ceil(total / limit)),
        )

    def reconciliation(self, limit: int = 1000) -> ReconciliationResponse:
        """Report users whose cached balance disagrees with their ledger sum."""

        with self.session_factory() as db:
            checked, mismatched = store.balance_report(db, limit=limit)
        if mismatched:
            logger.error("balance_invariant_violated users=%s", [m["user_id"] for m in mismatched])
        return ReconciliationResponse(
            users_checked=checked,
            mismatched_count=len(mismatched),
            mismatched_users=[
                BalanceMismatch(
                    user_id=m["user_id"],
                    balance=self._units(m["balance_units"]),
                    ledger_total=self._units(m["ledger_units"]),
                    entry_count=m["entry_count"],
                    deposit_count=m["deposit_count"],
                )
                for m in mismatched
            ],
        )

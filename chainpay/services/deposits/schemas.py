"""API request/response schemas for the deposit scanner."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class DepositIntentCreateRequest(BaseModel):
    """Declared expectation of an incoming transfer."""

    user_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)


class DepositIntentResponse(BaseModel):
    intent_id: str
    user_id: str
    expected_amount: str
    status: str
    created_at: datetime | None
    expires_at: datetime


class DepositInstructionsResponse(DepositIntentResponse):
    """Intent plus everything the user needs to send the transfer."""

    deposit_address: str
    chain_id: int
    token_contract: str
    warnings: list[str]


class TransferView(BaseModel):
    transfer_id: str
    tx_hash: str
    log_index: int
    from_address: str
    amount: str
    block_number: int
    confirmations: int
    status: str
    credited_at: datetime | None
    created_at: datetime | None


class DepositStatusResponse(BaseModel):
    deposit_intent: DepositIntentResponse
    transactions: list[TransferView]
    confirmation_threshold: int


class DepositHistoryItem(DepositIntentResponse):
    transactions: list[TransferView]


class DepositHistoryResponse(BaseModel):
    deposits: list[DepositHistoryItem]


class ScanPassResult(BaseModel):
    """Statistics of one reconciliation pass."""

    status: str
    pass_id: str
    chain_height: int | None = None
    from_block: int | None = None
    to_block: int | None = None
    blocks_scanned: int = 0
    new_transfers: int = 0
    confirmations_updated: int = 0
    newly_credited: int = 0
    reorged: int = 0
    credit_errors: int = 0
    record_errors: int = 0
    expired_intents: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DepositSummary(BaseModel):
    pending: int
    confirming: int
    confirmed: int
    credited: int
    reorged: int
    total_credited: str


class AdminDepositsResponse(BaseModel):
    deposits: list[TransferView]
    summary: DepositSummary
    pagination: Pagination


class LedgerEntryView(BaseModel):
    entry_id: str
    user_id: str
    entry_type: str
    amount: str
    balance_after: str
    reference_type: str | None
    reference_id: str | None
    idempotency_key: str
    created_at: datetime | None


class AdminLedgerResponse(BaseModel):
    transactions: list[LedgerEntryView]
    pagination: Pagination


class BalanceMismatch(BaseModel):
    user_id: str
    balance: str
    ledger_total: str
    entry_count: int
    deposit_count: int


class ReconciliationResponse(BaseModel):
    users_checked: int
    mismatched_count: int
    mismatched_users: list[BalanceMismatch]

"""Association of incoming transfers with pending deposit intents.

Matching is by sender wallet only: the newest non-expired `PENDING` intent of
the user whose wallet sent the transfer wins. Amounts are not compared.
"""

from datetime import datetime

from sqlalchemy import select, update

from chainpay.common.db import utcnow
from chainpay.common.logging import logger
from chainpay.common.state_machine import INTENT_TRANSITIONS, validate_transition
from chainpay.services.deposits.chain import normalize_address
from chainpay.services.deposits.models import DepositIntent, ObservedTransfer, UserAccount


def find_pending_intent(db, sender_address: str, now: datetime | None = None) -> DepositIntent | None:
    """Return the most recently created matchable intent for `sender_address`."""

    now = now or utcnow()
    already_bound = select(ObservedTransfer.deposit_intent_id).where(ObservedTransfer.deposit_intent_id.is_not(None))
    return (
        db.execute(
            select(DepositIntent)
            .join(UserAccount, UserAccount.user_id == DepositIntent.user_id)
            .where(
                UserAccount.wallet_address == normalize_address(sender_address),
                DepositIntent.status == "PENDING",
                DepositIntent.expires_at > now,
                DepositIntent.intent_id.not_in(already_bound),
            )
            .order_by(DepositIntent.created_at.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def mark_detected(db, intent: DepositIntent) -> bool:
    """Move a bound intent `PENDING -> DETECTED`.

    Guarded on the current status so a concurrent transition wins cleanly;
    returns False when the intent had already moved on.
    """

    validate_transition(intent.status, "DETECTED", INTENT_TRANSITIONS)
    result = db.execute(
        update(DepositIntent)
        .where(DepositIntent.intent_id == intent.intent_id, DepositIntent.status == "PENDING")
        .values(status="DETECTED")
    )
    if result.rowcount != 1:
        logger.info("intent already transitioned intent_id=%s", intent.intent_id)
        return False
    intent.status = "DETECTED"
    return True


def expire_stale_intents(db, now: datetime | None = None) -> int:
    """Move every `PENDING` intent past its expiry to `EXPIRED`; returns the count."""

    now = now or utcnow()
    result = db.execute(
        update(DepositIntent)
        .where(DepositIntent.status == "PENDING", DepositIntent.expires_at <= now)
        .values(status="EXPIRED")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

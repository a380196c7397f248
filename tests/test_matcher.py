"""Sender-based matching of transfers to deposit intents."""

from datetime import timedelta

from chainpay.common.db import utcnow
from chainpay.services.deposits import matcher
from chainpay.services.deposits.models import DepositIntent

from conftest import OTHER_SENDER, SENDER


def test_most_recent_pending_intent_wins(session_factory, make_user, make_intent):
    user_id = make_user()
    make_intent(user_id, created_offset_seconds=-120)
    newest = make_intent(user_id, created_offset_seconds=-10)

    with session_factory() as db:
        intent = matcher.find_pending_intent(db, SENDER.upper().replace("0X", "0x"))
    assert intent.intent_id == newest


def test_no_match_for_unknown_sender(session_factory, make_user, make_intent):
    make_intent(make_user())
    with session_factory() as db:
        assert matcher.find_pending_intent(db, OTHER_SENDER) is None


def test_expired_and_detected_intents_are_not_matched(session_factory, make_user, make_intent):
    user_id = make_user()
    make_intent(user_id, ttl_seconds=-5)
    make_intent(user_id, status="DETECTED")
    with session_factory() as db:
        assert matcher.find_pending_intent(db, SENDER) is None


def test_mark_detected_is_guarded(session_factory, make_user, make_intent):
    intent_id = make_intent(make_user())
    with session_factory() as db:
        intent = db.get(DepositIntent, intent_id)
        assert matcher.mark_detected(db, intent) is True
        db.commit()
    with session_factory() as db:
        assert db.get(DepositIntent, intent_id).status == "DETECTED"


def test_expire_stale_intents(session_factory, make_user, make_intent):
    user_id = make_user()
    stale = make_intent(user_id, ttl_seconds=-60)
    fresh = make_intent(user_id)
    with session_factory() as db:
        assert matcher.expire_stale_intents(db, now=utcnow() + timedelta(seconds=1)) == 1
        db.commit()
    with session_factory() as db:
        assert db.get(DepositIntent, stale).status == "EXPIRED"
        assert db.get(DepositIntent, fresh).status == "PENDING"

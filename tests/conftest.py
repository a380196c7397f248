"""Shared fixtures: in-memory deposit store, fake chain node and fake Redis."""

import os

# Settings are read once at import time.
os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SCANNER_ENABLED", "false")
os.environ.setdefault("TREASURY_ADDRESS", "0x" + "ab" * 20)

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chainpay.common.config import CommonSettings
from chainpay.common.db import Base, utcnow
from chainpay.services.deposits.chain import ChainReadError, RawTransfer
from chainpay.services.deposits.models import DepositIntent, UserAccount
from chainpay.services.deposits.service import DepositScanService


TREASURY = "0x" + "ab" * 20
SENDER = "0x" + "11" * 20
OTHER_SENDER = "0x" + "22" * 20


class FakeChainReader:
    """In-process stand-in for the node: a height, some logs, some block hashes."""

    def __init__(self, height: int = 1000) -> None:
        self.height = height
        self.transfers: list[RawTransfer] = []
        self.block_hashes: dict[int, str] = {}
        self.fail = False
        self.calls: list[tuple] = []

    def add(self, tx_hash: str, block_number: int, amount_units: int, sender: str = SENDER, log_index: int = 0,
            block_hash: str | None = None, to_address: str = TREASURY) -> RawTransfer:
        raw = RawTransfer(
            tx_hash=tx_hash,
            log_index=log_index,
            from_address=sender,
            to_address=to_address,
            amount_units=amount_units,
            block_number=block_number,
            block_hash=block_hash,
        )
        self.transfers.append(raw)
        return raw

    def current_height(self) -> int:
        self.calls.append(("current_height",))
        if self.fail:
            raise ChainReadError("connection refused")
        return self.height

    def transfers_to(self, address: str, from_block: int, to_block: int) -> list[RawTransfer]:
        self.calls.append(("transfers_to", address, from_block, to_block))
        if self.fail:
            raise ChainReadError("connection refused")
        return [t for t in self.transfers if from_block <= t.block_number <= to_block and t.to_address == address]

    def block_hash(self, block_number: int) -> str | None:
        self.calls.append(("block_hash", block_number))
        if self.fail:
            raise ChainReadError("connection refused")
        return self.block_hashes.get(block_number)


class FakeRedis:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.fail = False

    def incr(self, key: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key: str, seconds: int) -> bool:
        return True


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def app_settings():
    return CommonSettings(
        postgres_dsn="sqlite://",
        api_key="test-api-key",
        treasury_address=TREASURY,
        otel_enabled=False,
        scanner_enabled=False,
    )


@pytest.fixture
def service(session_factory, chain, fake_redis, app_settings):
    return DepositScanService(session_factory, reader=chain, rdb=fake_redis, app_settings=app_settings)


@pytest.fixture
def make_user(session_factory):
    def _make(wallet: str | None = SENDER, balance_units: int = 0) -> str:
        with session_factory() as db:
            user = UserAccount(wallet_address=wallet.lower() if wallet else None, balance_units=balance_units)
            db.add(user)
            db.commit()
            return user.user_id

    return _make


@pytest.fixture
def make_intent(session_factory):
    def _make(user_id: str, amount_units: int = 1_000_000, created_offset_seconds: int = 0,
              ttl_seconds: int = 3600, status: str = "PENDING") -> str:
        now = utcnow()
        with session_factory() as db:
            intent = DepositIntent(
                user_id=user_id,
                expected_amount_units=amount_units,
                status=status,
                created_at=now + timedelta(seconds=created_offset_seconds),
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            db.add(intent)
            db.commit()
            return intent.intent_id

    return _make

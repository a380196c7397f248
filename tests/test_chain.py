"""Transfer log decoding and RPC failure wrapping."""

from types import SimpleNamespace

import pytest
from hexbytes import HexBytes

from chainpay.services.deposits.chain import (
    TRANSFER_TOPIC,
    ChainReadError,
    ChainReader,
    address_topic,
    decode_transfer_log,
)

from conftest import SENDER, TREASURY


TOKEN = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
TX_HASH = "0x" + "5a" * 32
BLOCK_HASH = "0x" + "c3" * 32


def transfer_log(amount_units: int, sender: str = SENDER, recipient: str = TREASURY, **extra) -> dict:
    log = {
        "address": TOKEN,
        "topics": [HexBytes(TRANSFER_TOPIC), HexBytes(address_topic(sender)), HexBytes(address_topic(recipient))],
        "data": HexBytes(amount_units.to_bytes(32, "big")),
        "transactionHash": HexBytes(TX_HASH),
        "logIndex": 3,
        "blockNumber": 985,
        "blockHash": HexBytes(BLOCK_HASH),
    }
    log.update(extra)
    return log


class FakeEth:
    def __init__(self, logs=None, error: Exception | None = None) -> None:
        self.logs = logs or []
        self.error = error
        self.filters = []
        self.block_number = 1000

    def get_logs(self, params):
        self.filters.append(params)
        if self.error:
            raise self.error
        return self.logs

    def get_block(self, number):
        if self.error:
            raise self.error
        return {"hash": HexBytes(BLOCK_HASH), "number": number}


def test_decode_transfer_log_reads_exact_amount():
    raw = decode_transfer_log(transfer_log(123_456_789_012_345))
    assert raw.tx_hash == TX_HASH
    assert raw.log_index == 3
    assert raw.from_address == SENDER
    assert raw.to_address == TREASURY
    assert raw.amount_units == 123_456_789_012_345
    assert raw.block_number == 985
    assert raw.block_hash == BLOCK_HASH
    assert raw.natural_key == f"{TX_HASH}:3"


def test_decode_rejects_non_transfer_logs():
    log = transfer_log(1)
    log["topics"] = [HexBytes("0x" + "00" * 32)] + log["topics"][1:]
    with pytest.raises(ValueError):
        decode_transfer_log(log)


def test_address_topic_is_left_padded():
    topic = address_topic("0x" + "AB" * 20)
    assert len(topic) == 66
    assert topic.endswith("ab" * 20)


def test_transfers_to_filters_on_treasury_and_skips_removed_logs():
    eth = FakeEth(logs=[transfer_log(5), transfer_log(7, removed=True)])
    reader = ChainReader("http://node", TOKEN, w3=SimpleNamespace(eth=eth))

    transfers = reader.transfers_to(TREASURY, 900, 999)

    assert [t.amount_units for t in transfers] == [5]
    params = eth.filters[0]
    assert params["fromBlock"] == 900
    assert params["toBlock"] == 999
    assert params["topics"] == [TRANSFER_TOPIC, None, address_topic(TREASURY)]


def test_rpc_failures_become_chain_read_errors():
    reader = ChainReader("http://node", TOKEN, w3=SimpleNamespace(eth=FakeEth(error=TimeoutError("timed out"))))
    with pytest.raises(ChainReadError):
        reader.transfers_to(TREASURY, 1, 2)
    with pytest.raises(ChainReadError):
        reader.block_hash(10)


def test_current_height_and_block_hash():
    reader = ChainReader("http://node", TOKEN, w3=SimpleNamespace(eth=FakeEth()))
    assert reader.current_height() == 1000
    assert reader.block_hash(985) == BLOCK_HASH

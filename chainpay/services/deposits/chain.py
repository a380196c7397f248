"""Read-only access to the token contract's transfer logs over JSON-RPC.

The reader holds no state between calls. Every RPC failure is raised as
`ChainReadError`; callers skip the pass and retry on the next tick.
"""

from dataclasses import dataclass

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BlockNotFound

from chainpay.common.logging import logger


# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class ChainReadError(Exception):
    """Retryable failure talking to the chain node."""


@dataclass(frozen=True)
class RawTransfer:
    """One decoded ERC-20 `Transfer` log. Addresses are lowercase."""

    tx_hash: str
    log_index: int
    from_address: str
    to_address: str
    amount_units: int
    block_number: int
    block_hash: str | None = None

    @property
    def natural_key(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"


def normalize_address(address: str) -> str:
    return address.strip().lower()


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte indexed topic."""

    return "0x" + "0" * 24 + normalize_address(address)[2:]


def _topic_address(topic) -> str:
    return "0x" + bytes(HexBytes(topic))[-20:].hex()


def decode_transfer_log(log) -> RawTransfer:
    """Decode a raw `eth_getLogs` entry for the `Transfer` event.

    `value` is the unindexed 32-byte data word; it is read as an exact integer.
    """

    topics = log["topics"]
    if len(topics) < 3 or Web3.to_hex(HexBytes(topics[0])) != TRANSFER_TOPIC:
        raise ValueError(f"not an ERC-20 Transfer log: tx={log.get('transactionHash')!r}")
    block_hash = log.get("blockHash")
    return RawTransfer(
        tx_hash=Web3.to_hex(HexBytes(log["transactionHash"])).lower(),
        log_index=int(log["logIndex"]),
        from_address=_topic_address(topics[1]),
        to_address=_topic_address(topics[2]),
        amount_units=int.from_bytes(bytes(HexBytes(log["data"])), "big"),
        block_number=int(log["blockNumber"]),
        block_hash=Web3.to_hex(HexBytes(block_hash)).lower() if block_hash is not None else None,
    )


class ChainReader:
    """Stateless wrapper over the node RPC for one ERC-20 token."""

    def __init__(self, rpc_url: str, token_contract: str, timeout_seconds: int = 30, w3: Web3 | None = None) -> None:
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self.token_contract = Web3.to_checksum_address(token_contract)

    def current_height(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as exc:
            raise ChainReadError(f"eth_blockNumber failed: {exc}") from exc

    def transfers_to(self, address: str, from_block: int, to_block: int) -> list[RawTransfer]:
        """Return every token transfer to `address` within `[from_block, to_block]`."""

        try:
            logs = self.w3.eth.get_logs(
                {
                    "address": self.token_contract,
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [TRANSFER_TOPIC, None, address_topic(address)],
                }
            )
        except Exception as exc:
            raise ChainReadError(f"eth_getLogs failed blocks={from_block}-{to_block}: {exc}") from exc

        transfers = []
        for log in logs:
            if log.get("removed"):
                logger.warning("removed log skipped tx=%s", log.get("transactionHash"))
                continue
            transfers.append(decode_transfer_log(log))
        return transfers

    def block_hash(self, block_number: int) -> str | None:
        """Canonical hash of `block_number`, or None if the node has no such block."""

        try:
            block = self.w3.eth.get_block(block_number)
        except BlockNotFound:
            return None
        except Exception as exc:
            raise ChainReadError(f"eth_getBlockByNumber failed block={block_number}: {exc}") from exc
        if block is None or block.get("hash") is None:
            return None
        return Web3.to_hex(HexBytes(block["hash"])).lower()

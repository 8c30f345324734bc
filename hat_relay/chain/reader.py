"""
Chain access over JSON-RPC.

The authorization checker and the identifier predictor only ever need
``eth_call`` against the latest block, so that is the whole reader surface.
Deploying a missing Safe additionally needs contract code lookups and one
signed transaction, which the writer adds. Tests substitute any object with
matching coroutines.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from web3 import AsyncHTTPProvider, AsyncWeb3

from hat_relay.chain.schema import EncodedCall

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT_SECONDS = 120


class TransactionReverted(Exception):
    """Raised when a mined transaction reports a failed status."""


class ChainReader(Protocol):
    async def call(self, call: EncodedCall) -> bytes:
        """Execute ``call`` without a transaction and return the raw return data."""
        ...


class TransactionSigner(Protocol):
    address: str

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        """Return the raw signed transaction bytes."""
        ...


class ChainWriter(ChainReader, Protocol):
    async def get_code(self, address: str) -> bytes:
        ...

    async def transact(self, call: EncodedCall, signer: TransactionSigner) -> str:
        """Send ``call`` signed by ``signer``, wait for the receipt, return the tx hash."""
        ...


class Web3ChainReader:
    """``eth_call`` over JSON-RPC using web3's async HTTP provider."""

    def __init__(self, rpc_url: str) -> None:
        self.rpc_url = rpc_url
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))

    async def call(self, call: EncodedCall) -> bytes:
        result = await self.w3.eth.call(
            {"to": call.to, "data": call.data_hex, "value": call.value}
        )
        logger.debug(
            "eth_call %s on %s returned %d bytes",
            call.function_name or call.data_hex[:10],
            call.to,
            len(result),
        )
        return bytes(result)


class Web3ChainWriter(Web3ChainReader):
    """Adds code lookups and signed EIP-1559 transactions to the reader."""

    def __init__(self, rpc_url: str, chain_id: int) -> None:
        super().__init__(rpc_url)
        self.chain_id = chain_id

    async def get_code(self, address: str) -> bytes:
        return bytes(await self.w3.eth.get_code(address))

    async def transact(self, call: EncodedCall, signer: TransactionSigner) -> str:
        gas_price = await self.w3.eth.gas_price
        tx: dict[str, Any] = {
            "from": signer.address,
            "to": call.to,
            "data": call.data_hex,
            "value": call.value,
            "nonce": await self.w3.eth.get_transaction_count(signer.address),
            "maxFeePerGas": gas_price * 2,
            "maxPriorityFeePerGas": gas_price,
            "chainId": self.chain_id,
        }
        tx["gas"] = await self.w3.eth.estimate_gas(tx)

        tx_hash = await self.w3.eth.send_raw_transaction(signer.sign_transaction(tx))
        tx_hex = "0x" + bytes(tx_hash).hex()
        logger.info("Sent %s to %s: %s", call.function_name or "transaction", call.to, tx_hex)

        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS
        )
        if receipt["status"] != 1:
            raise TransactionReverted(f"Transaction {tx_hex} reverted")
        logger.info("Transaction %s mined, gas used %d", tx_hex, receipt["gasUsed"])
        return tx_hex

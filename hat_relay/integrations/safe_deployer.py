"""
Hat Relay — Safe deployment for owners without a Safe.

A proposal needs a Safe whose sole owner is the acting identity. When the
Transaction Service knows of none, one is deployed through the
SafeProxyFactory with that identity as the only owner and threshold one.

The address is derived with CREATE2 before anything is sent, so a Safe
deployed earlier (and perhaps not yet indexed by the service) is picked up
again instead of being deployed twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from eth_abi import encode
from eth_abi.packed import encode_packed
from web3 import Web3

from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.reader import ChainWriter, TransactionSigner
from hat_relay.chain.schema import ZERO_ADDRESS, normalize_address

logger = logging.getLogger(__name__)


def create2_address(deployer: str, salt: bytes, init_code: bytes) -> str:
    """Address of a contract created with CREATE2 (EIP-1014)."""
    deployer = normalize_address(deployer, "deployer")
    digest = Web3.keccak(
        b"\xff" + bytes.fromhex(deployer[2:]) + salt + Web3.keccak(init_code)
    )
    return normalize_address("0x" + bytes(digest[12:]).hex())


@dataclass(frozen=True)
class SafeState:
    """Owners, threshold and nonce of a deployed Safe, read from the chain."""

    address: str
    owners: tuple[str, ...]
    threshold: int
    nonce: int


class SafeDeployer:
    """
    Deploys single-owner, threshold-one Safes at deterministic addresses.

    Usage:
        deployer = SafeDeployer(chain, signer, factory, singleton, handler)
        address = await deployer.deploy(owner)
        state = await deployer.read_state(address)
    """

    def __init__(
        self,
        chain: ChainWriter,
        signer: TransactionSigner,
        proxy_factory_address: str,
        singleton_address: str,
        fallback_handler_address: str,
        salt_nonce: int = 0,
        encoder: CallEncoder | None = None,
    ) -> None:
        self.chain = chain
        self.signer = signer
        self.proxy_factory_address = normalize_address(
            proxy_factory_address, "proxy_factory_address"
        )
        self.singleton_address = normalize_address(singleton_address, "singleton_address")
        self.fallback_handler_address = normalize_address(
            fallback_handler_address, "fallback_handler_address"
        )
        self.salt_nonce = salt_nonce
        self.encoder = encoder or CallEncoder()

    def initializer(self, owner: str) -> bytes:
        """``setup`` call run by the new proxy: one owner, threshold one, no modules."""
        return self.encoder.encode_arguments(
            "setup",
            [
                [owner],
                1,
                ZERO_ADDRESS,
                b"",
                self.fallback_handler_address,
                ZERO_ADDRESS,
                0,
                ZERO_ADDRESS,
            ],
        )

    async def predict_address(self, owner: str) -> str:
        code_call = self.encoder.encode(self.proxy_factory_address, "proxyCreationCode", [])
        (creation_code,) = self.encoder.decode_result(
            "proxyCreationCode", await self.chain.call(code_call)
        )
        salt = Web3.keccak(
            encode_packed(
                ["bytes32", "uint256"],
                [Web3.keccak(self.initializer(owner)), self.salt_nonce],
            )
        )
        init_code = bytes(creation_code) + encode(
            ["uint256"], [int(self.singleton_address, 16)]
        )
        return create2_address(self.proxy_factory_address, bytes(salt), init_code)

    async def is_deployed(self, address: str) -> bool:
        return len(await self.chain.get_code(address)) > 0

    async def deploy(self, owner: str) -> str:
        """
        Return the address of ``owner``'s Safe, deploying it first if it has no code.

        Raises:
            RuntimeError: if the deployment transaction left no code at the
                predicted address.
        """
        owner = normalize_address(owner, "owner")
        address = await self.predict_address(owner)
        if await self.is_deployed(address):
            logger.info("Safe %s for owner %s is already deployed", address, owner)
            return address

        call = self.encoder.encode(
            self.proxy_factory_address,
            "createProxyWithNonce",
            [self.singleton_address, self.initializer(owner), self.salt_nonce],
        )
        tx_hash = await self.chain.transact(call, self.signer)
        if not await self.is_deployed(address):
            raise RuntimeError(
                f"Deployment transaction {tx_hash} left no code at predicted Safe {address}"
            )
        logger.info("Safe deployed: owner=%s safe=%s tx=%s", owner, address, tx_hash)
        return address

    async def read_state(self, address: str) -> SafeState:
        address = normalize_address(address, "safe")
        values = {}
        for function_name in ("getOwners", "getThreshold", "nonce"):
            call = self.encoder.encode(address, function_name, [])
            (values[function_name],) = self.encoder.decode_result(
                function_name, await self.chain.call(call)
            )
        return SafeState(
            address=address,
            owners=tuple(values["getOwners"]),
            threshold=values["getThreshold"],
            nonce=values["nonce"],
        )

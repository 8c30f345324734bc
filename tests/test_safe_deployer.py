"""
Tests for Safe deployment.

Validates:
- CREATE2 address derivation
- Deterministic per-owner Safe address from the factory, singleton and salt
- createProxyWithNonce with a single-owner, threshold-one setup
- No second deployment when code already exists
"""

from __future__ import annotations

import asyncio

import pytest
from eth_abi import encode
from eth_abi.packed import encode_packed
from web3 import Web3

from fakes import DEV_KEY, OWNER, FakeChain, make_settings
from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.schema import ZERO_ADDRESS
from hat_relay.integrations.safe_deployer import SafeDeployer, create2_address
from hat_relay.integrations.safe_relay import LocalAccountSigner


class TestCreate2Address:
    def test_zero_deployer_zero_salt(self):
        """Matches the first worked example of EIP-1014."""
        address = create2_address(ZERO_ADDRESS, b"\x00" * 32, b"\x00")
        assert address.lower() == "0x4d1a2e2bb4f88f0250f26ffff098b0b30b26bf38"

    def test_deployer_changes_address(self):
        """Matches the second worked example of EIP-1014."""
        address = create2_address(
            "0xdeadbeef00000000000000000000000000000000", b"\x00" * 32, b"\x00"
        )
        assert address.lower() == "0xb928f69bb1d91cd65274e3c79d8986362984fda3"


class TestSafeDeployer:
    def setup_method(self):
        self.config = make_settings()
        self.signer = LocalAccountSigner(DEV_KEY)
        self.owner = self.signer.address
        self.chain = FakeChain(owners=[self.owner])
        self.encoder = CallEncoder()

    def _deployer(self, chain: FakeChain | None = None, salt_nonce: int = 0) -> SafeDeployer:
        return SafeDeployer(
            chain or self.chain,
            self.signer,
            proxy_factory_address=self.config.safe_proxy_factory_address,
            singleton_address=self.config.safe_singleton_address,
            fallback_handler_address=self.config.safe_fallback_handler_address,
            salt_nonce=salt_nonce,
        )

    def test_initializer_is_single_owner_setup(self):
        """The proxy is set up with the owner alone, threshold one, and the fallback handler."""
        name, args = self.encoder.decode_call(self._deployer().initializer(self.owner))
        assert name == "setup"
        assert args == (
            (self.owner,),
            1,
            ZERO_ADDRESS,
            b"",
            Web3.to_checksum_address(self.config.safe_fallback_handler_address),
            ZERO_ADDRESS,
            0,
            ZERO_ADDRESS,
        )

    def test_predicted_address_follows_factory_derivation(self):
        """Salt hashes the initializer with the nonce; init code appends the singleton."""
        deployer = self._deployer(salt_nonce=7)
        salt = Web3.keccak(
            encode_packed(
                ["bytes32", "uint256"], [Web3.keccak(deployer.initializer(self.owner)), 7]
            )
        )
        init_code = self.chain.creation_code + encode(
            ["uint256"], [int(self.config.safe_singleton_address, 16)]
        )
        expected = create2_address(self.config.safe_proxy_factory_address, bytes(salt), init_code)
        assert asyncio.run(deployer.predict_address(self.owner)) == expected

    def test_prediction_depends_on_owner_and_salt(self):
        """Different owners or salt nonces get different Safes."""
        first = asyncio.run(self._deployer().predict_address(self.owner))
        assert first == asyncio.run(self._deployer().predict_address(self.owner))
        assert first != asyncio.run(self._deployer().predict_address(OWNER))
        assert first != asyncio.run(self._deployer(salt_nonce=1).predict_address(self.owner))

    def test_deploy_sends_create_proxy_with_nonce(self):
        """A Safe with no code is deployed through the proxy factory by the signer."""
        deployer = self._deployer(salt_nonce=3)
        address = asyncio.run(deployer.deploy(self.owner.lower()))

        assert address == asyncio.run(deployer.predict_address(self.owner))
        (call, sender), = self.chain.transactions
        assert sender == self.owner
        assert call.to == Web3.to_checksum_address(self.config.safe_proxy_factory_address)
        name, (singleton, initializer, salt_nonce) = self.encoder.decode_call(call.data)
        assert name == "createProxyWithNonce"
        assert singleton == Web3.to_checksum_address(self.config.safe_singleton_address)
        assert initializer == deployer.initializer(self.owner)
        assert salt_nonce == 3

    def test_existing_safe_not_redeployed(self):
        """Code at the predicted address means the Safe is reused as is."""
        chain = FakeChain(owners=[self.owner], deployed=True)
        deployer = self._deployer(chain)
        address = asyncio.run(deployer.deploy(self.owner))
        assert address == asyncio.run(deployer.predict_address(self.owner))
        assert chain.transactions == []

    def test_missing_code_after_deployment(self):
        """A transaction that leaves no code at the predicted address is an error."""

        class SilentChain(FakeChain):
            async def transact(self, call, signer):
                self.transactions.append((call, signer.address))
                return "0x" + "ee" * 32

        chain = SilentChain(owners=[self.owner])
        with pytest.raises(RuntimeError, match="no code"):
            asyncio.run(self._deployer(chain).deploy(self.owner))

    def test_read_state(self):
        """Owners, threshold and nonce are read from the Safe itself."""
        chain = FakeChain(owners=[self.owner], threshold=1, nonce=4, deployed=True)
        deployer = self._deployer(chain)
        address = asyncio.run(deployer.predict_address(self.owner))
        state = asyncio.run(deployer.read_state(address))
        assert state.address == address
        assert state.owners == (self.owner,)
        assert state.threshold == 1
        assert state.nonce == 4

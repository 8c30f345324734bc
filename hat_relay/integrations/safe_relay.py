"""
Hat Relay — Safe multisig relay integration.

Batch Composer & Proposer for the assign-hat workflow. Composes an ordered
list of calls into one Safe transaction (MultiSendCallOnly when there is
more than one call), signs its EIP-712 hash with the acting owner's key and
proposes it to the Safe Transaction Service for collective sign-off. An
owner without a Safe gets one deployed first (see safe_deployer).

This is the only place the workflow crosses into state-changing territory.
The relay either accepts the whole batch or the submission fails as a
unit; signature collection and execution belong to the Safe itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

import httpx
from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_account import Account
from web3 import Web3

from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.errors import EncodingFailed, ProposalSubmissionFailed
from hat_relay.chain.schema import (
    ZERO_ADDRESS,
    EncodedCall,
    Proposal,
    ProposalHandle,
    SafeOperation,
    normalize_address,
)
from hat_relay.integrations.safe_deployer import SafeDeployer

logger = logging.getLogger(__name__)

DOMAIN_SEPARATOR_TYPEHASH = Web3.keccak(
    text="EIP712Domain(uint256 chainId,address verifyingContract)"
)
SAFE_TX_TYPEHASH = Web3.keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,"
        "uint256 safeTxGas,uint256 baseGas,uint256 gasPrice,address gasToken,"
        "address refundReceiver,uint256 nonce)"
    )
)


class Signer(Protocol):
    address: str

    def sign_hash(self, message_hash: bytes) -> bytes:
        """Return a 65-byte ECDSA signature (r || s || v) over ``message_hash``."""
        ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        ...


class LocalAccountSigner:
    """Signs Safe transaction hashes (and Safe deployments) with a locally held key."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)
        self.address = normalize_address(self._account.address, "signer")

    def sign_hash(self, message_hash: bytes) -> bytes:
        signed = self._account.unsafe_sign_hash(message_hash)
        return bytes(signed.signature)

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return bytes(self._account.sign_transaction(tx).raw_transaction)


@dataclass(frozen=True)
class SafeSession:
    """A Safe whose only owner is the acting identity, threshold one."""

    safe_address: str
    owners: tuple[str, ...]
    threshold: int
    nonce: int


@dataclass(frozen=True)
class SafeTransaction:
    to: str
    value: int
    data: bytes
    operation: SafeOperation
    nonce: int
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS


def pack_multisend(calls: Iterable[EncodedCall]) -> bytes:
    """MultiSend packing: ``uint8 op | address to | uint256 value | uint256 len | bytes data``."""
    return b"".join(
        encode_packed(
            ["uint8", "address", "uint256", "uint256", "bytes"],
            [SafeOperation.CALL.value, call.to, call.value, len(call.data), call.data],
        )
        for call in calls
    )


def safe_tx_hash(safe_address: str, chain_id: int, tx: SafeTransaction) -> bytes:
    """EIP-712 hash of a Safe transaction (Safe >= 1.3.0 domain)."""
    domain_separator = Web3.keccak(
        encode(
            ["bytes32", "uint256", "address"],
            [DOMAIN_SEPARATOR_TYPEHASH, chain_id, safe_address],
        )
    )
    struct_hash = Web3.keccak(
        encode(
            [
                "bytes32",
                "address",
                "uint256",
                "bytes32",
                "uint8",
                "uint256",
                "uint256",
                "uint256",
                "address",
                "address",
                "uint256",
            ],
            [
                SAFE_TX_TYPEHASH,
                tx.to,
                tx.value,
                Web3.keccak(tx.data),
                tx.operation.value,
                tx.safe_tx_gas,
                tx.base_gas,
                tx.gas_price,
                tx.gas_token,
                tx.refund_receiver,
                tx.nonce,
            ],
        )
    )
    return bytes(Web3.keccak(b"\x19\x01" + domain_separator + struct_hash))


def _is_not_found(exc: ProposalSubmissionFailed) -> bool:
    return (
        isinstance(exc.cause, httpx.HTTPStatusError)
        and exc.cause.response.status_code == 404
    )


class SafeRelayClient:
    """
    Async Safe Transaction Service client.

    Uses httpx for async HTTP. Sessions are cached per owner and established
    under a per-owner lock, so concurrent establishment for one identity is
    serialized and yields the same Safe. With a deployer, an owner the
    service knows no suitable Safe for gets one deployed; a configured
    ``relay_safe_address`` is never replaced that way.
    """

    def __init__(
        self,
        base_url: str,
        chain_id: int,
        signer: Signer,
        multisend_address: str,
        api_key: str = "",
        relay_safe_address: str | None = None,
        origin: str = "hat-relay",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        encoder: CallEncoder | None = None,
        deployer: SafeDeployer | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.signer = signer
        self.multisend_address = normalize_address(multisend_address, "multisend_address")
        self.relay_safe_address = (
            normalize_address(relay_safe_address, "relay_safe_address")
            if relay_safe_address
            else None
        )
        self.origin = origin
        self.encoder = encoder or CallEncoder()
        self.deployer = deployer
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._sessions: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._ensure_client()
        try:
            resp = await client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProposalSubmissionFailed(
                f"Safe Transaction Service returned {exc.response.status_code} "
                f"for {method} {path}: {exc.response.text}",
                cause=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProposalSubmissionFailed(
                f"Safe Transaction Service unreachable for {method} {path}",
                cause=exc,
            ) from exc
        return resp

    async def _get_json(self, path: str, **kwargs: Any) -> dict[str, Any]:
        resp = await self._request("GET", path, **kwargs)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProposalSubmissionFailed(
                f"Safe Transaction Service returned a non-JSON body for GET {path}: {resp.text}",
                cause=exc,
            ) from exc
        if not isinstance(body, dict):
            raise ProposalSubmissionFailed(
                f"Safe Transaction Service returned an unexpected body for GET {path}: {body!r}"
            )
        return body

    # ── Sessions ───────────────────────────────────────────────

    async def get_safe_info(self, safe_address: str) -> dict[str, Any]:
        return await self._get_json(f"/api/v1/safes/{safe_address}/")

    async def _candidate_safes(self, owner: str) -> list[str]:
        if self.relay_safe_address:
            return [self.relay_safe_address]
        body = await self._get_json(f"/api/v1/owners/{owner}/safes/")
        try:
            return [normalize_address(s, "safe") for s in body.get("safes", [])]
        except (TypeError, EncodingFailed) as exc:
            raise ProposalSubmissionFailed(
                f"Malformed Safe list for owner {owner}: {body!r}", cause=exc
            ) from exc

    @staticmethod
    def _session_from_info(owner: str, info: dict[str, Any]) -> SafeSession | None:
        try:
            owners = tuple(normalize_address(o, "owner") for o in info.get("owners", []))
            threshold = int(info.get("threshold", 0))
            safe_address = normalize_address(info["address"], "safe")
            nonce = int(info.get("nonce", 0))
        except (KeyError, TypeError, ValueError, EncodingFailed) as exc:
            raise ProposalSubmissionFailed(
                f"Malformed Safe info from the Safe Transaction Service: {info!r}",
                cause=exc,
            ) from exc
        if owners != (owner,) or threshold != 1:
            return None
        return SafeSession(
            safe_address=safe_address,
            owners=owners,
            threshold=threshold,
            nonce=nonce,
        )

    @property
    def deploys_missing_safes(self) -> bool:
        return self.deployer is not None and self.relay_safe_address is None

    async def _load_session(self, owner: str, safe_address: str) -> SafeSession | None:
        try:
            info = await self.get_safe_info(safe_address)
        except ProposalSubmissionFailed as exc:
            if not (self.deploys_missing_safes and _is_not_found(exc)):
                raise
            # Deployed here but not indexed by the service yet
            return await self._deployed_session(owner)
        return self._session_from_info(owner, info)

    async def _deployed_session(self, owner: str) -> SafeSession:
        try:
            safe_address = await self.deployer.deploy(owner)
            chain_state = await self.deployer.read_state(safe_address)
        except Exception as exc:
            raise ProposalSubmissionFailed(
                f"Could not deploy a Safe for {owner}", cause=exc
            ) from exc
        if chain_state.owners != (owner,) or chain_state.threshold != 1:
            raise ProposalSubmissionFailed(
                f"Safe {safe_address} no longer has {owner} as sole owner with threshold 1"
            )
        return SafeSession(
            safe_address=safe_address,
            owners=chain_state.owners,
            threshold=chain_state.threshold,
            nonce=chain_state.nonce,
        )

    async def establish_session(self, owner: str) -> SafeSession:
        """
        Find (or reuse) the Safe with ``owner`` as sole owner and threshold one.

        When the service lists no such Safe and a deployer is configured, the
        owner's Safe is deployed at its deterministic address.

        Raises:
            ProposalSubmissionFailed: if no such Safe exists or can be
                deployed, or the service cannot be queried.
        """
        owner = normalize_address(owner, "owner")
        lock = self._locks.setdefault(owner, asyncio.Lock())
        async with lock:
            cached = self._sessions.get(owner)
            if cached is not None:
                session = await self._load_session(owner, cached)
                if session is not None:
                    return session
                logger.warning("Cached Safe %s no longer matches owner %s", cached, owner)
                del self._sessions[owner]

            for candidate in await self._candidate_safes(owner):
                session = await self._load_session(owner, candidate)
                if session is not None:
                    break
            else:
                if not self.deploys_missing_safes:
                    raise ProposalSubmissionFailed(
                        f"No Safe found with {owner} as sole owner and threshold 1"
                    )
                session = await self._deployed_session(owner)

            self._sessions[owner] = session.safe_address
            logger.info(
                "Safe session established: owner=%s safe=%s nonce=%d",
                owner,
                session.safe_address,
                session.nonce,
            )
            return session

    async def next_nonce(self, session: SafeSession) -> int:
        """Safe nonce after any transactions already queued in the service."""
        path = f"/api/v1/safes/{session.safe_address}/multisig-transactions/"
        try:
            body = await self._get_json(
                path,
                params={
                    "executed": "false",
                    "nonce__gte": session.nonce,
                    "ordering": "-nonce",
                    "limit": 1,
                },
            )
        except ProposalSubmissionFailed as exc:
            if not _is_not_found(exc):
                raise
            # Unindexed Safe: nothing can be queued for it yet
            return session.nonce

        try:
            queued = body.get("results", [])
            if queued:
                return max(session.nonce, int(queued[0]["nonce"]) + 1)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProposalSubmissionFailed(
                f"Malformed queued transactions for Safe {session.safe_address}: {body!r}",
                cause=exc,
            ) from exc
        return session.nonce

    # ── Batch composition ──────────────────────────────────────

    def compose(self, proposal: Proposal, nonce: int) -> SafeTransaction:
        """One call goes out directly; several go through MultiSendCallOnly."""
        if len(proposal) == 1:
            (call,) = proposal.calls
            return SafeTransaction(
                to=call.to,
                value=call.value,
                data=call.data,
                operation=SafeOperation.CALL,
                nonce=nonce,
            )
        batch = self.encoder.encode_arguments("multiSend", [pack_multisend(proposal)])
        return SafeTransaction(
            to=self.multisend_address,
            value=0,
            data=batch,
            operation=SafeOperation.DELEGATE_CALL,
            nonce=nonce,
        )

    # ── Proposal ───────────────────────────────────────────────

    async def propose(self, identity: str, calls: Iterable[EncodedCall]) -> ProposalHandle:
        """
        Propose ``calls`` as one Safe transaction owned by ``identity``.

        Returns:
            ProposalHandle carrying the Safe transaction hash.

        Raises:
            ProposalSubmissionFailed: on any session, signing or relay failure.
        """
        identity = normalize_address(identity, "identity")
        try:
            proposal = Proposal.of(calls)
        except ValueError as exc:
            raise ProposalSubmissionFailed("Refusing to propose an empty batch", cause=exc) from exc

        if self.signer.address != identity:
            raise ProposalSubmissionFailed(
                f"Signer {self.signer.address} does not match acting identity {identity}"
            )

        session = await self.establish_session(identity)
        nonce = await self.next_nonce(session)
        tx = self.compose(proposal, nonce)
        tx_hash = safe_tx_hash(session.safe_address, self.chain_id, tx)

        try:
            signature = self.signer.sign_hash(tx_hash)
        except Exception as exc:
            raise ProposalSubmissionFailed("Could not sign Safe transaction", cause=exc) from exc

        payload = {
            "to": tx.to,
            "value": str(tx.value),
            "data": "0x" + tx.data.hex(),
            "operation": tx.operation.value,
            "safeTxGas": str(tx.safe_tx_gas),
            "baseGas": str(tx.base_gas),
            "gasPrice": str(tx.gas_price),
            "gasToken": tx.gas_token,
            "refundReceiver": tx.refund_receiver,
            "nonce": tx.nonce,
            "contractTransactionHash": "0x" + tx_hash.hex(),
            "sender": identity,
            "signature": "0x" + signature.hex(),
            "origin": self.origin,
        }
        await self._request(
            "POST",
            f"/api/v1/safes/{session.safe_address}/multisig-transactions/",
            json=payload,
        )

        handle = ProposalHandle(
            safe_address=session.safe_address,
            safe_tx_hash="0x" + tx_hash.hex(),
            nonce=tx.nonce,
            call_count=len(proposal),
        )
        logger.info(
            "Proposal submitted: safe=%s nonce=%d calls=%d safeTxHash=%s",
            handle.safe_address,
            handle.nonce,
            handle.call_count,
            handle.safe_tx_hash,
        )
        return handle

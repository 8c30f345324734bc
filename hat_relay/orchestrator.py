"""
Hat Relay — assign-hat workflow orchestrator.

Sequences one submission through a linear state machine:

    IDLE → CHECKING_AUTH → PREDICTING_ID → ENCODING → PROPOSING → SUCCEEDED
                        ↘ UNAUTHORIZED                 (any step) ↘ FAILED

1. Inputs are validated before any network call (recipient address,
   non-empty label); a missing identity fails as NotConnected.
2. Only an AUTHORIZED identity proceeds. PENDING/UNKNOWN are refused.
3. The next hat id under the parent is predicted by a read-only call.
4. createHat and mintHat(predicted id, recipient) are encoded.
5. Exactly [createHat, mintHat] is proposed to the Safe relay as one unit.

Every failure aborts the remaining steps and becomes the run's single
terminal error. There are no automatic retries: a new submission starts from
IDLE and re-checks authorization and re-predicts the id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol
from uuid import UUID, uuid4

import structlog

from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.errors import (
    EncodingFailed,
    HatRelayError,
    NotConnected,
    ProposalSubmissionFailed,
    SubmissionInProgress,
    Unauthorized,
)
from hat_relay.chain.schema import (
    AuthorizationResult,
    EncodedCall,
    PredictedRoleId,
    Proposal,
    ProposalHandle,
    RoleDefinition,
    WorkflowPhase,
    normalize_address,
)
from hat_relay.config import HatRelaySettings, settings
from hat_relay.governance.authorization import AuthorizationChecker
from hat_relay.governance.predictor import IdentifierPredictor

log = structlog.get_logger(__name__)


def configure_logging(config: HatRelaySettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(level=config.log_level, format="%(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class ProposalRelay(Protocol):
    async def propose(self, identity: str, calls: Iterable[EncodedCall]) -> ProposalHandle:
        ...


_ALLOWED_TRANSITIONS: dict[WorkflowPhase, set[WorkflowPhase]] = {
    WorkflowPhase.IDLE: {WorkflowPhase.CHECKING_AUTH, WorkflowPhase.FAILED},
    WorkflowPhase.CHECKING_AUTH: {
        WorkflowPhase.UNAUTHORIZED,
        WorkflowPhase.PREDICTING_ID,
        WorkflowPhase.FAILED,
    },
    WorkflowPhase.PREDICTING_ID: {WorkflowPhase.ENCODING, WorkflowPhase.FAILED},
    WorkflowPhase.ENCODING: {WorkflowPhase.PROPOSING, WorkflowPhase.FAILED},
    WorkflowPhase.PROPOSING: {WorkflowPhase.SUCCEEDED, WorkflowPhase.FAILED},
}


@dataclass
class WorkflowRun:
    """The record of one submission, from IDLE to a terminal phase."""

    identity: str | None
    recipient: str
    label: str
    run_id: UUID = field(default_factory=uuid4)
    phase: WorkflowPhase = WorkflowPhase.IDLE
    transitions: list[tuple[WorkflowPhase, WorkflowPhase]] = field(default_factory=list)
    authorization: AuthorizationResult | None = None
    predicted_id: PredictedRoleId | None = None
    proposal: Proposal | None = None
    handle: ProposalHandle | None = None
    error: HatRelayError | None = None

    def advance(self, phase: WorkflowPhase) -> None:
        if phase not in _ALLOWED_TRANSITIONS.get(self.phase, set()):
            raise RuntimeError(f"Illegal workflow transition {self.phase.value} → {phase.value}")
        self.transitions.append((self.phase, phase))
        log.debug(
            "hat_relay.workflow.transition",
            run_id=str(self.run_id),
            from_phase=self.phase.value,
            to_phase=phase.value,
        )
        self.phase = phase

    def fail(self, error: HatRelayError) -> WorkflowRun:
        terminal = (
            WorkflowPhase.UNAUTHORIZED if isinstance(error, Unauthorized) else WorkflowPhase.FAILED
        )
        self.error = error
        self.advance(terminal)
        log.warning(
            "hat_relay.workflow.failed",
            run_id=str(self.run_id),
            identity=self.identity,
            kind=error.kind,
            retryable=error.retryable,
            detail=error.describe(),
        )
        return self

    @property
    def succeeded(self) -> bool:
        return self.phase == WorkflowPhase.SUCCEEDED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "phase": self.phase.value,
            "identity": self.identity,
            "recipient": self.recipient,
            "label": self.label,
            "predicted_hat_id": self.predicted_id.value if self.predicted_id else None,
            "safe_address": self.handle.safe_address if self.handle else None,
            "safe_tx_hash": self.handle.safe_tx_hash if self.handle else None,
            "error": self.error.describe() if self.error else None,
            "error_kind": self.error.kind if self.error else None,
            "retryable": self.error.retryable if self.error else None,
        }


class AssignHatWorkflow:
    """
    Orchestrates hat creation + assignment through the Safe relay.

    Usage:
        workflow = AssignHatWorkflow(settings, checker, predictor, relay)
        run = await workflow.submit(identity, "0xRecipient...", "Alice")
        run.raise_for_error()
        print(run.handle.safe_tx_hash)

    Only one run per identity may be in flight; a concurrent submission for
    the same identity fails immediately with SubmissionInProgress.
    """

    def __init__(
        self,
        config: HatRelaySettings,
        authorization: AuthorizationChecker,
        predictor: IdentifierPredictor,
        relay: ProposalRelay | None,
        encoder: CallEncoder | None = None,
    ) -> None:
        self.config = config
        self.authorization = authorization
        self.predictor = predictor
        self.relay = relay
        self.encoder = encoder or CallEncoder()
        self.hats_address = normalize_address(config.hats_contract_address, "hats_address")
        self._in_flight: set[str] = set()

    def is_in_flight(self, identity: str) -> bool:
        return normalize_address(identity, "identity") in self._in_flight

    async def submit(self, identity: str | None, recipient: str, label: str) -> WorkflowRun:
        """Run one submission to a terminal phase. Never raises HatRelayError."""
        run = WorkflowRun(identity=identity, recipient=recipient, label=label)

        if not identity:
            return run.fail(NotConnected("Account not connected"))

        try:
            run.identity = normalize_address(identity, "identity")
            run.recipient = normalize_address(recipient, "recipient")
            definition = RoleDefinition.for_submission(self.config, label)
        except EncodingFailed as exc:
            return run.fail(exc)
        run.label = definition.label

        if run.identity in self._in_flight:
            return run.fail(
                SubmissionInProgress(f"A submission for {run.identity} is already in flight")
            )

        self._in_flight.add(run.identity)
        try:
            await self._execute(run, definition)
        finally:
            self._in_flight.discard(run.identity)
        return run

    async def _execute(self, run: WorkflowRun, definition: RoleDefinition) -> None:
        identity = run.identity
        log.info(
            "hat_relay.workflow.started",
            run_id=str(run.run_id),
            identity=identity,
            recipient=run.recipient,
            parent_hat_id=definition.parent_id,
        )

        # ── Authorization gate ──
        run.advance(WorkflowPhase.CHECKING_AUTH)
        run.authorization = await self.authorization.check(identity)
        if not run.authorization.is_authorized:
            detail = run.authorization.detail or run.authorization.status.value
            run.fail(Unauthorized(f"Not authorized to create hats ({detail})"))
            return

        if self.relay is None:
            run.fail(NotConnected("Wallet client not connected"))
            return

        # ── Identifier prediction ──
        run.advance(WorkflowPhase.PREDICTING_ID)
        try:
            run.predicted_id = await self.predictor.predict(definition.parent_id)
        except HatRelayError as exc:
            run.fail(exc)
            return

        # ── Encoding ──
        run.advance(WorkflowPhase.ENCODING)
        try:
            create_call = self.encoder.encode_create_hat(self.hats_address, definition)
            mint_call = self.encoder.encode_mint_hat(
                self.hats_address, run.predicted_id.value, run.recipient
            )
        except EncodingFailed as exc:
            run.fail(exc)
            return
        run.proposal = Proposal.of([create_call, mint_call])

        # ── Proposal ──
        run.advance(WorkflowPhase.PROPOSING)
        try:
            run.handle = await self.relay.propose(identity, run.proposal.calls)
        except ProposalSubmissionFailed as exc:
            run.fail(exc)
            return
        except Exception as exc:
            run.fail(ProposalSubmissionFailed("Safe relay error", cause=exc))
            return

        run.advance(WorkflowPhase.SUCCEEDED)
        log.info(
            "hat_relay.workflow.proposed",
            run_id=str(run.run_id),
            identity=identity,
            label=run.label,
            recipient=run.recipient,
            predicted_hat_id=run.predicted_id.value,
            safe_address=run.handle.safe_address,
            safe_tx_hash=run.handle.safe_tx_hash,
        )


def build_workflow(config: HatRelaySettings = settings) -> tuple[AssignHatWorkflow, str | None]:
    """
    Wire the workflow against live services.

    Returns the workflow and the connected identity (the signer's address),
    or None for the identity when no signer key is configured.
    """
    from hat_relay.chain.reader import Web3ChainReader, Web3ChainWriter
    from hat_relay.governance.authorization import SafeOwnerMembership
    from hat_relay.integrations.safe_deployer import SafeDeployer
    from hat_relay.integrations.safe_relay import LocalAccountSigner, SafeRelayClient

    reader = Web3ChainReader(config.rpc_url)
    checker = AuthorizationChecker(
        SafeOwnerMembership(reader, config.governing_safe_address)
    )
    predictor = IdentifierPredictor(reader, config.hats_contract_address)

    relay = None
    identity = None
    if config.signer_private_key:
        signer = LocalAccountSigner(config.signer_private_key)
        identity = signer.address
        deployer = None
        if config.deploy_missing_safe:
            deployer = SafeDeployer(
                Web3ChainWriter(config.rpc_url, config.chain_id),
                signer,
                proxy_factory_address=config.safe_proxy_factory_address,
                singleton_address=config.safe_singleton_address,
                fallback_handler_address=config.safe_fallback_handler_address,
                salt_nonce=config.safe_salt_nonce,
            )
        relay = SafeRelayClient(
            base_url=config.safe_tx_service_url,
            chain_id=config.chain_id,
            signer=signer,
            multisend_address=config.multisend_call_only_address,
            api_key=config.safe_api_key,
            relay_safe_address=config.relay_safe_address,
            origin=config.proposal_origin,
            timeout=config.http_timeout_seconds,
            deployer=deployer,
        )

    return AssignHatWorkflow(config, checker, predictor, relay), identity

"""
Tests for the assign-hat workflow orchestrator.

Validates:
- Authorization gate runs before any read or proposal
- Proposal = [createHat, mintHat(predicted id of the same run)]
- Prediction failures never reach the relay
- Input validation happens before any network call
- Per-identity in-flight guard and re-prediction on retry
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import (
    DEV_KEY,
    HATS,
    OUTSIDER,
    OWNER,
    PARENT_HAT_ID,
    RECIPIENT,
    SAFE,
    FakeMembership,
    FakeReader,
    FakeRelay,
    make_settings,
    make_workflow,
    uint_word,
)
from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.errors import (
    EncodingFailed,
    IdentifierPredictionFailed,
    NotConnected,
    ProposalSubmissionFailed,
    SubmissionInProgress,
    Unauthorized,
)
from hat_relay.chain.schema import WorkflowPhase
from hat_relay.integrations.safe_deployer import SafeDeployer
from hat_relay.integrations.safe_relay import LocalAccountSigner
from hat_relay.orchestrator import build_workflow


class TestSuccessfulSubmission:
    """Authorized owner, parent 100, next id 105, recipient 0xBBB…, label Alice."""

    def setup_method(self):
        self.workflow, self.membership, self.reader, self.relay = make_workflow()
        self.encoder = CallEncoder()

    def test_proposal_is_create_then_mint(self):
        """The proposal is exactly createHat then mintHat on the Hats contract."""
        run = asyncio.run(self.workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert run.phase == WorkflowPhase.SUCCEEDED
        assert run.error is None
        assert len(self.relay.proposals) == 1

        identity, calls = self.relay.proposals[0]
        assert identity == OWNER
        assert [c.function_name for c in calls] == ["createHat", "mintHat"]
        assert all(c.to == HATS and c.value == 0 for c in calls)

        assert self.encoder.decode_call(calls[0].data) == (
            "createHat",
            (PARENT_HAT_ID, "Alice", 1, SAFE, SAFE, True, ""),
        )
        assert self.encoder.decode_call(calls[1].data) == ("mintHat", (105, RECIPIENT))

    def test_success_carries_handle(self):
        """A successful run carries the relay handle and the predicted id."""
        run = asyncio.run(self.workflow.submit(OWNER, RECIPIENT, "Alice"))
        run.raise_for_error()
        assert run.handle is not None
        assert run.handle.safe_tx_hash.startswith("0x")
        assert run.handle.call_count == 2
        assert run.predicted_id.value == 105

    def test_prediction_read_not_in_proposal(self):
        """The getNextId read happens but never appears in the proposal."""
        run = asyncio.run(self.workflow.submit(OWNER, RECIPIENT, "Alice"))
        assert [c.function_name for c in self.reader.calls] == ["getNextId"]
        assert all(c.function_name != "getNextId" for c in run.proposal)

    def test_transitions_are_linear(self):
        """A successful run walks every phase once, in order."""
        run = asyncio.run(self.workflow.submit(OWNER, RECIPIENT, "Alice"))
        assert [to for _, to in run.transitions] == [
            WorkflowPhase.CHECKING_AUTH,
            WorkflowPhase.PREDICTING_ID,
            WorkflowPhase.ENCODING,
            WorkflowPhase.PROPOSING,
            WorkflowPhase.SUCCEEDED,
        ]

    def test_lowercase_recipient_is_checksummed(self):
        """Lowercase identity and recipient are accepted and checksummed."""
        run = asyncio.run(self.workflow.submit(OWNER.lower(), RECIPIENT.lower(), "Alice"))
        assert run.succeeded
        assert run.recipient == RECIPIENT
        assert run.label == "Alice"


class TestAuthorizationGate:
    def test_outsider_is_unauthorized_before_any_read(self):
        """A non-owner stops at UNAUTHORIZED with no read or proposal."""
        workflow, _, reader, relay = make_workflow()
        run = asyncio.run(workflow.submit(OUTSIDER, RECIPIENT, "Alice"))

        assert run.phase == WorkflowPhase.UNAUTHORIZED
        assert isinstance(run.error, Unauthorized)
        assert reader.calls == []
        assert relay.proposals == []

    def test_failed_membership_query_is_not_authorization(self):
        """A failed membership query gates like a refusal and keeps the cause."""
        membership = FakeMembership(error=ConnectionError("rpc down"))
        workflow, _, reader, relay = make_workflow(membership=membership)
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert isinstance(run.error, Unauthorized)
        assert "rpc down" in run.error.describe()
        assert reader.calls == []
        assert relay.proposals == []

    def test_missing_identity_is_not_connected(self):
        """No connected identity fails before authorization is queried."""
        workflow, membership, reader, relay = make_workflow()
        run = asyncio.run(workflow.submit(None, RECIPIENT, "Alice"))

        assert run.phase == WorkflowPhase.FAILED
        assert isinstance(run.error, NotConnected)
        assert membership.queries == []
        assert relay.proposals == []

    def test_missing_relay_is_not_connected(self):
        """No relay fails as NotConnected before prediction."""
        workflow, _, reader, _ = make_workflow()
        workflow.relay = None
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))
        assert isinstance(run.error, NotConnected)
        assert reader.calls == []


class TestPredictionFailure:
    def test_rpc_fault_never_reaches_relay(self):
        """A prediction failure is terminal and retryable and nothing is proposed."""
        reader = FakeReader(TimeoutError("rpc timeout"))
        workflow, _, _, relay = make_workflow(reader=reader)
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert run.phase == WorkflowPhase.FAILED
        assert isinstance(run.error, IdentifierPredictionFailed)
        assert run.error.retryable
        assert isinstance(run.error.cause, TimeoutError)
        assert relay.proposals == []

    def test_raise_for_error_preserves_cause(self):
        """raise_for_error re-raises with the original cause chained."""
        reader = FakeReader(TimeoutError("rpc timeout"))
        workflow, _, _, _ = make_workflow(reader=reader)
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))
        with pytest.raises(IdentifierPredictionFailed) as excinfo:
            run.raise_for_error()
        assert isinstance(excinfo.value.__cause__, TimeoutError)


class TestInputValidation:
    def test_bad_recipient_fails_before_any_network_call(self):
        """A malformed recipient fails before authorization or prediction."""
        workflow, membership, reader, relay = make_workflow()
        run = asyncio.run(workflow.submit(OWNER, "not-an-address", "Alice"))

        assert run.phase == WorkflowPhase.FAILED
        assert isinstance(run.error, EncodingFailed)
        assert not run.error.retryable
        assert membership.queries == []
        assert reader.calls == []
        assert relay.proposals == []

    def test_empty_label_rejected(self):
        """A blank label fails before any network call."""
        workflow, membership, _, relay = make_workflow()
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "   "))
        assert isinstance(run.error, EncodingFailed)
        assert membership.queries == []
        assert relay.proposals == []

    def test_padded_label_rejected(self):
        """A label with surrounding whitespace is refused, not trimmed."""
        workflow, membership, _, relay = make_workflow()
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "  Alice "))
        assert isinstance(run.error, EncodingFailed)
        assert "whitespace" in run.error.describe()
        assert membership.queries == []
        assert relay.proposals == []

    def test_padded_recipient_rejected(self):
        """A recipient with surrounding whitespace is refused, not trimmed."""
        workflow, membership, _, relay = make_workflow()
        run = asyncio.run(workflow.submit(OWNER, f" {RECIPIENT} ", "Alice"))
        assert isinstance(run.error, EncodingFailed)
        assert membership.queries == []
        assert relay.proposals == []


class TestRelayFailure:
    def test_relay_rejection_is_terminal(self):
        """A relay rejection ends the run with its detail."""
        relay = FakeRelay(error=ProposalSubmissionFailed("422 nonce already used"))
        workflow, _, _, _ = make_workflow(relay=relay)
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert run.phase == WorkflowPhase.FAILED
        assert isinstance(run.error, ProposalSubmissionFailed)
        assert "nonce already used" in run.error.describe()

    def test_unexpected_relay_error_is_wrapped(self):
        """Unexpected relay errors become ProposalSubmissionFailed."""
        relay = FakeRelay(error=RuntimeError("socket closed"))
        workflow, _, _, _ = make_workflow(relay=relay)
        run = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert isinstance(run.error, ProposalSubmissionFailed)
        assert "socket closed" in run.error.describe()


class TestResubmission:
    def test_retry_repredicts_identifier(self):
        """Resubmitting re-checks authorization and re-predicts the id."""
        reader = FakeReader(TimeoutError("flaky"), uint_word(106))
        workflow, membership, _, relay = make_workflow(reader=reader)

        first = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))
        second = asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))

        assert isinstance(first.error, IdentifierPredictionFailed)
        assert second.succeeded
        assert len(membership.queries) == 2
        _, calls = relay.proposals[0]
        assert CallEncoder().decode_call(calls[1].data) == ("mintHat", (106, RECIPIENT))

    def test_each_run_uses_its_own_prediction(self):
        """Each run mints the id it predicted itself."""
        reader = FakeReader(uint_word(105), uint_word(106))
        workflow, _, _, relay = make_workflow(reader=reader)

        asyncio.run(workflow.submit(OWNER, RECIPIENT, "Alice"))
        asyncio.run(workflow.submit(OWNER, RECIPIENT, "Bob"))

        encoder = CallEncoder()
        minted = [encoder.decode_call(calls[1].data)[1][0] for _, calls in relay.proposals]
        assert minted == [105, 106]

    def test_concurrent_submission_for_same_identity_refused(self):
        """A second submission while one is in flight is refused."""
        async def scenario():
            gate = asyncio.Event()
            workflow, _, _, relay = make_workflow(
                reader=FakeReader(uint_word(105), uint_word(106)),
                relay=FakeRelay(gate=gate),
            )
            first = asyncio.create_task(workflow.submit(OWNER, RECIPIENT, "Alice"))
            while not relay.proposals:
                await asyncio.sleep(0)
            assert workflow.is_in_flight(OWNER)
            second = await workflow.submit(OWNER, RECIPIENT, "Bob")
            gate.set()
            return await first, second, workflow

        first, second, workflow = asyncio.run(scenario())
        assert first.succeeded
        assert isinstance(second.error, SubmissionInProgress)
        assert not workflow.is_in_flight(OWNER)


class TestWiring:
    def test_signer_key_connects_wallet_and_deployer(self):
        """A signer key yields the connected identity and a relay that can deploy Safes."""
        workflow, identity = build_workflow(make_settings(signer_private_key=DEV_KEY))
        assert identity == LocalAccountSigner(DEV_KEY).address
        assert workflow.relay.signer.address == identity
        assert isinstance(workflow.relay.deployer, SafeDeployer)
        assert workflow.relay.deployer.signer is workflow.relay.signer

    def test_deployment_can_be_disabled(self):
        """Turning deployment off leaves the relay without a deployer."""
        workflow, _ = build_workflow(
            make_settings(signer_private_key=DEV_KEY, deploy_missing_safe=False)
        )
        assert workflow.relay.deployer is None

    def test_no_signer_key_means_not_connected(self):
        """Without a signer key there is no identity and no relay."""
        workflow, identity = build_workflow(make_settings())
        assert identity is None
        assert workflow.relay is None

"""
Workflow error taxonomy.

Every failure in the assign-hat workflow surfaces as exactly one of these
errors. The causing exception is chained and preserved in ``cause`` so the
operator sees the underlying detail verbatim.
"""

from __future__ import annotations


class HatRelayError(Exception):
    """Base class for all terminal workflow errors."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def describe(self) -> str:
        """Human-readable description including the causing error's detail."""
        if self.cause is None:
            return self.message
        return f"{self.message}: {type(self.cause).__name__}: {self.cause}"


class NotConnected(HatRelayError):
    """No acting identity (wallet) is available."""

    kind = "not_connected"


class Unauthorized(HatRelayError):
    """The acting identity is not an owner of the governing Safe."""

    kind = "unauthorized"


class IdentifierPredictionFailed(HatRelayError):
    """The getNextId read against the Hats contract failed."""

    kind = "identifier_prediction_failed"
    retryable = True


class EncodingFailed(HatRelayError):
    """An argument could not be validated or encoded."""

    kind = "encoding_failed"


class ProposalSubmissionFailed(HatRelayError):
    """The multisig relay rejected the proposal or could not be reached."""

    kind = "proposal_submission_failed"
    retryable = True


class SubmissionInProgress(HatRelayError):
    """A workflow run for the same identity is still in flight."""

    kind = "submission_in_progress"
    retryable = True

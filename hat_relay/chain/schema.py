"""
Hat Relay Schema — data structures for the assign-hat workflow.

These are the canonical shapes passed between the authorization checker,
the identifier predictor, the call encoder, the Safe relay and the workflow
orchestrator. Nothing here is persisted: every value is constructed fresh
per submission from user input plus fixed configuration.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from hat_relay.chain.errors import EncodingFailed

UINT32_MAX = 2**32 - 1
UINT256_MAX = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(value: Any, field_name: str = "address") -> str:
    """
    Return the EIP-55 checksummed form of an address.

    All-lowercase (or all-uppercase) hex is accepted and checksummed.
    Mixed-case input must already carry a valid checksum. Anything else,
    surrounding whitespace included, raises EncodingFailed; the value is
    never trimmed, truncated or coerced.
    """
    if not isinstance(value, str):
        raise EncodingFailed(
            f"{field_name} must be a hex string, got {type(value).__name__}"
        )
    if (
        value != value.strip()
        or not value.startswith(("0x", "0X"))
        or not Web3.is_address(value)
    ):
        raise EncodingFailed(f"{field_name} is not a valid address: {value!r}")
    # is_address accepts a wrong checksum on recent eth-utils releases
    hex_part = value[2:]
    is_mixed_case = hex_part not in (hex_part.lower(), hex_part.upper())
    if is_mixed_case and not Web3.is_checksum_address(value):
        raise EncodingFailed(f"{field_name} has an invalid EIP-55 checksum: {value!r}")
    return Web3.to_checksum_address(value.lower())


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class AuthorizationStatus(str, enum.Enum):
    """Tri-state membership result, plus UNKNOWN for failed queries."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


class IdentifierStatus(str, enum.Enum):
    PREDICTED = "predicted"
    CONFIRMED = "confirmed"


class WorkflowPhase(str, enum.Enum):
    """Phases of one assign-hat run. Transitions only move forward."""

    IDLE = "idle"
    CHECKING_AUTH = "checking_auth"
    UNAUTHORIZED = "unauthorized"
    PREDICTING_ID = "predicting_id"
    ENCODING = "encoding"
    PROPOSING = "proposing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowPhase.UNAUTHORIZED,
            WorkflowPhase.SUCCEEDED,
            WorkflowPhase.FAILED,
        )


class SafeOperation(int, enum.Enum):
    CALL = 0
    DELEGATE_CALL = 1


# ════════════════════════════════════════════════════════════════
# Role definition & identifiers
# ════════════════════════════════════════════════════════════════


class RoleDefinition(BaseModel):
    """Parameters of a hat to be created under a fixed parent hat."""

    model_config = ConfigDict(frozen=True)

    parent_id: int = Field(ge=0, le=UINT256_MAX)
    label: str
    max_supply: int = Field(default=1, ge=1, le=UINT32_MAX)
    eligibility: str
    toggle: str
    mutable: bool = True
    image_uri: str = ""

    @field_validator("label")
    @classmethod
    def _label_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise EncodingFailed("label must not be empty")
        if value != value.strip():
            raise EncodingFailed(f"label must not have surrounding whitespace: {value!r}")
        return value

    @field_validator("eligibility", "toggle")
    @classmethod
    def _checksum(cls, value: str, info: Any) -> str:
        return normalize_address(value, info.field_name)

    @classmethod
    def for_submission(cls, config: Any, label: str) -> RoleDefinition:
        """Build the definition for one submission from configuration plus the label."""
        if not isinstance(label, str):
            raise EncodingFailed("label must be a string")
        try:
            return cls(
                parent_id=config.parent_hat_id,
                label=label,
                max_supply=config.max_supply,
                eligibility=config.eligibility_authority,
                toggle=config.toggle_authority,
                mutable=config.hat_mutable,
                image_uri=config.image_uri,
            )
        except ValidationError as exc:
            raise EncodingFailed("invalid hat definition", cause=exc) from exc


@dataclass(frozen=True)
class PredictedRoleId:
    """
    An identifier the Hats contract is expected to hand out next.

    The value is only correct if no other hat is created under the same
    parent between the getNextId read and execution of the proposal that
    consumes it. Nothing here prevents that interleaving; callers working
    on a contended parent must serialize externally.
    """

    value: int
    parent_id: int
    status: IdentifierStatus = IdentifierStatus.PREDICTED
    predicted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def confirm(self, observed: int) -> PredictedRoleId:
        """Mark the prediction confirmed against the id observed after execution."""
        if observed != self.value:
            raise ValueError(
                f"Hat id {self.value} was predicted under parent {self.parent_id} "
                f"but {observed} was assigned"
            )
        return PredictedRoleId(
            value=self.value,
            parent_id=self.parent_id,
            status=IdentifierStatus.CONFIRMED,
            predicted_at=self.predicted_at,
        )


# ════════════════════════════════════════════════════════════════
# Calls & proposals
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EncodedCall:
    """A single contract invocation: (target, attached value, payload)."""

    to: str
    value: int
    data: bytes
    function_name: str = ""

    @property
    def data_hex(self) -> str:
        return "0x" + self.data.hex()

    def as_transaction(self) -> dict[str, str]:
        return {"to": self.to, "value": str(self.value), "data": self.data_hex}


@dataclass(frozen=True)
class Proposal:
    """An ordered, non-empty batch of calls proposed as one unit."""

    calls: tuple[EncodedCall, ...]

    def __post_init__(self) -> None:
        if not self.calls:
            raise ValueError("A proposal must contain at least one call")

    @classmethod
    def of(cls, calls: Iterable[EncodedCall]) -> Proposal:
        return cls(calls=tuple(calls))

    def __len__(self) -> int:
        return len(self.calls)

    def __iter__(self):
        return iter(self.calls)


@dataclass(frozen=True)
class ProposalHandle:
    """What the relay hands back for an accepted proposal."""

    safe_address: str
    safe_tx_hash: str
    nonce: int
    call_count: int


# ════════════════════════════════════════════════════════════════
# Authorization
# ════════════════════════════════════════════════════════════════


class AuthorizationResult(BaseModel):
    """Membership of an identity in the governing Safe's owner set."""

    identity: str
    status: AuthorizationStatus
    detail: str = ""
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_authorized(self) -> bool:
        return self.status == AuthorizationStatus.AUTHORIZED

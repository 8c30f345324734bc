"""
Authorization Checker — Safe ownership gate for hat creation.

Only owners of the governing Safe may create and assign hats. The check
is read-only and reports one of four states:

- PENDING: membership query in flight (or never run for this identity)
- AUTHORIZED: the identity is a current owner
- UNAUTHORIZED: the identity is not an owner
- UNKNOWN: the query failed; the cause is kept in ``detail``

Only AUTHORIZED lets a workflow proceed. PENDING and UNKNOWN gate exactly
like UNAUTHORIZED.
"""

from __future__ import annotations

import logging
from typing import Protocol

from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.reader import ChainReader
from hat_relay.chain.schema import (
    AuthorizationResult,
    AuthorizationStatus,
    normalize_address,
)

logger = logging.getLogger(__name__)


class MembershipSource(Protocol):
    async def is_member(self, identity: str) -> bool:
        ...


class SafeOwnerMembership:
    """Membership = ``isOwner(identity)`` on the governing Safe."""

    def __init__(
        self,
        reader: ChainReader,
        safe_address: str,
        encoder: CallEncoder | None = None,
    ) -> None:
        self.reader = reader
        self.safe_address = normalize_address(safe_address, "safe_address")
        self.encoder = encoder or CallEncoder()

    async def is_member(self, identity: str) -> bool:
        call = self.encoder.encode_is_owner(self.safe_address, identity)
        raw = await self.reader.call(call)
        (is_owner,) = self.encoder.decode_result("isOwner", raw)
        return bool(is_owner)


class AuthorizationChecker:
    """
    Tracks the authorization state of each identity that has been checked.

    The result is recomputed on every ``check``; a changed identity simply
    means a different key is checked.
    """

    def __init__(self, membership: MembershipSource) -> None:
        self.membership = membership
        self._results: dict[str, AuthorizationResult] = {}

    def status_for(self, identity: str) -> AuthorizationResult:
        """Last known result for ``identity``, or PENDING if never checked."""
        identity = normalize_address(identity, "identity")
        return self._results.get(
            identity,
            AuthorizationResult(identity=identity, status=AuthorizationStatus.PENDING),
        )

    async def check(self, identity: str) -> AuthorizationResult:
        """Query membership for ``identity``. Never raises for query failures."""
        identity = normalize_address(identity, "identity")
        self._results[identity] = AuthorizationResult(
            identity=identity, status=AuthorizationStatus.PENDING
        )

        try:
            is_member = await self.membership.is_member(identity)
        except Exception as exc:
            logger.warning("Membership query failed for %s: %s", identity, exc)
            result = AuthorizationResult(
                identity=identity,
                status=AuthorizationStatus.UNKNOWN,
                detail=f"{type(exc).__name__}: {exc}",
            )
        else:
            result = AuthorizationResult(
                identity=identity,
                status=(
                    AuthorizationStatus.AUTHORIZED
                    if is_member
                    else AuthorizationStatus.UNAUTHORIZED
                ),
            )

        self._results[identity] = result
        logger.info("Authorization for %s: %s", identity, result.status.value)
        return result

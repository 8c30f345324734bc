"""
Identifier Predictor — the hat id the next createHat under a parent will get.

Hats Protocol assigns child ids deterministically, so ``getNextId(parent)``
read before creation tells us which id the mintHat in the same proposal must
reference. The read never mutates state. The prediction holds only while no
other hat is created under the same parent before the proposal executes.
"""

from __future__ import annotations

import logging

from hat_relay.chain.encoder import CallEncoder
from hat_relay.chain.errors import EncodingFailed, IdentifierPredictionFailed
from hat_relay.chain.reader import ChainReader
from hat_relay.chain.schema import PredictedRoleId, normalize_address

logger = logging.getLogger(__name__)

WORD_SIZE = 32


class IdentifierPredictor:
    def __init__(
        self,
        reader: ChainReader,
        hats_address: str,
        encoder: CallEncoder | None = None,
    ) -> None:
        self.reader = reader
        self.hats_address = normalize_address(hats_address, "hats_address")
        self.encoder = encoder or CallEncoder()

    async def predict(self, parent_id: int) -> PredictedRoleId:
        """
        Read the next child id under ``parent_id``.

        Raises:
            IdentifierPredictionFailed: on any read failure, a response that
                is not exactly one ABI word, or a zero id.
        """
        try:
            call = self.encoder.encode_get_next_id(self.hats_address, parent_id)
        except EncodingFailed as exc:
            raise IdentifierPredictionFailed(
                f"Invalid parent hat id {parent_id!r}", cause=exc
            ) from exc

        try:
            raw = await self.reader.call(call)
        except Exception as exc:
            raise IdentifierPredictionFailed(
                f"getNextId({parent_id}) read failed", cause=exc
            ) from exc

        if len(raw) != WORD_SIZE:
            raise IdentifierPredictionFailed(
                f"getNextId({parent_id}) returned {len(raw)} bytes, expected {WORD_SIZE}"
            )

        try:
            (next_id,) = self.encoder.decode_result("getNextId", raw)
        except EncodingFailed as exc:
            raise IdentifierPredictionFailed(
                f"getNextId({parent_id}) returned malformed data", cause=exc
            ) from exc

        if next_id == 0:
            raise IdentifierPredictionFailed(
                f"getNextId({parent_id}) returned 0; parent hat may not exist"
            )

        logger.info("Predicted hat id %d under parent %d", next_id, parent_id)
        return PredictedRoleId(value=next_id, parent_id=parent_id)

"""
Call Encoder — contract calling convention for the assign-hat workflow.

Turns (function, ordered arguments) into selector + ABI-encoded payload.
Arguments are validated against the ABI types before anything is encoded:
a non-address where an address is expected, an out-of-range integer or a
bool passed as an integer is rejected with EncodingFailed, never coerced.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError

from hat_relay.chain.abi import FUNCTIONS, FunctionSpec
from hat_relay.chain.errors import EncodingFailed
from hat_relay.chain.schema import EncodedCall, RoleDefinition, normalize_address

logger = logging.getLogger(__name__)


def _validate_argument(abi_type: str, name: str, value: Any) -> Any:
    if abi_type.endswith("[]"):
        if not isinstance(value, (list, tuple)):
            raise EncodingFailed(f"{name} must be a list, got {type(value).__name__}")
        return [
            _validate_argument(abi_type[:-2], f"{name}[{i}]", item)
            for i, item in enumerate(value)
        ]

    if abi_type == "address":
        return normalize_address(value, name)

    if abi_type == "bool":
        if not isinstance(value, bool):
            raise EncodingFailed(f"{name} must be a bool, got {type(value).__name__}")
        return value

    if abi_type == "string":
        if not isinstance(value, str):
            raise EncodingFailed(f"{name} must be a string, got {type(value).__name__}")
        return value

    if abi_type == "bytes":
        if not isinstance(value, (bytes, bytearray)):
            raise EncodingFailed(f"{name} must be bytes, got {type(value).__name__}")
        return bytes(value)

    if abi_type.startswith("uint"):
        bits = int(abi_type[4:] or 256)
        if isinstance(value, bool) or not isinstance(value, int):
            raise EncodingFailed(f"{name} must be an integer, got {type(value).__name__}")
        if not 0 <= value < 2**bits:
            raise EncodingFailed(f"{name}={value} does not fit in {abi_type}")
        return value

    raise EncodingFailed(f"Unsupported ABI type {abi_type!r} for {name}")


class CallEncoder:
    """
    Pure encoder over a fixed function table.

    Usage:
        encoder = CallEncoder()
        call = encoder.encode_mint_hat(hats_address, hat_id, wearer)
        name, args = encoder.decode_call(call.data)
    """

    def __init__(self, functions: dict[str, FunctionSpec] | None = None) -> None:
        self.functions = functions or dict(FUNCTIONS)
        self._by_selector = {spec.selector: spec for spec in self.functions.values()}

    def _spec(self, function_name: str) -> FunctionSpec:
        spec = self.functions.get(function_name)
        if spec is None:
            raise EncodingFailed(f"Unknown function: {function_name}")
        return spec

    def encode_arguments(self, function_name: str, args: Sequence[Any]) -> bytes:
        """Encode selector + arguments for ``function_name``."""
        spec = self._spec(function_name)
        if len(args) != len(spec.input_types):
            raise EncodingFailed(
                f"{spec.signature} takes {len(spec.input_types)} arguments, got {len(args)}"
            )

        values = [
            _validate_argument(abi_type, name or f"arg{i}", value)
            for i, (abi_type, name, value) in enumerate(
                zip(spec.input_types, spec.input_names, args)
            )
        ]
        try:
            return spec.selector + encode(list(spec.input_types), values)
        except EncodingError as exc:
            raise EncodingFailed(f"Could not encode {spec.signature}", cause=exc) from exc

    def encode(
        self,
        to: str,
        function_name: str,
        args: Sequence[Any],
        value: int = 0,
    ) -> EncodedCall:
        call = EncodedCall(
            to=normalize_address(to, "target"),
            value=value,
            data=self.encode_arguments(function_name, args),
            function_name=function_name,
        )
        logger.debug("Encoded %s for %s (%d bytes)", function_name, call.to, len(call.data))
        return call

    # ── Hats Protocol ──────────────────────────────────────────

    def encode_create_hat(self, hats_address: str, definition: RoleDefinition) -> EncodedCall:
        return self.encode(
            hats_address,
            "createHat",
            [
                definition.parent_id,
                definition.label,
                definition.max_supply,
                definition.eligibility,
                definition.toggle,
                definition.mutable,
                definition.image_uri,
            ],
        )

    def encode_get_next_id(self, hats_address: str, parent_id: int) -> EncodedCall:
        return self.encode(hats_address, "getNextId", [parent_id])

    def encode_mint_hat(self, hats_address: str, hat_id: int, wearer: str) -> EncodedCall:
        return self.encode(hats_address, "mintHat", [hat_id, wearer])

    # ── Safe ───────────────────────────────────────────────────

    def encode_is_owner(self, safe_address: str, owner: str) -> EncodedCall:
        return self.encode(safe_address, "isOwner", [owner])

    # ── Decoding ───────────────────────────────────────────────

    def decode_call(self, data: bytes) -> tuple[str, tuple[Any, ...]]:
        """Recover (function name, arguments) from an encoded payload."""
        spec = self._by_selector.get(bytes(data[:4]))
        if spec is None:
            raise EncodingFailed(f"Unknown selector 0x{bytes(data[:4]).hex()}")
        try:
            values = decode(list(spec.input_types), bytes(data[4:]))
        except DecodingError as exc:
            raise EncodingFailed(f"Could not decode {spec.signature}", cause=exc) from exc
        return spec.name, self._checksum_addresses(spec.input_types, values)

    def decode_result(self, function_name: str, data: bytes) -> tuple[Any, ...]:
        """Decode the return data of an ``eth_call`` to ``function_name``."""
        spec = self._spec(function_name)
        try:
            values = decode(list(spec.output_types), bytes(data))
        except DecodingError as exc:
            raise EncodingFailed(
                f"Malformed return data for {spec.signature}", cause=exc
            ) from exc
        return self._checksum_addresses(spec.output_types, values)

    @staticmethod
    def _checksum_addresses(types: Sequence[str], values: Sequence[Any]) -> tuple[Any, ...]:
        def convert(abi_type: str, value: Any) -> Any:
            if abi_type == "address":
                return normalize_address(value)
            if abi_type == "address[]":
                return tuple(normalize_address(item) for item in value)
            return value

        return tuple(convert(abi_type, value) for abi_type, value in zip(types, values))

"""
Contract interface definitions consumed by the assign-hat workflow.

Only the functions the workflow actually calls are listed: hat creation,
next-id lookup and minting on Hats Protocol; ownership, setup and state
reads on the Safe; proxy creation on the SafeProxyFactory; and the
MultiSendCallOnly batch entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from web3 import Web3

HATS_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "_admin", "type": "uint256"},
            {"name": "_details", "type": "string"},
            {"name": "_maxSupply", "type": "uint32"},
            {"name": "_eligibility", "type": "address"},
            {"name": "_toggle", "type": "address"},
            {"name": "_mutable", "type": "bool"},
            {"name": "_imageURI", "type": "string"},
        ],
        "name": "createHat",
        "outputs": [{"name": "newHatId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "_admin", "type": "uint256"}],
        "name": "getNextId",
        "outputs": [{"name": "nextId", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_hatId", "type": "uint256"},
            {"name": "_wearer", "type": "address"},
        ],
        "name": "mintHat",
        "outputs": [{"name": "success", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

SAFE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "isOwner",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getOwners",
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getThreshold",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "nonce",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_owners", "type": "address[]"},
            {"name": "_threshold", "type": "uint256"},
            {"name": "to", "type": "address"},
            {"name": "data", "type": "bytes"},
            {"name": "fallbackHandler", "type": "address"},
            {"name": "paymentToken", "type": "address"},
            {"name": "payment", "type": "uint256"},
            {"name": "paymentReceiver", "type": "address"},
        ],
        "name": "setup",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

PROXY_FACTORY_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "proxyCreationCode",
        "outputs": [{"name": "", "type": "bytes"}],
        "stateMutability": "pure",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_singleton", "type": "address"},
            {"name": "initializer", "type": "bytes"},
            {"name": "saltNonce", "type": "uint256"},
        ],
        "name": "createProxyWithNonce",
        "outputs": [{"name": "proxy", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MULTISEND_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "transactions", "type": "bytes"}],
        "name": "multiSend",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
]


@dataclass(frozen=True)
class FunctionSpec:
    """A resolved ABI function: canonical signature, selector and types."""

    name: str
    input_types: tuple[str, ...]
    input_names: tuple[str, ...]
    output_types: tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    @classmethod
    def from_abi(cls, entry: dict[str, Any]) -> FunctionSpec:
        return cls(
            name=entry["name"],
            input_types=tuple(arg["type"] for arg in entry["inputs"]),
            input_names=tuple(arg["name"] for arg in entry["inputs"]),
            output_types=tuple(arg["type"] for arg in entry["outputs"]),
        )


def index_functions(*abis: list[dict[str, Any]]) -> dict[str, FunctionSpec]:
    """Map function name → spec across one or more ABIs."""
    functions: dict[str, FunctionSpec] = {}
    for abi in abis:
        for entry in abi:
            if entry.get("type") == "function":
                spec = FunctionSpec.from_abi(entry)
                functions[spec.name] = spec
    return functions


FUNCTIONS = index_functions(HATS_ABI, SAFE_ABI, PROXY_FACTORY_ABI, MULTISEND_ABI)

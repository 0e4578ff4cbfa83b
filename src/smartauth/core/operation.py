"""
Operation codec (ERC-4337 UserOperation).

The operation hash is the object every validation module signs over:

    inner = keccak(abi.encode(sender, nonce, keccak(initCode), keccak(callData),
                              callGasLimit, verificationGasLimit, preVerificationGas,
                              maxFeePerGas, maxPriorityFeePerGas, keccak(paymasterAndData)))
    opHash = keccak(abi.encode(inner, entryPoint, chainId))

The signature field is excluded, and the entry point address and chain id are
mixed in, so a signature binds to exactly one dispatcher on exactly one chain.
Changing the field order or inclusion is a compatibility break.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict

from smartauth.core import abi
from smartauth.core.config import UINT192_MAX, UINT64_MAX
from smartauth.core.crypto_utils import keccak256, normalize_address
from smartauth.core.exceptions import MalformedPayloadError

NONCE_SEQUENCE_BITS = 64

_PACK_TYPES = (
    "address",
    "uint256",
    "bytes32",
    "bytes32",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "bytes32",
)


def nonce_key(nonce: int) -> int:
    """Upper 192 bits: the independent call stream."""
    return nonce >> NONCE_SEQUENCE_BITS


def nonce_sequence(nonce: int) -> int:
    """Lower 64 bits: the strictly increasing counter within a key."""
    return nonce & UINT64_MAX


def make_nonce(key: int, sequence: int) -> int:
    if key < 0 or key > UINT192_MAX:
        raise ValueError("nonce key out of range")
    if sequence < 0 or sequence > UINT64_MAX:
        raise ValueError("nonce sequence out of range")
    return (key << NONCE_SEQUENCE_BITS) | sequence


@dataclass(frozen=True)
class UserOperation:
    """
    ERC-4337 UserOperation struct.

    Immutable intent record. Builders produce a new instance through
    ``with_signature`` instead of mutating the signature in place.
    """

    sender: str
    nonce: int = 0
    init_code: bytes = b""
    call_data: bytes = b""
    call_gas_limit: int = 200_000
    verification_gas_limit: int = 1_000_000
    pre_verification_gas: int = 50_000
    max_fee_per_gas: int = 1_000_000_000  # 1 Gwei
    max_priority_fee_per_gas: int = 1_000_000_000
    paymaster_and_data: bytes = b""
    signature: bytes = field(default=b"", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender))
        for name in (
            "nonce",
            "call_gas_limit",
            "verification_gas_limit",
            "pre_verification_gas",
            "max_fee_per_gas",
            "max_priority_fee_per_gas",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0 or value >= 1 << 256:
                raise MalformedPayloadError(
                    f"{name} must be a uint256", details={"field": name}
                )

    def pack(self) -> bytes:
        """ABI-encode every field except the signature."""
        return abi.encode(
            _PACK_TYPES,
            (
                self.sender,
                self.nonce,
                keccak256(self.init_code),
                keccak256(self.call_data),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak256(self.paymaster_and_data),
            ),
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """
        Get UserOp hash for signing.

        Args:
            entry_point: EntryPoint contract address
            chain_id: Chain ID for replay protection

        Returns:
            32-byte operation hash
        """
        inner = keccak256(self.pack())
        return keccak256(
            abi.encode(
                ("bytes32", "address", "uint256"),
                (inner, normalize_address(entry_point), chain_id),
            )
        )

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=bytes(signature))

    @property
    def nonce_key(self) -> int:
        return nonce_key(self.nonce)

    @property
    def nonce_sequence(self) -> int:
        return nonce_sequence(self.nonce)

    def to_dict(self) -> Dict[str, str]:
        """JSON-RPC form: camelCase keys, hex quantities and hex bytes."""
        return {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "initCode": "0x" + self.init_code.hex(),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "paymasterAndData": "0x" + self.paymaster_and_data.hex(),
            "signature": "0x" + self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserOperation":
        def _int(key: str, default: int = 0) -> int:
            value = data.get(key, default)
            if isinstance(value, str):
                return int(value, 16) if value.lower().startswith("0x") else int(value)
            return int(value)

        def _bytes(key: str) -> bytes:
            value = data.get(key) or "0x"
            if isinstance(value, (bytes, bytearray)):
                return bytes(value)
            if not isinstance(value, str):
                raise MalformedPayloadError(
                    f"{key} must be a hex string", details={"field": key}
                )
            text = value[2:] if value.lower().startswith("0x") else value
            try:
                return bytes.fromhex(text)
            except ValueError as exc:
                raise MalformedPayloadError(
                    f"{key} is not valid hex", details={"field": key}
                ) from exc

        if "sender" not in data:
            raise MalformedPayloadError("sender is required", details={"field": "sender"})
        try:
            return cls(
                sender=data["sender"],
                nonce=_int("nonce"),
                init_code=_bytes("initCode"),
                call_data=_bytes("callData"),
                call_gas_limit=_int("callGasLimit", 200_000),
                verification_gas_limit=_int("verificationGasLimit", 1_000_000),
                pre_verification_gas=_int("preVerificationGas", 50_000),
                max_fee_per_gas=_int("maxFeePerGas", 1_000_000_000),
                max_priority_fee_per_gas=_int("maxPriorityFeePerGas", 1_000_000_000),
                paymaster_and_data=_bytes("paymasterAndData"),
                signature=_bytes("signature"),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedPayloadError(
                "Invalid numeric field", details={"error": str(exc)}
            ) from exc

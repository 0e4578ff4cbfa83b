"""
ABI encoding helpers.

Thin wrappers over eth-abi so that contracts and off-chain builders agree
on one encoding, and so that decoding failures surface as
MalformedPayloadError instead of library-specific exceptions.
"""

from __future__ import annotations

from typing import Any, Sequence, Tuple

import eth_abi
from eth_abi.exceptions import DecodingError, EncodingError
from eth_abi.packed import encode_packed as _encode_packed

from smartauth.core.crypto_utils import keccak256, normalize_address
from smartauth.core.exceptions import MalformedPayloadError

SELECTOR_LENGTH = 4


def encode(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """Solidity ``abi.encode``."""
    return eth_abi.encode(list(types), list(values))


def encode_packed(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """Solidity ``abi.encodePacked``."""
    return _encode_packed(list(types), list(values))


def decode(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    """
    Solidity ``abi.decode``.

    Raises:
        MalformedPayloadError: if ``data`` is not a valid encoding of ``types``
    """
    try:
        values = eth_abi.decode(list(types), bytes(data))
    except (DecodingError, EncodingError, OverflowError, ValueError, TypeError) as exc:
        raise MalformedPayloadError(
            "ABI decoding failed",
            details={"types": list(types), "length": len(data), "error": str(exc)},
        ) from exc
    return tuple(_normalize_decoded(t, v) for t, v in zip(types, values))


def _normalize_decoded(abi_type: str, value: Any) -> Any:
    """Decoded addresses come back checksummed; store them lowercase."""
    if abi_type == "address":
        return normalize_address(value)
    if abi_type == "address[]":
        return [normalize_address(v) for v in value]
    if isinstance(value, tuple) and not abi_type.endswith("]"):
        return value
    if isinstance(value, tuple):
        return list(value)
    return value


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak(signature), e.g. ``transfer(address,uint256)``."""
    return keccak256(signature.encode("ascii"))[:SELECTOR_LENGTH]


def argument_types(signature: str) -> list[str]:
    """Split ``name(t1,t2,...)`` into its top-level argument types."""
    start = signature.index("(")
    inner = signature[start + 1 : -1]
    types: list[str] = []
    depth = 0
    current = ""
    for ch in inner:
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        types.append(current)
    return types


def encode_call(signature: str, args: Sequence[Any]) -> bytes:
    """Selector followed by the ABI encoding of ``args``."""
    return function_selector(signature) + encode(argument_types(signature), args)


def split_selector(data: bytes) -> Tuple[bytes, bytes]:
    if len(data) < SELECTOR_LENGTH:
        raise MalformedPayloadError(
            "Call data shorter than a selector", details={"length": len(data)}
        )
    return bytes(data[:SELECTOR_LENGTH]), bytes(data[SELECTOR_LENGTH:])


def decode_call(signature: str, data: bytes) -> Tuple[Any, ...]:
    """Decode call arguments after checking the selector matches ``signature``."""
    selector, body = split_selector(data)
    if selector != function_selector(signature):
        raise MalformedPayloadError(
            "Selector mismatch",
            details={"expected": signature, "selector": "0x" + selector.hex()},
        )
    return decode(argument_types(signature), body)

"""Utility helpers for keccak hashing, addresses and EIP-191 signatures.

Owner, session-key and guardian signatures all follow the same scheme: an
ECDSA secp256k1 signature over the EIP-191 "Ethereum Signed Message" digest of
the signed bytes (usually a 32-byte hash), recovered with ecrecover.
"""

from __future__ import annotations

from typing import Union

from Crypto.Hash import keccak
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError
from eth_utils import to_checksum_address

from smartauth.core.exceptions import MalformedPayloadError, MalformedSignatureError

ZERO_ADDRESS = "0x" + "00" * 20
SIGNATURE_LENGTH = 65

AddressLike = Union[str, bytes]


def keccak256(data: bytes) -> bytes:
    """Compute keccak256 hash (same as Ethereum)."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def normalize_address(value: AddressLike) -> str:
    """Return ``value`` as a lowercase 0x-prefixed 20-byte hex address."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
        if len(raw) != 20:
            raise MalformedPayloadError(
                "Invalid address length", details={"length": len(raw)}
            )
        return "0x" + raw.hex()
    if not isinstance(value, str):
        raise MalformedPayloadError(
            "Invalid address type", details={"type": type(value).__name__}
        )
    text = value[2:] if value[:2].lower() == "0x" else value
    if len(text) != 40:
        raise MalformedPayloadError("Invalid address length", details={"address": value})
    try:
        bytes.fromhex(text)
    except ValueError as exc:
        raise MalformedPayloadError("Invalid address hex", details={"address": value}) from exc
    return "0x" + text.lower()


def to_checksum(value: AddressLike) -> str:
    return to_checksum_address(normalize_address(value))


def address_bytes(value: AddressLike) -> bytes:
    return bytes.fromhex(normalize_address(value)[2:])


def generate_keypair() -> tuple[str, str]:
    """Generate a random key. Returns (private_key_hex, address)."""
    acct = Account.create()
    return acct.key.hex(), normalize_address(acct.address)


def address_from_private_key(private_key: str) -> str:
    return normalize_address(Account.from_key(private_key).address)


def sign_eth_message(private_key: str, message: bytes) -> bytes:
    """Sign ``message`` with the EIP-191 personal-message prefix."""
    signed = Account.sign_message(encode_defunct(primitive=message), private_key=private_key)
    return bytes(signed.signature)


def sign_hash_eth(private_key: str, hash32: bytes) -> bytes:
    """Sign a 32-byte hash as an EIP-191 message ("...Message:\\n32" ‖ hash)."""
    if len(hash32) != 32:
        raise ValueError("hash must be 32 bytes")
    return sign_eth_message(private_key, hash32)


def recover_eth_message_signer(message: bytes, signature: bytes) -> str:
    """
    Recover the address that produced an EIP-191 signature over ``message``.

    Raises:
        MalformedSignatureError: if the signature is not 65 bytes or does not
            correspond to any curve point.
    """
    if len(signature) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(
            "Invalid signature length",
            details={"length": len(signature)},
        )
    try:
        recovered = Account.recover_message(
            encode_defunct(primitive=message), signature=signature
        )
    except (BadSignature, EthKeysValidationError, ValueError) as exc:
        raise MalformedSignatureError(
            "Signature recovery failed", details={"error": str(exc)}
        ) from exc
    return normalize_address(recovered)


def recover_eth_signer(hash32: bytes, signature: bytes) -> str:
    return recover_eth_message_signer(hash32, signature)


def is_valid_eth_signature(hash32: bytes, signature: bytes, expected: AddressLike) -> bool:
    """True iff ``signature`` over ``hash32`` recovers to ``expected``."""
    try:
        return recover_eth_signer(hash32, signature) == normalize_address(expected)
    except MalformedSignatureError:
        return False

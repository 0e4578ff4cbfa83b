"""
Operation signing helpers.

Produces the outer signature envelopes the account expects, owner ERC-1271
approvals and guardian recovery signatures.
"""

from __future__ import annotations

from typing import Sequence

from smartauth.core.crypto_utils import (
    address_bytes,
    address_from_private_key,
    keccak256,
    sign_eth_message,
    sign_hash_eth,
)
from smartauth.core.envelope import wrap
from smartauth.core.operation import UserOperation
from smartauth.core.contracts.account_recovery import control_message_hash


def sign_user_op(
    op: UserOperation,
    private_key: str,
    entry_point: str,
    chain_id: int,
    module: str,
) -> UserOperation:
    """Owner signature over the operation hash, wrapped for ``module``."""
    signature = sign_hash_eth(private_key, op.hash(entry_point, chain_id))
    return op.with_signature(wrap(signature, module))


def wrap_user_op(op: UserOperation, payload: bytes, module: str) -> UserOperation:
    """Attach an already-built module payload to ``op``."""
    return op.with_signature(wrap(payload, module))


def sign_erc1271(private_key: str, data_hash: bytes, account: str, module: str) -> bytes:
    """ERC-1271 approval the ownership module accepts: signs ``dataHash ‖ account``."""
    return wrap(sign_eth_message(private_key, bytes(data_hash) + address_bytes(account)), module)


# ==================== Recovery ====================


def guardian_signature(guardian_key: str, account: str) -> bytes:
    """Guardian's signature over the account-bound control message."""
    return sign_hash_eth(guardian_key, control_message_hash(account))


def guardian_id(guardian_key: str, account: str) -> bytes:
    """Identifier the recovery module stores for this guardian on ``account``."""
    return keccak256(guardian_signature(guardian_key, account))


def recovery_signature(op_hash: bytes, guardian_keys: Sequence[str], account: str) -> bytes:
    """Concatenated ``(opHashSignature ‖ controlMessageSignature)`` pairs, one per guardian.

    Pairs are ordered by ascending guardian address.
    """
    ordered = sorted(guardian_keys, key=lambda key: int(address_from_private_key(key), 16))
    return b"".join(
        sign_hash_eth(key, op_hash) + guardian_signature(key, account) for key in ordered
    )


def sign_recovery_op(
    op: UserOperation,
    guardian_keys: Sequence[str],
    entry_point: str,
    chain_id: int,
    recovery_module: str,
) -> UserOperation:
    op_hash = op.hash(entry_point, chain_id)
    return op.with_signature(wrap(recovery_signature(op_hash, guardian_keys, op.sender), recovery_module))

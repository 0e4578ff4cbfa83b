"""
Session key manager (flat, proof-based).

The account stores a single Merkle root. Each leaf grants one session:

    leaf = keccak(packed(uint48 validUntil, uint48 validAfter,
                         address sessionValidationModule, bytes sessionKeyData))

An operation presents the leaf fields, a Merkle proof and the session-key
signature. The manager checks membership, delegates call scoping and the
signature check to the named sub-validator, and returns the leaf's window
for the entry point to enforce. A zero bound leaves that side of the window
open, so an all-zero leaf is valid at any time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from smartauth.core import abi
from smartauth.core.config import ERC1271_INVALID
from smartauth.core.crypto_utils import keccak256, normalize_address
from smartauth.core.exceptions import InvalidSignatureError, ValidationDenied
from smartauth.core.ledger import Ledger, external
from smartauth.core.merkle import MerkleTree
from smartauth.core.operation import UserOperation
from smartauth.core.validation import (
    SessionValidationModule,
    ValidationData,
    ValidationModule,
)

logger = logging.getLogger(__name__)

SESSION_PAYLOAD_TYPES = ("uint48", "uint48", "address", "bytes", "bytes32[]", "bytes")
EMPTY_ROOT = b"\x00" * 32


def session_leaf_hash(
    valid_until: int, valid_after: int, svm: str, session_key_data: bytes
) -> bytes:
    return keccak256(
        abi.encode_packed(
            ("uint48", "uint48", "address", "bytes"),
            (valid_until, valid_after, normalize_address(svm), bytes(session_key_data)),
        )
    )


@dataclass
class SessionStorage:
    merkle_root: bytes = EMPTY_ROOT


class SessionKeyManager(ValidationModule):
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.sessions: Dict[str, SessionStorage] = {}

    @external("setMerkleRoot(bytes32)")
    def set_merkle_root(self, caller: str, root: bytes) -> None:
        account = self._account_slot(caller)
        self.sessions.setdefault(account, SessionStorage()).merkle_root = bytes(root)
        self._emit("MerkleRootUpdated", account=account, root="0x" + bytes(root).hex())
        logger.info(
            "Session merkle root updated",
            extra={
                "event": "session.root_updated",
                "account": account,
                "root": "0x" + bytes(root).hex(),
            },
        )

    def get_session_key(self, account: str) -> SessionStorage:
        return self.sessions.get(normalize_address(account), SessionStorage())

    def validate_session_key(
        self,
        account: str,
        valid_until: int,
        valid_after: int,
        svm: str,
        session_key_data: bytes,
        proof: Sequence[bytes],
    ) -> None:
        """
        Check that the leaf is part of the account's session tree.

        Raises:
            ValidationDenied: ``SessionNotApproved`` when the proof does not
                resolve to the stored root
        """
        account = self._account_slot(account)
        storage = self.sessions.get(account)
        if storage is None or storage.merkle_root == EMPTY_ROOT:
            raise ValidationDenied("SessionNotApproved", details={"account": account})
        leaf = session_leaf_hash(valid_until, valid_after, svm, session_key_data)
        if not MerkleTree.verify_proof(leaf, proof, storage.merkle_root):
            raise ValidationDenied(
                "SessionNotApproved",
                details={"account": account, "leaf": "0x" + leaf.hex()},
            )

    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        (
            valid_until,
            valid_after,
            svm,
            session_key_data,
            proof,
            session_key_signature,
        ) = abi.decode(SESSION_PAYLOAD_TYPES, op.signature)

        self.validate_session_key(op.sender, valid_until, valid_after, svm, session_key_data, proof)

        validator = self.ledger.get(svm, SessionValidationModule)
        if not validator.validate_session_user_op(
            op, op_hash, session_key_data, session_key_signature
        ):
            raise InvalidSignatureError("SessionKeySignatureInvalid")
        return ValidationData.success(valid_until, valid_after)

    def is_valid_signature_for_address(
        self, data_hash: bytes, signature: bytes, account: str
    ) -> int:
        return ERC1271_INVALID


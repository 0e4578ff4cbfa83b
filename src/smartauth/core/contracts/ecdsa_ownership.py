"""
ECDSA ownership module.

Single-owner validation: the owner signs the operation hash (EIP-191), and
ERC-1271 approvals are bound to the account by signing
``dataHash ‖ accountAddress``. This is the module the recovery flow
ultimately rewrites through ``transferOwnership``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from smartauth.core.config import ERC1271_INVALID, ERC1271_MAGIC_VALUE
from smartauth.core.crypto_utils import (
    ZERO_ADDRESS,
    address_bytes,
    normalize_address,
    recover_eth_message_signer,
    recover_eth_signer,
)
from smartauth.core.exceptions import InvalidSignatureError, SignatureError
from smartauth.core.ledger import Ledger, external
from smartauth.core.operation import UserOperation
from smartauth.core.validation import ValidationData, ValidationModule

logger = logging.getLogger(__name__)


class EcdsaOwnershipModule(ValidationModule):
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.owners: Dict[str, str] = {}

    @external("initForSmartAccount(address)")
    def init_for_smart_account(self, caller: str, owner: str) -> str:
        account = self._account_slot(caller)
        owner = normalize_address(owner)
        self._require(account not in self.owners, "AlreadyInitedForSmartAccount")
        self._require_valid_owner(owner)
        self.owners[account] = owner
        self._emit("OwnershipTransferred", account=account, old_owner=ZERO_ADDRESS, new_owner=owner)
        return self.address

    @external("transferOwnership(address)")
    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        account = self._account_slot(caller)
        new_owner = normalize_address(new_owner)
        self._require_valid_owner(new_owner)
        old_owner = self.owners.get(account, ZERO_ADDRESS)
        self.owners[account] = new_owner
        self._emit("OwnershipTransferred", account=account, old_owner=old_owner, new_owner=new_owner)
        logger.info(
            "Ownership transferred",
            extra={
                "event": "ecdsa.ownership_transferred",
                "account": account,
                "new_owner": new_owner,
            },
        )

    @external("renounceOwnership()")
    def renounce_ownership(self, caller: str) -> None:
        account = self._account_slot(caller)
        old_owner = self.owners.pop(account, ZERO_ADDRESS)
        self._emit("OwnershipTransferred", account=account, old_owner=old_owner, new_owner=ZERO_ADDRESS)

    def get_owner(self, account: str) -> str:
        account = normalize_address(account)
        self._require(account in self.owners, "NoOwnerRegisteredForSmartAccount")
        return self.owners[account]

    def _require_valid_owner(self, owner: str) -> None:
        self._require(owner != ZERO_ADDRESS, "ZeroAddressNotAllowedAsOwner")
        # Contracts cannot produce ECDSA signatures
        self._require(owner not in self.ledger.contracts, "NotEOA")

    # ==================== Validation ====================

    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        account = self._account_slot(op.sender)
        owner = self.owners.get(account)
        if owner is None:
            raise InvalidSignatureError("NoOwnerRegisteredForSmartAccount")
        signer = recover_eth_signer(op_hash, op.signature)
        if signer != owner:
            raise InvalidSignatureError(
                "InvalidSignature", details={"account": account, "recovered": signer}
            )
        return ValidationData.success()

    def is_valid_signature_for_address(
        self, data_hash: bytes, signature: bytes, account: str
    ) -> int:
        """ERC-1271 check of an owner signature over ``data_hash ‖ account``."""
        account = self._account_slot(account)
        owner = self.owners.get(account)
        if owner is None:
            return ERC1271_INVALID
        try:
            signer = recover_eth_message_signer(
                bytes(data_hash) + address_bytes(account), signature
            )
        except SignatureError:
            return ERC1271_INVALID
        return ERC1271_MAGIC_VALUE if signer == owner else ERC1271_INVALID

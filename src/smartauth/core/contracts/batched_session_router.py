"""
Batched session router.

Authorizes an ``executeBatch`` operation whose calls are each scoped by a
different session leaf. Payload:

    abi.encode(address sessionKeyManager,
               (uint48 validUntil, uint48 validAfter, address svm,
                bytes sessionKeyData, bytes32[] proof, bytes callSpecificData)[],
               bytes signature)

Leaf ``i`` scopes call ``i``. Every leaf is proven against the manager's
root and checked by its sub-validator; all of them must name the same
session key, which signs once over ``keccak(opHash ‖ sessionKeyManager)``.
The verdict window is the intersection of all leaf windows.
"""

from __future__ import annotations

import logging
from typing import Optional

from smartauth.core import abi
from smartauth.core.config import ERC1271_INVALID
from smartauth.core.crypto_utils import address_bytes, keccak256, normalize_address, recover_eth_signer
from smartauth.core.exceptions import InvalidSignatureError, ValidationDenied
from smartauth.core.ledger import Ledger
from smartauth.core.operation import UserOperation
from smartauth.core.validation import (
    SessionValidationModule,
    ValidationData,
    ValidationModule,
)
from smartauth.core.contracts.session_key_manager import SessionKeyManager
from smartauth.core.contracts.smart_account import EXECUTE_BATCH_SIGNATURE, SmartAccount

logger = logging.getLogger(__name__)

EXECUTE_BATCH_SELECTOR = abi.function_selector(EXECUTE_BATCH_SIGNATURE)
SESSION_DATA_TUPLE = "(uint48,uint48,address,bytes,bytes32[],bytes)"
ROUTER_PAYLOAD_TYPES = ("address", SESSION_DATA_TUPLE + "[]", "bytes")


def router_signed_hash(op_hash: bytes, session_key_manager: str) -> bytes:
    """Digest the session key signs: keccak(opHash ‖ sessionKeyManager)."""
    return keccak256(bytes(op_hash) + address_bytes(session_key_manager))


class BatchedSessionRouter(ValidationModule):
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)

    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        if bytes(op.call_data[:4]) != EXECUTE_BATCH_SELECTOR:
            raise ValidationDenied("SR Invalid Selector")

        skm_address, sessions, signature = abi.decode(ROUTER_PAYLOAD_TYPES, op.signature)
        dests, values, datas = abi.decode(("address[]", "uint256[]", "bytes[]"), op.call_data[4:])
        if len(values) not in (0, len(dests)) or len(datas) != len(dests):
            raise ValidationDenied(
                "Lengths mismatch",
                details={"calls": len(dests), "values": len(values), "datas": len(datas)},
            )
        if not sessions or len(sessions) != len(dests):
            raise ValidationDenied(
                "Lengths mismatch", details={"calls": len(dests), "sessions": len(sessions)}
            )

        account = self.ledger.get(op.sender, SmartAccount)
        if not account.is_module_enabled(skm_address):
            raise ValidationDenied("SR Invalid SKM", details={"skm": skm_address})
        manager = self.ledger.contract_at(skm_address)
        if not isinstance(manager, SessionKeyManager):
            raise ValidationDenied("SR Invalid SKM", details={"skm": skm_address})

        session_key: Optional[str] = None
        verdict = ValidationData.success()
        for i, (valid_until, valid_after, svm, session_key_data, proof, call_specific) in enumerate(sessions):
            svm = normalize_address(svm)
            manager.validate_session_key(
                op.sender, valid_until, valid_after, svm, session_key_data, list(proof)
            )
            validator = self.ledger.get(svm, SessionValidationModule)
            value = values[i] if values else 0
            key = normalize_address(
                validator.validate_session_params(
                    dests[i], value, datas[i], session_key_data, call_specific
                )
            )
            if session_key is None:
                session_key = key
            elif key != session_key:
                raise ValidationDenied("SR Session Key Mismatch", details={"index": i})
            verdict = verdict.intersect(ValidationData.success(valid_until, valid_after))

        signer = recover_eth_signer(router_signed_hash(op_hash, skm_address), signature)
        if signer != session_key:
            raise InvalidSignatureError("SessionKeySignatureInvalid", details={"recovered": signer})

        logger.debug(
            "Batched session validated",
            extra={
                "event": "session.batch_validated",
                "account": op.sender,
                "calls": len(dests),
                "valid_after": verdict.valid_after,
                "valid_until": verdict.valid_until,
            },
        )
        return verdict

    def is_valid_signature_for_address(
        self, data_hash: bytes, signature: bytes, account: str
    ) -> int:
        return ERC1271_INVALID

"""
Hybrid session key manager.

Sessions are enabled per account and remembered by digest, so repeated use
needs no Merkle proof. A session becomes enabled in one of two ways:

- explicitly, by the account calling ``enableSession`` (owner path)
- inline, by an ENABLE_AND_USE operation carrying the owner's signature over
  a session enable batch ``packed(uint8 count, uint64[count] chainIds,
  bytes32[count] digests)``; the entry at ``sessionIndex`` must name the
  current chain and the session's digest

Both paths store the same record, so a session enabled inline is
indistinguishable from one enabled explicitly. Enabling is idempotent.

Batched operations (``executeBatch``) carry one session info per call and a
single session-key signature over the operation hash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

from smartauth.core import abi
from smartauth.core.config import ERC1271_INVALID, ERC1271_MAGIC_VALUE
from smartauth.core.crypto_utils import keccak256, normalize_address, recover_eth_signer
from smartauth.core.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    ValidationDenied,
)
from smartauth.core.ledger import Ledger, external
from smartauth.core.operation import UserOperation
from smartauth.core.validation import (
    SessionValidationModule,
    ValidationData,
    ValidationModule,
)
from smartauth.core.contracts.session_key_manager import session_leaf_hash
from smartauth.core.contracts.smart_account import (
    EXECUTE_BATCH_SIGNATURE,
    EXECUTE_SIGNATURE,
    SmartAccount,
)

logger = logging.getLogger(__name__)

EXECUTE_SELECTOR = abi.function_selector(EXECUTE_SIGNATURE)
EXECUTE_BATCH_SELECTOR = abi.function_selector(EXECUTE_BATCH_SIGNATURE)

_CHAIN_ID_BYTES = 8
_DIGEST_BYTES = 32


class TransactionMode(IntEnum):
    PRE_ENABLED = 0
    ENABLE_AND_USE = 1


@dataclass(frozen=True)
class SessionData:
    valid_until: int
    valid_after: int
    session_validation_module: str
    session_key_data: bytes

    def digest(self) -> bytes:
        return session_leaf_hash(
            self.valid_until,
            self.valid_after,
            self.session_validation_module,
            self.session_key_data,
        )

    def window(self) -> ValidationData:
        return ValidationData.success(self.valid_until, self.valid_after)


@dataclass(frozen=True)
class SessionEnableData:
    chain_ids: Tuple[int, ...]
    digests: Tuple[bytes, ...]

    @classmethod
    def parse(cls, data: bytes) -> "SessionEnableData":
        data = bytes(data)
        if not data:
            raise MalformedPayloadError("SessionEnableDataTooShort")
        count = data[0]
        expected = 1 + count * (_CHAIN_ID_BYTES + _DIGEST_BYTES)
        if len(data) < expected:
            raise MalformedPayloadError(
                "SessionEnableDataTooShort",
                details={"count": count, "length": len(data), "expected": expected},
            )
        chain_ids = tuple(
            int.from_bytes(data[1 + i * _CHAIN_ID_BYTES : 1 + (i + 1) * _CHAIN_ID_BYTES], "big")
            for i in range(count)
        )
        base = 1 + count * _CHAIN_ID_BYTES
        digests = tuple(
            data[base + i * _DIGEST_BYTES : base + (i + 1) * _DIGEST_BYTES]
            for i in range(count)
        )
        return cls(chain_ids, digests)

    def entry(self, index: int) -> Tuple[int, bytes]:
        if index >= len(self.digests):
            raise ValidationDenied(
                "SessionIndexOutOfBounds", details={"index": index, "count": len(self.digests)}
            )
        return self.chain_ids[index], self.digests[index]


def _parse_session_header(data: bytes, offset: int) -> Tuple[SessionData, bytes]:
    """Read ``uint48 validUntil, uint48 validAfter, address svm`` then the ABI tail."""
    if len(data) < offset + 32:
        raise MalformedPayloadError("Session info too short", details={"length": len(data)})
    valid_until = int.from_bytes(data[offset : offset + 6], "big")
    valid_after = int.from_bytes(data[offset + 6 : offset + 12], "big")
    svm = "0x" + data[offset + 12 : offset + 32].hex()
    return SessionData(valid_until, valid_after, svm, b""), data[offset + 32 :]


class HybridSessionKeyManager(ValidationModule):
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.enabled_sessions: Dict[str, Dict[bytes, SessionData]] = {}

    # ==================== Session management ====================

    @external("enableSession(uint48,uint48,address,bytes)")
    def enable_session(
        self,
        caller: str,
        valid_until: int,
        valid_after: int,
        svm: str,
        session_key_data: bytes,
    ) -> bytes:
        account = self._account_slot(caller)
        session = SessionData(valid_until, valid_after, normalize_address(svm), bytes(session_key_data))
        return self._enable(account, session)

    @external("disableSession(bytes32)")
    def disable_session(self, caller: str, digest: bytes) -> None:
        account = self._account_slot(caller)
        if self.enabled_sessions.get(account, {}).pop(bytes(digest), None) is not None:
            self._emit("SessionDisabled", account=account, digest="0x" + bytes(digest).hex())

    def get_session(self, account: str, digest: bytes) -> Optional[SessionData]:
        return self.enabled_sessions.get(normalize_address(account), {}).get(bytes(digest))

    def is_session_enabled(self, account: str, digest: bytes) -> bool:
        return self.get_session(account, digest) is not None

    def _enable(self, account: str, session: SessionData) -> bytes:
        digest = session.digest()
        sessions = self.enabled_sessions.setdefault(account, {})
        if digest not in sessions:
            sessions[digest] = session
            self._emit("SessionEnabled", account=account, digest="0x" + digest.hex())
            logger.info(
                "Session enabled",
                extra={
                    "event": "session.enabled",
                    "account": account,
                    "digest": "0x" + digest.hex(),
                },
            )
        return digest

    def _enabled_session(self, account: str, digest: bytes) -> SessionData:
        session = self.enabled_sessions.get(account, {}).get(bytes(digest))
        if session is None:
            raise ValidationDenied(
                "SessionNotApproved", details={"account": account, "digest": "0x" + bytes(digest).hex()}
            )
        return session

    # ==================== Enable data ====================

    def _verify_enable_data_signature(
        self, account: str, enable_data: bytes, enable_signature: bytes
    ) -> None:
        """The account must vouch (ERC-1271) for the owner's approval of the batch."""
        smart_account = self.ledger.get(account, SmartAccount)
        result = smart_account.is_valid_signature(keccak256(enable_data), enable_signature)
        if result != ERC1271_MAGIC_VALUE:
            raise ValidationDenied("SessionNotApproved", details={"account": account})

    def _enable_from_batch(
        self, account: str, enable: SessionEnableData, index: int, session: SessionData
    ) -> None:
        chain_id, digest = enable.entry(index)
        if chain_id != self.ledger.chain_id:
            raise ValidationDenied(
                "SessionChainIdMismatch",
                details={"expected": self.ledger.chain_id, "approved": chain_id},
            )
        if digest != session.digest():
            raise ValidationDenied("SessionKeyDataHashMismatch")
        self._enable(account, session)

    # ==================== Validation ====================

    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        account = self._account_slot(op.sender)
        selector = bytes(op.call_data[:4])
        if selector == EXECUTE_SELECTOR:
            return self._validate_single(account, op, op_hash)
        if selector == EXECUTE_BATCH_SELECTOR:
            return self._validate_batch(account, op, op_hash)
        raise ValidationDenied("InvalidSelector", details={"selector": "0x" + selector.hex()})

    def _validate_single(self, account: str, op: UserOperation, op_hash: bytes) -> ValidationData:
        payload = bytes(op.signature)
        if not payload:
            raise MalformedPayloadError("Empty session payload")
        mode = payload[0]

        if mode == TransactionMode.PRE_ENABLED:
            digest, session_key_signature = abi.decode(("bytes32", "bytes"), payload[1:])
            session = self._enabled_session(account, digest)
        elif mode == TransactionMode.ENABLE_AND_USE:
            if len(payload) < 2:
                raise MalformedPayloadError("Session payload too short")
            session_index = payload[1]
            header, tail = _parse_session_header(payload, 2)
            session_key_data, enable_data, enable_signature, session_key_signature = abi.decode(
                ("bytes", "bytes", "bytes", "bytes"), tail
            )
            session = SessionData(
                header.valid_until,
                header.valid_after,
                header.session_validation_module,
                session_key_data,
            )
            enable = SessionEnableData.parse(enable_data)
            self._verify_enable_data_signature(account, enable_data, enable_signature)
            self._enable_from_batch(account, enable, session_index, session)
        else:
            raise MalformedPayloadError("InvalidTransactionMode", details={"mode": mode})

        validator = self.ledger.get(session.session_validation_module, SessionValidationModule)
        if not validator.validate_session_user_op(
            op, op_hash, session.session_key_data, session_key_signature
        ):
            raise InvalidSignatureError("SessionKeySignatureInvalid")
        return session.window()

    def _validate_batch(self, account: str, op: UserOperation, op_hash: bytes) -> ValidationData:
        dests, values, datas = abi.decode(("address[]", "uint256[]", "bytes[]"), op.call_data[4:])
        if len(values) not in (0, len(dests)) or len(datas) != len(dests):
            raise ValidationDenied(
                "Lengths mismatch",
                details={"calls": len(dests), "values": len(values), "datas": len(datas)},
            )
        enable_datas, enable_signatures, session_infos, session_key_signature = abi.decode(
            ("bytes[]", "bytes[]", "bytes[]", "bytes"), op.signature
        )
        if len(session_infos) != len(dests) or len(enable_datas) != len(enable_signatures):
            raise ValidationDenied(
                "Lengths mismatch",
                details={"calls": len(dests), "session_infos": len(session_infos)},
            )
        if not session_infos:
            raise ValidationDenied("Lengths mismatch", details={"calls": 0})

        enables: List[SessionEnableData] = []
        for enable_data, enable_signature in zip(enable_datas, enable_signatures):
            enables.append(SessionEnableData.parse(enable_data))
            self._verify_enable_data_signature(account, enable_data, enable_signature)

        session_key: Optional[str] = None
        verdict = ValidationData.success()
        for i, info in enumerate(session_infos):
            session, call_specific_data = self._resolve_session_info(account, bytes(info), enables)
            validator = self.ledger.get(session.session_validation_module, SessionValidationModule)
            value = values[i] if values else 0
            key = normalize_address(
                validator.validate_session_params(
                    dests[i], value, datas[i], session.session_key_data, call_specific_data
                )
            )
            if session_key is None:
                session_key = key
            elif key != session_key:
                raise ValidationDenied("SessionKeyMismatch", details={"index": i})
            verdict = verdict.intersect(session.window())

        if recover_eth_signer(op_hash, session_key_signature) != session_key:
            raise InvalidSignatureError("SessionKeySignatureInvalid")
        return verdict

    def _resolve_session_info(
        self, account: str, info: bytes, enables: List[SessionEnableData]
    ) -> Tuple[SessionData, bytes]:
        if not info:
            raise MalformedPayloadError("Empty session info")
        mode = info[0]
        if mode == TransactionMode.PRE_ENABLED:
            if len(info) < 33:
                raise MalformedPayloadError("Session info too short", details={"length": len(info)})
            session = self._enabled_session(account, info[1:33])
            (call_specific_data,) = abi.decode(("bytes",), info[33:])
            return session, call_specific_data
        if mode == TransactionMode.ENABLE_AND_USE:
            if len(info) < 3:
                raise MalformedPayloadError("Session info too short", details={"length": len(info)})
            enable_index, key_index = info[1], info[2]
            header, tail = _parse_session_header(info, 3)
            session_key_data, call_specific_data = abi.decode(("bytes", "bytes"), tail)
            session = SessionData(
                header.valid_until,
                header.valid_after,
                header.session_validation_module,
                session_key_data,
            )
            if enable_index >= len(enables):
                raise ValidationDenied(
                    "SessionIndexOutOfBounds", details={"enable_index": enable_index}
                )
            self._enable_from_batch(account, enables[enable_index], key_index, session)
            return session, call_specific_data
        raise MalformedPayloadError("InvalidTransactionMode", details={"mode": mode})

    def is_valid_signature_for_address(
        self, data_hash: bytes, signature: bytes, account: str
    ) -> int:
        return ERC1271_INVALID

"""
Account recovery module (guardian threshold + security delay).

Guardians are identified by ``keccak(signature)`` of their signature over the
account-bound control message ``keccak(CONTROL_MESSAGE ‖ account)``, so a
guardian's identity on one account is useless on another.

Recovery is a two-phase state machine per account:

    EMPTY --(threshold guardians sign a submitRecoveryRequest op)--> PENDING(hash, executeAfter)
    PENDING --(op whose callData hashes to ``hash``, at or after executeAfter)--> EMPTY
    PENDING --(new submission)--> PENDING (superseded)
    PENDING --(account renounces)--> EMPTY

The execute phase needs no signature: the delay is the security property.
It returns ``validAfter = executeAfter`` so the entry point denies early
execution, and clears the request so it cannot run twice. When the security
delay is zero, guardians sign the recovery call directly instead.

Guardian signatures are a concatenation of 130-byte pairs
``(opHashSignature ‖ controlMessageSignature)``; both halves must come from
the same signer and signers must appear in strictly ascending address order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from smartauth.core import abi, metrics
from smartauth.core.config import RECOVERY_CONTROL_MESSAGE, UINT48_MAX
from smartauth.core.crypto_utils import keccak256, normalize_address, recover_eth_signer
from smartauth.core.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    MalformedSignatureError,
    ValidationDenied,
)
from smartauth.core.ledger import Ledger, external
from smartauth.core.operation import UserOperation
from smartauth.core.validation import ValidationData, ValidationModule
from smartauth.core.contracts.smart_account import EXECUTE_SIGNATURE

logger = logging.getLogger(__name__)

SIGNATURE_PAIR_LENGTH = 130
_SIG_LENGTH = 65
EMPTY_GUARDIAN = b"\x00" * 32

SUBMIT_RECOVERY_SIGNATURE = "submitRecoveryRequest(bytes)"
SUBMIT_RECOVERY_SELECTOR = abi.function_selector(SUBMIT_RECOVERY_SIGNATURE)
EXECUTE_SELECTOR = abi.function_selector(EXECUTE_SIGNATURE)


def control_message_hash(account: str) -> bytes:
    """Hash every guardian of ``account`` signs to register."""
    return keccak256(
        abi.encode_packed(("string", "address"), (RECOVERY_CONTROL_MESSAGE, normalize_address(account)))
    )


class RecoveryState(Enum):
    EMPTY = "empty"
    PENDING = "pending"


@dataclass(frozen=True)
class RecoveryRequest:
    state: RecoveryState = RecoveryState.EMPTY
    call_data_hash: bytes = b""
    execute_after: int = 0

    @classmethod
    def pending(cls, call_data_hash: bytes, execute_after: int) -> "RecoveryRequest":
        return cls(RecoveryState.PENDING, call_data_hash, execute_after)

    @property
    def is_pending(self) -> bool:
        return self.state is RecoveryState.PENDING


@dataclass(frozen=True)
class TimeFrame:
    valid_until: int
    valid_after: int


@dataclass
class SmartAccountSettings:
    guardians_count: int = 0
    recovery_threshold: int = 0
    security_delay: int = 0


class AccountRecoveryModule(ValidationModule):
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.settings: Dict[str, SmartAccountSettings] = {}
        self.guardians: Dict[Tuple[bytes, str], TimeFrame] = {}
        self.recovery_requests: Dict[str, RecoveryRequest] = {}

    # ==================== Setup ====================

    @external("initForSmartAccount(bytes32[],(uint48,uint48)[],uint8,uint48)")
    def init_for_smart_account(
        self,
        caller: str,
        guardians: Sequence[bytes],
        timeframes: Sequence[Tuple[int, int]],
        recovery_threshold: int,
        security_delay: int,
    ) -> str:
        account = self._account_slot(caller)
        settings = self.settings.get(account)
        self._require(settings is None or settings.guardians_count == 0, "AlreadyInitedForSmartAccount")
        self._require(recovery_threshold <= len(guardians), "ThresholdTooHigh")
        self._require(len(guardians) == len(timeframes), "InvalidAmountOfGuardianParams")
        self._require(recovery_threshold > 0, "ZeroThreshold")

        now = self.now
        for guardian, (valid_until, valid_after) in zip(guardians, timeframes):
            guardian = bytes(guardian)
            self._require(guardian != EMPTY_GUARDIAN, "ZeroGuardian")
            self._require((guardian, account) not in self.guardians, "GuardianAlreadySet")
            if valid_until == 0:
                valid_until = UINT48_MAX
            self._require(valid_until >= valid_after, "InvalidTimeFrame")
            self._require(valid_until >= now, "ExpiredValidUntil")
            self.guardians[(guardian, account)] = TimeFrame(valid_until, valid_after)
            self._emit(
                "GuardianAdded",
                account=account,
                guardian="0x" + guardian.hex(),
                valid_until=valid_until,
                valid_after=valid_after,
            )

        self.settings[account] = SmartAccountSettings(
            guardians_count=len(guardians),
            recovery_threshold=recovery_threshold,
            security_delay=security_delay,
        )
        logger.info(
            "Account recovery initialized",
            extra={
                "event": "recovery.initialized",
                "account": account,
                "guardians": len(guardians),
                "threshold": recovery_threshold,
                "security_delay": security_delay,
            },
        )
        return self.address

    # ==================== Validation ====================

    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        account = self._account_slot(op.sender)
        request = self.recovery_requests.get(account, RecoveryRequest())
        if request.is_pending and keccak256(op.call_data) == request.call_data_hash:
            return self._consume_request(account, request)
        return self._validate_guardian_signatures(account, op, op_hash)

    def _consume_request(self, account: str, request: RecoveryRequest) -> ValidationData:
        self.recovery_requests[account] = RecoveryRequest()
        self._emit(
            "RecoveryRequestExecuted",
            account=account,
            call_data_hash="0x" + request.call_data_hash.hex(),
        )
        metrics.RECOVERY_REQUESTS.labels(stage="executed").inc()
        logger.info(
            "Recovery request consumed",
            extra={
                "event": "recovery.request_executed",
                "account": account,
                "execute_after": request.execute_after,
            },
        )
        return ValidationData.success(valid_until=0, valid_after=request.execute_after)

    def _validate_guardian_signatures(
        self, account: str, op: UserOperation, op_hash: bytes
    ) -> ValidationData:
        settings = self.settings.get(account)
        if settings is None or settings.recovery_threshold == 0:
            raise ValidationDenied("Threshold not set", details={"account": account})

        signatures = bytes(op.signature)
        if not signatures or len(signatures) % SIGNATURE_PAIR_LENGTH:
            raise MalformedSignatureError("Invalid Sigs Length", details={"length": len(signatures)})
        pairs = len(signatures) // SIGNATURE_PAIR_LENGTH
        if pairs < settings.recovery_threshold:
            raise ValidationDenied(
                "Not enough signatures",
                details={"required": settings.recovery_threshold, "provided": pairs},
            )

        is_submit = self._is_submit_request_call(op.call_data)
        if (settings.security_delay > 0) != is_submit:
            raise ValidationDenied("Wrong userOp", details={"security_delay": settings.security_delay})

        control_hash = control_message_hash(account)
        last_signer = 0
        verdict = ValidationData.success()
        for i in range(pairs):
            start = i * SIGNATURE_PAIR_LENGTH
            op_signature = signatures[start : start + _SIG_LENGTH]
            guardian_signature = signatures[start + _SIG_LENGTH : start + SIGNATURE_PAIR_LENGTH]

            signer = recover_eth_signer(op_hash, op_signature)
            if recover_eth_signer(control_hash, guardian_signature) != signer:
                raise InvalidSignatureError("InvalidSignature", details={"index": i})
            frame = self.guardians.get((keccak256(guardian_signature), account))
            if frame is None:
                raise ValidationDenied("InvalidGuardian", details={"index": i})
            if int(signer, 16) <= last_signer:
                raise ValidationDenied("NotUnique/BadOrder", details={"index": i, "signer": signer})
            last_signer = int(signer, 16)
            verdict = verdict.intersect(ValidationData.success(frame.valid_until, frame.valid_after))
        return verdict

    def _is_submit_request_call(self, call_data: bytes) -> bool:
        if bytes(call_data[:4]) != EXECUTE_SELECTOR:
            return False
        try:
            dest, _, inner = abi.decode(("address", "uint256", "bytes"), call_data[4:])
        except MalformedPayloadError:
            return False
        return dest == self.address and bytes(inner[:4]) == SUBMIT_RECOVERY_SELECTOR

    # ==================== Recovery requests ====================

    @external(SUBMIT_RECOVERY_SIGNATURE)
    def submit_recovery_request(self, caller: str, recovery_call_data: bytes) -> None:
        account = self._account_slot(caller)
        self._require(len(recovery_call_data) > 0, "EmptyRecoveryCallData")
        settings = self.settings.get(account, SmartAccountSettings())
        previous = self.recovery_requests.get(account, RecoveryRequest())
        request = RecoveryRequest.pending(
            keccak256(recovery_call_data), self.now + settings.security_delay
        )
        self.recovery_requests[account] = request
        self._emit(
            "RecoveryRequestSubmitted",
            account=account,
            call_data="0x" + bytes(recovery_call_data).hex(),
            execute_after=request.execute_after,
        )
        metrics.RECOVERY_REQUESTS.labels(stage="submitted").inc()
        logger.info(
            "Recovery request submitted",
            extra={
                "event": "recovery.request_submitted",
                "account": account,
                "execute_after": request.execute_after,
                "superseded": previous.is_pending,
            },
        )

    @external("renounceRecoveryRequest()")
    def renounce_recovery_request(self, caller: str) -> None:
        account = self._account_slot(caller)
        self.recovery_requests[account] = RecoveryRequest()
        self._emit("RecoveryRequestRenounced", account=account)

    # ==================== Guardian management ====================

    def _timeframe(self, settings: SmartAccountSettings, valid_until: int, valid_after: int) -> TimeFrame:
        """New guardian windows never open before the security delay elapses."""
        if valid_until == 0:
            valid_until = UINT48_MAX
        valid_after = max(valid_after, self.now + settings.security_delay)
        self._require(valid_until >= valid_after, "InvalidTimeFrame")
        return TimeFrame(valid_until, valid_after)

    @external("addGuardian(bytes32,uint48,uint48)")
    def add_guardian(self, caller: str, guardian: bytes, valid_until: int, valid_after: int) -> None:
        account = self._account_slot(caller)
        guardian = bytes(guardian)
        self._require(guardian != EMPTY_GUARDIAN, "ZeroGuardian")
        self._require((guardian, account) not in self.guardians, "GuardianAlreadySet")
        settings = self.settings.setdefault(account, SmartAccountSettings())
        frame = self._timeframe(settings, valid_until, valid_after)
        self.guardians[(guardian, account)] = frame
        settings.guardians_count += 1
        self._emit(
            "GuardianAdded",
            account=account,
            guardian="0x" + guardian.hex(),
            valid_until=frame.valid_until,
            valid_after=frame.valid_after,
        )

    @external("replaceGuardian(bytes32,bytes32,uint48,uint48)")
    def replace_guardian(
        self, caller: str, guardian: bytes, new_guardian: bytes, valid_until: int, valid_after: int
    ) -> None:
        account = self._account_slot(caller)
        guardian, new_guardian = bytes(guardian), bytes(new_guardian)
        self._require((guardian, account) in self.guardians, "GuardianNotSet")
        self._require(guardian != new_guardian, "GuardiansAreIdentical")
        self._require(new_guardian != EMPTY_GUARDIAN, "ZeroGuardian")
        self._require((new_guardian, account) not in self.guardians, "GuardianAlreadySet")
        settings = self.settings.setdefault(account, SmartAccountSettings())
        frame = self._timeframe(settings, valid_until, valid_after)
        del self.guardians[(guardian, account)]
        self.guardians[(new_guardian, account)] = frame
        self._emit("GuardianRemoved", account=account, guardian="0x" + guardian.hex())
        self._emit(
            "GuardianAdded",
            account=account,
            guardian="0x" + new_guardian.hex(),
            valid_until=frame.valid_until,
            valid_after=frame.valid_after,
        )

    @external("removeGuardian(bytes32)")
    def remove_guardian(self, caller: str, guardian: bytes) -> None:
        account = self._account_slot(caller)
        guardian = bytes(guardian)
        self._require((guardian, account) in self.guardians, "GuardianNotSet")
        self._remove_guardian(account, guardian)

    @external("removeExpiredGuardian(bytes32,address)")
    def remove_expired_guardian(self, caller: str, guardian: bytes, account: str) -> None:
        """Anyone may prune a guardian whose window has closed."""
        account = self._account_slot(account)
        guardian = bytes(guardian)
        frame = self.guardians.get((guardian, account))
        self._require(frame is not None, "GuardianNotSet")
        self._require(frame.valid_until < self.now, "GuardianNotExpired")  # type: ignore[union-attr]
        self._remove_guardian(account, guardian)

    def _remove_guardian(self, account: str, guardian: bytes) -> None:
        del self.guardians[(guardian, account)]
        settings = self.settings.setdefault(account, SmartAccountSettings())
        settings.guardians_count -= 1
        self._emit("GuardianRemoved", account=account, guardian="0x" + guardian.hex())
        if settings.recovery_threshold > settings.guardians_count:
            settings.recovery_threshold = settings.guardians_count
            self._emit("ThresholdChanged", account=account, threshold=settings.recovery_threshold)

    @external("changeGuardianParams(bytes32,uint48,uint48)")
    def change_guardian_params(
        self, caller: str, guardian: bytes, valid_until: int, valid_after: int
    ) -> None:
        account = self._account_slot(caller)
        guardian = bytes(guardian)
        self._require((guardian, account) in self.guardians, "GuardianNotSet")
        settings = self.settings.setdefault(account, SmartAccountSettings())
        frame = self._timeframe(settings, valid_until, valid_after)
        self.guardians[(guardian, account)] = frame
        self._emit(
            "GuardianChanged",
            account=account,
            guardian="0x" + guardian.hex(),
            valid_until=frame.valid_until,
            valid_after=frame.valid_after,
        )

    @external("setThreshold(uint8)")
    def set_threshold(self, caller: str, threshold: int) -> None:
        account = self._account_slot(caller)
        settings = self.settings.setdefault(account, SmartAccountSettings())
        self._require(threshold > 0, "ZeroThreshold")
        self._require(threshold <= settings.guardians_count, "ThresholdTooHigh")
        settings.recovery_threshold = threshold
        self._emit("ThresholdChanged", account=account, threshold=threshold)

    @external("setSecurityDelay(uint48)")
    def set_security_delay(self, caller: str, security_delay: int) -> None:
        account = self._account_slot(caller)
        self.settings.setdefault(account, SmartAccountSettings()).security_delay = security_delay
        self._emit("SecurityDelayChanged", account=account, security_delay=security_delay)

    # ==================== Views ====================

    def get_smart_account_settings(self, account: str) -> SmartAccountSettings:
        return self.settings.get(normalize_address(account), SmartAccountSettings())

    def get_guardian_params(self, guardian: bytes, account: str) -> Optional[TimeFrame]:
        return self.guardians.get((bytes(guardian), normalize_address(account)))

    def get_recovery_request(self, account: str) -> RecoveryRequest:
        return self.recovery_requests.get(normalize_address(account), RecoveryRequest())

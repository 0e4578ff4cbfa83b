"""
ERC-4337 EntryPoint.

The singleton dispatcher that:
- Checks 2-D nonces (independent sequence per nonce key)
- Asks the account to validate each operation
- Enforces the validation window the modules return
- Executes the operation's call data on the account

Each operation is judged on its own. A validation failure rolls back every
state change the validation made and leaves the other operations in the
bundle untouched; an execution revert rolls back the execution only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from smartauth.core import config, metrics
from smartauth.core.crypto_utils import normalize_address
from smartauth.core.exceptions import VALIDATION_FAILURES, FailedOp
from smartauth.core.ledger import Contract, Ledger, ValidationTrace
from smartauth.core.operation import UserOperation
from smartauth.core.validation import ValidationData, validation_window_reason
from smartauth.core.contracts.smart_account import SmartAccount

logger = logging.getLogger(__name__)


@dataclass
class OpReceipt:
    """Outcome of one operation inside ``handle_ops``."""

    user_op_hash: bytes
    sender: str
    nonce: int
    validated: bool
    success: bool
    validation_data: Optional[ValidationData] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "userOpHash": "0x" + self.user_op_hash.hex(),
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "validated": self.validated,
            "success": self.success,
            "reason": self.reason,
        }


@dataclass
class SimulationResult:
    """Result of a validation dry run; the ledger is left untouched."""

    user_op_hash: bytes
    validation_data: Optional[ValidationData]
    trace: Optional[ValidationTrace]
    error: Optional[FailedOp] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EntryPoint(Contract):
    """
    Operation dispatcher.

    Args:
        ledger: Ledger the entry point is deployed on
        address: Deployment address, defaults to the canonical entry point
    """

    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address or config.ENTRY_POINT_ADDRESS)
        self.nonces: Dict[Tuple[str, int], int] = {}
        self.total_ops_processed = 0

    @property
    def chain_id(self) -> int:
        return self.ledger.chain_id

    def get_user_op_hash(self, op: UserOperation) -> bytes:
        return op.hash(self.address, self.chain_id)

    def get_nonce(self, sender: str, key: int = 0) -> int:
        """Full nonce (key << 64 | next sequence) the next op under ``key`` must use."""
        sequence = self.nonces.get((normalize_address(sender), key), 0)
        return (key << 64) | sequence

    # ==================== Main Entry Point ====================

    def handle_ops(self, ops: List[UserOperation], beneficiary: str) -> List[OpReceipt]:
        """
        Validate and execute a bundle of operations.

        Args:
            ops: Operations, processed in order
            beneficiary: Address that would receive the bundle's fees

        Returns:
            One receipt per operation
        """
        metrics.BUNDLE_SIZE.observe(len(ops))
        receipts = [self._handle_single_op(op) for op in ops]
        self.total_ops_processed += len(ops)
        logger.info(
            "Bundle handled",
            extra={
                "event": "entry_point.bundle_handled",
                "ops": len(ops),
                "validated": sum(1 for r in receipts if r.validated),
                "beneficiary": normalize_address(beneficiary),
            },
        )
        return receipts

    def _handle_single_op(self, op: UserOperation) -> OpReceipt:
        op_hash = self.get_user_op_hash(op)
        snap = self.ledger.snapshot()
        try:
            validation, _ = self._validate_prepayment(op, op_hash)
            reason = validation_window_reason(validation, self.ledger.timestamp)
            if reason is not None:
                raise FailedOp(
                    "AA22 expired or not due",
                    details={
                        "window": reason,
                        "valid_after": validation.valid_after,
                        "valid_until": validation.valid_until,
                    },
                )
        except FailedOp as exc:
            self.ledger.revert(snap)
            metrics.OPS_VALIDATED.labels(outcome=exc.code).inc()
            logger.warning(
                "UserOp failed validation",
                extra={
                    "event": "entry_point.op_failed",
                    "sender": op.sender,
                    "nonce": op.nonce,
                    "error": exc.reason,
                    "details": exc.details,
                },
            )
            return OpReceipt(op_hash, op.sender, op.nonce, validated=False, success=False, reason=exc.reason)

        metrics.OPS_VALIDATED.labels(outcome="accepted").inc()
        self.nonces[(op.sender, op.nonce_key)] = op.nonce_sequence + 1

        success, revert_reason = self._execute(op, op_hash)
        metrics.OPS_EXECUTED.labels(success=str(success).lower()).inc()
        self._emit(
            "UserOperationEvent",
            user_op_hash="0x" + op_hash.hex(),
            sender=op.sender,
            nonce=op.nonce,
            success=success,
        )
        logger.info(
            "UserOp processed",
            extra={
                "event": "entry_point.op_processed",
                "sender": op.sender,
                "nonce": op.nonce,
                "success": success,
            },
        )
        return OpReceipt(
            op_hash,
            op.sender,
            op.nonce,
            validated=True,
            success=success,
            validation_data=validation,
            reason=revert_reason,
        )

    def _validate_prepayment(
        self, op: UserOperation, op_hash: bytes
    ) -> Tuple[ValidationData, ValidationTrace]:
        """
        Nonce and account validation.

        Raises:
            FailedOp: AA20 (no account), AA25 (nonce), AA23 (account
                reverted) or AA24 (signature / authorization denied)
        """
        account = self.ledger.contracts.get(op.sender)
        if not isinstance(account, SmartAccount):
            raise FailedOp("AA20 account not deployed", details={"sender": op.sender})

        expected = self.nonces.get((op.sender, op.nonce_key), 0)
        if op.nonce_sequence != expected:
            raise FailedOp(
                "AA25 invalid account nonce",
                details={"key": op.nonce_key, "expected": expected, "got": op.nonce_sequence},
            )

        with self.ledger.tracing(op.sender) as trace:
            try:
                validation = account.validate_user_op(self.address, op, op_hash)
            except VALIDATION_FAILURES as exc:
                reason = getattr(exc, "reason", None) or exc.message
                raise FailedOp(f"AA23 reverted: {reason}", details=exc.details) from exc
            except Exception as exc:
                logger.error(
                    "Unexpected error during account validation",
                    extra={
                        "event": "entry_point.validation_crashed",
                        "sender": op.sender,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                raise FailedOp(
                    "AA23 reverted: unexpected error",
                    details={"error_type": type(exc).__name__, "error": str(exc)},
                ) from exc

        if validation.sig_failed:
            raise FailedOp("AA24 signature error", details={"reason": validation.reason})
        return validation, trace

    def _execute(self, op: UserOperation, op_hash: bytes) -> Tuple[bool, str]:
        if not op.call_data:
            return True, ""
        try:
            self.ledger.call(self.address, op.sender, 0, op.call_data)
        except VALIDATION_FAILURES as exc:
            reason = getattr(exc, "reason", None) or exc.message
            self._emit(
                "UserOperationRevertReason",
                user_op_hash="0x" + op_hash.hex(),
                sender=op.sender,
                nonce=op.nonce,
                revert_reason=reason,
            )
            logger.warning(
                "UserOp execution reverted",
                extra={
                    "event": "entry_point.execution_reverted",
                    "sender": op.sender,
                    "error": reason,
                    "error_type": type(exc).__name__,
                },
            )
            return False, reason
        return True, ""

    # ==================== Simulation ====================

    def simulate_validation(self, op: UserOperation) -> SimulationResult:
        """
        Run nonce and account validation without committing anything.

        The window is reported, not enforced, so the caller can apply its
        own time-range policy.
        """
        op_hash = self.get_user_op_hash(op)
        snap = self.ledger.snapshot()
        try:
            validation, trace = self._validate_prepayment(op, op_hash)
        except FailedOp as exc:
            return SimulationResult(op_hash, None, None, error=exc)
        finally:
            self.ledger.revert(snap)
        return SimulationResult(op_hash, validation, trace)

    def get_stats(self) -> Dict[str, int]:
        return {
            "total_ops_processed": self.total_ops_processed,
            "nonce_keys": len(self.nonces),
        }

"""
Validation verdicts and the validation-module capability.

A validation module answers one question for the account: is this
operation authorized, and during which time window? Answers are
``ValidationData`` values. Module logic signals "no" by raising one of
the validation exceptions; ``ValidationModule.validate_user_op`` converts
those into a denied verdict so a failed attempt never escalates into a
fault for the surrounding batch or simulation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from smartauth.core import metrics
from smartauth.core.config import (
    ERC1271_INVALID,
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    UINT48_MAX,
)
from smartauth.core.exceptions import VALIDATION_FAILURES, MalformedPayloadError
from smartauth.core.ledger import Contract
from smartauth.core.operation import UserOperation

logger = logging.getLogger(__name__)

_ADDRESS_BITS = 160
_UINT48_MASK = UINT48_MAX


@dataclass(frozen=True)
class ValidationData:
    """
    Verdict of a validation module.

    A zero bound disables that side of the window: ``valid_after == 0`` is
    "valid since forever" and ``valid_until == 0`` is "never expires". The
    all-zero window is therefore always valid.
    """

    sig_failed: bool = False
    valid_until: int = 0
    valid_after: int = 0
    reason: str = ""

    @classmethod
    def success(cls, valid_until: int = 0, valid_after: int = 0) -> "ValidationData":
        return cls(False, valid_until, valid_after)

    @classmethod
    def failure(cls, reason: str) -> "ValidationData":
        return cls(True, 0, 0, reason)

    def pack(self) -> int:
        """ERC-4337 packing: authorizer (0 ok / 1 failed) | validUntil << 160 | validAfter << 208."""
        authorizer = SIG_VALIDATION_FAILED if self.sig_failed else SIG_VALIDATION_SUCCESS
        return (
            authorizer
            | ((self.valid_until & _UINT48_MASK) << _ADDRESS_BITS)
            | ((self.valid_after & _UINT48_MASK) << (_ADDRESS_BITS + 48))
        )

    @classmethod
    def unpack(cls, packed: int) -> "ValidationData":
        authorizer = packed & ((1 << _ADDRESS_BITS) - 1)
        if authorizer not in (SIG_VALIDATION_SUCCESS, SIG_VALIDATION_FAILED):
            raise MalformedPayloadError(
                "Aggregated signatures are not supported", details={"authorizer": hex(authorizer)}
            )
        return cls(
            sig_failed=authorizer == SIG_VALIDATION_FAILED,
            valid_until=(packed >> _ADDRESS_BITS) & _UINT48_MASK,
            valid_after=(packed >> (_ADDRESS_BITS + 48)) & _UINT48_MASK,
        )

    def intersect(self, other: "ValidationData") -> "ValidationData":
        """Narrowest window satisfying both verdicts; failed if either failed."""
        if self.valid_until == 0:
            valid_until = other.valid_until
        elif other.valid_until == 0:
            valid_until = self.valid_until
        else:
            valid_until = min(self.valid_until, other.valid_until)
        return ValidationData(
            sig_failed=self.sig_failed or other.sig_failed,
            valid_until=valid_until,
            valid_after=max(self.valid_after, other.valid_after),
            reason=self.reason or other.reason,
        )

    def is_active(self, now: int) -> bool:
        """True iff ``valid_after <= now < valid_until`` (zero bounds disabled)."""
        if self.valid_after and now < self.valid_after:
            return False
        if self.valid_until and now >= self.valid_until:
            return False
        return True


class ValidationModule(Contract, ABC):
    """
    Module the account delegates operation validation to.

    Subclasses implement ``_validate_user_op``. Signature checks for
    ERC-1271 go through ``is_valid_signature_for_address``; modules that
    cannot vouch for arbitrary hashes keep the default, which rejects.
    """

    def validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        """Fail-closed validation: every validation failure becomes a denied verdict."""
        try:
            return self._validate_user_op(op, op_hash)
        except VALIDATION_FAILURES as exc:
            reason = getattr(exc, "reason", None) or exc.message
            logger.info(
                "Validation denied",
                extra={
                    "event": "module.validation_denied",
                    "module": type(self).__name__,
                    "sender": op.sender,
                    "reason": reason,
                    "error_type": type(exc).__name__,
                },
            )
            metrics.VALIDATION_DENIALS.labels(
                module=type(self).__name__, reason=reason
            ).inc()
            return ValidationData.failure(reason)

    @abstractmethod
    def _validate_user_op(self, op: UserOperation, op_hash: bytes) -> ValidationData:
        raise NotImplementedError

    def is_valid_signature_for_address(
        self, data_hash: bytes, signature: bytes, account: str
    ) -> int:
        return ERC1271_INVALID


class SessionValidationModule(Contract, ABC):
    """
    Sub-validator scoping what a session key may do.

    ``session_key_data`` is the leaf's configuration blob; its layout is
    owned by the concrete module. Violations raise ``ValidationDenied``.
    """

    @abstractmethod
    def validate_session_user_op(
        self,
        op: UserOperation,
        op_hash: bytes,
        session_key_data: bytes,
        session_key_signature: bytes,
    ) -> bool:
        """Single-call path: check the op's call and the session-key signature."""
        raise NotImplementedError

    @abstractmethod
    def validate_session_params(
        self,
        dest: str,
        value: int,
        call_data: bytes,
        session_key_data: bytes,
        call_specific_data: bytes,
    ) -> str:
        """Batch path: check one call and return the session key it is scoped to."""
        raise NotImplementedError


def validation_window_reason(data: ValidationData, now: int) -> Optional[str]:
    """Reason string for an inactive window, or None if active."""
    if data.is_active(now):
        return None
    if data.valid_after and now < data.valid_after:
        return "not due"
    return "expired"

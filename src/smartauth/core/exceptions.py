"""
smartauth exception hierarchy.

Typed exceptions for the authorization core. Validation outcomes are split
into three families that callers must be able to tell apart:

- Denied: validation ran to completion and said "not authorized"
- Malformed: the payload could not be decoded into the expected shape
- Policy violation: a dispatcher-level submission rule rejected the operation

Execution-phase failures (contract reverts) are a separate family and drive
the ledger's atomic rollback.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class SmartAuthError(Exception):
    """Base exception for all smartauth errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


class ConfigurationError(SmartAuthError):
    """Raised when required configuration is missing or invalid."""
    pass


# ==================== Validation Errors ====================


class ValidationError(SmartAuthError):
    """Base class for validation-phase failures.

    Every subclass carries a short machine-readable ``reason`` which is what
    ends up in the denied verdict and in the dispatcher's rejection payload.
    """

    def __init__(
        self,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(reason, details=details)
        self.reason = reason


class ValidationDenied(ValidationError):
    """Validation logic ran and returned "not authorized".

    Examples: bad Merkle proof, wrong signer, insufficient guardians,
    session sub-validator rejecting the call.
    """
    pass


class MalformedPayloadError(ValidationError):
    """Payload cannot be decoded into the expected shape.

    Examples: truncated envelope, wrong ABI layout, address of wrong length.
    """
    pass


class SignatureError(ValidationError):
    """Raised when cryptographic signature handling fails."""
    pass


class MalformedSignatureError(SignatureError):
    """Signature bytes are structurally invalid (length, v value, curve point)."""
    pass


class InvalidSignatureError(SignatureError):
    """Signature is well formed but was not produced by the expected signer."""
    pass


# ==================== Execution Errors ====================


class ExecutionReverted(SmartAuthError):
    """A contract call reverted.

    The ledger rolls back every state change made inside the reverted call,
    including nested calls.
    """

    def __init__(
        self,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(reason, details=details)
        self.reason = reason


class UnknownContractError(ExecutionReverted):
    """Call target has no contract deployed and the call carries data."""
    pass


class FailedOp(ExecutionReverted):
    """The entry point rejected an operation before execution.

    ``reason`` starts with the ERC-4337 ``AAxx`` code, e.g.
    ``"AA24 signature error"``.
    """

    @property
    def code(self) -> str:
        return self.reason.split(" ", 1)[0]


# ==================== Submission Errors ====================


class PolicyViolation(SmartAuthError):
    """A dispatcher-level submission rule rejected the operation.

    Carries the ERC-4337 JSON-RPC error code so the client can distinguish a
    bad signature from a banned opcode or a storage-access violation.
    """

    def __init__(
        self,
        message: str,
        code: int,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=data)
        self.code = code
        self.data = data or {}

    def to_rpc_error(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


# Exceptions a validation module converts into a denied verdict
VALIDATION_FAILURES = (ValidationError, ExecutionReverted)

"""
Submission policy for the bundler.

Applies the ERC-4337 mempool rules to a validation dry run and maps every
rejection to its JSON-RPC error code, so clients can tell a bad signature
from an expired session or a validation that touched foreign storage.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Dict

from smartauth.core import config
from smartauth.core.contracts.entry_point import SimulationResult
from smartauth.core.exceptions import PolicyViolation
from smartauth.core.validation import ValidationData

logger = logging.getLogger(__name__)


class RpcErrorCode(IntEnum):
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    REJECTED_BY_EP_OR_ACCOUNT = -32500
    REJECTED_BY_PAYMASTER = -32501
    BANNED_OPCODE = -32502
    SHORT_DEADLINE = -32503
    BANNED_OR_THROTTLED_ENTITY = -32504
    STAKE_OR_DELAY_TOO_LOW = -32505
    UNSUPPORTED_AGGREGATOR = -32506
    INVALID_SIGNATURE = -32507


def jsonable(value: Any) -> Any:
    """Convert error details into JSON-serializable values."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return value


def check_simulation(
    result: SimulationResult,
    now: int,
    min_validity: int = config.MEMPOOL_MIN_VALIDITY_SECONDS,
) -> ValidationData:
    """
    Accept or reject a simulated operation.

    Returns:
        The validation verdict of an acceptable operation

    Raises:
        PolicyViolation: with the ERC-4337 error code of the first rule broken
    """
    if result.error is not None:
        data: Dict[str, Any] = {"reason": result.error.reason, **jsonable(result.error.details)}
        if result.error.code == "AA24":
            raise PolicyViolation(result.error.reason, RpcErrorCode.INVALID_SIGNATURE, data)
        raise PolicyViolation(result.error.reason, RpcErrorCode.REJECTED_BY_EP_OR_ACCOUNT, data)

    trace = result.trace
    validation = result.validation_data
    if trace is None or validation is None:
        raise PolicyViolation("simulation produced no verdict", RpcErrorCode.INTERNAL_ERROR)

    if trace.time_reads:
        raise PolicyViolation(
            "banned opcode: TIMESTAMP",
            RpcErrorCode.BANNED_OPCODE,
            {"time_reads": trace.time_reads},
        )

    foreign = trace.foreign_storage()
    if foreign:
        raise PolicyViolation(
            "storage access",
            RpcErrorCode.BANNED_OPCODE,
            {"slots": [{"contract": contract, "key": key} for contract, key in foreign]},
        )

    if validation.valid_until and validation.valid_until < now + min_validity:
        raise PolicyViolation(
            "expires too soon",
            RpcErrorCode.SHORT_DEADLINE,
            {"valid_until": validation.valid_until, "valid_after": validation.valid_after},
        )
    return validation

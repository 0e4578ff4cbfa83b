"""
Input schemas for the bundler JSON-RPC surface.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smartauth.core.operation import UserOperation

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_QUANTITY_RE = re.compile(r"^0x[0-9a-fA-F]+$")
_BYTES_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")


class UserOperationModel(BaseModel):
    """ERC-4337 UserOperation as it arrives over JSON-RPC (camelCase, hex strings)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    sender: str
    nonce: str
    init_code: str = Field(default="0x", alias="initCode")
    call_data: str = Field(default="0x", alias="callData")
    call_gas_limit: str = Field(alias="callGasLimit")
    verification_gas_limit: str = Field(alias="verificationGasLimit")
    pre_verification_gas: str = Field(alias="preVerificationGas")
    max_fee_per_gas: str = Field(alias="maxFeePerGas")
    max_priority_fee_per_gas: str = Field(alias="maxPriorityFeePerGas")
    paymaster_and_data: str = Field(default="0x", alias="paymasterAndData")
    signature: str = "0x"

    @field_validator("sender")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not _ADDRESS_RE.match(value):
            raise ValueError("must be a 20-byte hex address")
        return value.lower()

    @field_validator(
        "nonce",
        "call_gas_limit",
        "verification_gas_limit",
        "pre_verification_gas",
        "max_fee_per_gas",
        "max_priority_fee_per_gas",
    )
    @classmethod
    def _check_quantity(cls, value: str) -> str:
        if not _QUANTITY_RE.match(value):
            raise ValueError("must be a 0x-prefixed hex quantity")
        if int(value, 16) >= 1 << 256:
            raise ValueError("does not fit in uint256")
        return value

    @field_validator("init_code", "call_data", "paymaster_and_data", "signature")
    @classmethod
    def _check_bytes(cls, value: str) -> str:
        if not _BYTES_RE.match(value):
            raise ValueError("must be 0x-prefixed hex bytes")
        return value

    def to_user_operation(self) -> UserOperation:
        return UserOperation.from_dict(self.model_dump(by_alias=True))


class JsonRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"]
    method: str
    params: list[Any] = Field(default_factory=list)
    id: int | str | None = None

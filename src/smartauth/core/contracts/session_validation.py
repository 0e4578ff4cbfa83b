"""
Session validation modules (sub-validators).

A session leaf names one of these modules plus a configuration blob. The
module decides whether a call is inside what the session may do:

- ERC20SessionValidationModule: one token, one recipient, an amount ceiling
- ContractCallSessionValidationModule: one target contract and one selector
- ABISessionValidationModule: target, selector, value limit and per-argument rules
- ERC721ApprovalSessionValidationModule: setApprovalForAll on one NFT contract

Every module returns the session key the call is scoped to; the session
key manager or router then checks the session-key signature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence, Tuple

from smartauth.core import abi
from smartauth.core.crypto_utils import is_valid_eth_signature, normalize_address
from smartauth.core.exceptions import MalformedPayloadError, ValidationDenied
from smartauth.core.operation import UserOperation
from smartauth.core.validation import SessionValidationModule
from smartauth.core.contracts.smart_account import EXECUTE_SIGNATURE

logger = logging.getLogger(__name__)

EXECUTE_SELECTOR = abi.function_selector(EXECUTE_SIGNATURE)
TRANSFER_SELECTOR = abi.function_selector("transfer(address,uint256)")
APPROVE_SELECTOR = abi.function_selector("approve(address,uint256)")
SET_APPROVAL_FOR_ALL_SELECTOR = abi.function_selector("setApprovalForAll(address,bool)")


def decode_execute_call(call_data: bytes, error: str) -> Tuple[str, int, bytes]:
    """Decode ``execute(dest, value, data)`` account call data or deny with ``error``."""
    if bytes(call_data[:4]) != EXECUTE_SELECTOR:
        raise ValidationDenied(error)
    dest, value, data = abi.decode(("address", "uint256", "bytes"), call_data[4:])
    return dest, value, data


class _SessionSignatureMixin:
    @staticmethod
    def _session_key_signed(op_hash: bytes, signature: bytes, session_key: str) -> bool:
        return is_valid_eth_signature(op_hash, signature, session_key)


# ==================== ERC20 ====================


class ERC20SessionValidationModule(_SessionSignatureMixin, SessionValidationModule):
    """
    Session key may move one token to one recipient, up to ``max_amount`` per call.

    Config: ``abi.encode(address sessionKey, address token, address recipient, uint256 maxAmount)``.
    """

    CONFIG_TYPES = ("address", "address", "address", "uint256")

    @staticmethod
    def encode_config(session_key: str, token: str, recipient: str, max_amount: int) -> bytes:
        return abi.encode(
            ERC20SessionValidationModule.CONFIG_TYPES,
            (normalize_address(session_key), normalize_address(token), normalize_address(recipient), max_amount),
        )

    def _check(self, dest: str, value: int, call_data: bytes, session_key_data: bytes) -> str:
        session_key, token, recipient, max_amount = abi.decode(self.CONFIG_TYPES, session_key_data)
        if normalize_address(dest) != token:
            raise ValidationDenied("ERC20SV Wrong Token")
        if value != 0:
            raise ValidationDenied("ERC20SV Non Zero Value")
        if bytes(call_data[:4]) not in (TRANSFER_SELECTOR, APPROVE_SELECTOR):
            raise ValidationDenied("ERC20SV Invalid Selector")
        recipient_called, amount = abi.decode(("address", "uint256"), call_data[4:])
        if recipient_called != recipient:
            raise ValidationDenied("ERC20SV Wrong Recipient")
        if amount > max_amount:
            raise ValidationDenied("ERC20SV Max Amount Exceeded")
        return session_key

    def validate_session_user_op(
        self,
        op: UserOperation,
        op_hash: bytes,
        session_key_data: bytes,
        session_key_signature: bytes,
    ) -> bool:
        dest, value, data = decode_execute_call(op.call_data, "ERC20SV Invalid Selector")
        session_key = self._check(dest, value, data, session_key_data)
        return self._session_key_signed(op_hash, session_key_signature, session_key)

    def validate_session_params(
        self,
        dest: str,
        value: int,
        call_data: bytes,
        session_key_data: bytes,
        call_specific_data: bytes,
    ) -> str:
        return self._check(dest, value, call_data, session_key_data)


# ==================== Contract call ====================


class ContractCallSessionValidationModule(_SessionSignatureMixin, SessionValidationModule):
    """
    Session key may call one function on one contract, without value.

    Config: ``abi.encode(address sessionKey, address target, bytes4 selector)``.
    """

    CONFIG_TYPES = ("address", "address", "bytes4")

    @staticmethod
    def encode_config(session_key: str, target: str, selector: bytes) -> bytes:
        return abi.encode(
            ContractCallSessionValidationModule.CONFIG_TYPES,
            (normalize_address(session_key), normalize_address(target), bytes(selector)),
        )

    def _check(self, dest: str, value: int, call_data: bytes, session_key_data: bytes) -> str:
        session_key, target, selector = abi.decode(self.CONFIG_TYPES, session_key_data)
        if normalize_address(dest) != target:
            raise ValidationDenied("CCSV Wrong Target")
        if bytes(call_data[:4]) != bytes(selector):
            raise ValidationDenied("CCSV func selector violated")
        if value != 0:
            raise ValidationDenied("CCSV Non Zero Value")
        return session_key

    def validate_session_user_op(
        self,
        op: UserOperation,
        op_hash: bytes,
        session_key_data: bytes,
        session_key_signature: bytes,
    ) -> bool:
        dest, value, data = decode_execute_call(op.call_data, "CCSV Invalid Selector")
        session_key = self._check(dest, value, data, session_key_data)
        return self._session_key_signed(op_hash, session_key_signature, session_key)

    def validate_session_params(
        self,
        dest: str,
        value: int,
        call_data: bytes,
        session_key_data: bytes,
        call_specific_data: bytes,
    ) -> str:
        return self._check(dest, value, call_data, session_key_data)


# ==================== ABI rules ====================


class Condition(IntEnum):
    EQUAL = 0
    LESS_THAN_OR_EQUAL = 1
    LESS_THAN = 2
    GREATER_THAN_OR_EQUAL = 3
    GREATER_THAN = 4
    NOT_EQUAL = 5


@dataclass(frozen=True)
class ArgumentRule:
    """Compare the 32-byte argument word at ``offset`` (bytes, after the selector)."""

    offset: int
    condition: Condition
    reference: bytes

    def holds(self, param: bytes) -> bool:
        value = int.from_bytes(param, "big")
        ref = int.from_bytes(self.reference, "big")
        if self.condition == Condition.EQUAL:
            return value == ref
        if self.condition == Condition.LESS_THAN_OR_EQUAL:
            return value <= ref
        if self.condition == Condition.LESS_THAN:
            return value < ref
        if self.condition == Condition.GREATER_THAN_OR_EQUAL:
            return value >= ref
        if self.condition == Condition.GREATER_THAN:
            return value > ref
        return value != ref


_ABI_HEADER = 62  # sessionKey(20) dest(20) selector(4) valueLimit(16) rulesCount(2)
_ABI_RULE = 35  # offset(2) condition(1) reference(32)


class ABISessionValidationModule(_SessionSignatureMixin, SessionValidationModule):
    """
    Session key may call one function on one contract within a value limit,
    with every argument rule satisfied.

    Config: ``packed(address sessionKey, address dest, bytes4 selector,
    uint128 valueLimit, uint16 rulesCount, (uint16 offset, uint8 condition,
    bytes32 reference)[rulesCount])``.
    """

    @staticmethod
    def encode_config(
        session_key: str,
        dest: str,
        selector: bytes,
        value_limit: int,
        rules: Sequence[ArgumentRule] = (),
    ) -> bytes:
        data = abi.encode_packed(
            ("address", "address", "bytes4", "uint128", "uint16"),
            (normalize_address(session_key), normalize_address(dest), bytes(selector), value_limit, len(rules)),
        )
        for rule in rules:
            data += abi.encode_packed(
                ("uint16", "uint8", "bytes32"),
                (rule.offset, int(rule.condition), bytes(rule.reference).rjust(32, b"\x00")),
            )
        return data

    @staticmethod
    def _parse(session_key_data: bytes) -> Tuple[str, str, bytes, int, List[ArgumentRule]]:
        data = bytes(session_key_data)
        if len(data) < _ABI_HEADER:
            raise MalformedPayloadError("ABISV config too short", details={"length": len(data)})
        rules_count = int.from_bytes(data[60:62], "big")
        if len(data) < _ABI_HEADER + rules_count * _ABI_RULE:
            raise MalformedPayloadError("ABISV rules truncated", details={"rules": rules_count})
        rules = []
        for i in range(rules_count):
            start = _ABI_HEADER + i * _ABI_RULE
            condition = data[start + 2]
            if condition > Condition.NOT_EQUAL:
                raise MalformedPayloadError("ABISV unknown condition", details={"condition": condition})
            rules.append(
                ArgumentRule(
                    offset=int.from_bytes(data[start : start + 2], "big"),
                    condition=Condition(condition),
                    reference=data[start + 3 : start + 35],
                )
            )
        return (
            "0x" + data[0:20].hex(),
            "0x" + data[20:40].hex(),
            data[40:44],
            int.from_bytes(data[44:60], "big"),
            rules,
        )

    def _check(self, dest: str, value: int, call_data: bytes, session_key_data: bytes) -> str:
        session_key, permitted_dest, selector, value_limit, rules = self._parse(session_key_data)
        if normalize_address(dest) != permitted_dest:
            raise ValidationDenied("ABISV Destination Forbidden")
        if bytes(call_data[:4]) != selector:
            raise ValidationDenied("ABISV Selector Forbidden")
        if value > value_limit:
            raise ValidationDenied("ABISV Permitted Value Exceeded")
        args = bytes(call_data[4:])
        for rule in rules:
            param = args[rule.offset : rule.offset + 32]
            if len(param) != 32 or not rule.holds(param):
                raise ValidationDenied("ABISV Arg Rule Violated")
        return session_key

    def validate_session_user_op(
        self,
        op: UserOperation,
        op_hash: bytes,
        session_key_data: bytes,
        session_key_signature: bytes,
    ) -> bool:
        dest, value, data = decode_execute_call(op.call_data, "ABISV Not Execute Selector")
        session_key = self._check(dest, value, data, session_key_data)
        return self._session_key_signed(op_hash, session_key_signature, session_key)

    def validate_session_params(
        self,
        dest: str,
        value: int,
        call_data: bytes,
        session_key_data: bytes,
        call_specific_data: bytes,
    ) -> str:
        return self._check(dest, value, call_data, session_key_data)


# ==================== ERC721 approval ====================


class ERC721ApprovalSessionValidationModule(_SessionSignatureMixin, SessionValidationModule):
    """
    Session key may grant operator approval on one NFT contract.

    Config: ``packed(address sessionKey, address nftContract)``.
    """

    @staticmethod
    def encode_config(session_key: str, nft_contract: str) -> bytes:
        return abi.encode_packed(
            ("address", "address"),
            (normalize_address(session_key), normalize_address(nft_contract)),
        )

    def _check(self, dest: str, value: int, call_data: bytes, session_key_data: bytes) -> str:
        data = bytes(session_key_data)
        if len(data) < 40:
            raise MalformedPayloadError("ERC721SV config too short", details={"length": len(data)})
        session_key = "0x" + data[0:20].hex()
        nft_contract = "0x" + data[20:40].hex()
        if normalize_address(dest) != nft_contract:
            raise ValidationDenied("ERC721SV Wrong NFT contract")
        if value != 0:
            raise ValidationDenied("ERC721SV Non Zero Value")
        if bytes(call_data[:4]) != SET_APPROVAL_FOR_ALL_SELECTOR:
            raise ValidationDenied("ERC721SV Not setApprovalForAll")
        _, approved = abi.decode(("address", "bool"), call_data[4:])
        if not approved:
            raise ValidationDenied("ERC721SV False value")
        return session_key

    def validate_session_user_op(
        self,
        op: UserOperation,
        op_hash: bytes,
        session_key_data: bytes,
        session_key_signature: bytes,
    ) -> bool:
        dest, value, data = decode_execute_call(op.call_data, "ERC721SV Invalid Selector")
        session_key = self._check(dest, value, data, session_key_data)
        return self._session_key_signed(op_hash, session_key_signature, session_key)

    def validate_session_params(
        self,
        dest: str,
        value: int,
        call_data: bytes,
        session_key_data: bytes,
        call_specific_data: bytes,
    ) -> str:
        return self._check(dest, value, call_data, session_key_data)

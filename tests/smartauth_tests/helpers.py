"""
Shared builders for smartauth tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from smartauth.core import abi
from smartauth.core.crypto_utils import generate_keypair
from smartauth.core.envelope import wrap
from smartauth.core.contracts.entry_point import EntryPoint
from smartauth.core.contracts.smart_account import (
    EXECUTE_BATCH_SIGNATURE,
    EXECUTE_SIGNATURE,
    SmartAccount,
)
from smartauth.core.operation import UserOperation

GENESIS_TIME = 1_700_000_000
CHAIN_ID = 1337


@dataclass(frozen=True)
class Signer:
    key: str
    address: str

    @classmethod
    def create(cls) -> "Signer":
        return cls(*generate_keypair())


def execute_data(dest: str, data: bytes, value: int = 0) -> bytes:
    return abi.encode_call(EXECUTE_SIGNATURE, [dest, value, data])


def execute_batch_data(
    dests: Sequence[str], datas: Sequence[bytes], values: Sequence[int] = ()
) -> bytes:
    return abi.encode_call(EXECUTE_BATCH_SIGNATURE, [list(dests), list(values), list(datas)])


def account_call(account: SmartAccount, dest: str, data: bytes) -> Any:
    """Have ``account`` call ``dest`` the way the entry point would make it."""
    return account.ledger.call(account.entry_point, account.address, 0, execute_data(dest, data))


def enable_module(account: SmartAccount, module: str, setup_data: bytes = b"") -> None:
    if setup_data:
        call = abi.encode_call("setupAndEnableModule(address,bytes)", [module, setup_data])
    else:
        call = abi.encode_call("enableModule(address)", [module])
    account_call(account, account.address, call)


def new_op(
    entry_point: EntryPoint,
    account: SmartAccount,
    call_data: bytes,
    key: int = 0,
    signature: bytes = b"",
    nonce: Optional[int] = None,
) -> UserOperation:
    return UserOperation(
        sender=account.address,
        nonce=entry_point.get_nonce(account.address, key) if nonce is None else nonce,
        call_data=call_data,
        signature=signature,
    )


def set_merkle_root(account: SmartAccount, manager: str, root: bytes) -> None:
    account_call(account, manager, abi.encode_call("setMerkleRoot(bytes32)", [root]))


def sign_and_wrap(
    entry_point: EntryPoint, op: UserOperation, build_payload: Any, module: str
) -> UserOperation:
    """Hash ``op``, let ``build_payload(op_hash)`` produce the module payload and wrap it."""
    op_hash = entry_point.get_user_op_hash(op)
    return op.with_signature(wrap(build_payload(op_hash), module))

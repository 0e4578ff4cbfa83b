"""
Simulated ledger and contract base class.

Provides the execution environment the account and its modules run on:
- Contract registry, native balances and ledger time
- ABI selector dispatch to methods declared with ``@external``
- Atomic calls: a reverted call rolls back every state change it made,
  including nested calls
- Snapshots for the dispatcher (validation and simulation rollback)
- A validation trace of storage and time accesses, consumed by the
  bundler's submission policy

Contract methods reachable through ``Ledger.call`` take the caller address
as their first argument, mirroring ``msg.sender``.
"""

from __future__ import annotations

import copy
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Type, TypeVar

from smartauth.core import abi
from smartauth.core import config
from smartauth.core.crypto_utils import keccak256, normalize_address
from smartauth.core.exceptions import (
    ExecutionReverted,
    MalformedPayloadError,
    UnknownContractError,
)

logger = logging.getLogger(__name__)

C = TypeVar("C", bound="Contract")

# Attributes that identify a contract rather than hold its state
_NON_STATE_ATTRS = frozenset({"ledger", "address"})


def external(signature: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Expose a contract method under a Solidity function signature."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func._abi_signature = signature  # type: ignore[attr-defined]
        return func

    return decorator


@dataclass
class ValidationTrace:
    """Record of what a validation call touched."""

    sender: str
    storage: List[Tuple[str, str]] = field(default_factory=list)
    time_reads: int = 0
    contracts: Set[str] = field(default_factory=set)

    def foreign_storage(self) -> List[Tuple[str, str]]:
        """Accesses that are neither the sender's own contract nor keyed by the sender."""
        return [
            (contract, key)
            for contract, key in self.storage
            if contract != self.sender and key != self.sender
        ]


class Contract:
    """
    Base class for contracts deployed on a Ledger.

    Subclasses keep state in plain instance attributes; everything except the
    ledger reference and the address takes part in snapshots.
    """

    _external_methods: Dict[bytes, Tuple[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        methods: Dict[bytes, Tuple[str, str]] = {}
        for klass in reversed(cls.__mro__):
            for name, member in vars(klass).items():
                signature = getattr(member, "_abi_signature", None)
                if signature:
                    methods[abi.function_selector(signature)] = (signature, name)
        cls._external_methods = methods

    def __init__(self, ledger: "Ledger", address: Optional[str] = None) -> None:
        self.ledger = ledger
        self.address = normalize_address(address) if address else ledger.new_address(type(self).__name__)
        self.events: List[Dict[str, Any]] = []
        ledger.deploy(self)

    # ==================== Helpers ====================

    @property
    def now(self) -> int:
        return self.ledger.timestamp

    def _emit(self, name: str, **fields: Any) -> None:
        event = {"event": name, "address": self.address, **fields}
        self.events.append(event)
        self.ledger.logs.append(event)

    def _account_slot(self, account: str) -> str:
        """Normalize ``account`` and record a storage access keyed by it."""
        account = normalize_address(account)
        self.ledger.record_storage_access(self.address, account)
        return account

    @staticmethod
    def _require(condition: bool, reason: str) -> None:
        if not condition:
            raise ExecutionReverted(reason)

    def _call(self, to: str, value: int, data: bytes) -> Any:
        return self.ledger.call(self.address, to, value, data)

    def receive(self, caller: str, value: int) -> None:
        """Plain value transfer hook; accepts by default."""

    # ==================== State ====================

    def _state(self) -> Dict[str, Any]:
        return {k: v for k, v in vars(self).items() if k not in _NON_STATE_ATTRS}

    def _restore(self, state: Dict[str, Any]) -> None:
        for key in [k for k in vars(self) if k not in _NON_STATE_ATTRS]:
            if key not in state:
                delattr(self, key)
        vars(self).update(state)


@dataclass
class _Snapshot:
    contracts: Dict[str, Contract]
    states: Dict[str, Dict[str, Any]]
    balances: Dict[str, int]
    log_length: int


class Ledger:
    """In-memory chain: contracts, balances, time and atomic calls."""

    def __init__(self, chain_id: Optional[int] = None, timestamp: Optional[int] = None) -> None:
        self.chain_id = config.CHAIN_ID if chain_id is None else int(chain_id)
        self._timestamp = int(time.time()) if timestamp is None else int(timestamp)
        self.contracts: Dict[str, Contract] = {}
        self.balances: Dict[str, int] = {}
        self.logs: List[Dict[str, Any]] = []
        self._trace: Optional[ValidationTrace] = None
        self._nonce = 0

    # ==================== Time ====================

    @property
    def timestamp(self) -> int:
        if self._trace is not None:
            self._trace.time_reads += 1
        return self._timestamp

    def set_time(self, timestamp: int) -> None:
        self._timestamp = int(timestamp)

    def advance_time(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("time cannot go backwards")
        self._timestamp += int(seconds)
        return self._timestamp

    # ==================== Registry ====================

    def new_address(self, label: str = "") -> str:
        self._nonce += 1
        seed = f"{self.chain_id}:{label}:{self._nonce}".encode()
        return "0x" + keccak256(seed)[-20:].hex()

    def deploy(self, contract: Contract) -> Contract:
        if contract.address in self.contracts:
            raise ExecutionReverted("address already in use")
        self.contracts[contract.address] = contract
        logger.debug(
            "Contract deployed",
            extra={
                "event": "ledger.deploy",
                "contract": type(contract).__name__,
                "address": contract.address,
            },
        )
        return contract

    def contract_at(self, address: str) -> Optional[Contract]:
        address = normalize_address(address)
        if self._trace is not None:
            self._trace.contracts.add(address)
        return self.contracts.get(address)

    def get(self, address: str, expected: Type[C]) -> C:
        """Resolve ``address`` to a contract of type ``expected`` or revert."""
        contract = self.contract_at(address)
        if not isinstance(contract, expected):
            raise ExecutionReverted(
                f"{expected.__name__} not deployed at address",
                details={"address": normalize_address(address)},
            )
        return contract

    def balance_of(self, address: str) -> int:
        return self.balances.get(normalize_address(address), 0)

    def fund(self, address: str, amount: int) -> None:
        address = normalize_address(address)
        self.balances[address] = self.balances.get(address, 0) + amount

    # ==================== Calls ====================

    def call(self, sender: str, to: str, value: int, data: bytes) -> Any:
        """
        Message call with atomic rollback.

        Raises:
            ExecutionReverted: the call (or a nested call) reverted; all of its
                state changes have been undone
        """
        sender = normalize_address(sender)
        to = normalize_address(to)
        with self.atomic():
            return self._dispatch(sender, to, value, bytes(data))

    def _dispatch(self, sender: str, to: str, value: int, data: bytes) -> Any:
        if value:
            self._transfer(sender, to, value)
        contract = self.contract_at(to)
        if contract is None:
            if data:
                raise UnknownContractError(
                    "call to non-contract", details={"to": to}
                )
            return b""
        if not data:
            contract.receive(sender, value)
            return b""
        try:
            selector, body = abi.split_selector(data)
        except MalformedPayloadError as exc:
            raise ExecutionReverted("invalid call data", details=exc.details) from exc
        entry = contract._external_methods.get(selector)
        if entry is None:
            raise ExecutionReverted(
                "function selector not recognized",
                details={"to": to, "selector": "0x" + selector.hex()},
            )
        signature, name = entry
        try:
            args = abi.decode(abi.argument_types(signature), body)
        except MalformedPayloadError as exc:
            raise ExecutionReverted(
                "call data decoding failed", details={"signature": signature}
            ) from exc
        return getattr(contract, name)(sender, *args)

    def _transfer(self, sender: str, to: str, value: int) -> None:
        if value < 0:
            raise ExecutionReverted("negative value")
        balance = self.balances.get(sender, 0)
        if balance < value:
            raise ExecutionReverted(
                "insufficient balance",
                details={"sender": sender, "balance": balance, "value": value},
            )
        self.balances[sender] = balance - value
        self.balances[to] = self.balances.get(to, 0) + value

    # ==================== Snapshots ====================

    def snapshot(self) -> _Snapshot:
        return _Snapshot(
            contracts=dict(self.contracts),
            states={addr: copy.deepcopy(c._state()) for addr, c in self.contracts.items()},
            balances=dict(self.balances),
            log_length=len(self.logs),
        )

    def revert(self, snap: _Snapshot) -> None:
        self.contracts = dict(snap.contracts)
        for addr, state in snap.states.items():
            self.contracts[addr]._restore(state)
        self.balances = dict(snap.balances)
        del self.logs[snap.log_length:]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Roll back every state change if the block raises."""
        snap = self.snapshot()
        try:
            yield
        except Exception:
            self.revert(snap)
            raise

    # ==================== Validation tracing ====================

    def record_storage_access(self, contract: str, key: str) -> None:
        if self._trace is not None:
            self._trace.storage.append((contract, key))

    @contextmanager
    def tracing(self, sender: str) -> Iterator[ValidationTrace]:
        """Record storage and time accesses made inside the block."""
        previous = self._trace
        trace = ValidationTrace(sender=normalize_address(sender))
        self._trace = trace
        try:
            yield trace
        finally:
            self._trace = previous

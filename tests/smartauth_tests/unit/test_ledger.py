"""
Tests for the simulated ledger: dispatch, atomic rollback and tracing.
"""

import pytest

from smartauth.core import abi
from smartauth.core.exceptions import ExecutionReverted, UnknownContractError
from smartauth.core.ledger import Contract, Ledger, external

CALLER = "0x" + "11" * 20


class Counter(Contract):
    def __init__(self, ledger, address=None):
        super().__init__(ledger, address)
        self.values = {}

    @external("bump(uint256)")
    def bump(self, caller, amount):
        key = self._account_slot(caller)
        self.values[key] = self.values.get(key, 0) + amount
        self._emit("Bumped", caller=caller, amount=amount)
        return self.values[key]

    @external("bumpThenFail(uint256)")
    def bump_then_fail(self, caller, amount):
        self.bump(caller, amount)
        self._require(False, "boom")

    @external("bumpOther(address,uint256)")
    def bump_other(self, caller, other, amount):
        return self._call(other, 0, abi.encode_call("bump(uint256)", [amount]))

    @external("stamp()")
    def stamp(self, caller):
        return self.now


@pytest.fixture
def ledger():
    return Ledger(chain_id=1337, timestamp=1_000)


@pytest.fixture
def counter(ledger):
    return Counter(ledger)


class TestDispatch:
    def test_call_routes_by_selector(self, ledger, counter):
        result = ledger.call(CALLER, counter.address, 0, abi.encode_call("bump(uint256)", [3]))
        assert result == 3
        assert counter.values[CALLER] == 3
        assert ledger.logs[-1]["event"] == "Bumped"

    def test_unknown_selector_reverts(self, ledger, counter):
        with pytest.raises(ExecutionReverted, match="selector"):
            ledger.call(CALLER, counter.address, 0, b"\xde\xad\xbe\xef")

    def test_short_call_data_reverts(self, ledger, counter):
        with pytest.raises(ExecutionReverted):
            ledger.call(CALLER, counter.address, 0, b"\x01")

    def test_data_to_non_contract_reverts(self, ledger):
        with pytest.raises(UnknownContractError):
            ledger.call(CALLER, "0x" + "22" * 20, 0, b"\x01\x02\x03\x04")

    def test_plain_transfer_to_non_contract(self, ledger):
        ledger.fund(CALLER, 10)
        ledger.call(CALLER, "0x" + "22" * 20, 4, b"")
        assert ledger.balance_of(CALLER) == 6
        assert ledger.balance_of("0x" + "22" * 20) == 4

    def test_insufficient_balance_reverts(self, ledger):
        with pytest.raises(ExecutionReverted, match="insufficient balance"):
            ledger.call(CALLER, "0x" + "22" * 20, 1, b"")

    def test_get_checks_type(self, ledger, counter):
        assert ledger.get(counter.address, Counter) is counter
        with pytest.raises(ExecutionReverted):
            ledger.get("0x" + "33" * 20, Counter)

    def test_duplicate_deploy_rejected(self, ledger, counter):
        with pytest.raises(ExecutionReverted):
            Counter(ledger, counter.address)


class TestAtomicity:
    def test_revert_undoes_writes_and_logs(self, ledger, counter):
        """
        SECURITY TEST: A reverted call leaves no state or events behind.
        """
        with pytest.raises(ExecutionReverted, match="boom"):
            ledger.call(CALLER, counter.address, 0, abi.encode_call("bumpThenFail(uint256)", [5]))
        assert counter.values == {}
        assert ledger.logs == []

    def test_nested_call_rolls_back_with_outer(self, ledger, counter):
        other = Counter(ledger)
        ledger.call(
            CALLER, counter.address, 0, abi.encode_call("bumpOther(address,uint256)", [other.address, 2])
        )
        assert other.values[counter.address] == 2

        with pytest.raises(UnknownContractError):
            with ledger.atomic():
                ledger.call(
                    CALLER,
                    counter.address,
                    0,
                    abi.encode_call("bumpOther(address,uint256)", [other.address, 7]),
                )
                ledger.call(CALLER, "0x" + "44" * 20, 0, b"\x00\x00\x00\x00")
        assert other.values[counter.address] == 2

    def test_snapshot_revert_keeps_time(self, ledger, counter):
        snap = ledger.snapshot()
        ledger.call(CALLER, counter.address, 0, abi.encode_call("bump(uint256)", [1]))
        ledger.advance_time(50)
        ledger.revert(snap)
        assert counter.values == {}
        assert ledger.timestamp == 1_050

    def test_time_cannot_go_backwards(self, ledger):
        with pytest.raises(ValueError):
            ledger.advance_time(-1)


class TestTracing:
    def test_time_reads_are_counted(self, ledger, counter):
        with ledger.tracing(CALLER) as trace:
            ledger.call(CALLER, counter.address, 0, abi.encode_call("stamp()", []))
        assert trace.time_reads == 1

    def test_sender_keyed_storage_is_not_foreign(self, ledger, counter):
        with ledger.tracing(CALLER) as trace:
            ledger.call(CALLER, counter.address, 0, abi.encode_call("bump(uint256)", [1]))
        assert trace.storage == [(counter.address, CALLER)]
        assert trace.foreign_storage() == []

    def test_foreign_storage_detected(self, ledger, counter):
        other = Counter(ledger)
        with ledger.tracing(CALLER) as trace:
            ledger.call(
                CALLER, counter.address, 0, abi.encode_call("bumpOther(address,uint256)", [other.address, 1])
            )
        assert trace.foreign_storage() == [(other.address, counter.address)]
        assert trace.contracts == {counter.address, other.address}

    def test_no_trace_outside_block(self, ledger, counter):
        with ledger.tracing(CALLER) as trace:
            pass
        ledger.call(CALLER, counter.address, 0, abi.encode_call("stamp()", []))
        assert trace.time_reads == 0

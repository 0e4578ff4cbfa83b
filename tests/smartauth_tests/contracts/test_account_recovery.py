"""
Tests for the account recovery module: guardian setup, the two-phase
submit/execute flow and guardian management.
"""

import pytest

from helpers import CHAIN_ID, GENESIS_TIME, Signer, account_call, enable_module, execute_data, new_op

from smartauth.core import abi
from smartauth.core.config import UINT48_MAX
from smartauth.core.contracts import AccountRecoveryModule, RecoveryState
from smartauth.core.contracts.account_recovery import control_message_hash
from smartauth.core.crypto_utils import keccak256, sign_hash_eth
from smartauth.core.exceptions import ExecutionReverted
from smartauth.wallet import guardian_id, guardian_signature, sign_recovery_op, wrap_user_op

DELAY = 3600
INIT = "initForSmartAccount(bytes32[],(uint48,uint48)[],uint8,uint48)"


@pytest.fixture
def guardians():
    return [Signer.create() for _ in range(3)]


@pytest.fixture
def recovery(ledger):
    return AccountRecoveryModule(ledger)


def _setup(account, recovery, guardians, threshold, delay, timeframes=None):
    ids = [guardian_id(g.key, account.address) for g in guardians]
    frames = timeframes or [(0, 0)] * len(guardians)
    enable_module(account, recovery.address, abi.encode_call(INIT, [ids, frames, threshold, delay]))


@pytest.fixture
def protected(account, recovery, guardians):
    """Account guarded by 3-of-3 guardians with a one hour security delay."""
    _setup(account, recovery, guardians, 3, DELAY)
    return account


@pytest.fixture
def new_owner():
    return Signer.create()


@pytest.fixture
def recovery_call(ecdsa_module, new_owner):
    return execute_data(ecdsa_module.address, abi.encode_call("transferOwnership(address)", [new_owner.address]))


def _submit_call(recovery, recovery_call):
    return execute_data(recovery.address, abi.encode_call("submitRecoveryRequest(bytes)", [recovery_call]))


def _guardian_op(entry_point, account, recovery, call_data, keys):
    op = new_op(entry_point, account, call_data)
    return sign_recovery_op(op, keys, entry_point.address, CHAIN_ID, recovery.address)


def _ordered_pairs(entry_point, op, account, guardians, reverse=False):
    op_hash = entry_point.get_user_op_hash(op)
    ordered = sorted(guardians, key=lambda g: int(g.address, 16), reverse=reverse)
    return b"".join(sign_hash_eth(g.key, op_hash) + guardian_signature(g.key, account.address) for g in ordered)


def _execute_op(entry_point, account, recovery, recovery_call):
    return wrap_user_op(new_op(entry_point, account, recovery_call), b"", recovery.address)


class TestInit:
    def _init(self, account, recovery, ids, frames, threshold, delay=0):
        account_call(account, recovery.address, abi.encode_call(INIT, [ids, frames, threshold, delay]))

    def test_settings_recorded(self, protected, recovery, guardians):
        settings = recovery.get_smart_account_settings(protected.address)
        assert (settings.guardians_count, settings.recovery_threshold, settings.security_delay) == (3, 3, DELAY)
        frame = recovery.get_guardian_params(guardian_id(guardians[0].key, protected.address), protected.address)
        assert frame.valid_until == UINT48_MAX

    def test_already_inited(self, protected, recovery, guardians):
        with pytest.raises(ExecutionReverted, match="AlreadyInitedForSmartAccount"):
            self._init(protected, recovery, [b"\x01" * 32], [(0, 0)], 1)

    @pytest.mark.parametrize(
        "ids, frames, threshold, reason",
        [
            ([b"\x01" * 32], [(0, 0)], 2, "ThresholdTooHigh"),
            ([b"\x01" * 32, b"\x02" * 32], [(0, 0)], 1, "InvalidAmountOfGuardianParams"),
            ([b"\x01" * 32], [(0, 0)], 0, "ZeroThreshold"),
            ([b"\x00" * 32], [(0, 0)], 1, "ZeroGuardian"),
            ([b"\x01" * 32, b"\x01" * 32], [(0, 0), (0, 0)], 1, "GuardianAlreadySet"),
            ([b"\x01" * 32], [(GENESIS_TIME + 10, GENESIS_TIME + 20)], 1, "InvalidTimeFrame"),
            ([b"\x01" * 32], [(GENESIS_TIME - 1, 0)], 1, "ExpiredValidUntil"),
        ],
    )
    def test_invalid_init(self, account, recovery, ids, frames, threshold, reason):
        with pytest.raises(ExecutionReverted, match=reason):
            self._init(account, recovery, ids, frames, threshold)

    def test_control_hash_is_account_bound(self, account):
        assert control_message_hash(account.address) != control_message_hash("0x" + "12" * 20)

    def test_guardian_id_is_account_bound(self, guardians, account):
        """
        SECURITY TEST: A guardian identity for one account is useless on another.
        """
        assert guardian_id(guardians[0].key, account.address) != guardian_id(guardians[0].key, "0x" + "12" * 20)


class TestRecoveryFlow:
    def test_submit_then_execute_after_delay(
        self, ledger, entry_point, protected, recovery, guardians, ecdsa_module, recovery_call, new_owner
    ):
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians])
        assert entry_point.handle_ops([submit], guardians[0].address)[0].success

        request = recovery.get_recovery_request(protected.address)
        assert request.state is RecoveryState.PENDING
        assert request.call_data_hash == keccak256(recovery_call)
        assert request.execute_after == GENESIS_TIME + DELAY

        early = _execute_op(entry_point, protected, recovery, recovery_call)
        [receipt] = entry_point.handle_ops([early], guardians[0].address)
        assert receipt.reason.startswith("AA22")
        assert recovery.get_recovery_request(protected.address).is_pending

        ledger.set_time(GENESIS_TIME + DELAY - 1)
        assert entry_point.handle_ops([early], guardians[0].address)[0].reason.startswith("AA22")

        ledger.set_time(GENESIS_TIME + DELAY)
        assert entry_point.handle_ops([early], guardians[0].address)[0].success
        assert ecdsa_module.get_owner(protected.address) == new_owner.address
        assert recovery.get_recovery_request(protected.address).state is RecoveryState.EMPTY

    def test_request_is_single_use(self, ledger, entry_point, protected, recovery, guardians, recovery_call):
        """
        SECURITY TEST: An executed recovery cannot be replayed.
        """
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians])
        entry_point.handle_ops([submit], guardians[0].address)
        ledger.set_time(GENESIS_TIME + DELAY)
        assert entry_point.handle_ops([_execute_op(entry_point, protected, recovery, recovery_call)], guardians[0].address)[0].success

        replay = _execute_op(entry_point, protected, recovery, recovery_call)
        result = entry_point.simulate_validation(replay)
        assert result.error.details["reason"] == "Invalid Sigs Length"

    def test_ascending_signer_order_accepted(self, entry_point, protected, recovery, guardians, recovery_call):
        op = new_op(entry_point, protected, _submit_call(recovery, recovery_call))
        op = wrap_user_op(op, _ordered_pairs(entry_point, op, protected, guardians), recovery.address)
        assert entry_point.simulate_validation(op).ok

    def test_unsorted_signers_rejected(self, entry_point, protected, recovery, guardians, recovery_call):
        """
        SECURITY TEST: Reordering valid guardian pairs does not yield a second valid signature.
        """
        op = new_op(entry_point, protected, _submit_call(recovery, recovery_call))
        op = wrap_user_op(op, _ordered_pairs(entry_point, op, protected, guardians, reverse=True), recovery.address)
        assert entry_point.simulate_validation(op).error.details["reason"] == "NotUnique/BadOrder"

    def test_below_threshold(self, entry_point, protected, recovery, guardians, recovery_call):
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians[:2]])
        assert entry_point.simulate_validation(submit).error.details["reason"] == "Not enough signatures"

    def test_duplicate_guardian(self, entry_point, protected, recovery, guardians, recovery_call):
        """
        SECURITY TEST: One guardian signing twice does not count twice.
        """
        keys = [guardians[0].key, guardians[0].key, guardians[1].key]
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), keys)
        assert entry_point.simulate_validation(submit).error.details["reason"] == "NotUnique/BadOrder"

    def test_non_guardian(self, entry_point, protected, recovery, guardians, recovery_call):
        keys = [guardians[0].key, guardians[1].key, Signer.create().key]
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), keys)
        assert entry_point.simulate_validation(submit).error.details["reason"] == "InvalidGuardian"

    def test_pair_halves_from_different_signers(self, entry_point, protected, recovery, guardians, recovery_call):
        """
        SECURITY TEST: A guardian's control signature cannot vouch for someone else's op signature.
        """
        op = new_op(entry_point, protected, _submit_call(recovery, recovery_call))
        op_hash = entry_point.get_user_op_hash(op)
        stranger = Signer.create()
        pairs = sign_hash_eth(stranger.key, op_hash) + guardian_signature(guardians[0].key, protected.address)
        for g in guardians[1:]:
            pairs += sign_hash_eth(g.key, op_hash) + guardian_signature(g.key, protected.address)
        op = wrap_user_op(op, pairs, recovery.address)
        assert entry_point.simulate_validation(op).error.details["reason"] == "InvalidSignature"

    def test_truncated_signatures(self, entry_point, protected, recovery, guardians, recovery_call):
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians])
        submit = wrap_user_op(submit, b"\x01" * 129, recovery.address)
        assert entry_point.simulate_validation(submit).error.details["reason"] == "Invalid Sigs Length"

    def test_direct_call_rejected_with_delay(self, entry_point, protected, recovery, guardians, recovery_call):
        """
        SECURITY TEST: With a security delay, guardians cannot skip the waiting period.
        """
        op = _guardian_op(entry_point, protected, recovery, recovery_call, [g.key for g in guardians])
        assert entry_point.simulate_validation(op).error.details["reason"] == "Wrong userOp"

    def test_renounce_cancels_request(self, ledger, entry_point, protected, recovery, guardians, recovery_call):
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians])
        entry_point.handle_ops([submit], guardians[0].address)
        account_call(protected, recovery.address, abi.encode_call("renounceRecoveryRequest()", []))

        ledger.set_time(GENESIS_TIME + DELAY)
        [receipt] = entry_point.handle_ops([_execute_op(entry_point, protected, recovery, recovery_call)], guardians[0].address)
        assert receipt.reason == "AA24 signature error"

    def test_new_submission_supersedes(self, ledger, entry_point, protected, recovery, guardians, ecdsa_module, recovery_call):
        keys = [g.key for g in guardians]
        other_owner = Signer.create()
        other_call = execute_data(ecdsa_module.address, abi.encode_call("transferOwnership(address)", [other_owner.address]))

        entry_point.handle_ops([_guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), keys)], guardians[0].address)
        entry_point.handle_ops([_guardian_op(entry_point, protected, recovery, _submit_call(recovery, other_call), keys)], guardians[0].address)

        ledger.set_time(GENESIS_TIME + DELAY)
        stale = _execute_op(entry_point, protected, recovery, recovery_call)
        assert entry_point.simulate_validation(stale).error.code == "AA24"
        assert entry_point.handle_ops([_execute_op(entry_point, protected, recovery, other_call)], guardians[0].address)[0].success
        assert ecdsa_module.get_owner(protected.address) == other_owner.address

    def test_empty_recovery_call_rejected(self, protected, recovery):
        with pytest.raises(ExecutionReverted, match="EmptyRecoveryCallData"):
            account_call(protected, recovery.address, abi.encode_call("submitRecoveryRequest(bytes)", [b""]))

    def test_account_without_settings(self, entry_point, account, recovery, guardians, recovery_call):
        enable_module(account, recovery.address)
        op = _guardian_op(entry_point, account, recovery, recovery_call, [g.key for g in guardians])
        assert entry_point.simulate_validation(op).error.details["reason"] == "Threshold not set"


class TestZeroDelay:
    @pytest.fixture
    def instant(self, account, recovery, guardians):
        _setup(account, recovery, guardians, 2, 0)
        return account

    def test_guardians_sign_recovery_call_directly(
        self, entry_point, instant, recovery, guardians, ecdsa_module, recovery_call, new_owner
    ):
        op = _guardian_op(entry_point, instant, recovery, recovery_call, [g.key for g in guardians[:2]])
        assert entry_point.handle_ops([op], guardians[0].address)[0].success
        assert ecdsa_module.get_owner(instant.address) == new_owner.address

    def test_submit_rejected_without_delay(self, entry_point, instant, recovery, guardians, recovery_call):
        op = _guardian_op(entry_point, instant, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians[:2]])
        assert entry_point.simulate_validation(op).error.details["reason"] == "Wrong userOp"


class TestGuardianWindows:
    def test_expired_guardian_window(self, ledger, entry_point, account, recovery, guardians, recovery_call):
        frames = [(GENESIS_TIME + 10, 0), (0, 0), (0, 0)]
        _setup(account, recovery, guardians, 3, DELAY, timeframes=frames)
        ledger.set_time(GENESIS_TIME + 10)
        submit = _guardian_op(entry_point, account, recovery, _submit_call(recovery, recovery_call), [g.key for g in guardians])
        assert entry_point.handle_ops([submit], guardians[0].address)[0].reason.startswith("AA22")

    def test_added_guardian_waits_for_delay(self, ledger, entry_point, protected, recovery, guardians, recovery_call):
        late = Signer.create()
        late_id = guardian_id(late.key, protected.address)
        account_call(protected, recovery.address, abi.encode_call("addGuardian(bytes32,uint48,uint48)", [late_id, 0, 0]))
        frame = recovery.get_guardian_params(late_id, protected.address)
        assert frame.valid_after == GENESIS_TIME + DELAY
        assert recovery.get_smart_account_settings(protected.address).guardians_count == 4

        keys = [guardians[0].key, guardians[1].key, late.key]
        submit = _guardian_op(entry_point, protected, recovery, _submit_call(recovery, recovery_call), keys)
        assert entry_point.handle_ops([submit], guardians[0].address)[0].reason.startswith("AA22")
        ledger.set_time(GENESIS_TIME + DELAY)
        assert entry_point.handle_ops([submit], guardians[0].address)[0].success


class TestGuardianManagement:
    def _call(self, account, recovery, signature, args):
        account_call(account, recovery.address, abi.encode_call(signature, args))

    def test_remove_guardian_clamps_threshold(self, protected, recovery, guardians):
        gid = guardian_id(guardians[0].key, protected.address)
        self._call(protected, recovery, "removeGuardian(bytes32)", [gid])
        settings = recovery.get_smart_account_settings(protected.address)
        assert (settings.guardians_count, settings.recovery_threshold) == (2, 2)
        assert recovery.get_guardian_params(gid, protected.address) is None

    def test_remove_unknown_guardian(self, protected, recovery):
        with pytest.raises(ExecutionReverted, match="GuardianNotSet"):
            self._call(protected, recovery, "removeGuardian(bytes32)", [b"\x09" * 32])

    def test_replace_guardian(self, protected, recovery, guardians):
        old = guardian_id(guardians[0].key, protected.address)
        new = guardian_id(Signer.create().key, protected.address)
        self._call(protected, recovery, "replaceGuardian(bytes32,bytes32,uint48,uint48)", [old, new, 0, 0])
        assert recovery.get_guardian_params(old, protected.address) is None
        assert recovery.get_guardian_params(new, protected.address).valid_after == GENESIS_TIME + DELAY

    def test_replace_with_same_guardian(self, protected, recovery, guardians):
        gid = guardian_id(guardians[0].key, protected.address)
        with pytest.raises(ExecutionReverted, match="GuardiansAreIdentical"):
            self._call(protected, recovery, "replaceGuardian(bytes32,bytes32,uint48,uint48)", [gid, gid, 0, 0])

    def test_add_existing_guardian(self, protected, recovery, guardians):
        gid = guardian_id(guardians[0].key, protected.address)
        with pytest.raises(ExecutionReverted, match="GuardianAlreadySet"):
            self._call(protected, recovery, "addGuardian(bytes32,uint48,uint48)", [gid, 0, 0])

    def test_remove_expired_guardian_by_anyone(self, ledger, account, recovery, guardians):
        frames = [(GENESIS_TIME + 10, 0), (0, 0), (0, 0)]
        _setup(account, recovery, guardians, 2, DELAY, timeframes=frames)
        gid = guardian_id(guardians[0].key, account.address)
        call = abi.encode_call("removeExpiredGuardian(bytes32,address)", [gid, account.address])

        with pytest.raises(ExecutionReverted, match="GuardianNotExpired"):
            ledger.call(guardians[1].address, recovery.address, 0, call)
        ledger.set_time(GENESIS_TIME + 11)
        ledger.call(guardians[1].address, recovery.address, 0, call)
        assert recovery.get_guardian_params(gid, account.address) is None

    def test_change_guardian_params(self, protected, recovery, guardians):
        gid = guardian_id(guardians[0].key, protected.address)
        self._call(
            protected, recovery, "changeGuardianParams(bytes32,uint48,uint48)", [gid, GENESIS_TIME + 10**6, 0]
        )
        frame = recovery.get_guardian_params(gid, protected.address)
        assert (frame.valid_until, frame.valid_after) == (GENESIS_TIME + 10**6, GENESIS_TIME + DELAY)

    def test_set_threshold(self, protected, recovery):
        self._call(protected, recovery, "setThreshold(uint8)", [2])
        assert recovery.get_smart_account_settings(protected.address).recovery_threshold == 2
        with pytest.raises(ExecutionReverted, match="ThresholdTooHigh"):
            self._call(protected, recovery, "setThreshold(uint8)", [4])
        with pytest.raises(ExecutionReverted, match="ZeroThreshold"):
            self._call(protected, recovery, "setThreshold(uint8)", [0])

    def test_set_security_delay(self, protected, recovery):
        self._call(protected, recovery, "setSecurityDelay(uint48)", [60])
        assert recovery.get_smart_account_settings(protected.address).security_delay == 60

    def test_settings_are_per_account(self, protected, recovery, account):
        assert recovery.get_smart_account_settings("0x" + "31" * 20).recovery_threshold == 0

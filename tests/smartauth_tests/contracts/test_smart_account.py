"""
Tests for SmartAccount envelope dispatch, execution and module management.
"""

import pytest

from helpers import CHAIN_ID, Signer, account_call, enable_module, execute_batch_data, execute_data, new_op

from smartauth.core import abi
from smartauth.core.config import ERC1271_INVALID, ERC1271_MAGIC_VALUE
from smartauth.core.contracts import EcdsaOwnershipModule, ERC20Token, SmartAccount
from smartauth.core.contracts.smart_account import SENTINEL_MODULE
from smartauth.core.crypto_utils import keccak256
from smartauth.core.envelope import wrap
from smartauth.core.exceptions import ExecutionReverted
from smartauth.core.operation import UserOperation
from smartauth.wallet import sign_erc1271, sign_user_op


@pytest.fixture
def token(ledger):
    return ERC20Token(ledger)


def _mint_call(token, to, amount):
    return execute_data(token.address, abi.encode_call("mint(address,uint256)", [to, amount]))


class TestEnvelopeDispatch:
    def test_owner_signed_op_executes(self, ledger, entry_point, account, ecdsa_module, owner, token):
        op = new_op(entry_point, account, _mint_call(token, account.address, 10))
        op = sign_user_op(op, owner.key, entry_point.address, CHAIN_ID, ecdsa_module.address)

        [receipt] = entry_point.handle_ops([op], owner.address)

        assert receipt.validated and receipt.success
        assert token.balance_of(account.address) == 10

    def test_malformed_envelope_is_denied(self, entry_point, account):
        """
        SECURITY TEST: Garbage signatures are a denied verdict, not a crash.
        """
        op = new_op(entry_point, account, b"", signature=b"\x01\x02\x03")
        result = entry_point.simulate_validation(op)
        assert result.error.code == "AA24"
        assert result.error.details["reason"] == "Malformed signature envelope"

    def test_unknown_handler_is_denied(self, entry_point, account, owner, ledger):
        """
        SECURITY TEST: An envelope may only name a module the account enabled.
        """
        stranger_module = EcdsaOwnershipModule(ledger)
        op = new_op(entry_point, account, b"")
        op = sign_user_op(op, owner.key, entry_point.address, CHAIN_ID, stranger_module.address)
        result = entry_point.simulate_validation(op)
        assert result.error.code == "AA24"
        assert result.error.details["reason"] == "WrongValidationModule"

    def test_handler_that_is_not_a_contract_is_denied(self, entry_point, account):
        op = new_op(entry_point, account, b"", signature=wrap(b"sig", "0x" + "99" * 20))
        result = entry_point.simulate_validation(op)
        assert result.error.details["reason"] == "WrongValidationModule"

    def test_wrong_signer_is_denied(self, entry_point, account, ecdsa_module):
        op = new_op(entry_point, account, b"")
        op = sign_user_op(op, Signer.create().key, entry_point.address, CHAIN_ID, ecdsa_module.address)
        result = entry_point.simulate_validation(op)
        assert result.error.details["reason"] == "InvalidSignature"

    def test_only_entry_point_may_validate(self, account, owner):
        """
        SECURITY TEST: Validation cannot be invoked by arbitrary callers.
        """
        op = UserOperation(sender=account.address)
        with pytest.raises(ExecutionReverted, match="Caller not EntryPoint"):
            account.validate_user_op(owner.address, op, b"\x00" * 32)


class TestExecution:
    def test_outsider_cannot_execute(self, ledger, account, owner, token):
        """
        SECURITY TEST: Only the entry point or the account itself may execute.
        """
        with pytest.raises(ExecutionReverted, match="Caller not EntryPoint or Self"):
            ledger.call(owner.address, account.address, 0, _mint_call(token, owner.address, 1))

    def test_execute_batch_is_atomic(self, ledger, account, token):
        mint = abi.encode_call("mint(address,uint256)", [account.address, 5])
        bad_transfer = abi.encode_call("transfer(address,uint256)", ["0x" + "77" * 20, 100])
        data = execute_batch_data([token.address, token.address], [mint, bad_transfer])
        with pytest.raises(ExecutionReverted, match="exceeds balance"):
            ledger.call(account.entry_point, account.address, 0, data)
        assert token.balance_of(account.address) == 0

    def test_execute_batch_length_mismatch(self, ledger, account, token):
        data = execute_batch_data([token.address], [b"", b""])
        with pytest.raises(ExecutionReverted, match="Wrong array lengths"):
            ledger.call(account.entry_point, account.address, 0, data)


class TestModuleManagement:
    def test_default_module_enabled(self, account, ecdsa_module):
        assert account.get_modules() == [ecdsa_module.address]

    def test_enable_twice_rejected(self, account, ecdsa_module):
        with pytest.raises(ExecutionReverted, match="ModuleAlreadyEnabled"):
            enable_module(account, ecdsa_module.address)

    def test_sentinel_cannot_be_enabled(self, account):
        with pytest.raises(ExecutionReverted, match="ModuleCannotBeZeroOrSentinel"):
            enable_module(account, SENTINEL_MODULE)

    def test_disable_checks_previous_module(self, ledger, account, ecdsa_module):
        second = EcdsaOwnershipModule(ledger)
        enable_module(account, second.address)

        call = abi.encode_call("disableModule(address,address)", [SENTINEL_MODULE, second.address])
        with pytest.raises(ExecutionReverted, match="ModuleAndPrevModuleMismatch"):
            account_call(account, account.address, call)

        call = abi.encode_call("disableModule(address,address)", [ecdsa_module.address, second.address])
        account_call(account, account.address, call)
        assert not account.is_module_enabled(second.address)

    def test_disable_unknown_module(self, ledger, account):
        call = abi.encode_call("disableModule(address,address)", [SENTINEL_MODULE, "0x" + "55" * 20])
        with pytest.raises(ExecutionReverted, match="ModuleNotEnabled"):
            account_call(account, account.address, call)

    def test_disabled_module_no_longer_validates(self, ledger, entry_point, account, ecdsa_module, owner):
        call = abi.encode_call("disableModule(address,address)", [SENTINEL_MODULE, ecdsa_module.address])
        account_call(account, account.address, call)
        op = sign_user_op(new_op(entry_point, account, b""), owner.key, entry_point.address, CHAIN_ID, ecdsa_module.address)
        assert entry_point.simulate_validation(op).error.details["reason"] == "WrongValidationModule"


class TestERC1271:
    def test_owner_approval_accepted(self, account, ecdsa_module, owner):
        data_hash = keccak256(b"order")
        signature = sign_erc1271(owner.key, data_hash, account.address, ecdsa_module.address)
        assert account.is_valid_signature(data_hash, signature) == ERC1271_MAGIC_VALUE

    def test_approval_bound_to_account(self, ledger, entry_point, ecdsa_module, owner, account):
        """
        SECURITY TEST: An approval for one account does not validate on another.
        """
        other = SmartAccount(
            ledger,
            entry_point.address,
            default_module=ecdsa_module.address,
            setup_data=abi.encode_call("initForSmartAccount(address)", [owner.address]),
        )
        data_hash = keccak256(b"order")
        signature = sign_erc1271(owner.key, data_hash, account.address, ecdsa_module.address)
        assert other.is_valid_signature(data_hash, signature) == ERC1271_INVALID

    def test_garbage_is_invalid(self, account):
        assert account.is_valid_signature(keccak256(b"x"), b"\x00") == ERC1271_INVALID

"""
Session fixtures: sub-validators, targets and a session key.
"""

import pytest

from helpers import Signer, enable_module

from smartauth.core import abi
from smartauth.core.contracts import (
    ABISessionValidationModule,
    ContractCallSessionValidationModule,
    ERC20SessionValidationModule,
    ERC20Token,
    ERC721ApprovalSessionValidationModule,
    ERC721Token,
    InteractionProtocol,
    SessionKeyManager,
)


@pytest.fixture
def session_key():
    return Signer.create()


@pytest.fixture
def recipient():
    return Signer.create()


@pytest.fixture
def erc20_svm(ledger):
    return ERC20SessionValidationModule(ledger)


@pytest.fixture
def contract_call_svm(ledger):
    return ContractCallSessionValidationModule(ledger)


@pytest.fixture
def abi_svm(ledger):
    return ABISessionValidationModule(ledger)


@pytest.fixture
def erc721_svm(ledger):
    return ERC721ApprovalSessionValidationModule(ledger)


@pytest.fixture
def token(ledger, account):
    """ERC20 with 1000 units minted to the account."""
    token = ERC20Token(ledger)
    ledger.call(account.address, token.address, 0, abi.encode_call("mint(address,uint256)", [account.address, 1000]))
    return token


@pytest.fixture
def nft(ledger):
    return ERC721Token(ledger)


@pytest.fixture
def protocol(ledger):
    return InteractionProtocol(ledger)


@pytest.fixture
def skm(ledger, account):
    """Flat session key manager enabled on the account."""
    manager = SessionKeyManager(ledger)
    enable_module(account, manager.address)
    return manager

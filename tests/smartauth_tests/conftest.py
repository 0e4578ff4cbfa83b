"""
Fixtures for the smartauth test suite.

Every test gets a fresh ledger pinned to a fixed timestamp, the entry point
at its canonical address and an account owned through the ECDSA module.
"""

import sys
from pathlib import Path

import pytest

# helpers.py lives next to this file
sys.path.insert(0, str(Path(__file__).parent))

from helpers import CHAIN_ID, GENESIS_TIME, Signer  # noqa: E402

from smartauth.core import abi  # noqa: E402
from smartauth.core.contracts import (  # noqa: E402
    EcdsaOwnershipModule,
    EntryPoint,
    SmartAccount,
)
from smartauth.core.ledger import Ledger  # noqa: E402


@pytest.fixture
def ledger():
    """Fresh ledger on the local chain id, clock pinned for reproducibility."""
    return Ledger(chain_id=CHAIN_ID, timestamp=GENESIS_TIME)


@pytest.fixture
def entry_point(ledger):
    return EntryPoint(ledger)


@pytest.fixture
def ecdsa_module(ledger):
    return EcdsaOwnershipModule(ledger)


@pytest.fixture
def owner():
    return Signer.create()


@pytest.fixture
def account(ledger, entry_point, ecdsa_module, owner):
    """Smart account with the ECDSA module enabled and ``owner`` registered."""
    return SmartAccount(
        ledger,
        entry_point.address,
        default_module=ecdsa_module.address,
        setup_data=abi.encode_call("initForSmartAccount(address)", [owner.address]),
    )

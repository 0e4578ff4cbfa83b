"""
smartauth Contracts.

Modules executed on the simulated ledger:
- SmartAccount: ERC-4337 account with envelope-based module dispatch
- EntryPoint: dispatcher sequencing validation then execution
- EcdsaOwnershipModule: single-owner validation module
- SessionKeyManager / HybridSessionKeyManager: session permission modules
- BatchedSessionRouter: multi-session validation for batched calls
- AccountRecoveryModule: guardian threshold and security delay
- Session validation modules: ERC20, contract call, ABI rules, ERC721 approval
- Token contracts used as session targets
"""

from .smart_account import SmartAccount
from .entry_point import EntryPoint, OpReceipt
from .ecdsa_ownership import EcdsaOwnershipModule
from .session_key_manager import SessionKeyManager
from .hybrid_session_key_manager import HybridSessionKeyManager
from .batched_session_router import BatchedSessionRouter
from .account_recovery import AccountRecoveryModule, RecoveryState
from .session_validation import (
    ERC20SessionValidationModule,
    ContractCallSessionValidationModule,
    ABISessionValidationModule,
    ERC721ApprovalSessionValidationModule,
)
from .tokens import ERC20Token, ERC721Token, InteractionProtocol

__all__ = [
    "SmartAccount",
    "EntryPoint",
    "OpReceipt",
    "EcdsaOwnershipModule",
    "SessionKeyManager",
    "HybridSessionKeyManager",
    "BatchedSessionRouter",
    "AccountRecoveryModule",
    "RecoveryState",
    "ERC20SessionValidationModule",
    "ContractCallSessionValidationModule",
    "ABISessionValidationModule",
    "ERC721ApprovalSessionValidationModule",
    "ERC20Token",
    "ERC721Token",
    "InteractionProtocol",
]

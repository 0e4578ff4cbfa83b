"""
smartauth Core Module

Core building blocks of the authorization layer:
- Cryptographic primitives (keccak, EIP-191 signing and recovery)
- ABI encoding helpers and the session Merkle tree
- Operation codec, signature envelope and validation verdicts
- Simulated ledger that the contracts execute on
"""

__all__ = []

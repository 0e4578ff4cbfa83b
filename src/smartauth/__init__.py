"""
smartauth - ERC-4337 Smart Account Authorization Core

Pluggable signature-validation and permission-scoping layer for smart
contract wallets:
- Operation Codec: canonical user operation hashing bound to entry point and chain
- Signature Envelope: recursive (payload, handler) dispatch between modules
- Session Keys: Merkle-rooted session permissions, flat and hybrid managers
- Batched Session Router: one session signature over a batch of scoped calls
- Account Recovery: guardian threshold with a security delay
"""

__version__ = "0.1.0"
__author__ = "smartauth Development Team"

__all__ = []

"""
smartauth Bundler - JSON-RPC submission surface, mempool and policy.
"""

from .mempool import Mempool, MempoolEntry
from .rpc import Bundler, create_app
from .rules import RpcErrorCode, check_simulation

__all__ = [
    "Bundler",
    "Mempool",
    "MempoolEntry",
    "RpcErrorCode",
    "check_simulation",
    "create_app",
]

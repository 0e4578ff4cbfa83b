"""
smartauth Wallet - off-chain builders for session payloads and signatures.
"""

from .sessions import (
    SessionLeaf,
    SessionTree,
    hybrid_batch_payload,
    hybrid_enable_and_use_info,
    hybrid_enable_and_use_payload,
    hybrid_pre_enabled_info,
    hybrid_pre_enabled_payload,
    make_session_enable_data,
    router_payload,
    router_signature,
    session_signature,
    sign_session_enable_data,
)
from .signing import (
    guardian_id,
    guardian_signature,
    recovery_signature,
    sign_erc1271,
    sign_recovery_op,
    sign_user_op,
    wrap_user_op,
)

__all__ = [
    "SessionLeaf",
    "SessionTree",
    "hybrid_batch_payload",
    "hybrid_enable_and_use_info",
    "hybrid_enable_and_use_payload",
    "hybrid_pre_enabled_info",
    "hybrid_pre_enabled_payload",
    "make_session_enable_data",
    "router_payload",
    "router_signature",
    "session_signature",
    "sign_session_enable_data",
    "guardian_id",
    "guardian_signature",
    "recovery_signature",
    "sign_erc1271",
    "sign_recovery_op",
    "sign_user_op",
    "wrap_user_op",
]

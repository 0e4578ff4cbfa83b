"""
Off-chain session builders.

Constructs session leaves and trees, and the signature payloads each
session-aware module decodes:

- flat manager: leaf fields + Merkle proof + session-key signature
- batched router: one proven leaf per call + one signature
- hybrid manager: pre-enabled, enable-and-use and batch payloads, plus the
  owner-signed session enable batch
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from smartauth.core import abi
from smartauth.core.crypto_utils import address_bytes, keccak256, normalize_address, sign_eth_message, sign_hash_eth
from smartauth.core.envelope import wrap
from smartauth.core.merkle import MerkleTree
from smartauth.core.contracts.batched_session_router import ROUTER_PAYLOAD_TYPES, router_signed_hash
from smartauth.core.contracts.hybrid_session_key_manager import TransactionMode
from smartauth.core.contracts.session_key_manager import SESSION_PAYLOAD_TYPES, session_leaf_hash
from smartauth.core.contracts.session_validation import (
    ABISessionValidationModule,
    ArgumentRule,
    ContractCallSessionValidationModule,
    ERC20SessionValidationModule,
    ERC721ApprovalSessionValidationModule,
)


@dataclass(frozen=True)
class SessionLeaf:
    """One session grant: a window, a sub-validator and its configuration."""

    valid_until: int
    valid_after: int
    svm: str
    session_key_data: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "svm", normalize_address(self.svm))
        object.__setattr__(self, "session_key_data", bytes(self.session_key_data))

    def header(self) -> bytes:
        return (
            self.valid_until.to_bytes(6, "big")
            + self.valid_after.to_bytes(6, "big")
            + address_bytes(self.svm)
        )

    def leaf_data(self) -> bytes:
        return self.header() + self.session_key_data

    def leaf_hash(self) -> bytes:
        return session_leaf_hash(self.valid_until, self.valid_after, self.svm, self.session_key_data)

    def digest(self) -> bytes:
        """Hybrid manager key; identical to the tree leaf hash."""
        return self.leaf_hash()

    # ==================== Sub-validator configs ====================

    @classmethod
    def erc20(
        cls,
        svm: str,
        session_key: str,
        token: str,
        recipient: str,
        max_amount: int,
        valid_until: int = 0,
        valid_after: int = 0,
    ) -> "SessionLeaf":
        return cls(
            valid_until,
            valid_after,
            svm,
            ERC20SessionValidationModule.encode_config(session_key, token, recipient, max_amount),
        )

    @classmethod
    def contract_call(
        cls,
        svm: str,
        session_key: str,
        target: str,
        selector: bytes,
        valid_until: int = 0,
        valid_after: int = 0,
    ) -> "SessionLeaf":
        return cls(
            valid_until,
            valid_after,
            svm,
            ContractCallSessionValidationModule.encode_config(session_key, target, selector),
        )

    @classmethod
    def abi_rules(
        cls,
        svm: str,
        session_key: str,
        dest: str,
        selector: bytes,
        value_limit: int = 0,
        rules: Sequence[ArgumentRule] = (),
        valid_until: int = 0,
        valid_after: int = 0,
    ) -> "SessionLeaf":
        return cls(
            valid_until,
            valid_after,
            svm,
            ABISessionValidationModule.encode_config(session_key, dest, selector, value_limit, rules),
        )

    @classmethod
    def erc721_approval(
        cls,
        svm: str,
        session_key: str,
        nft_contract: str,
        valid_until: int = 0,
        valid_after: int = 0,
    ) -> "SessionLeaf":
        return cls(
            valid_until,
            valid_after,
            svm,
            ERC721ApprovalSessionValidationModule.encode_config(session_key, nft_contract),
        )


class SessionTree:
    """Merkle tree over session leaves; the root is what the account stores."""

    def __init__(self, leaves: Sequence[SessionLeaf]):
        self.leaves = list(leaves)
        self.tree = MerkleTree([leaf.leaf_hash() for leaf in self.leaves])

    @property
    def root(self) -> bytes:
        return self.tree.root

    def __len__(self) -> int:
        return len(self.leaves)

    def proof_for(self, leaf: SessionLeaf) -> List[bytes]:
        return self.tree.proof_for(leaf.leaf_hash())

    def flat_payload(self, leaf: SessionLeaf, signature: bytes) -> bytes:
        """Payload for the flat session key manager."""
        return abi.encode(
            SESSION_PAYLOAD_TYPES,
            (
                leaf.valid_until,
                leaf.valid_after,
                leaf.svm,
                leaf.session_key_data,
                self.proof_for(leaf),
                bytes(signature),
            ),
        )

    def router_entry(
        self, leaf: SessionLeaf, call_specific_data: bytes = b""
    ) -> Tuple[int, int, str, bytes, List[bytes], bytes]:
        return (
            leaf.valid_until,
            leaf.valid_after,
            leaf.svm,
            leaf.session_key_data,
            self.proof_for(leaf),
            bytes(call_specific_data),
        )


def session_signature(session_key: str, op_hash: bytes) -> bytes:
    """Session-key signature over an operation hash (single-call paths)."""
    return sign_hash_eth(session_key, op_hash)


# ==================== Batched router ====================


def router_signature(session_key: str, op_hash: bytes, session_key_manager: str) -> bytes:
    return sign_hash_eth(session_key, router_signed_hash(op_hash, session_key_manager))


def router_payload(
    session_key_manager: str,
    entries: Sequence[Tuple[int, int, str, bytes, List[bytes], bytes]],
    signature: bytes,
) -> bytes:
    """Router payload; ``entries`` come from ``SessionTree.router_entry``, one per call."""
    return abi.encode(
        ROUTER_PAYLOAD_TYPES,
        (normalize_address(session_key_manager), list(entries), bytes(signature)),
    )


# ==================== Hybrid manager ====================


def make_session_enable_data(chain_ids: Sequence[int], digests: Sequence[bytes]) -> bytes:
    """``packed(uint8 count, uint64[count] chainIds, bytes32[count] digests)``."""
    if len(chain_ids) != len(digests):
        raise ValueError("chain_ids and digests must have the same length")
    if len(digests) > 255:
        raise ValueError("at most 255 sessions per enable batch")
    return (
        bytes([len(digests)])
        + b"".join(int(chain_id).to_bytes(8, "big") for chain_id in chain_ids)
        + b"".join(bytes(digest) for digest in digests)
    )


def sign_session_enable_data(
    owner_key: str, enable_data: bytes, account: str, ownership_module: str
) -> bytes:
    """
    Owner approval of an enable batch, as an envelope for the account's
    ERC-1271 check: the ownership module signs ``keccak(enableData) ‖ account``.
    """
    signature = sign_eth_message(owner_key, keccak256(enable_data) + address_bytes(account))
    return wrap(signature, ownership_module)


def hybrid_pre_enabled_payload(digest: bytes, signature: bytes) -> bytes:
    return bytes([TransactionMode.PRE_ENABLED]) + abi.encode(
        ("bytes32", "bytes"), (bytes(digest), bytes(signature))
    )


def hybrid_enable_and_use_payload(
    session_index: int,
    leaf: SessionLeaf,
    enable_data: bytes,
    enable_signature: bytes,
    signature: bytes,
) -> bytes:
    return (
        bytes([TransactionMode.ENABLE_AND_USE, session_index])
        + leaf.header()
        + abi.encode(
            ("bytes", "bytes", "bytes", "bytes"),
            (leaf.session_key_data, bytes(enable_data), bytes(enable_signature), bytes(signature)),
        )
    )


def hybrid_pre_enabled_info(digest: bytes, call_specific_data: bytes = b"") -> bytes:
    return (
        bytes([TransactionMode.PRE_ENABLED])
        + bytes(digest)
        + abi.encode(("bytes",), (bytes(call_specific_data),))
    )


def hybrid_enable_and_use_info(
    enable_index: int,
    key_index: int,
    leaf: SessionLeaf,
    call_specific_data: bytes = b"",
) -> bytes:
    return (
        bytes([TransactionMode.ENABLE_AND_USE, enable_index, key_index])
        + leaf.header()
        + abi.encode(("bytes", "bytes"), (leaf.session_key_data, bytes(call_specific_data)))
    )


def hybrid_batch_payload(
    enable_datas: Sequence[bytes],
    enable_signatures: Sequence[bytes],
    session_infos: Sequence[bytes],
    signature: bytes,
) -> bytes:
    return abi.encode(
        ("bytes[]", "bytes[]", "bytes[]", "bytes"),
        (
            [bytes(d) for d in enable_datas],
            [bytes(s) for s in enable_signatures],
            [bytes(i) for i in session_infos],
            bytes(signature),
        ),
    )

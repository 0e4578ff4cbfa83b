"""
Session permission Merkle tree.

Leaves are already-hashed 32-byte values. Pairs are hashed sorted
(keccak(min ‖ max)), and an odd node at the end of a level is promoted to
the next level unchanged. Proofs are therefore plain lists of sibling
hashes with no left/right markers, which is what the on-chain verifier
consumes.
"""

from typing import Dict, List, Sequence

from smartauth.core.crypto_utils import keccak256


class MerkleTree:
    def __init__(self, leaves: Sequence[bytes]):
        if not leaves:
            raise ValueError("Merkle tree requires at least one leaf.")
        for leaf in leaves:
            if len(leaf) != 32:
                raise ValueError("Merkle leaves must be 32-byte hashes.")
        self.levels: List[List[bytes]] = self._build_levels([bytes(l) for l in leaves])
        self.root: bytes = self.levels[-1][0]
        self._index: Dict[bytes, int] = {}
        for i, leaf in enumerate(self.levels[0]):
            self._index.setdefault(leaf, i)

    @property
    def leaves(self) -> List[bytes]:
        return self.levels[0]

    def __len__(self) -> int:
        return len(self.levels[0])

    @staticmethod
    def _hash_pair(a: bytes, b: bytes) -> bytes:
        if a > b:
            a, b = b, a
        return keccak256(a + b)

    def _build_levels(self, leaves: List[bytes]) -> List[List[bytes]]:
        levels = [leaves]
        current = leaves
        while len(current) > 1:
            nxt = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    nxt.append(self._hash_pair(current[i], current[i + 1]))
                else:
                    nxt.append(current[i])  # promote odd node
            levels.append(nxt)
            current = nxt
        return levels

    def index_of(self, leaf: bytes) -> int:
        try:
            return self._index[bytes(leaf)]
        except KeyError:
            raise ValueError("Leaf not found in the Merkle tree.") from None

    def proof(self, index: int) -> List[bytes]:
        if index < 0 or index >= len(self.levels[0]):
            raise IndexError(f"Leaf index {index} out of range")
        proof = []
        for level in self.levels[:-1]:
            sibling = index ^ 1
            if sibling < len(level):
                proof.append(level[sibling])
            index //= 2
        return proof

    def proof_for(self, leaf: bytes) -> List[bytes]:
        return self.proof(self.index_of(leaf))

    @staticmethod
    def verify_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
        current = bytes(leaf)
        for sibling in proof:
            current = MerkleTree._hash_pair(current, bytes(sibling))
        return current == bytes(root)

"""
Entry transcript - Merkle commitment to the eligible entry set.

When randomness is generated the eligible entries are frozen and committed
to a single root. Auditors can then check that a participant was (or was
not) in the pool the draws ran over, without the full entry list.

- Leaves are LotteryEntry.leaf() values in registration order
- Simple binary tree with SHA256, padded to a power of two
- Append-only: leaves are never removed
"""

from typing import Iterable, List, Optional, Tuple

from fairalloc.crypto import sha256


# =============================================================================
# Merkle Tree
# =============================================================================


class MerkleTree:
    """
    Append-only binary Merkle tree.

    Root is cached and recomputed after inserts.
    """

    EMPTY_LEAF = bytes(32)

    def __init__(self, leaves: Optional[Iterable[bytes]] = None):
        self.leaves: List[bytes] = []
        self._root_cache: Optional[bytes] = None
        for leaf in leaves or ():
            self.insert(leaf)

    @staticmethod
    def hash_pair(left: bytes, right: bytes) -> bytes:
        """Hash two nodes together."""
        return sha256(left + right)

    def insert(self, leaf: bytes) -> int:
        """
        Append a 32-byte leaf.

        Returns:
            Index of the inserted leaf
        """
        if len(leaf) != 32:
            raise ValueError("Leaf must be 32 bytes")

        self.leaves.append(leaf)
        self._root_cache = None
        return len(self.leaves) - 1

    def _padded(self) -> List[bytes]:
        n = len(self.leaves)
        next_pow2 = 1 << (n - 1).bit_length() if n > 1 else 1
        return list(self.leaves) + [self.EMPTY_LEAF] * (next_pow2 - n)

    def _next_layer(self, layer: List[bytes]) -> List[bytes]:
        return [self.hash_pair(layer[i], layer[i + 1]) for i in range(0, len(layer), 2)]

    def root(self) -> bytes:
        """32-byte root (EMPTY_LEAF for an empty tree)."""
        if not self.leaves:
            return self.EMPTY_LEAF

        if self._root_cache is None:
            layer = self._padded()
            while len(layer) > 1:
                layer = self._next_layer(layer)
            self._root_cache = layer[0]
        return self._root_cache

    def prove(self, leaf_index: int) -> List[Tuple[bytes, bool]]:
        """
        Inclusion proof for a leaf.

        Returns:
            List of (sibling_hash, is_right) tuples, leaf to root.
        """
        if leaf_index < 0 or leaf_index >= len(self.leaves):
            raise IndexError(f"Leaf index {leaf_index} out of range")

        proof = []
        layer = self._padded()
        idx = leaf_index

        while len(layer) > 1:
            if idx % 2 == 0:
                proof.append((layer[idx + 1], True))
            else:
                proof.append((layer[idx - 1], False))
            layer = self._next_layer(layer)
            idx //= 2

        return proof

    @classmethod
    def verify(cls, leaf: bytes, proof: List[Tuple[bytes, bool]], root: bytes) -> bool:
        """Check an inclusion proof against a root."""
        current = leaf
        for sibling, is_right in proof:
            if is_right:
                current = cls.hash_pair(current, sibling)
            else:
                current = cls.hash_pair(sibling, current)
        return current == root

    def __len__(self) -> int:
        return len(self.leaves)


def compute_entries_root(entries) -> bytes:
    """Root over LotteryEntry leaves in the given order."""
    return MerkleTree(e.leaf() for e in entries).root()


__all__ = ["MerkleTree", "compute_entries_root"]

# crypto_core/merkle.py
"""
Fixed-depth incremental Merkle tree over 32-byte commitments.

Only non-empty nodes are stored; missing siblings fall back to the
precomputed empty-subtree hash of their level. Depth 20 holds ~1M leaves.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from notevault.crypto_core.commitments import hex32_to_bytes, keccak256, to_hex

DEFAULT_DEPTH = 20


def hash2(left: bytes, right: bytes) -> bytes:
    return keccak256(left + right)


@dataclass(frozen=True)
class MerklePath:
    """Authentication path for one leaf: siblings from the leaf level up."""
    index: int
    siblings: List[str] = field(default_factory=list)
    root: str = ""

    @property
    def depth(self) -> int:
        return len(self.siblings)

    def to_dict(self) -> dict:
        return {"index": self.index, "siblings": list(self.siblings), "root": self.root}


class MerkleTreeFull(Exception):
    pass


class MerkleTree:
    def __init__(self, depth: int = DEFAULT_DEPTH):
        if depth < 1 or depth > 64:
            raise ValueError("depth must be in [1, 64]")
        self.depth = depth
        self.leaf_count = 0
        self.empty: List[bytes] = [hash2(bytes(32), bytes(32))]
        for _ in range(depth):
            self.empty.append(hash2(self.empty[-1], self.empty[-1]))
        self.nodes: List[Dict[int, bytes]] = [dict() for _ in range(depth + 1)]
        self._root = self.empty[depth]

    @classmethod
    def from_leaves(cls, leaves: Iterable[str], depth: int = DEFAULT_DEPTH) -> "MerkleTree":
        mt = cls(depth)
        for leaf in leaves:
            mt.insert(leaf)
        return mt

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    def root(self) -> str:
        return to_hex(self._root)

    def leaves(self) -> List[str]:
        return [to_hex(self.nodes[0][i]) for i in range(self.leaf_count)]

    def insert(self, leaf_hex: str) -> int:
        if self.leaf_count >= self.capacity:
            raise MerkleTreeFull(f"tree of depth {self.depth} is full")
        index = self.leaf_count
        self._update(index, hex32_to_bytes(leaf_hex, "leaf"))
        self.leaf_count += 1
        return index

    def _sibling(self, level: int, index: int) -> bytes:
        sib = index ^ 1
        return self.nodes[level].get(sib, self.empty[level])

    def _update(self, index: int, leaf: bytes) -> None:
        self.nodes[0][index] = leaf
        cur_idx, cur = index, leaf
        for level in range(self.depth):
            sib = self._sibling(level, cur_idx)
            cur = hash2(cur, sib) if cur_idx % 2 == 0 else hash2(sib, cur)
            cur_idx //= 2
            self.nodes[level + 1][cur_idx] = cur
        self._root = cur

    def proof(self, index: int) -> MerklePath:
        if index < 0 or index >= self.leaf_count:
            raise IndexError(f"leaf {index} not in tree (size {self.leaf_count})")
        siblings: List[str] = []
        cur_idx = index
        for level in range(self.depth):
            siblings.append(to_hex(self._sibling(level, cur_idx)))
            cur_idx //= 2
        return MerklePath(index=index, siblings=siblings, root=self.root())


def compute_root(leaf_hex: str, path: MerklePath) -> str:
    cur = hex32_to_bytes(leaf_hex, "leaf")
    idx = path.index
    for sib_hex in path.siblings:
        sib = hex32_to_bytes(sib_hex, "sibling")
        cur = hash2(cur, sib) if idx % 2 == 0 else hash2(sib, cur)
        idx //= 2
    return to_hex(cur)


def verify_merkle(leaf_hex: str, path: MerklePath, root_hex: str) -> bool:
    try:
        return compute_root(leaf_hex, path).lower() == root_hex.lower()
    except ValueError:
        return False


__all__ = ["DEFAULT_DEPTH", "MerklePath", "MerkleTree", "MerkleTreeFull", "compute_root", "verify_merkle", "hash2"]

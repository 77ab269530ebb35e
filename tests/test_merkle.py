"""
Commitment tree tests
"""

import dataclasses

import pytest

from notevault.crypto_core.commitments import compute_commitment, generate_secret
from notevault.crypto_core.merkle import MerkleTree, MerkleTreeFull, compute_root, verify_merkle
from notevault.errors import ValidationError


def _leaves(n):
    return [compute_commitment(generate_secret(), i + 1) for i in range(n)]


class TestMerkleTree:
    def test_empty_roots_depend_on_depth(self):
        """Empty trees of different depth have different roots."""
        assert MerkleTree(4).root() != MerkleTree(5).root()
        assert MerkleTree(4).root() == MerkleTree(4).root()

    def test_insert_returns_sequential_indices(self):
        t = MerkleTree(4)
        assert [t.insert(leaf) for leaf in _leaves(3)] == [0, 1, 2]
        assert t.leaf_count == 3

    def test_root_changes_on_insert(self):
        t = MerkleTree(4)
        before = t.root()
        t.insert(_leaves(1)[0])
        assert t.root() != before

    def test_every_path_verifies(self):
        """Each leaf's path leads to the current root."""
        leaves = _leaves(5)
        t = MerkleTree.from_leaves(leaves, 4)
        for i, leaf in enumerate(leaves):
            path = t.proof(i)
            assert path.depth == 4
            assert path.root == t.root()
            assert verify_merkle(leaf, path, t.root())
            assert compute_root(leaf, path) == t.root()

    def test_wrong_leaf_or_sibling_fails(self):
        leaves = _leaves(4)
        t = MerkleTree.from_leaves(leaves, 3)
        path = t.proof(1)
        assert not verify_merkle(leaves[0], path, t.root())
        bad = dataclasses.replace(path, siblings=["0x" + "00" * 32] + path.siblings[1:])
        assert not verify_merkle(leaves[1], bad, t.root())

    def test_malformed_sibling_is_not_verified(self):
        leaves = _leaves(2)
        t = MerkleTree.from_leaves(leaves, 3)
        bad = dataclasses.replace(t.proof(0), siblings=["0x12"] * 3)
        assert verify_merkle(leaves[0], bad, t.root()) is False

    def test_rebuild_matches(self):
        """A tree rebuilt from its leaves has the same root."""
        leaves = _leaves(6)
        t = MerkleTree.from_leaves(leaves, 5)
        assert MerkleTree.from_leaves(t.leaves(), 5).root() == t.root()

    def test_full_tree(self):
        t = MerkleTree(2)
        for leaf in _leaves(4):
            t.insert(leaf)
        with pytest.raises(MerkleTreeFull):
            t.insert(_leaves(1)[0])

    def test_proof_out_of_range(self):
        t = MerkleTree(3)
        with pytest.raises(IndexError):
            t.proof(0)

    def test_bad_leaf(self):
        with pytest.raises(ValidationError):
            MerkleTree(3).insert("0xnothex")

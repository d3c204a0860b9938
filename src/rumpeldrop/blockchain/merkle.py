"""
rumpeldrop/blockchain/merkle.py

Merkle commitment over claim leaves, verified on-chain by the point token
vault.

Leaves:
    redemption rights: keccak(encodePacked(PREFIX, address, pointsId, amount))
    raw points:        keccak(encodePacked(address, pointsId, amount))

where PREFIX = keccak("REDEMPTION_RIGHTS"). Both namespaces may share one
tree; the prefix keeps their leaves distinct.

Tree:
    - leaves are deduplicated and sorted by byte value, so the root only
      depends on the leaf set
    - each parent is keccak(min(a, b) || max(a, b)) ("sorted pairs"), so a
      proof is just the list of siblings
    - an odd node at the end of a layer moves up unchanged

Usage:
    from rumpeldrop.blockchain.merkle import MerkleTree, hash_points_leaf

    leaf = hash_points_leaf(address, points_id, amount)
    tree = MerkleTree([leaf, ...])
    proof = tree.get_hex_proof(leaf)
    assert MerkleTree.verify_proof(leaf, proof, tree.root)
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from eth_abi.packed import encode_packed
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

from ..errors import EmptyTreeError, UpstreamDataError
from ..protocol.points import points_id_to_bytes

logger = logging.getLogger("rumpeldrop.blockchain.merkle")

HashLike = Union[bytes, str]
ProofStep = Tuple[str, str]  # (side, sibling hex)

HASH_LENGTH = 32
MAX_UINT256 = 2 ** 256 - 1

REDEMPTION_RIGHTS_PREFIX: bytes = keccak(encode_packed(["string"], ["REDEMPTION_RIGHTS"]))


# ============================================================================
# LEAF ENCODING
# ============================================================================

def _check_amount(amount: int) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise UpstreamDataError(f"Leaf amount must be an integer, got {amount!r}")
    if amount <= 0 or amount > MAX_UINT256:
        raise UpstreamDataError(f"Leaf amount out of range: {amount}")
    return amount


def encode_redemption_rights_leaf(address: str, points_id: str, amount: int) -> bytes:
    """Packed bytes of a redemption-rights leaf (before hashing)."""
    return encode_packed(
        ["bytes32", "address", "bytes32", "uint256"],
        [
            REDEMPTION_RIGHTS_PREFIX,
            to_checksum_address(address),
            points_id_to_bytes(points_id),
            _check_amount(amount),
        ],
    )


def encode_points_leaf(address: str, points_id: str, amount: int) -> bytes:
    """Packed bytes of a raw points (pToken) leaf (before hashing)."""
    return encode_packed(
        ["address", "bytes32", "uint256"],
        [
            to_checksum_address(address),
            points_id_to_bytes(points_id),
            _check_amount(amount),
        ],
    )


def hash_redemption_rights_leaf(address: str, points_id: str, amount: int) -> bytes:
    return keccak(encode_redemption_rights_leaf(address, points_id, amount))


def hash_points_leaf(address: str, points_id: str, amount: int) -> bytes:
    return keccak(encode_points_leaf(address, points_id, amount))


def to_hash_bytes(value: HashLike) -> bytes:
    """Accept a 32-byte hash as bytes or 0x-hex."""
    raw = decode_hex(value) if isinstance(value, str) else bytes(value)
    if len(raw) != HASH_LENGTH:
        raise UpstreamDataError(f"Expected a {HASH_LENGTH}-byte hash, got {len(raw)} bytes")
    return raw


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Sorted-pair parent hash."""
    return keccak(a + b) if a <= b else keccak(b + a)


# ============================================================================
# MERKLE TREE
# ============================================================================

class MerkleTree:
    """
    Sorted-leaf, sorted-pair keccak Merkle tree.

    Built once from a leaf set; root and proofs are pure functions of
    that set.
    """

    def __init__(self, leaves: Iterable[HashLike]):
        """
        Build the tree.

        Args:
            leaves: 32-byte leaf hashes (bytes or hex); duplicates collapse

        Raises:
            EmptyTreeError: If there are no leaves
        """
        self.leaves: List[bytes] = sorted({to_hash_bytes(leaf) for leaf in leaves})
        if not self.leaves:
            raise EmptyTreeError("Cannot build a Merkle tree over zero leaves")

        self._index: Dict[bytes, int] = {leaf: i for i, leaf in enumerate(self.leaves)}
        self.layers: List[List[bytes]] = self._build_layers(self.leaves)

        logger.debug(
            f"Built Merkle tree: {len(self.leaves)} leaves, {len(self.layers)} layers, "
            f"root {self.hex_root}"
        )

    @staticmethod
    def _build_layers(leaves: List[bytes]) -> List[List[bytes]]:
        layers = [leaves]
        while len(layers[-1]) > 1:
            current = layers[-1]
            next_layer = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    next_layer.append(hash_pair(current[i], current[i + 1]))
                else:
                    # odd node carried up unchanged
                    next_layer.append(current[i])
            layers.append(next_layer)
        return layers

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def hex_root(self) -> str:
        return encode_hex(self.root)

    @property
    def depth(self) -> int:
        return len(self.layers) - 1

    def __len__(self) -> int:
        return len(self.leaves)

    def __contains__(self, leaf: HashLike) -> bool:
        try:
            return to_hash_bytes(leaf) in self._index
        except UpstreamDataError:
            return False

    def get_proof(self, leaf: HashLike) -> List[ProofStep]:
        """
        Sibling hashes from leaf to root.

        Returns:
            List of (side, sibling_hex); side is where the sibling sits in
            the pair ("left" or "right"). Verification does not need it.

        Raises:
            KeyError: If the leaf is not in the tree
        """
        leaf_bytes = to_hash_bytes(leaf)
        if leaf_bytes not in self._index:
            raise KeyError(f"Leaf {encode_hex(leaf_bytes)} not in tree")

        proof: List[ProofStep] = []
        idx = self._index[leaf_bytes]
        for layer in self.layers[:-1]:
            pair_idx = idx + 1 if idx % 2 == 0 else idx - 1
            if pair_idx < len(layer):
                side = "right" if pair_idx > idx else "left"
                proof.append((side, encode_hex(layer[pair_idx])))
            idx //= 2
        return proof

    def get_hex_proof(self, leaf: HashLike) -> List[str]:
        """Sibling hashes only, as 0x-hex (the on-chain proof format)."""
        return [sibling for _, sibling in self.get_proof(leaf)]

    def verify(self, leaf: HashLike, proof: Sequence) -> bool:
        return self.verify_proof(leaf, proof, self.root)

    @staticmethod
    def verify_proof(
        leaf: HashLike,
        proof: Sequence[Union[HashLike, ProofStep]],
        root: HashLike,
    ) -> bool:
        """
        Recompute the root from a leaf and its proof.

        Args:
            leaf: Leaf hash
            proof: Sibling hashes, or (side, sibling) pairs as returned by
                get_proof
            root: Expected root

        Returns:
            True if the proof is valid
        """
        try:
            current = to_hash_bytes(leaf)
            for step in proof:
                sibling = step[1] if isinstance(step, tuple) else step
                current = hash_pair(current, to_hash_bytes(sibling))
            return current == to_hash_bytes(root)
        except (UpstreamDataError, ValueError):
            return False


def build_tree(
    rights_leaves: Iterable[HashLike],
    points_leaves: Optional[Iterable[HashLike]] = None,
) -> MerkleTree:
    """One tree over both namespaces; each verifies against the same root."""
    leaves = list(rights_leaves)
    if points_leaves is not None:
        leaves.extend(points_leaves)
    return MerkleTree(leaves)

"""
rumpeldrop/blockchain/

Merkle commitment, chain reads and multisig batch output.
"""

from .merkle import MerkleTree, hash_points_leaf, hash_redemption_rights_leaf
from .rpc import ChainReader, JsonRpcChainReader
from .batch import BatchTransaction, BatchEmitter, SafeBatchFileEmitter, MemoryBatchEmitter

__all__ = [
    "MerkleTree",
    "hash_points_leaf",
    "hash_redemption_rights_leaf",
    "ChainReader",
    "JsonRpcChainReader",
    "BatchTransaction",
    "BatchEmitter",
    "SafeBatchFileEmitter",
    "MemoryBatchEmitter",
]

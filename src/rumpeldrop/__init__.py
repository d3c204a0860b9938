"""
rumpeldrop - Redemption rights and Merkle distributions for Rumpel points

Pipeline:
- Replay pToken Transfer logs into holder balances
- Apply manual overrides (e.g. AMM pools redistributed to LPs)
- Convert balances into floor-rounded redemption rights
- Carry unclaimed pTokens over from the last executed distribution
- Commit every (address, pointsId, amount) claim to a sorted-pair keccak
  Merkle tree with per-leaf proofs

Usage:
    import trio
    from rumpeldrop import RunConfig, RedemptionRightsGenerator, write_distribution
    from rumpeldrop.blockchain import JsonRpcChainReader
    from rumpeldrop.store import KVRestSnapshotStore

    config = RunConfig.from_env().validate()
    chain = JsonRpcChainReader(config.rpc_url, config.point_token_vault)
    store = KVRestSnapshotStore(config.kv_url, config.kv_token)

    generator = RedemptionRightsGenerator(config, chain, store)
    distribution, snapshots, summary = trio.run(generator.generate)
    write_distribution(distribution, "out/merged-distribution.json")
"""

from .config import Override, PTokenProgram, RunConfig
from .errors import (
    RumpelDropError,
    ConfigurationError,
    UpstreamDataError,
    EmptyTreeError,
    OverrideMismatchError,
    RpcError,
    SnapshotStoreError,
)
from .summary import RunSummary, LookupFailure
from .distribution import (
    ClaimEntry,
    MerkleDistribution,
    PTokenSnapshot,
    RedemptionRightsGenerator,
    build_distribution,
    top_up_distribution,
    verify_distribution,
    read_distribution,
    write_distribution,
)

__version__ = "0.1.0"

__all__ = [
    "Override",
    "PTokenProgram",
    "RunConfig",
    "RumpelDropError",
    "ConfigurationError",
    "UpstreamDataError",
    "EmptyTreeError",
    "OverrideMismatchError",
    "RpcError",
    "SnapshotStoreError",
    "RunSummary",
    "LookupFailure",
    "ClaimEntry",
    "MerkleDistribution",
    "PTokenSnapshot",
    "RedemptionRightsGenerator",
    "build_distribution",
    "top_up_distribution",
    "verify_distribution",
    "read_distribution",
    "write_distribution",
]

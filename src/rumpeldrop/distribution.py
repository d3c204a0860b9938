"""
rumpeldrop/distribution.py

Redemption-rights distribution pipeline.

    snapshot store ──► wallet snapshot (pTokens leaves)
    chain ──► Transfer events ──► balances ──► overrides ──► entitlements
                                                      │
                  (redemption rights + pTokens leaves)▼
                                         MerkleTree ──► MerkleDistribution

Artifact layout (merged-distribution.json):

    {
      "root": "0x...",
      "redemptionRights": {address: {pointsId: {"amount": "...", "proof": [...]}}},
      "pTokens":          {address: {pointsId: {"amount": "...", "proof": [...]}}}
    }

Amounts are decimal strings; every amount is a positive integer. Nothing
is written to disk until the whole run has succeeded.

Usage:
    generator = RedemptionRightsGenerator(config, chain, store)
    distribution, snapshots, summary = await generator.generate()
    write_distribution(distribution, "out/merged-distribution.json")
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from eth_utils import to_checksum_address

from .blockchain.merkle import (
    MerkleTree,
    build_tree,
    hash_points_leaf,
    hash_redemption_rights_leaf,
)
from .blockchain.rpc import ChainReader
from .concurrency import run_chunked
from .config import PTokenProgram, RunConfig
from .errors import RpcError, UpstreamDataError
from .protocol.entitlements import (
    ClaimAddressResolver,
    apply_proportional_top_up,
    check_pool_conservation,
    compute_entitlements,
    unclaimed_amount,
)
from .protocol.ledger import (
    apply_overrides,
    compute_balances,
    negative_holders,
    positive_balances,
    total_supply,
)
from .protocol.points import normalize_points_id, unpack_two
from .store.snapshot_store import (
    DistributionSnapshotStore,
    WalletSnapshot,
    snapshot_for_points_id,
)
from .summary import RunSummary

logger = logging.getLogger("rumpeldrop.distribution")

# {address: {pointsId: amount}}
ClaimAmounts = Mapping[str, Mapping[str, int]]


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ClaimEntry:
    """Amount and inclusion proof of one leaf."""
    amount: int
    proof: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "proof": list(self.proof)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClaimEntry":
        try:
            amount = int(str(data["amount"]))
        except (KeyError, TypeError, ValueError):
            raise UpstreamDataError(f"Invalid claim entry: {dict(data)}")
        return cls(amount=amount, proof=list(data.get("proof") or []))


ClaimSection = Dict[str, Dict[str, ClaimEntry]]


@dataclass
class MerkleDistribution:
    """Merkle root plus every claim and its proof."""
    root: str
    redemption_rights: ClaimSection = field(default_factory=dict)
    ptokens: ClaimSection = field(default_factory=dict)

    @property
    def leaf_count(self) -> int:
        return sum(len(p) for p in self.redemption_rights.values()) + sum(
            len(p) for p in self.ptokens.values()
        )

    def rights_amounts(self) -> Dict[str, Dict[str, int]]:
        return _amounts(self.redemption_rights)

    def ptoken_amounts(self) -> Dict[str, Dict[str, int]]:
        return _amounts(self.ptokens)

    def total_for(self, points_id: str, section: str = "redemptionRights") -> int:
        points_id = normalize_points_id(points_id)
        claims = self.redemption_rights if section == "redemptionRights" else self.ptokens
        return sum(
            entry.amount
            for points in claims.values()
            for pid, entry in points.items()
            if pid == points_id
        )

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "redemptionRights": _section_to_dict(self.redemption_rights),
            "pTokens": _section_to_dict(self.ptokens),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MerkleDistribution":
        if not data.get("root"):
            raise UpstreamDataError("Distribution has no root")
        return cls(
            root=data["root"],
            redemption_rights=_section_from_dict(data.get("redemptionRights") or {}),
            ptokens=_section_from_dict(data.get("pTokens") or {}),
        )


@dataclass
class PTokenSnapshot:
    """pToken balances at a block, unclaimed pTokens included."""
    address: str
    block_number: int
    balances: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.balances.values())

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "blockNumber": str(self.block_number),
            "balances": {a: str(b) for a, b in self.balances.items()},
        }


def _amounts(section: ClaimSection) -> Dict[str, Dict[str, int]]:
    return {
        address: {pid: entry.amount for pid, entry in points.items()}
        for address, points in section.items()
    }


def _section_to_dict(section: ClaimSection) -> dict:
    return {
        address: {pid: entry.to_dict() for pid, entry in points.items()}
        for address, points in section.items()
    }


def _section_from_dict(data: Mapping[str, Any]) -> ClaimSection:
    return {
        to_checksum_address(address): {
            normalize_points_id(pid): ClaimEntry.from_dict(entry)
            for pid, entry in points.items()
        }
        for address, points in data.items()
    }


# ============================================================================
# TREE CONSTRUCTION
# ============================================================================

def _positive_claims(amounts: ClaimAmounts) -> Iterator[Tuple[str, str, int]]:
    """(address, pointsId, amount) in canonical form, zero amounts dropped."""
    for address, points in amounts.items():
        address = to_checksum_address(address)
        for points_id, amount in points.items():
            if amount < 0:
                raise UpstreamDataError(f"Negative claim amount for {address}: {amount}")
            if amount == 0:
                continue
            yield address, normalize_points_id(points_id), amount


def build_distribution(
    rights: ClaimAmounts,
    ptokens: Optional[ClaimAmounts] = None,
) -> MerkleDistribution:
    """
    Commit redemption rights and pToken claims to one Merkle tree.

    Args:
        rights: {address: {pointsId: amount}} redemption rights
        ptokens: {address: {pointsId: amount}} raw points (pToken) claims

    Returns:
        MerkleDistribution with a proof for every claim

    Raises:
        EmptyTreeError: If there is nothing to commit
    """
    rights_claims = list(_positive_claims(rights))
    ptoken_claims = list(_positive_claims(ptokens or {}))

    rights_leaves = {claim: hash_redemption_rights_leaf(*claim) for claim in rights_claims}
    ptoken_leaves = {claim: hash_points_leaf(*claim) for claim in ptoken_claims}
    tree = build_tree(rights_leaves.values(), ptoken_leaves.values())

    distribution = MerkleDistribution(
        root=tree.hex_root,
        redemption_rights=_section(tree, rights_leaves),
        ptokens=_section(tree, ptoken_leaves),
    )
    logger.info(
        f"Built distribution: {len(rights_leaves)} redemption rights, "
        f"{len(ptoken_leaves)} pToken claims, root {distribution.root}"
    )
    return distribution


def _section(tree: MerkleTree, leaves: Mapping[Tuple[str, str, int], bytes]) -> ClaimSection:
    section: ClaimSection = {}
    for (address, points_id, amount), leaf in sorted(leaves.items()):
        section.setdefault(address, {})[points_id] = ClaimEntry(
            amount=amount,
            proof=tree.get_hex_proof(leaf),
        )
    return section


def top_up_distribution(
    distribution: MerkleDistribution,
    points_id: str,
    extra: int,
) -> MerkleDistribution:
    """
    Add `extra` to the redemption rights of one pointsId, pro rata, and
    regenerate the root and every proof.
    """
    points_id = normalize_points_id(points_id)
    rights = distribution.rights_amounts()
    current = {
        address: points[points_id]
        for address, points in rights.items()
        if points.get(points_id, 0) > 0
    }
    if not current:
        raise UpstreamDataError(f"No redemption rights for {points_id} to top up")

    updated = apply_proportional_top_up(current, extra)
    for address, amount in updated.items():
        rights[address][points_id] = amount

    added = sum(updated.values()) - sum(current.values())
    logger.info(
        f"Topped up {points_id}: {extra} requested, {added} distributed "
        f"across {len(updated)} holders"
    )
    return build_distribution(rights, distribution.ptoken_amounts())


def verify_distribution(distribution: MerkleDistribution) -> List[str]:
    """
    Check every claim's proof against the root.

    Returns:
        Descriptions of failing claims (empty if all verify)
    """
    failures: List[str] = []
    sections = (
        ("redemptionRights", distribution.redemption_rights, hash_redemption_rights_leaf),
        ("pTokens", distribution.ptokens, hash_points_leaf),
    )
    for name, section, hash_leaf in sections:
        for address, points in section.items():
            for points_id, entry in points.items():
                try:
                    leaf = hash_leaf(address, points_id, entry.amount)
                except (UpstreamDataError, ValueError) as e:
                    failures.append(f"{name} {address} {points_id}: {e}")
                    continue
                if not MerkleTree.verify_proof(leaf, entry.proof, distribution.root):
                    failures.append(f"{name} {address} {points_id}: proof does not verify")
    if failures:
        logger.warning(f"{len(failures)} claim(s) failed verification")
    return failures


# ============================================================================
# FILE I/O
# ============================================================================

def _write_json(payload: Any, path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp_path, path)


def write_distribution(distribution: MerkleDistribution, path: str) -> None:
    _write_json(distribution.to_dict(), path)
    logger.info(f"Distribution written to {path}")


def read_distribution(path: str) -> MerkleDistribution:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise UpstreamDataError(f"Cannot read distribution {path}: {e}")
    return MerkleDistribution.from_dict(data)


def ptoken_snapshot_filename(points_id: str, ptoken_address: str) -> str:
    """ptoken-snapshot-<symbol>.json, falling back to the pToken address."""
    try:
        _, symbol = unpack_two(points_id)
    except (ValueError, IndexError, UnicodeDecodeError):
        symbol = ""
    label = symbol.lower() if symbol else ptoken_address.lower()
    return f"ptoken-snapshot-{label}.json"


def write_ptoken_snapshots(
    snapshots: Mapping[str, PTokenSnapshot],
    programs: Iterable[PTokenProgram],
    output_dir: str,
) -> List[str]:
    """
    Write one snapshot file per pToken program.

    Programs whose symbol-based name is already taken are written under
    their pToken address instead.
    """
    paths = []
    for program in programs:
        snapshot = snapshots.get(program.ptoken_address)
        if snapshot is None:
            continue
        path = os.path.join(
            output_dir,
            ptoken_snapshot_filename(program.points_id, program.ptoken_address),
        )
        if path in paths:
            path = os.path.join(output_dir, f"ptoken-snapshot-{program.ptoken_address.lower()}.json")
            logger.warning(f"Snapshot name clash for {program.ptoken_address}, writing {path}")
        _write_json(snapshot.to_dict(), path)
        paths.append(path)
        logger.info(f"pToken snapshot for {program.ptoken_address} written to {path}")
    return paths


# ============================================================================
# GENERATOR
# ============================================================================

class RedemptionRightsGenerator:
    """
    One redemption-rights run.

    Per configured pToken program:
        1. fold Transfer events up to the snapshot block into balances
        2. apply overrides
        3. compute released redemption rights
        4. add unclaimed pTokens from the last executed distribution to
           the pToken snapshot

    then commit rights and the distribution's pToken claims to one tree.
    """

    def __init__(
        self,
        config: RunConfig,
        chain: ChainReader,
        store: DistributionSnapshotStore,
        summary: Optional[RunSummary] = None,
    ):
        self.config = config
        self.chain = chain
        self.store = store
        self.summary = summary if summary is not None else RunSummary()
        self.resolver = ClaimAddressResolver(
            chain,
            chunk_size=config.lookup_chunk_size,
            summary=self.summary,
        )

    async def generate(self) -> Tuple[MerkleDistribution, Dict[str, PTokenSnapshot], RunSummary]:
        """
        Run the pipeline.

        Returns:
            (distribution, {pToken address: snapshot}, summary)

        Raises:
            ConfigurationError: Invalid configuration
            UpstreamDataError: Malformed events, missing snapshot, empty tree
            RpcError / SnapshotStoreError: Failed bulk reads
        """
        config = self.config.validate(require_io=False)

        distribution_id = await self.store.select_distribution_id(config.distribution_id)
        previous_root = await self.previous_root(distribution_id)
        wallet_snapshot = await self.store.get_wallet_snapshot(distribution_id)

        block = config.snapshot_block
        if block is None:
            block = await self.chain.get_block_number()
        logger.info(f"Processing {len(config.programs)} pToken(s) at block #{block}")

        rights: Dict[str, Dict[str, int]] = {}
        snapshots: Dict[str, PTokenSnapshot] = {}

        for program in config.programs:
            program_rights, snapshot = await self.process_program(program, block, wallet_snapshot)
            for address, amount in program_rights.items():
                points = rights.setdefault(address, {})
                points[program.points_id] = points.get(program.points_id, 0) + amount
            snapshots[program.ptoken_address] = snapshot

        distribution = build_distribution(rights, wallet_snapshot)

        self.summary.record_total("distribution_id", distribution_id)
        if previous_root:
            self.summary.record_total("previous_root", previous_root)
        self.summary.record_total("block", block)
        self.summary.record_total("leaves", distribution.leaf_count)
        self.summary.record_total("root", distribution.root)
        return distribution, snapshots, self.summary

    async def previous_root(self, distribution_id: str) -> Optional[str]:
        """Root of the distribution being built on; missing metadata only warns."""
        try:
            meta = await self.store.get_distribution(distribution_id)
        except UpstreamDataError as e:
            self.summary.warn(f"No metadata for distribution {distribution_id}: {e}")
            return None
        root = meta.get("root")
        logger.info(f"Building on distribution {distribution_id} (root {root})")
        return root

    async def process_program(
        self,
        program: PTokenProgram,
        block: int,
        wallet_snapshot: WalletSnapshot,
    ) -> Tuple[Dict[str, int], PTokenSnapshot]:
        """Redemption rights and pToken snapshot for one program."""
        config = self.config
        logger.info(f"Processing pToken {program.ptoken_address} ({program.points_id})")

        events = await self.chain.get_transfer_events(program.ptoken_address, block)
        balances = compute_balances(events, config.mint_sentinel)

        for address in negative_holders(balances, config.mint_sentinel):
            self.summary.warn(
                f"{program.ptoken_address}: {address} has negative balance {balances[address]}"
            )

        balances = apply_overrides(
            positive_balances(balances),
            config.overrides,
            self.summary,
            strict=config.strict_overrides,
        )
        balances = positive_balances(balances)

        entitlements = compute_entitlements(
            balances,
            program.points_id,
            program.rewards_per_ptoken,
            scale=config.scale,
            release=program.release_fraction,
        )
        if program.total_reward_pool is not None:
            check_pool_conservation(
                (e.full_amount for e in entitlements.values()),
                program.total_reward_pool,
                self.summary,
            )

        amounts = {address: e.amount for address, e in entitlements.items()}
        if config.merge_by_owner:
            amounts = await self.resolver.merge(amounts)

        snapshot_balances = dict(balances)
        unclaimed = await self.unclaimed_ptokens(
            snapshot_for_points_id(wallet_snapshot, program.points_id),
            program.points_id,
        )
        for address, amount in unclaimed.items():
            snapshot_balances[address] = snapshot_balances.get(address, 0) + amount

        snapshot = PTokenSnapshot(
            address=program.ptoken_address,
            block_number=block,
            balances=positive_balances(snapshot_balances),
        )

        self.summary.record_total(f"{program.points_id} holders", len(balances))
        self.summary.record_total(f"{program.points_id} supply", total_supply(balances))
        self.summary.record_total(f"{program.points_id} rights", sum(amounts.values()))
        self.summary.record_total(f"{program.points_id} unclaimed pTokens", sum(unclaimed.values()))
        return amounts, snapshot

    async def unclaimed_ptokens(self, accumulated: Mapping[str, int], points_id: str) -> Dict[str, int]:
        """
        Accumulated points minus pTokens already claimed, per wallet.

        A failed claimed-amount read counts the wallet as fully unclaimed
        and is recorded in the summary.
        """
        async def lookup(address: str) -> int:
            try:
                claimed = await self.chain.get_claimed_ptokens(address, points_id)
            except (RpcError, UpstreamDataError, ValueError) as e:
                self.summary.record_lookup_failure("claimed_ptokens", address, str(e), "unclaimed")
                claimed = 0
            return unclaimed_amount(accumulated[address], claimed)

        results = await run_chunked(sorted(accumulated), lookup, self.config.lookup_chunk_size)
        return {address: amount for address, amount in results.items() if amount > 0}

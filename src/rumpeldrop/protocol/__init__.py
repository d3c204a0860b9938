"""
rumpeldrop/protocol/

Pure accounting: points identifiers, balance ledger, entitlements.
"""

from .points import PointsEntry, pack_two, unpack_two, normalize_points_id
from .ledger import (
    TransferEvent,
    compute_balances,
    positive_balances,
    apply_overrides,
    check_conservation,
)
from .entitlements import (
    Entitlement,
    YieldSplit,
    ClaimAddressResolver,
    compute_entitlement,
    compute_entitlements,
    apply_release_fraction,
    unclaimed_amount,
    merge_overlapping,
    rewards_per_ptoken,
    apply_proportional_top_up,
    split_yield_adjusted_claim,
)

__all__ = [
    "PointsEntry",
    "pack_two",
    "unpack_two",
    "normalize_points_id",
    "TransferEvent",
    "compute_balances",
    "positive_balances",
    "apply_overrides",
    "check_conservation",
    "Entitlement",
    "YieldSplit",
    "ClaimAddressResolver",
    "compute_entitlement",
    "compute_entitlements",
    "apply_release_fraction",
    "unclaimed_amount",
    "merge_overlapping",
    "rewards_per_ptoken",
    "apply_proportional_top_up",
    "split_yield_adjusted_claim",
]

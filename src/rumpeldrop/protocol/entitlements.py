"""
rumpeldrop/protocol/entitlements.py

Entitlement calculator: convert balances and points into claimable
amounts.

All arithmetic is integer and rounds down. Python ints are arbitrary
precision, so balance * rate products (well past 128 bits) are exact.

    full     = balance * rate // scale
    released = full * numerator // denominator

Zero entitlements are dropped and never become Merkle leaves.

Usage:
    from rumpeldrop.protocol.entitlements import compute_entitlements

    rights = compute_entitlements(balances, points_id, rate, release=(25, 35))
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from eth_utils import is_address, to_checksum_address

from ..concurrency import run_chunked
from ..config import DEFAULT_LOOKUP_CHUNK_SIZE, WAD
from ..errors import ConfigurationError, RpcError, UpstreamDataError
from ..summary import RunSummary

if TYPE_CHECKING:
    from ..blockchain.rpc import ChainReader

logger = logging.getLogger("rumpeldrop.protocol.entitlements")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Entitlement:
    """Claimable amount for one address under one pointsId."""
    address: str
    points_id: str
    amount: int          # released now
    full_amount: int     # before the release fraction

    def to_dict(self) -> dict:
        result = asdict(self)
        result["amount"] = str(self.amount)
        result["full_amount"] = str(self.full_amount)
        return result


@dataclass
class YieldSplit:
    """Outcome of splitting a claim into vault reward and owner yield."""
    net_to_claim: int
    vault_amount: int
    owner_amount: int
    yield_adjusted_reward: int
    yield_estimate: int
    adjusted: bool

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# CORE ARITHMETIC
# ============================================================================

def compute_entitlement(balance: int, rate_per_unit_scaled: int, scale: int = WAD) -> int:
    """
    floor(balance * rate / scale).

    Args:
        balance: Holder balance (token base units)
        rate_per_unit_scaled: Reward units per `scale` balance units
        scale: Fixed-point scale (1e18)
    """
    if balance < 0 or rate_per_unit_scaled < 0:
        raise ValueError(
            f"Entitlement inputs must be non-negative (balance={balance}, rate={rate_per_unit_scaled})"
        )
    if scale <= 0:
        raise ConfigurationError(f"scale must be positive, got {scale}")
    return (balance * rate_per_unit_scaled) // scale


def apply_release_fraction(full_entitlement: int, numerator: int, denominator: int) -> int:
    """
    floor(full * numerator / denominator).

    numerator <= denominator is enforced when the program config is
    validated, not here.
    """
    if denominator == 0:
        raise ConfigurationError("Release fraction denominator must be non-zero")
    if full_entitlement < 0 or numerator < 0 or denominator < 0:
        raise ValueError("Release fraction inputs must be non-negative")
    return (full_entitlement * numerator) // denominator


def unclaimed_amount(snapshot_amount: int, already_claimed: int) -> int:
    """Outstanding amount; never negative."""
    return max(0, snapshot_amount - already_claimed)


def compute_entitlements(
    balances: Mapping[str, int],
    points_id: str,
    rate_per_unit_scaled: int,
    scale: int = WAD,
    release: Tuple[int, int] = (1, 1),
) -> Dict[str, Entitlement]:
    """
    Compute entitlements for every holder.

    Non-positive balances and zero released amounts are dropped.

    Returns:
        {address: Entitlement}
    """
    numerator, denominator = release
    entitlements: Dict[str, Entitlement] = {}

    for address, balance in balances.items():
        if balance <= 0:
            continue
        full = compute_entitlement(balance, rate_per_unit_scaled, scale)
        released = apply_release_fraction(full, numerator, denominator)
        if released == 0:
            continue
        entitlements[address] = Entitlement(
            address=address,
            points_id=points_id,
            amount=released,
            full_amount=full,
        )

    logger.debug(
        f"{len(entitlements)} of {len(balances)} holders entitled for {points_id}"
    )
    return entitlements


def check_pool_conservation(
    full_amounts: Iterable[int],
    total_pool: int,
    summary: Optional[RunSummary] = None,
) -> int:
    """
    Check summed full entitlements against the reward pool.

    Returns:
        Floor loss (pool minus distributed)

    Raises:
        UpstreamDataError: If entitlements exceed the pool
    """
    amounts = list(full_amounts)
    distributed = sum(amounts)
    if distributed > total_pool:
        raise UpstreamDataError(
            f"Entitlements total {distributed} exceeds reward pool {total_pool}"
        )

    loss = total_pool - distributed
    if loss > len(amounts):
        message = (
            f"Rounding loss {loss} exceeds leaf count {len(amounts)} "
            f"(pool {total_pool}, distributed {distributed})"
        )
        if summary is not None:
            summary.warn(message)
        else:
            logger.warning(message)
    return loss


# ============================================================================
# RATE DERIVATION
# ============================================================================

def rewards_per_ptoken(total_rewards: int, total_ptokens: int, scale: int = WAD) -> int:
    """
    Reward units per `scale` pTokens, rounded down.

    Rounding down guarantees the rate never distributes more than
    total_rewards across total_ptokens.
    """
    if total_ptokens <= 0:
        raise UpstreamDataError("Total pToken supply must be positive")
    return (total_rewards * scale) // total_ptokens


def is_rounded_down(rate: int, total_rewards: int, total_ptokens: int, scale: int = WAD) -> bool:
    """True if distributing `rate` over the supply stays within total_rewards."""
    return (rate * total_ptokens) // scale <= total_rewards


def gross_up_released(released_total: int, numerator: int, denominator: int) -> int:
    """Full pool implied by a released partial amount, e.g. 2.5 of 3.5 parts."""
    if numerator == 0:
        raise ConfigurationError("Release fraction numerator must be non-zero")
    return (released_total * denominator) // numerator


def apply_proportional_top_up(amounts: Mapping[str, int], extra: int) -> Dict[str, int]:
    """
    Distribute `extra` pro rata on top of existing amounts.

    Each holder receives current + floor(current * extra / total).
    """
    total = sum(amounts.values())
    if total <= 0:
        raise UpstreamDataError("Cannot top up a distribution with no existing amounts")
    if extra < 0:
        raise ValueError(f"Top-up amount must be non-negative, got {extra}")
    return {
        address: current + (current * extra) // total
        for address, current in amounts.items()
    }


def split_yield_adjusted_claim(
    history: Sequence[int],
    previously_claimed: int,
    price: int = 1,
    min_yield_value: int = 1,
    scale: int = WAD,
) -> YieldSplit:
    """
    Split a cumulative reward claim between the vault and the wallet owner.

    history holds cumulative award amounts, newest first. The reward for
    the period is history[1] - history[2]; the yield accrued in the prior
    period (history[2] - history[3]) is taken as the yield estimate and is
    deducted from the reward when it is worth more than min_yield_value
    (valued at `price` per whole token). The vault receives up to the
    yield-adjusted reward, the owner receives the rest.

    Args:
        history: Cumulative amounts, newest first; missing entries count as 0
        previously_claimed: Cumulative amount already claimed on-chain
        price: Token price in whole quote units
        min_yield_value: Yield value threshold in whole quote units
        scale: Token decimals scale
    """
    if len(history) < 2:
        raise UpstreamDataError(f"Need at least two history points, got {len(history)}")
    padded = list(history) + [0] * max(0, 4 - len(history))
    latest, previous, before, earliest = padded[:4]

    reward_and_yield = previous - before
    yield_estimate = before - earliest

    yield_adjusted = reward_and_yield
    adjusted = False
    if yield_estimate * price > min_yield_value * scale:
        yield_adjusted = reward_and_yield - yield_estimate
        adjusted = True
    yield_adjusted = max(0, yield_adjusted)

    net = unclaimed_amount(latest, previously_claimed)
    if net <= yield_adjusted:
        vault_amount, owner_amount = net, 0
    else:
        vault_amount, owner_amount = yield_adjusted, net - yield_adjusted

    return YieldSplit(
        net_to_claim=net,
        vault_amount=vault_amount,
        owner_amount=owner_amount,
        yield_adjusted_reward=yield_adjusted,
        yield_estimate=yield_estimate,
        adjusted=adjusted,
    )


# ============================================================================
# CLAIM ADDRESS RESOLUTION
# ============================================================================

def merge_overlapping(
    entitlements: Mapping[str, int],
    resolved: Mapping[str, str],
) -> Dict[str, int]:
    """
    Re-key entitlements by claim address, summing collisions.

    Accounting addresses missing from `resolved` claim for themselves.
    """
    merged: Dict[str, int] = {}
    for address, amount in entitlements.items():
        claim_address = resolved.get(address, address)
        merged[claim_address] = merged.get(claim_address, 0) + amount
    return merged


class ClaimAddressResolver:
    """
    Resolve accounting addresses (Rumpel smart wallets) to claim
    addresses (their single owner).

    Lookups are memoised for the lifetime of the resolver (one run).
    A wallet that does not report exactly one owner, or whose lookup
    fails, claims for itself; the fallback is logged and recorded in the
    run summary.
    """

    def __init__(
        self,
        chain: "ChainReader",
        chunk_size: int = DEFAULT_LOOKUP_CHUNK_SIZE,
        summary: Optional[RunSummary] = None,
    ):
        self.chain = chain
        self.chunk_size = chunk_size
        self.summary = summary if summary is not None else RunSummary()
        self._cache: Dict[str, str] = {}

    @property
    def cache(self) -> Dict[str, str]:
        return dict(self._cache)

    async def resolve(self, address: str) -> str:
        """Resolve one address, using the cache when possible."""
        address = to_checksum_address(address)
        if address in self._cache:
            return self._cache[address]

        claim_address = address
        try:
            owners: List[str] = await self.chain.get_owners(address)
        except (RpcError, UpstreamDataError, ValueError) as e:
            self.summary.record_lookup_failure("owner", address, str(e), "self")
        else:
            if len(owners) == 1 and is_address(owners[0]):
                claim_address = to_checksum_address(owners[0])
            else:
                self.summary.record_lookup_failure(
                    "owner",
                    address,
                    f"expected a single owner, got {len(owners)}",
                    "self",
                )

        # duplicate concurrent lookups write the same value
        self._cache[address] = claim_address
        return claim_address

    async def resolve_many(self, addresses: Iterable[str]) -> Dict[str, str]:
        """Resolve addresses in bounded concurrent chunks."""
        unique = sorted({to_checksum_address(a) for a in addresses})
        return await run_chunked(unique, self.resolve, self.chunk_size)

    async def merge(self, entitlements: Mapping[str, int]) -> Dict[str, int]:
        """Resolve every accounting address and merge by claim address."""
        resolved = await self.resolve_many(entitlements.keys())
        return merge_overlapping(entitlements, resolved)

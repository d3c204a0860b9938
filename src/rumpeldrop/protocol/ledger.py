"""
rumpeldrop/protocol/ledger.py

Balance ledger: replay ERC-20 Transfer events into holder balances.

The fold is commutative per address, so event order does not matter.
The mint/burn sentinel is an unbounded source and sink: it is never
credited or debited unless track_sentinel is set, in which case it carries
the negated net supply and all balances sum to zero.

Usage:
    from rumpeldrop.protocol.ledger import compute_balances, apply_overrides

    balances = compute_balances(events)
    balances = apply_overrides(positive_balances(balances), config.overrides, summary)
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from eth_utils import is_address, to_checksum_address

from ..config import ZERO_ADDRESS, Override
from ..errors import OverrideMismatchError, UpstreamDataError
from ..summary import RunSummary

logger = logging.getLogger("rumpeldrop.protocol.ledger")


# ============================================================================
# TRANSFER EVENTS
# ============================================================================

@dataclass(frozen=True)
class TransferEvent:
    """A decoded Transfer(from, to, value) log."""
    from_address: str
    to_address: str
    value: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransferEvent":
        """
        Build from a decoded log mapping with from/to/value keys.

        Raises:
            UpstreamDataError: If a field is missing or malformed
        """
        missing = [k for k in ("from", "to", "value") if data.get(k) is None]
        if missing:
            raise UpstreamDataError(f"Transfer event missing {', '.join(missing)}: {dict(data)}")
        return cls.create(data["from"], data["to"], data["value"])

    @classmethod
    def create(cls, from_address: Any, to_address: Any, value: Any) -> "TransferEvent":
        for name, address in (("from", from_address), ("to", to_address)):
            if not isinstance(address, str) or not is_address(address):
                raise UpstreamDataError(f"Transfer event has invalid {name} address: {address!r}")
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise UpstreamDataError(f"Transfer event has invalid value: {value!r}")
        if value < 0:
            raise UpstreamDataError(f"Transfer event has negative value: {value}")
        return cls(
            from_address=to_checksum_address(from_address),
            to_address=to_checksum_address(to_address),
            value=value,
        )


EventLike = Union[TransferEvent, Mapping[str, Any]]


def _coerce_event(event: EventLike) -> TransferEvent:
    if isinstance(event, TransferEvent):
        return event
    if isinstance(event, Mapping):
        return TransferEvent.from_dict(event)
    raise UpstreamDataError(f"Unsupported transfer event: {event!r}")


# ============================================================================
# BALANCE FOLD
# ============================================================================

def compute_balances(
    events: Iterable[EventLike],
    mint_sentinel: str = ZERO_ADDRESS,
    track_sentinel: bool = False,
) -> Dict[str, int]:
    """
    Fold transfer events into signed net balances.

    Args:
        events: TransferEvents or mappings with from/to/value
        mint_sentinel: Address treated as mint source / burn sink
        track_sentinel: Also account the sentinel (it goes negative by
            the circulating supply)

    Returns:
        {address: signed balance}; callers filter to positive balances

    Raises:
        UpstreamDataError: On the first malformed event. The whole run
            must abort; a partial fold is never returned.
    """
    sentinel = to_checksum_address(mint_sentinel)
    balances: Dict[str, int] = defaultdict(int)
    count = 0

    for raw in events:
        event = _coerce_event(raw)
        count += 1
        if event.from_address != sentinel or track_sentinel:
            balances[event.from_address] -= event.value
        if event.to_address != sentinel or track_sentinel:
            balances[event.to_address] += event.value

    logger.debug(f"Folded {count} transfer events into {len(balances)} balances")
    return dict(balances)


def positive_balances(balances: Mapping[str, int]) -> Dict[str, int]:
    """Keep holders with a strictly positive balance."""
    return {address: amount for address, amount in balances.items() if amount > 0}


def negative_holders(
    balances: Mapping[str, int],
    mint_sentinel: str = ZERO_ADDRESS,
) -> List[str]:
    """Real holders with a negative balance (a data bug signal)."""
    sentinel = to_checksum_address(mint_sentinel)
    return sorted(a for a, amount in balances.items() if amount < 0 and a != sentinel)


def total_supply(balances: Mapping[str, int]) -> int:
    """Sum of positive balances."""
    return sum(amount for amount in balances.values() if amount > 0)


def sentinel_balance(balances: Mapping[str, int], mint_sentinel: str = ZERO_ADDRESS) -> int:
    """Balance carried by the sentinel in a track_sentinel fold."""
    return balances.get(to_checksum_address(mint_sentinel), 0)


def check_conservation(
    events: Iterable[EventLike],
    mint_sentinel: str = ZERO_ADDRESS,
) -> bool:
    """
    True if every delta, the sentinel's included, sums to zero and the
    sentinel's deficit equals the circulating supply.
    """
    events = list(events)
    tracked = compute_balances(events, mint_sentinel, track_sentinel=True)
    if sum(tracked.values()) != 0:
        return False
    untracked = compute_balances(events, mint_sentinel)
    return -sentinel_balance(tracked, mint_sentinel) == sum(untracked.values())


# ============================================================================
# OVERRIDES
# ============================================================================

def apply_overrides(
    balances: Mapping[str, int],
    overrides: Iterable[Override],
    summary: Optional[RunSummary] = None,
    strict: bool = False,
) -> Dict[str, int]:
    """
    Redirect override sources to their configured recipients.

    The source balance is zeroed and each recipient is credited with its
    configured amount. A redistribution total that differs from the source
    balance is a reconciliation warning; the override is still applied.

    Args:
        balances: Post-ledger balances (not modified)
        overrides: Configured overrides
        summary: Collects mismatch warnings
        strict: Raise instead of warning on a mismatch

    Returns:
        New balance mapping

    Raises:
        OverrideMismatchError: In strict mode, on a sum mismatch
    """
    result = dict(balances)

    for override in overrides:
        source = to_checksum_address(override.source)
        source_balance = result.get(source, 0)

        if source_balance <= 0:
            message = f"Override source {source} holds no balance; override skipped"
            if summary is not None:
                summary.warn(message)
            else:
                logger.warning(message)
            continue

        redistributed = override.total
        if redistributed != source_balance:
            message = (
                f"Override for {source} redistributes {redistributed} "
                f"but source balance is {source_balance}"
            )
            if strict:
                raise OverrideMismatchError(message)
            if summary is not None:
                summary.warn(message)
            else:
                logger.warning(message)

        result[source] = 0
        for recipient, amount in override.redistributions.items():
            recipient = to_checksum_address(recipient)
            result[recipient] = result.get(recipient, 0) + amount
            logger.debug(f"Override {source} -> {recipient}: {amount}")

        logger.info(
            f"Applied override for {source}: {source_balance} -> "
            f"{len(override.redistributions)} recipient(s)"
        )

    return result

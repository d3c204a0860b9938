"""
rumpeldrop/summary.py

Run summary: non-fatal events collected during a run.

Reconciliation mismatches and per-address lookup failures do not stop a
run. They are logged where they happen and recorded here so the operator
gets one aggregate report at the end.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

logger = logging.getLogger("rumpeldrop.summary")


@dataclass
class LookupFailure:
    """A per-address external lookup that fell back to a default."""
    kind: str          # e.g. "owner", "claimed_ptokens"
    address: str
    reason: str
    fallback: str


@dataclass
class RunSummary:
    """Aggregated warnings for a single run."""
    warnings: List[str] = field(default_factory=list)
    lookup_failures: List[LookupFailure] = field(default_factory=list)
    totals: Dict[str, str] = field(default_factory=dict)

    def warn(self, message: str) -> None:
        """Log and record a reconciliation warning."""
        logger.warning(message)
        self.warnings.append(message)

    def record_lookup_failure(
        self,
        kind: str,
        address: str,
        reason: str,
        fallback: str,
    ) -> None:
        logger.warning(f"{kind} lookup failed for {address}: {reason} (using {fallback})")
        self.lookup_failures.append(LookupFailure(kind, address, reason, fallback))

    def record_total(self, name: str, value: Any) -> None:
        self.totals[name] = str(value)

    @property
    def is_clean(self) -> bool:
        return not self.warnings and not self.lookup_failures

    def failures_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for failure in self.lookup_failures:
            counts[failure.kind] = counts.get(failure.kind, 0) + 1
        return counts

    def log_report(self) -> None:
        """Log the end-of-run aggregate."""
        for name, value in self.totals.items():
            logger.info(f"{name}: {value}")
        if self.is_clean:
            logger.info("Run completed without warnings")
            return
        logger.warning(
            f"Run completed with {len(self.warnings)} warning(s) and "
            f"{len(self.lookup_failures)} lookup failure(s)"
        )
        for kind, count in sorted(self.failures_by_kind().items()):
            logger.warning(f"  {kind}: {count} address(es) fell back to default")

    def to_dict(self) -> dict:
        return asdict(self)

"""
rumpeldrop/report.py

Tabular views of a distribution for operators: per-claim tables, totals
per pointsId, top recipients, CSV export.

Amounts are uint256 and do not fit in int64, so the raw `amount` column
keeps Python ints (object dtype). `amount_tokens` is a float view scaled
by the token decimals, for display and sorting only.
"""

import logging
from typing import List, Optional

import pandas as pd

from .config import WAD
from .distribution import MerkleDistribution, PTokenSnapshot

logger = logging.getLogger("rumpeldrop.report")

CLAIM_COLUMNS = ["section", "address", "points_id", "amount", "amount_tokens", "proof_length"]


def claims_frame(distribution: MerkleDistribution, scale: int = WAD) -> pd.DataFrame:
    """One row per claim in both sections."""
    rows = []
    sections = (
        ("redemptionRights", distribution.redemption_rights),
        ("pTokens", distribution.ptokens),
    )
    for name, section in sections:
        for address, points in section.items():
            for points_id, entry in points.items():
                rows.append({
                    "section": name,
                    "address": address,
                    "points_id": points_id,
                    "amount": entry.amount,
                    "amount_tokens": entry.amount / scale,
                    "proof_length": len(entry.proof),
                })
    frame = pd.DataFrame(rows, columns=CLAIM_COLUMNS)
    frame["amount"] = frame["amount"].astype(object)
    return frame


def totals_frame(distribution: MerkleDistribution, scale: int = WAD) -> pd.DataFrame:
    """Claim count and exact total per (section, pointsId)."""
    claims = claims_frame(distribution, scale)
    if claims.empty:
        return pd.DataFrame(columns=["section", "points_id", "claims", "total", "total_tokens"])

    grouped = claims.groupby(["section", "points_id"], sort=True)
    totals = grouped.agg(
        claims=("address", "count"),
        # python-int sum keeps uint256 totals exact
        total=("amount", lambda amounts: sum(int(a) for a in amounts)),
    ).reset_index()
    totals["total_tokens"] = totals["total"].apply(lambda total: total / scale)
    return totals


def top_recipients(
    distribution: MerkleDistribution,
    limit: int = 10,
    section: str = "redemptionRights",
    points_id: Optional[str] = None,
    scale: int = WAD,
) -> pd.DataFrame:
    """Largest claims of a section, optionally for one pointsId."""
    claims = claims_frame(distribution, scale)
    claims = claims[claims["section"] == section]
    if points_id is not None:
        claims = claims[claims["points_id"] == points_id.lower()]
    return claims.sort_values("amount_tokens", ascending=False).head(limit).reset_index(drop=True)


def snapshot_frame(snapshot: PTokenSnapshot, scale: int = WAD) -> pd.DataFrame:
    frame = pd.DataFrame(
        [{"address": a, "balance": b, "balance_tokens": b / scale} for a, b in snapshot.balances.items()],
        columns=["address", "balance", "balance_tokens"],
    )
    frame["balance"] = frame["balance"].astype(object)
    return frame.sort_values("balance_tokens", ascending=False).reset_index(drop=True)


def export_claims_csv(distribution: MerkleDistribution, path: str, scale: int = WAD) -> str:
    """Write the claim table to CSV; amounts are written as exact integers."""
    claims_frame(distribution, scale).to_csv(path, index=False)
    logger.info(f"Claims exported to {path}")
    return path


def format_report(distribution: MerkleDistribution, limit: int = 10, scale: int = WAD) -> str:
    """Console summary: root, totals, top redemption-rights recipients."""
    lines: List[str] = [f"Merkle root: {distribution.root}", f"Leaves: {distribution.leaf_count}", ""]

    totals = totals_frame(distribution, scale)
    if not totals.empty:
        lines.append(totals.to_string(index=False))
        lines.append("")

    top = top_recipients(distribution, limit=limit, scale=scale)
    if not top.empty:
        lines.append(f"Top {len(top)} redemption-rights recipients:")
        lines.append(top[["address", "points_id", "amount_tokens"]].to_string(index=False))
    return "\n".join(lines)

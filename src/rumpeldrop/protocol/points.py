"""
rumpeldrop/protocol/points.py

Points identifiers and points snapshot entries.

A pointsId is 32 bytes packing two short strings (display name and pToken
symbol), length-prefixed:

    [len(a)] a [len(b)] b 00 .. 00

e.g. pack_two("Rumpel Pt: Kinetiq S1", "pKINTQ-1").
"""

import logging
from dataclasses import dataclass
from typing import Tuple

from eth_utils import to_checksum_address

logger = logging.getLogger("rumpeldrop.protocol.points")

POINTS_ID_LENGTH = 32
MAX_PACKED_LENGTH = 30  # 32 bytes minus the two length bytes
INVALID_PACKED_ID = "0x00"


def pack_two(a: str, b: str) -> str:
    """
    Pack two strings into a 32-byte pointsId.

    Returns "0x00" when the combined length is 0 or exceeds 30 bytes,
    matching the on-chain packing helper.
    """
    a_bytes = a.encode()
    b_bytes = b.encode()
    total_length = len(a_bytes) + len(b_bytes)
    if total_length == 0 or total_length > MAX_PACKED_LENGTH:
        return INVALID_PACKED_ID

    packed = bytes([len(a_bytes)]) + a_bytes + bytes([len(b_bytes)]) + b_bytes
    packed = packed.ljust(POINTS_ID_LENGTH, b"\x00")
    return "0x" + packed.hex()


def unpack_two(points_id: str) -> Tuple[str, str]:
    """Inverse of pack_two."""
    raw = points_id_to_bytes(points_id)
    a_length = raw[0]
    a = raw[1:1 + a_length]
    b_length = raw[1 + a_length]
    b = raw[2 + a_length:2 + a_length + b_length]
    if a_length + b_length > MAX_PACKED_LENGTH:
        raise ValueError(f"Not a packed pointsId: {points_id}")
    return a.decode(), b.decode()


def points_id_to_bytes(points_id: str) -> bytes:
    """Decode a 0x-prefixed 32-byte pointsId."""
    value = points_id[2:] if points_id.startswith(("0x", "0X")) else points_id
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise ValueError(f"pointsId is not hex: {points_id!r}")
    if len(raw) != POINTS_ID_LENGTH:
        raise ValueError(f"pointsId must be {POINTS_ID_LENGTH} bytes, got {len(raw)}: {points_id!r}")
    return raw


def normalize_points_id(points_id: str) -> str:
    """Canonical lowercase 0x-prefixed form."""
    if not isinstance(points_id, str):
        raise ValueError(f"pointsId must be a hex string, got {points_id!r}")
    return "0x" + points_id_to_bytes(points_id).hex()


@dataclass(frozen=True)
class PointsEntry:
    """Off-chain accounted points for one address under one pointsId."""
    address: str
    points_id: str
    amount: int

    @classmethod
    def create(cls, address: str, points_id: str, amount) -> "PointsEntry":
        return cls(
            address=to_checksum_address(address),
            points_id=normalize_points_id(points_id),
            amount=int(amount),
        )


# Known programs
POINTS_ID_ETHENA_S4 = "0x1552756d70656c206b50743a20457468656e61205334086b70534154532d3400"
POINTS_ID_ETHERFI_S4 = "0x1652756d70656c206b50743a2045544845524649205334066b7045462d340000"
POINTS_ID_KINETIQ_S1 = pack_two("Rumpel Pt: Kinetiq S1", "pKINTQ-1")

"""
rumpeldrop/tests/conftest.py

Shared fixtures: deterministic addresses, a scripted chain reader.
"""

from typing import Dict, List, Optional, Set, Tuple

import pytest
from eth_utils import to_checksum_address

from rumpeldrop.blockchain.rpc import ChainReader
from rumpeldrop.errors import RpcError
from rumpeldrop.protocol.ledger import TransferEvent


def make_address(n: int) -> str:
    """Checksum address 0x000...00n."""
    return to_checksum_address("0x" + format(n, "040x"))


ZERO = make_address(0)
ALICE = make_address(0xA11CE)
BOB = make_address(0xB0B)
CAROL = make_address(0xCA201)
POOL = make_address(0x9001)
PTOKEN = make_address(0x7001)
PTOKEN_2 = make_address(0x7002)
VAULT = make_address(0x5AFE)

POINTS_ID = "0x" + "11" * 32
POINTS_ID_2 = "0x" + "22" * 32


def mint(to: str, value: int) -> TransferEvent:
    return TransferEvent.create(ZERO, to, value)


def transfer(src: str, dst: str, value: int) -> TransferEvent:
    return TransferEvent.create(src, dst, value)


class FakeChain(ChainReader):
    """Scripted ChainReader; failing addresses raise RpcError."""

    def __init__(
        self,
        events: Optional[Dict[str, List[TransferEvent]]] = None,
        claimed: Optional[Dict[Tuple[str, str], int]] = None,
        owners: Optional[Dict[str, List[str]]] = None,
        block: int = 1000,
        failing: Optional[Set[str]] = None,
    ):
        self.events = events or {}
        self.claimed = claimed or {}
        self.owners = owners or {}
        self.block = block
        self.failing = failing or set()
        self.owner_calls: List[str] = []
        self.claimed_calls: List[Tuple[str, str]] = []

    async def get_block_number(self) -> int:
        return self.block

    async def get_transfer_events(self, token, to_block, from_block=0):
        return list(self.events.get(token, []))

    async def get_claimed_ptokens(self, account, points_id):
        self.claimed_calls.append((account, points_id))
        if account in self.failing:
            raise RpcError(f"eth_call failed for {account}")
        return self.claimed.get((account, points_id), 0)

    async def get_owners(self, wallet):
        self.owner_calls.append(wallet)
        if wallet in self.failing:
            raise RpcError(f"eth_call failed for {wallet}")
        return list(self.owners.get(wallet, []))


@pytest.fixture
def fake_chain():
    return FakeChain()

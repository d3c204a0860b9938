"""
rumpeldrop/blockchain/rpc.py

Chain collaborators: transfer logs and contract reads.

The entitlement pipeline talks to the chain only through ChainReader, so
tests and offline runs can inject their own. JsonRpcChainReader is the
default implementation over plain Ethereum JSON-RPC (eth_getLogs,
eth_call, eth_blockNumber).

Retries and backoff are not done here; a failed call raises RpcError and
the caller decides whether the failure is fatal or falls back.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
import trio
from eth_abi import decode, encode
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    keccak,
    to_checksum_address,
)

from ..errors import RpcError, UpstreamDataError
from ..protocol.ledger import TransferEvent
from ..protocol.points import points_id_to_bytes

logger = logging.getLogger("rumpeldrop.blockchain.rpc")


# ============================================================================
# CONSTANTS
# ============================================================================

TRANSFER_TOPIC = encode_hex(keccak(text="Transfer(address,address,uint256)"))

CLAIMED_PTOKENS_SIGNATURE = "claimedPTokens(address,bytes32)"
GET_OWNERS_SIGNATURE = "getOwners()"
CUMULATIVE_CLAIMED_SIGNATURE = "cumulativeClaimed(address)"

REQUEST_TIMEOUT = 60  # seconds


# ============================================================================
# ABSTRACT CHAIN READER
# ============================================================================

class ChainReader(ABC):
    """Read-only chain access used by the pipeline."""

    @abstractmethod
    async def get_block_number(self) -> int:
        pass

    @abstractmethod
    async def get_transfer_events(
        self,
        token: str,
        to_block: int,
        from_block: int = 0,
    ) -> List[TransferEvent]:
        """All Transfer events of `token` in [from_block, to_block]."""
        pass

    @abstractmethod
    async def get_claimed_ptokens(self, account: str, points_id: str) -> int:
        """pTokens already claimed from the vault by `account` for `points_id`."""
        pass

    @abstractmethod
    async def get_owners(self, wallet: str) -> List[str]:
        """Owners of a Safe-based smart wallet."""
        pass


# ============================================================================
# LOG DECODING
# ============================================================================

def decode_transfer_log(log: Dict[str, Any]) -> TransferEvent:
    """
    Decode an ERC-20 Transfer log.

    Raises:
        UpstreamDataError: If the log does not have the Transfer layout
    """
    topics = log.get("topics") or []
    if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
        raise UpstreamDataError(f"Not an ERC-20 Transfer log: {log}")
    try:
        (from_address,) = decode(["address"], decode_hex(topics[1]))
        (to_address,) = decode(["address"], decode_hex(topics[2]))
        (value,) = decode(["uint256"], decode_hex(log.get("data") or "0x"))
    except Exception as e:
        raise UpstreamDataError(f"Cannot decode Transfer log {log.get('transactionHash')}: {e}")
    return TransferEvent.create(from_address, to_address, value)


def encode_call(signature: str, types: List[str], args: List[Any]) -> str:
    """Selector plus ABI-encoded arguments, as 0x-hex calldata."""
    selector = function_signature_to_4byte_selector(signature)
    return encode_hex(selector + encode(types, args))


# ============================================================================
# JSON-RPC IMPLEMENTATION
# ============================================================================

class JsonRpcChainReader(ChainReader):
    """
    ChainReader over Ethereum JSON-RPC.

    Blocking HTTP calls run in a worker thread so concurrent lookups in a
    trio nursery overlap.

    Example:
        chain = JsonRpcChainReader(rpc_url, vault_address)
        block = await chain.get_block_number()
        events = await chain.get_transfer_events(ptoken, block)
    """

    def __init__(
        self,
        rpc_url: str,
        vault_address: str,
        log_block_range: Optional[int] = None,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize JsonRpcChainReader.

        Args:
            rpc_url: HTTP JSON-RPC endpoint
            vault_address: Point token vault (claimedPTokens)
            log_block_range: Split eth_getLogs into ranges of this many
                blocks (None = one request)
            timeout: HTTP timeout in seconds
            session: Optional requests session
        """
        self.rpc_url = rpc_url
        self.vault_address = to_checksum_address(vault_address)
        self.log_block_range = log_block_range
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def _request(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise RpcError(f"{method} failed: {e}")

        if not isinstance(body, dict):
            raise RpcError(f"{method} returned a non-object body: {body!r}")
        if body.get("error"):
            raise RpcError(f"{method} returned error: {body['error']}")
        if "result" not in body:
            raise RpcError(f"{method} returned no result")
        return body["result"]

    async def _call(self, method: str, params: List[Any]) -> Any:
        return await trio.to_thread.run_sync(self._request, method, params)

    async def _eth_call(self, to: str, data: str, block: str = "latest") -> bytes:
        result = await self._call("eth_call", [{"to": to, "data": data}, block])
        return decode_hex(result)

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", []), 16)

    async def get_transfer_events(
        self,
        token: str,
        to_block: int,
        from_block: int = 0,
    ) -> List[TransferEvent]:
        token = to_checksum_address(token)
        if to_block < from_block:
            return []
        step = self.log_block_range or (to_block - from_block + 1)
        events: List[TransferEvent] = []

        for start in range(from_block, to_block + 1, step):
            end = min(start + step - 1, to_block)
            logs = await self._call("eth_getLogs", [{
                "address": token,
                "fromBlock": hex(start),
                "toBlock": hex(end),
                "topics": [TRANSFER_TOPIC],
            }])
            events.extend(decode_transfer_log(log) for log in logs)
            logger.debug(f"{token}: {len(logs)} Transfer logs in blocks {start}-{end}")

        logger.info(f"Fetched {len(events)} Transfer events for {token} up to block {to_block}")
        return events

    async def get_claimed_ptokens(self, account: str, points_id: str) -> int:
        data = encode_call(
            CLAIMED_PTOKENS_SIGNATURE,
            ["address", "bytes32"],
            [to_checksum_address(account), points_id_to_bytes(points_id)],
        )
        raw = await self._eth_call(self.vault_address, data)
        try:
            (claimed,) = decode(["uint256"], raw)
        except Exception as e:
            raise RpcError(f"Cannot decode claimedPTokens for {account}: {e}")
        return claimed

    async def get_owners(self, wallet: str) -> List[str]:
        raw = await self._eth_call(to_checksum_address(wallet), encode_call(GET_OWNERS_SIGNATURE, [], []))
        try:
            (owners,) = decode(["address[]"], raw)
        except Exception as e:
            raise RpcError(f"Cannot decode getOwners for {wallet}: {e}")
        return [to_checksum_address(owner) for owner in owners]

    async def get_cumulative_claimed(self, distributor: str, account: str) -> int:
        """Cumulative amount claimed from a cumulative Merkle distributor."""
        data = encode_call(CUMULATIVE_CLAIMED_SIGNATURE, ["address"], [to_checksum_address(account)])
        raw = await self._eth_call(to_checksum_address(distributor), data)
        try:
            (claimed,) = decode(["uint256"], raw)
        except Exception as e:
            raise RpcError(f"Cannot decode cumulativeClaimed for {account}: {e}")
        return claimed

"""
rumpeldrop/store/snapshot_store.py

Distribution snapshot store: executed distributions and their per-wallet
points snapshots.

Layout (Upstash-style REST KV):
    {prefix}distributions:executed          list of executed distribution ids
    {prefix}distributions:{ts}              distribution metadata (root, ...)
    {prefix}distributions:{ts}:wallets      {wallet: {pointsId: amount}}

The prefix is "" for Ethereum mainnet and "hl:" for HyperEVM.

Implementations:
    DistributionSnapshotStore (abstract)
    ├── KVRestSnapshotStore (REST KV over requests)
    └── InMemorySnapshotStore (offline runs, tests, snapshot files)
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
import trio
from eth_utils import is_address, to_checksum_address

from ..config import KV_DISTRIBUTION_KEY, KV_EXECUTED_KEY, KV_WALLETS_KEY
from ..errors import SnapshotStoreError, UpstreamDataError
from ..protocol.points import normalize_points_id

logger = logging.getLogger("rumpeldrop.store.snapshot_store")

WalletSnapshot = Dict[str, Dict[str, int]]

REQUEST_TIMEOUT = 30  # seconds


# ============================================================================
# SNAPSHOT PARSING
# ============================================================================

def _parse_amount(value: Any, context: str) -> int:
    if isinstance(value, Mapping):
        # alpha distribution files nest the amount
        value = value.get("accumulatingPoints", value.get("amount"))
    if isinstance(value, bool):
        raise UpstreamDataError(f"Invalid amount for {context}: {value!r}")
    try:
        amount = int(str(value))
    except (TypeError, ValueError):
        raise UpstreamDataError(f"Invalid amount for {context}: {value!r}")
    if amount < 0:
        raise UpstreamDataError(f"Negative amount for {context}: {amount}")
    return amount


def parse_wallet_snapshot(raw: Any) -> WalletSnapshot:
    """
    Normalise a wallet snapshot.

    Accepts {wallet: {pointsId: amount}} where amount is a decimal string,
    an int, or {"accumulatingPoints": amount}. A top-level "pTokens" key
    (alpha distribution files) is unwrapped.

    Raises:
        UpstreamDataError: On malformed addresses, pointsIds or amounts
    """
    if isinstance(raw, Mapping) and "pTokens" in raw:
        raw = raw["pTokens"]
    if not isinstance(raw, Mapping):
        raise UpstreamDataError(f"Wallet snapshot must be a mapping, got {type(raw).__name__}")

    snapshot: WalletSnapshot = {}
    for wallet, points in raw.items():
        if not is_address(wallet):
            raise UpstreamDataError(f"Invalid wallet address in snapshot: {wallet!r}")
        if not isinstance(points, Mapping):
            raise UpstreamDataError(f"Invalid points entry for {wallet}: {points!r}")
        wallet = to_checksum_address(wallet)
        entry = snapshot.setdefault(wallet, {})
        for points_id, value in points.items():
            try:
                key = normalize_points_id(points_id)
            except ValueError as e:
                raise UpstreamDataError(f"Invalid pointsId for {wallet}: {e}")
            entry[key] = entry.get(key, 0) + _parse_amount(value, f"{wallet}/{key}")
    return snapshot


def snapshot_for_points_id(snapshot: WalletSnapshot, points_id: str) -> Dict[str, int]:
    """{wallet: amount} for one pointsId, positive amounts only."""
    points_id = normalize_points_id(points_id)
    result = {}
    for wallet, points in snapshot.items():
        amount = points.get(points_id, 0)
        if amount > 0:
            result[wallet] = amount
    return result


# ============================================================================
# ABSTRACT STORE
# ============================================================================

class DistributionSnapshotStore(ABC):
    """Read access to executed distributions."""

    @abstractmethod
    async def get_executed_distribution_ids(self) -> List[str]:
        """Executed distribution ids, oldest first."""
        pass

    @abstractmethod
    async def get_distribution(self, distribution_id: str) -> Dict[str, Any]:
        """Distribution metadata; must contain the root."""
        pass

    @abstractmethod
    async def get_wallet_snapshot(self, distribution_id: str) -> WalletSnapshot:
        """Per-wallet points snapshot of a distribution."""
        pass

    async def get_latest_executed_distribution_id(self) -> str:
        """
        Most recent executed distribution.

        Raises:
            UpstreamDataError: If no distribution has been executed
        """
        executed = await self.get_executed_distribution_ids()
        if not executed:
            raise UpstreamDataError("No executed distributions found")
        return executed[-1]

    async def select_distribution_id(self, requested: Optional[str] = None) -> str:
        """
        Pick the distribution to build on.

        The requested id is used only if it has been executed; otherwise
        the latest executed distribution is used and a warning logged.
        """
        executed = await self.get_executed_distribution_ids()
        if not executed:
            raise UpstreamDataError("No executed distributions found")

        latest = executed[-1]
        if requested is None:
            logger.info(f"Using latest executed distribution {latest}")
            return latest
        if requested in executed:
            logger.info(f"Using requested distribution {requested}")
            return requested

        logger.warning(
            f"Distribution {requested} has not been executed; using latest executed {latest}"
        )
        return latest


# ============================================================================
# REST KV IMPLEMENTATION
# ============================================================================

class KVRestSnapshotStore(DistributionSnapshotStore):
    """
    Snapshot store over a REST key-value API.

    GET {url}/get/{key} with a bearer token returns {"result": value};
    value may itself be a JSON-encoded string.
    """

    def __init__(
        self,
        url: str,
        token: str,
        key_prefix: str = "",
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.key_prefix = key_prefix
        self.timeout = timeout
        self.session = session or requests.Session()

    def _key(self, template: str, **kwargs) -> str:
        return self.key_prefix + template.format(**kwargs)

    def _get(self, key: str) -> Any:
        url = f"{self.url}/get/{quote(key, safe='')}"
        try:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise SnapshotStoreError(f"KV get failed for {key}: {e}")

        value = body.get("result") if isinstance(body, dict) else None
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    async def get(self, key: str) -> Any:
        """Raw value for a key (None if absent)."""
        value = await trio.to_thread.run_sync(self._get, key)
        logger.debug(f"KV get {key}: {'hit' if value is not None else 'miss'}")
        return value

    async def get_executed_distribution_ids(self) -> List[str]:
        value = await self.get(self._key(KV_EXECUTED_KEY))
        if value is None:
            return []
        if not isinstance(value, list):
            raise UpstreamDataError(f"Executed distribution list is malformed: {value!r}")
        return [str(item) for item in value]

    async def get_distribution(self, distribution_id: str) -> Dict[str, Any]:
        meta = await self.get(self._key(KV_DISTRIBUTION_KEY, timestamp=distribution_id))
        if not meta:
            raise UpstreamDataError(f"Distribution {distribution_id} not found")
        if not isinstance(meta, dict) or not meta.get("root"):
            raise UpstreamDataError(f"Distribution {distribution_id} missing root")
        return meta

    async def get_wallet_snapshot(self, distribution_id: str) -> WalletSnapshot:
        raw = await self.get(self._key(KV_WALLETS_KEY, timestamp=distribution_id))
        if not raw:
            raise UpstreamDataError(f"Distribution {distribution_id} has no wallet snapshot")
        snapshot = parse_wallet_snapshot(raw)
        logger.info(f"Loaded wallet snapshot {distribution_id}: {len(snapshot)} wallets")
        return snapshot


# ============================================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================================

class InMemorySnapshotStore(DistributionSnapshotStore):
    """Snapshot store backed by dictionaries."""

    def __init__(
        self,
        executed: Optional[List[str]] = None,
        distributions: Optional[Dict[str, Dict[str, Any]]] = None,
        wallets: Optional[Dict[str, Any]] = None,
    ):
        self.executed = list(executed or [])
        self.distributions = dict(distributions or {})
        self.wallets = {
            distribution_id: parse_wallet_snapshot(raw)
            for distribution_id, raw in (wallets or {}).items()
        }

    async def get_executed_distribution_ids(self) -> List[str]:
        return list(self.executed)

    async def get_distribution(self, distribution_id: str) -> Dict[str, Any]:
        meta = self.distributions.get(distribution_id)
        if not meta:
            raise UpstreamDataError(f"Distribution {distribution_id} not found")
        return dict(meta)

    async def get_wallet_snapshot(self, distribution_id: str) -> WalletSnapshot:
        if distribution_id not in self.wallets:
            raise UpstreamDataError(f"Distribution {distribution_id} has no wallet snapshot")
        return {wallet: dict(points) for wallet, points in self.wallets[distribution_id].items()}


def load_snapshot_file(path: str, distribution_id: str = "file") -> InMemorySnapshotStore:
    """
    Offline store from a JSON wallet snapshot file.

    The file holds a wallet snapshot (or an alpha distribution with a
    "pTokens" key) and is exposed as a single executed distribution.
    """
    try:
        with open(path) as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise UpstreamDataError(f"Cannot read snapshot file {path}: {e}")

    root = raw.get("root") if isinstance(raw, dict) else None
    store = InMemorySnapshotStore(
        executed=[distribution_id],
        distributions={distribution_id: {"root": root, "source": path}},
        wallets={distribution_id: raw},
    )
    logger.info(f"Loaded snapshot file {path}: {len(store.wallets[distribution_id])} wallets")
    return store

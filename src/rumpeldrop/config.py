"""
rumpeldrop/config.py

Configuration constants and data classes for rumpeldrop.

Run parameters are explicit: a RunConfig is built once (from a dict, a JSON
file or the environment), validated, and passed into the pipeline. Nothing
here is mutated during a run.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import is_address, to_checksum_address

from .errors import ConfigurationError

logger = logging.getLogger("rumpeldrop.config")


# ============================================================================
# CONSTANTS
# ============================================================================

# Fixed-point scale for rates (1e18)
WAD = 10 ** 18

# Mint/burn sentinel for ERC-20 Transfer events
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_POINTS_ID = "0x" + "00" * 32

# Concurrent per-address lookups per chunk (ownership, claimed amounts)
DEFAULT_LOOKUP_CHUNK_SIZE = 10

# Rumpel deployments (Ethereum mainnet)
RUMPEL_ADMIN_SAFE = to_checksum_address("0x9D89745fD63Af482ce93a9AdB8B0BbDbb98D3e06")
RUMPEL_MODULE = to_checksum_address("0x28c3498B4956f4aD8d4549ACA8F66260975D361a")
RUMPEL_POINT_TOKEN_VAULT = to_checksum_address("0xe47F9Dbbfe98d6930562017ee212C1A1Ae45ba61")

# KV snapshot store key layout
KV_EXECUTED_KEY = "distributions:executed"
KV_DISTRIBUTION_KEY = "distributions:{timestamp}"
KV_WALLETS_KEY = "distributions:{timestamp}:wallets"

# HyperEVM distributions live under their own prefix
KV_HYPEREVM_PREFIX = "hl:"

DEFAULT_OUTPUT_DIR = "out"
DEFAULT_DISTRIBUTION_FILE = "merged-distribution.json"


def normalize_address(value: Any, name: str = "address") -> str:
    """
    Return the checksum form of an address.

    Raises:
        ConfigurationError: If the value is not a 20-byte hex address
    """
    if not isinstance(value, str) or not is_address(value):
        raise ConfigurationError(f"Invalid {name}: {value!r}")
    return to_checksum_address(value)


def _parse_int(value: Any, name: str) -> int:
    """Parse a decimal string or int into a non-negative int."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}")
    if parsed < 0:
        raise ConfigurationError(f"{name} must be non-negative, got {parsed}")
    return parsed


def _split_env_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class Override:
    """
    Manual redirection of a holder's balance.

    The source (typically an AMM pool) is zeroed and each recipient
    receives the configured amount.
    """
    source: str
    redistributions: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.redistributions.values())

    def validate(self) -> None:
        self.source = normalize_address(self.source, "override source")
        normalized: Dict[str, int] = {}
        for recipient, amount in self.redistributions.items():
            key = normalize_address(recipient, "override recipient")
            normalized[key] = normalized.get(key, 0) + _parse_int(
                amount, f"override amount for {recipient}"
            )
        self.redistributions = normalized

    @classmethod
    def from_dict(cls, source: str, data: Dict[str, Any]) -> "Override":
        override = cls(source=source, redistributions=dict(data))
        override.validate()
        return override


@dataclass
class PTokenProgram:
    """A pToken whose holders receive redemption rights for one pointsId."""
    ptoken_address: str
    points_id: str
    rewards_per_ptoken: int          # reward units per 1e18 pTokens
    release_numerator: int = 1       # fraction of the full entitlement released now
    release_denominator: int = 1
    total_reward_pool: Optional[int] = None  # full pool, for the conservation check

    @property
    def release_fraction(self) -> Tuple[int, int]:
        return self.release_numerator, self.release_denominator

    def validate(self) -> None:
        """Validate and normalise fields in place."""
        from .protocol.points import normalize_points_id

        self.ptoken_address = normalize_address(self.ptoken_address, "pToken address")
        try:
            self.points_id = normalize_points_id(self.points_id)
        except ValueError as e:
            raise ConfigurationError(str(e))
        if self.points_id == ZERO_POINTS_ID:
            raise ConfigurationError(f"pointsId not set for {self.ptoken_address}")

        self.rewards_per_ptoken = _parse_int(self.rewards_per_ptoken, "rewards_per_ptoken")
        if self.rewards_per_ptoken == 0:
            raise ConfigurationError(f"rewards_per_ptoken not set for {self.ptoken_address}")

        self.release_numerator = _parse_int(self.release_numerator, "release numerator")
        self.release_denominator = _parse_int(self.release_denominator, "release denominator")
        if self.release_denominator == 0:
            raise ConfigurationError("Release fraction denominator must be non-zero")
        if self.release_numerator > self.release_denominator:
            raise ConfigurationError(
                f"Release fraction {self.release_numerator}/{self.release_denominator} "
                f"exceeds 1 for {self.ptoken_address}"
            )

        if self.total_reward_pool is not None:
            self.total_reward_pool = _parse_int(self.total_reward_pool, "total_reward_pool")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PTokenProgram":
        fraction = data.get("release_fraction") or (1, 1)
        try:
            numerator, denominator = fraction
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid release_fraction: {fraction!r}")
        try:
            program = cls(
                ptoken_address=data["ptoken_address"],
                points_id=data["points_id"],
                rewards_per_ptoken=data["rewards_per_ptoken"],
                release_numerator=numerator,
                release_denominator=denominator,
                total_reward_pool=data.get("total_reward_pool"),
            )
        except KeyError as e:
            raise ConfigurationError(f"pToken program missing field {e}")
        program.validate()
        return program


@dataclass
class RunConfig:
    """Complete configuration of one redemption-rights run."""
    programs: List[PTokenProgram] = field(default_factory=list)
    overrides: List[Override] = field(default_factory=list)
    rpc_url: Optional[str] = None
    point_token_vault: str = RUMPEL_POINT_TOKEN_VAULT
    kv_url: Optional[str] = None
    kv_token: Optional[str] = None
    kv_key_prefix: str = ""
    distribution_id: Optional[str] = None
    snapshot_block: Optional[int] = None
    mint_sentinel: str = ZERO_ADDRESS
    scale: int = WAD
    lookup_chunk_size: int = DEFAULT_LOOKUP_CHUNK_SIZE
    strict_overrides: bool = False
    merge_by_owner: bool = False
    output_dir: str = DEFAULT_OUTPUT_DIR

    def validate(self, require_io: bool = True) -> "RunConfig":
        """
        Validate every field before the run starts.

        Args:
            require_io: Also require RPC and KV endpoints

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: On the first invalid field
        """
        if not self.programs:
            raise ConfigurationError("At least one pToken program is required")
        for program in self.programs:
            program.validate()

        points_ids = [p.points_id for p in self.programs]
        if len(set(points_ids)) != len(points_ids):
            raise ConfigurationError("Each pToken program needs a distinct pointsId")

        for override in self.overrides:
            override.validate()
        sources = [o.source for o in self.overrides]
        if len(set(sources)) != len(sources):
            raise ConfigurationError("Duplicate override source address")

        self.point_token_vault = normalize_address(self.point_token_vault, "point token vault")
        self.mint_sentinel = normalize_address(self.mint_sentinel, "mint sentinel")

        if self.scale <= 0:
            raise ConfigurationError(f"scale must be positive, got {self.scale}")
        if self.lookup_chunk_size <= 0:
            raise ConfigurationError(
                f"lookup_chunk_size must be positive, got {self.lookup_chunk_size}"
            )
        if self.snapshot_block is not None:
            self.snapshot_block = _parse_int(self.snapshot_block, "snapshot_block")

        if require_io:
            if not self.rpc_url:
                raise ConfigurationError("rpc_url (MAINNET_RPC_URL) is required")
            if not self.kv_url or not self.kv_token:
                raise ConfigurationError("KV_REST_API_URL and KV_REST_API_TOKEN are required")

        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        """Create from a dictionary (e.g. a parsed JSON config file)."""
        programs = [PTokenProgram.from_dict(p) for p in data.get("programs", [])]
        overrides = [
            Override.from_dict(source, redistributions)
            for source, redistributions in (data.get("overrides") or {}).items()
        ]
        config = cls(
            programs=programs,
            overrides=overrides,
            rpc_url=data.get("rpc_url"),
            point_token_vault=data.get("point_token_vault", RUMPEL_POINT_TOKEN_VAULT),
            kv_url=data.get("kv_url"),
            kv_token=data.get("kv_token"),
            kv_key_prefix=data.get("kv_key_prefix", ""),
            distribution_id=data.get("distribution_id"),
            snapshot_block=data.get("snapshot_block"),
            mint_sentinel=data.get("mint_sentinel", ZERO_ADDRESS),
            scale=int(data.get("scale", WAD)),
            lookup_chunk_size=int(data.get("lookup_chunk_size", DEFAULT_LOOKUP_CHUNK_SIZE)),
            strict_overrides=bool(data.get("strict_overrides", False)),
            merge_by_owner=bool(data.get("merge_by_owner", False)),
            output_dir=data.get("output_dir", DEFAULT_OUTPUT_DIR),
        )
        return config

    @classmethod
    def from_file(cls, path: str) -> "RunConfig":
        """Load from a JSON config file."""
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "RunConfig":
        """
        Create from environment variables.

        PTOKEN_ADDRESSES, POINTS_IDS and REWARDS_PER_P_TOKEN are parallel
        comma-separated lists. RELEASE_FRACTIONS is optional, e.g. "25/35".
        """
        env = os.environ if env is None else env

        addresses = _split_env_list(env.get("PTOKEN_ADDRESSES"))
        points_ids = _split_env_list(env.get("POINTS_IDS"))
        rates = _split_env_list(env.get("REWARDS_PER_P_TOKEN"))
        fractions = _split_env_list(env.get("RELEASE_FRACTIONS"))

        if not (len(addresses) == len(points_ids) == len(rates)):
            raise ConfigurationError(
                "PTOKEN_ADDRESSES, POINTS_IDS and REWARDS_PER_P_TOKEN must have the same length"
            )
        if fractions and len(fractions) != len(addresses):
            raise ConfigurationError("RELEASE_FRACTIONS must match PTOKEN_ADDRESSES in length")

        programs = []
        for i, address in enumerate(addresses):
            numerator, denominator = 1, 1
            if fractions:
                try:
                    numerator, denominator = fractions[i].split("/")
                except ValueError:
                    raise ConfigurationError(f"Invalid release fraction: {fractions[i]!r}")
            programs.append(PTokenProgram(
                ptoken_address=address,
                points_id=points_ids[i],
                rewards_per_ptoken=rates[i],
                release_numerator=numerator,
                release_denominator=denominator,
            ))

        return cls(
            programs=programs,
            rpc_url=env.get("MAINNET_RPC_URL"),
            point_token_vault=env.get("POINT_TOKEN_VAULT_ADDRESS") or RUMPEL_POINT_TOKEN_VAULT,
            kv_url=env.get("KV_REST_API_URL"),
            kv_token=env.get("KV_REST_API_TOKEN"),
            distribution_id=env.get("DISTRIBUTION_TIMESTAMP") or None,
        )

"""
rumpeldrop/cli.py

Command line interface.

    rumpeldrop generate  --config run.json       build merged-distribution.json
    rumpeldrop top-up    FILE --points-id --amount
    rumpeldrop verify    FILE
    rumpeldrop rate      --total-rewards --total-ptokens
    rumpeldrop claim-batch FILE --points-id      Safe batch of pToken claims

Configuration comes from a JSON file (--config) or from the environment;
a .env file is loaded first when present.
"""

import os
import logging
import functools
from typing import Optional

import click
import trio
from dotenv import load_dotenv

from .blockchain.batch import PTokenClaim, SafeBatchFileEmitter, build_ptoken_claim_transactions
from .blockchain.rpc import JsonRpcChainReader
from .concurrency import run_chunked
from .config import (
    DEFAULT_DISTRIBUTION_FILE,
    DEFAULT_LOOKUP_CHUNK_SIZE,
    RUMPEL_ADMIN_SAFE,
    RUMPEL_POINT_TOKEN_VAULT,
    RunConfig,
    WAD,
)
from .distribution import (
    RedemptionRightsGenerator,
    read_distribution,
    top_up_distribution,
    verify_distribution,
    write_distribution,
    write_ptoken_snapshots,
)
from .errors import ConfigurationError, RpcError, RumpelDropError
from .protocol.entitlements import gross_up_released, is_rounded_down, rewards_per_ptoken, unclaimed_amount
from .protocol.points import normalize_points_id
from .report import export_claims_csv, format_report
from .store.snapshot_store import KVRestSnapshotStore, load_snapshot_file

logger = logging.getLogger("rumpeldrop.cli")


def _handle_errors(f):
    """Turn rumpeldrop errors into a clean non-zero exit."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (RumpelDropError, ValueError) as e:
            logger.debug("Command failed", exc_info=True)
            raise click.ClickException(f"{type(e).__name__}: {e}")
    return wrapper


def _parse_fraction(value: str) -> tuple:
    try:
        numerator, denominator = (int(part) for part in value.split("/"))
    except ValueError:
        raise click.BadParameter(f"expected NUM/DEN, got {value!r}")
    return numerator, denominator


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--env-file", type=click.Path(dir_okay=False), default=".env", show_default=True,
              help="Environment file loaded before reading configuration")
def cli(verbose: bool, env_file: str):
    """Rumpel redemption-rights and Merkle distribution tooling."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if env_file and os.path.exists(env_file):
        load_dotenv(env_file)
        logger.debug(f"Loaded environment from {env_file}")


# ============================================================================
# GENERATE
# ============================================================================

@cli.command()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="JSON run configuration (default: environment)")
@click.option("--snapshot-file", type=click.Path(exists=True, dir_okay=False),
              help="Offline wallet snapshot instead of the KV store")
@click.option("--distribution-id", help="Executed distribution to build on")
@click.option("--block", type=int, help="Snapshot block (default: latest)")
@click.option("--output-dir", type=click.Path(file_okay=False), help="Output directory")
@click.option("--strict-overrides", is_flag=True, help="Fail on override sum mismatch")
@click.option("--csv", "csv_path", type=click.Path(dir_okay=False), help="Also export claims as CSV")
@_handle_errors
def generate(config_path, snapshot_file, distribution_id, block, output_dir, strict_overrides, csv_path):
    """Generate redemption rights and the merged Merkle distribution."""
    config = RunConfig.from_file(config_path) if config_path else RunConfig.from_env()
    if distribution_id:
        config.distribution_id = distribution_id
    if block is not None:
        config.snapshot_block = block
    if output_dir:
        config.output_dir = output_dir
    if strict_overrides:
        config.strict_overrides = True

    if snapshot_file:
        config.validate(require_io=False)
        if not config.rpc_url:
            raise ConfigurationError("rpc_url (MAINNET_RPC_URL) is required")
        store = load_snapshot_file(snapshot_file)
        config.distribution_id = None
    else:
        config.validate()
        store = KVRestSnapshotStore(config.kv_url, config.kv_token, config.kv_key_prefix)

    chain = JsonRpcChainReader(config.rpc_url, config.point_token_vault)
    generator = RedemptionRightsGenerator(config, chain, store)
    distribution, snapshots, summary = trio.run(generator.generate)

    # written only after the whole run succeeded
    path = os.path.join(config.output_dir, DEFAULT_DISTRIBUTION_FILE)
    write_distribution(distribution, path)
    write_ptoken_snapshots(snapshots, config.programs, config.output_dir)
    if csv_path:
        export_claims_csv(distribution, csv_path, config.scale)

    summary.log_report()
    click.echo(format_report(distribution, scale=config.scale))


# ============================================================================
# TOP-UP
# ============================================================================

@cli.command("top-up")
@click.argument("distribution_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--points-id", required=True, help="pointsId whose redemption rights grow")
@click.option("--amount", required=True, type=int, help="Extra reward units (base units)")
@click.option("--output", type=click.Path(dir_okay=False), help="Output file (default: overwrite input)")
@_handle_errors
def top_up(distribution_file, points_id, amount, output):
    """Proportionally add rewards to one pointsId and regenerate all proofs."""
    distribution = read_distribution(distribution_file)
    failures = verify_distribution(distribution)
    if failures:
        raise click.ClickException(f"Input distribution does not verify ({len(failures)} failure(s))")

    updated = top_up_distribution(distribution, points_id, amount)
    write_distribution(updated, output or distribution_file)
    click.echo(f"Old root: {distribution.root}")
    click.echo(f"New root: {updated.root}")


# ============================================================================
# VERIFY
# ============================================================================

@cli.command()
@click.argument("distribution_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--points-id", help="Also print the released total for this pointsId")
@click.option("--release", help="Release fraction NUM/DEN used to gross the total up")
@_handle_errors
def verify(distribution_file, points_id, release):
    """Check every proof in a distribution file against its root."""
    distribution = read_distribution(distribution_file)
    failures = verify_distribution(distribution)
    for failure in failures:
        click.echo(f"FAIL {failure}", err=True)

    if points_id:
        total = distribution.total_for(points_id)
        click.echo(f"Released total for {normalize_points_id(points_id)}: {total} ({total / WAD:.6f})")
        if release:
            numerator, denominator = _parse_fraction(release)
            full = gross_up_released(total, numerator, denominator)
            click.echo(f"Implied full pool ({numerator}/{denominator}): {full} ({full / WAD:.6f})")

    if failures:
        raise click.ClickException(f"{len(failures)} claim(s) failed verification")
    click.echo(f"All {distribution.leaf_count} claims verify against {distribution.root}")


# ============================================================================
# RATE
# ============================================================================

@cli.command()
@click.option("--total-rewards", required=True, type=int, help="Reward units to distribute")
@click.option("--total-ptokens", required=True, type=int, help="pToken supply")
@_handle_errors
def rate(total_rewards, total_ptokens):
    """Rewards per 1e18 pTokens, rounded down."""
    value = rewards_per_ptoken(total_rewards, total_ptokens)
    click.echo(f"rewards per pToken: {value}")
    click.echo(f"rounded down: {is_rounded_down(value, total_rewards, total_ptokens)}")


# ============================================================================
# CLAIM BATCH
# ============================================================================

@cli.command("claim-batch")
@click.argument("distribution_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--points-id", required=True, help="pointsId to claim pTokens for")
@click.option("--rpc-url", envvar="MAINNET_RPC_URL", required=True)
@click.option("--vault", envvar="POINT_TOKEN_VAULT_ADDRESS", default=RUMPEL_POINT_TOKEN_VAULT, show_default=True)
@click.option("--safe", default=RUMPEL_ADMIN_SAFE, show_default=True, help="Safe the batch is created from")
@click.option("--output-dir", default="batches", show_default=True, type=click.Path(file_okay=False))
@click.option("--chunk-size", default=DEFAULT_LOOKUP_CHUNK_SIZE, show_default=True, type=int)
@_handle_errors
def claim_batch(distribution_file, points_id, rpc_url, vault, safe, output_dir, chunk_size):
    """Safe batch claiming each wallet's outstanding pTokens."""
    distribution = read_distribution(distribution_file)
    points_id = normalize_points_id(points_id)
    chain = JsonRpcChainReader(rpc_url, vault)

    holders = {
        address: points[points_id]
        for address, points in distribution.ptokens.items()
        if points_id in points
    }

    async def outstanding(address: str) -> Optional[PTokenClaim]:
        entry = holders[address]
        try:
            claimed = await chain.get_claimed_ptokens(address, points_id)
        except RpcError as e:
            logger.warning(f"Skipping {address}: {e}")
            return None
        return PTokenClaim(
            account=address,
            points_id=points_id,
            total_claimable=entry.amount,
            amount_to_claim=unclaimed_amount(entry.amount, claimed),
            proof=entry.proof,
        )

    results = trio.run(run_chunked, sorted(holders), outstanding, chunk_size)
    claims = [results[address] for address in sorted(results) if results[address] is not None]
    transactions = build_ptoken_claim_transactions(claims, vault)
    if not transactions:
        click.echo("Nothing to claim")
        return

    emitter = SafeBatchFileEmitter(safe, output_dir)
    path = emitter.emit(transactions, f"claim-ptokens-{points_id[:10]}")
    click.echo(f"{len(transactions)} claim(s) written to {path}")


def main():
    cli()


if __name__ == "__main__":
    main()

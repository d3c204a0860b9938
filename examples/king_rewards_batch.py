"""
rumpeldrop/examples/king_rewards_batch.py

Build a Safe batch that claims KING rewards for Rumpel wallets and splits
them between the point token vault and each wallet's owner.

The rewards file maps wallet -> {"Root", "Proofs", "HistoricalRewards":
[{"Amount", "AwardDate", "Root"}, ...]}, newest history entry first. The
newest cumulative amount is the one claimed against Root.

Usage:
    MAINNET_RPC_URL=... python examples/king_rewards_batch.py \
        KingRewards.json <distributor> <king token> [king price]
"""

import json
import logging
import sys

import trio

from rumpeldrop.blockchain.batch import SafeBatchFileEmitter, build_yield_split_transactions
from rumpeldrop.blockchain.rpc import JsonRpcChainReader
from rumpeldrop.config import RunConfig
from rumpeldrop.errors import ConfigurationError
from rumpeldrop.protocol.entitlements import ClaimAddressResolver, split_yield_adjusted_claim
from rumpeldrop.summary import RunSummary

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [KING] %(levelname)s: %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_KING_PRICE = 800


async def build_batch(rewards_path: str, distributor: str, token: str, price: int) -> str:
    config = RunConfig.from_env()
    if not config.rpc_url:
        raise ConfigurationError("MAINNET_RPC_URL is required")
    chain = JsonRpcChainReader(config.rpc_url, config.point_token_vault)
    summary = RunSummary()
    resolver = ClaimAddressResolver(chain, summary=summary)

    with open(rewards_path) as f:
        rewards = json.load(f)

    transactions = []
    for wallet, entry in sorted(rewards.items()):
        history = [int(h.get("Amount") or 0) for h in entry.get("HistoricalRewards") or []]
        if len(history) < 2:
            logger.info(f"{wallet}: no reward history, skipped")
            continue

        claimed = await chain.get_cumulative_claimed(distributor, wallet)
        split = split_yield_adjusted_claim(history, claimed, price=price)
        if split.net_to_claim == 0:
            continue

        owner = await resolver.resolve(wallet)
        transactions.extend(build_yield_split_transactions(
            wallet, owner, token, distributor,
            history[0], entry["Root"], entry["Proofs"], split,
        ))
        logger.info(
            f"{wallet}: claim {split.net_to_claim}, vault {split.vault_amount}, "
            f"owner {split.owner_amount}{' (yield adjusted)' if split.adjusted else ''}"
        )

    summary.log_report()
    return SafeBatchFileEmitter(output_dir="batches").emit(transactions, "king-rewards")


if __name__ == "__main__":
    if len(sys.argv) not in (4, 5):
        print(__doc__)
        sys.exit(1)
    price = int(sys.argv[4]) if len(sys.argv) == 5 else DEFAULT_KING_PRICE
    path = trio.run(build_batch, sys.argv[1], sys.argv[2], sys.argv[3], price)
    logger.info(f"Batch written to {path}")

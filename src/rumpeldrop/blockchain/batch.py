"""
rumpeldrop/blockchain/batch.py

Batch emitter: turn claims and transfers into a multisig transaction batch.

The admin Safe executes calls on behalf of Rumpel wallets through the
Rumpel module:

    exec((address safe, address to, bytes data, uint8 operation)[] calls)

Batches are written in the Safe Transaction Builder JSON format for
manual review and signing. Nothing here signs or submits.

Architecture:
    BatchEmitter (abstract)
    ├── SafeBatchFileEmitter (Safe Transaction Builder JSON file)
    └── MemoryBatchEmitter (collects batches, for dry runs and tests)
"""

import json
import os
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from eth_abi import encode
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from ..config import (
    DEFAULT_OUTPUT_DIR,
    RUMPEL_ADMIN_SAFE,
    RUMPEL_MODULE,
    RUMPEL_POINT_TOKEN_VAULT,
)
from ..protocol.entitlements import YieldSplit
from ..protocol.points import points_id_to_bytes

logger = logging.getLogger("rumpeldrop.blockchain.batch")


# ============================================================================
# CONSTANTS
# ============================================================================

MODULE_EXEC_SIGNATURE = "exec((address,address,bytes,uint8)[])"
ERC20_TRANSFER_SIGNATURE = "transfer(address,uint256)"
CUMULATIVE_CLAIM_SIGNATURE = "claim(address,uint256,bytes32,bytes32[])"
CLAIM_PTOKENS_SIGNATURE = "claimPTokens((bytes32,uint256,uint256,bytes32[]),address,address)"

OPERATION_CALL = 0
OPERATION_DELEGATECALL = 1

TX_BUILDER_VERSION = "1.16.5"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class BatchTransaction:
    """One (to, value, data) entry of a batch."""
    to: str
    value: str
    data: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ModuleCall:
    """A call executed from a Rumpel wallet through the module."""
    safe: str
    to: str
    data: str
    operation: int = OPERATION_CALL


@dataclass
class PTokenClaim:
    """A pToken claim for one wallet, backed by a points leaf proof."""
    account: str
    points_id: str
    total_claimable: int
    amount_to_claim: int
    proof: List[str]
    receiver: Optional[str] = None


# ============================================================================
# CALL ENCODING
# ============================================================================

def _calldata(signature: str, types: List[str], args: List[Any]) -> str:
    return encode_hex(function_signature_to_4byte_selector(signature) + encode(types, args))


def encode_module_exec(calls: Iterable[ModuleCall]) -> str:
    """Calldata for RumpelModule.exec."""
    encoded_calls: List[Tuple[str, str, bytes, int]] = [
        (
            to_checksum_address(call.safe),
            to_checksum_address(call.to),
            decode_hex(call.data),
            call.operation,
        )
        for call in calls
    ]
    return _calldata(MODULE_EXEC_SIGNATURE, ["(address,address,bytes,uint8)[]"], [encoded_calls])


def encode_erc20_transfer(to: str, amount: int) -> str:
    return _calldata(ERC20_TRANSFER_SIGNATURE, ["address", "uint256"], [to_checksum_address(to), amount])


def encode_cumulative_claim(
    account: str,
    cumulative_amount: int,
    expected_root: str,
    proof: List[str],
) -> str:
    """Calldata for a cumulative Merkle distributor claim."""
    return _calldata(
        CUMULATIVE_CLAIM_SIGNATURE,
        ["address", "uint256", "bytes32", "bytes32[]"],
        [
            to_checksum_address(account),
            cumulative_amount,
            decode_hex(expected_root),
            [decode_hex(p) for p in proof],
        ],
    )


def encode_claim_ptokens(claim: PTokenClaim) -> str:
    """Calldata for PointTokenVault.claimPTokens."""
    account = to_checksum_address(claim.account)
    receiver = to_checksum_address(claim.receiver or claim.account)
    return _calldata(
        CLAIM_PTOKENS_SIGNATURE,
        ["(bytes32,uint256,uint256,bytes32[])", "address", "address"],
        [
            (
                points_id_to_bytes(claim.points_id),
                claim.total_claimable,
                claim.amount_to_claim,
                [decode_hex(p) for p in claim.proof],
            ),
            account,
            receiver,
        ],
    )


def module_transfer(
    wallet: str,
    token: str,
    to: str,
    amount: int,
    module: str = RUMPEL_MODULE,
) -> BatchTransaction:
    """ERC-20 transfer out of a Rumpel wallet, executed through the module."""
    call = ModuleCall(safe=wallet, to=token, data=encode_erc20_transfer(to, amount))
    return BatchTransaction(
        to=to_checksum_address(module),
        value="0",
        data=encode_module_exec([call]),
    )


# ============================================================================
# BATCH BUILDERS
# ============================================================================

def build_yield_split_transactions(
    wallet: str,
    owner: str,
    token: str,
    claim_contract: str,
    cumulative_amount: int,
    expected_root: str,
    proof: List[str],
    split: YieldSplit,
    vault: str = RUMPEL_POINT_TOKEN_VAULT,
    module: str = RUMPEL_MODULE,
) -> List[BatchTransaction]:
    """
    Claim a wallet's cumulative rewards, then route them.

    The yield-adjusted reward goes to the point token vault; anything
    above it is returned to the wallet owner, or left in the wallet when
    the owner is the wallet itself. Nothing is emitted when the wallet has
    nothing left to claim.
    """
    if split.net_to_claim == 0:
        return []

    transactions = [BatchTransaction(
        to=to_checksum_address(claim_contract),
        value="0",
        data=encode_cumulative_claim(wallet, cumulative_amount, expected_root, proof),
    )]
    if split.vault_amount > 0:
        transactions.append(module_transfer(wallet, token, vault, split.vault_amount, module))
    if split.owner_amount > 0:
        if to_checksum_address(owner) == to_checksum_address(wallet):
            logger.warning(f"{wallet}: owner unresolved, {split.owner_amount} stays in the wallet")
        else:
            transactions.append(module_transfer(wallet, token, owner, split.owner_amount, module))
    return transactions


def build_ptoken_claim_transactions(
    claims: Iterable[PTokenClaim],
    vault: str = RUMPEL_POINT_TOKEN_VAULT,
) -> List[BatchTransaction]:
    """claimPTokens calls for every claim with something left to claim."""
    vault = to_checksum_address(vault)
    transactions = []
    for claim in claims:
        if claim.amount_to_claim <= 0:
            continue
        transactions.append(BatchTransaction(to=vault, value="0", data=encode_claim_ptokens(claim)))
    return transactions


# ============================================================================
# EMITTERS
# ============================================================================

class BatchEmitter(ABC):
    """Consumes a list of transactions and produces an executable batch."""

    @abstractmethod
    def emit(self, transactions: List[BatchTransaction], name: str) -> str:
        """
        Emit a batch.

        Args:
            transactions: Ordered batch entries
            name: Batch name (used for file names)

        Returns:
            Location or identifier of the emitted batch
        """
        pass


def safe_batch_payload(
    safe_address: str,
    transactions: List[BatchTransaction],
    chain_id: int = 1,
    name: str = "Transactions Batch",
    created_at: Optional[int] = None,
) -> Dict[str, Any]:
    """Safe Transaction Builder JSON document."""
    return {
        "version": "1.0",
        "chainId": str(chain_id),
        "createdAt": created_at if created_at is not None else int(time.time() * 1000),
        "meta": {
            "name": name,
            "description": "",
            "txBuilderVersion": TX_BUILDER_VERSION,
            "createdFromSafeAddress": to_checksum_address(safe_address),
            "createdFromOwnerAddress": "",
        },
        "transactions": [
            {
                "to": tx.to,
                "value": tx.value,
                "data": tx.data,
                "contractMethod": None,
                "contractInputsValues": None,
            }
            for tx in transactions
        ],
    }


def sanitize_batch_name(name: str) -> str:
    return name.replace(":", "-").replace(".", "-")


class SafeBatchFileEmitter(BatchEmitter):
    """Writes Safe Transaction Builder JSON files."""

    def __init__(
        self,
        safe_address: str = RUMPEL_ADMIN_SAFE,
        output_dir: str = DEFAULT_OUTPUT_DIR,
        chain_id: int = 1,
    ):
        self.output_dir = output_dir
        self.safe_address = to_checksum_address(safe_address)
        self.chain_id = chain_id

    def emit(self, transactions: List[BatchTransaction], name: str) -> str:
        payload = safe_batch_payload(self.safe_address, transactions, self.chain_id, name)
        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, f"{sanitize_batch_name(name)}.json")
        with open(path, "w") as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Safe batch with {len(transactions)} transaction(s) written to {path}")
        return path


class MemoryBatchEmitter(BatchEmitter):
    """Keeps emitted batches in memory."""

    def __init__(self):
        self.batches: Dict[str, List[BatchTransaction]] = {}

    def emit(self, transactions: List[BatchTransaction], name: str) -> str:
        self.batches[name] = list(transactions)
        logger.info(f"DRY RUN: batch {name} with {len(transactions)} transaction(s)")
        return name

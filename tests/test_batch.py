"""
rumpeldrop/tests/test_batch.py

Unit tests for multisig batch encoding and emission.
"""

import json

import pytest
from eth_abi import decode
from eth_utils import decode_hex, function_signature_to_4byte_selector

from rumpeldrop.blockchain.batch import (
    CLAIM_PTOKENS_SIGNATURE,
    CUMULATIVE_CLAIM_SIGNATURE,
    MODULE_EXEC_SIGNATURE,
    MemoryBatchEmitter,
    ModuleCall,
    PTokenClaim,
    SafeBatchFileEmitter,
    build_ptoken_claim_transactions,
    build_yield_split_transactions,
    encode_claim_ptokens,
    encode_cumulative_claim,
    encode_erc20_transfer,
    encode_module_exec,
    safe_batch_payload,
)
from rumpeldrop.config import RUMPEL_MODULE, RUMPEL_POINT_TOKEN_VAULT
from rumpeldrop.protocol.entitlements import split_yield_adjusted_claim

from conftest import ALICE, BOB, POINTS_ID, PTOKEN, VAULT, make_address

ROOT = "0x" + "ab" * 32
PROOF = ["0x" + "01" * 32, "0x" + "02" * 32]


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def args_of(data: str, types):
    raw = decode_hex(data)
    return decode(types, raw[4:])


# ============================================================================
# Call encoding
# ============================================================================

class TestEncoding:
    """Tests for calldata encoders."""

    def test_erc20_transfer(self):
        data = encode_erc20_transfer(BOB, 500)

        assert decode_hex(data)[:4] == bytes.fromhex("a9059cbb")
        to, amount = args_of(data, ["address", "uint256"])
        assert to.lower() == BOB.lower()
        assert amount == 500

    def test_module_exec(self):
        inner = encode_erc20_transfer(BOB, 1)
        data = encode_module_exec([ModuleCall(safe=ALICE, to=PTOKEN, data=inner)])

        assert decode_hex(data)[:4] == selector(MODULE_EXEC_SIGNATURE)
        (calls,) = args_of(data, ["(address,address,bytes,uint8)[]"])
        safe, to, call_data, operation = calls[0]
        assert safe.lower() == ALICE.lower()
        assert to.lower() == PTOKEN.lower()
        assert call_data == decode_hex(inner)
        assert operation == 0

    def test_cumulative_claim(self):
        data = encode_cumulative_claim(ALICE, 10 ** 21, ROOT, PROOF)

        assert decode_hex(data)[:4] == selector(CUMULATIVE_CLAIM_SIGNATURE)
        account, amount, root, proof = args_of(data, ["address", "uint256", "bytes32", "bytes32[]"])
        assert amount == 10 ** 21
        assert root == decode_hex(ROOT)
        assert [p.hex() for p in proof] == [p[2:] for p in PROOF]

    def test_claim_ptokens(self):
        claim = PTokenClaim(ALICE, POINTS_ID, total_claimable=100, amount_to_claim=40, proof=PROOF)

        data = encode_claim_ptokens(claim)

        assert decode_hex(data)[:4] == selector(CLAIM_PTOKENS_SIGNATURE)
        (points_id, total, amount, proof), account, receiver = args_of(
            data, ["(bytes32,uint256,uint256,bytes32[])", "address", "address"]
        )
        assert points_id == decode_hex(POINTS_ID)
        assert (total, amount) == (100, 40)
        assert account == receiver


# ============================================================================
# Batch builders
# ============================================================================

class TestBuildTransactions:
    """Tests for batch builders."""

    def test_yield_split_claim_then_transfers(self):
        split = split_yield_adjusted_claim([1100, 1000, 900, 899], previously_claimed=900)
        distributor = make_address(0xD157)

        txs = build_yield_split_transactions(
            ALICE, BOB, PTOKEN, distributor, 1100, ROOT, PROOF, split, vault=VAULT,
        )

        assert len(txs) == 3
        assert txs[0].to.lower() == distributor.lower()
        assert decode_hex(txs[0].data)[:4] == selector(CUMULATIVE_CLAIM_SIGNATURE)
        assert all(tx.to.lower() == RUMPEL_MODULE.lower() for tx in txs[1:])

        (calls,) = args_of(txs[1].data, ["(address,address,bytes,uint8)[]"])
        to, amount = decode(["address", "uint256"], calls[0][2][4:])
        assert to.lower() == VAULT.lower()
        assert amount == 100

    def test_yield_split_skips_zero_owner_transfer(self):
        split = split_yield_adjusted_claim([1000, 900, 500], previously_claimed=800)

        txs = build_yield_split_transactions(ALICE, BOB, PTOKEN, VAULT, 1000, ROOT, PROOF, split)

        assert len(txs) == 2

    def test_yield_split_unresolved_owner_keeps_yield(self, caplog):
        split = split_yield_adjusted_claim([1100, 1000, 900, 899], previously_claimed=900)

        txs = build_yield_split_transactions(ALICE, ALICE, PTOKEN, VAULT, 1100, ROOT, PROOF, split, vault=VAULT)

        assert len(txs) == 2
        (calls,) = args_of(txs[1].data, ["(address,address,bytes,uint8)[]"])
        to, _ = decode(["address", "uint256"], calls[0][2][4:])
        assert to.lower() == VAULT.lower()
        assert "stays in the wallet" in caplog.text

    def test_yield_split_nothing_to_claim(self):
        split = split_yield_adjusted_claim([1000, 900], previously_claimed=1000)

        assert build_yield_split_transactions(ALICE, BOB, PTOKEN, VAULT, 1000, ROOT, PROOF, split) == []

    def test_ptoken_claims_skip_claimed(self):
        claims = [
            PTokenClaim(ALICE, POINTS_ID, 100, 40, PROOF),
            PTokenClaim(BOB, POINTS_ID, 100, 0, PROOF),
        ]

        txs = build_ptoken_claim_transactions(claims)

        assert len(txs) == 1
        assert txs[0].to.lower() == RUMPEL_POINT_TOKEN_VAULT.lower()


# ============================================================================
# Emitters
# ============================================================================

class TestEmitters:
    """Tests for batch emitters."""

    def test_safe_payload(self):
        txs = build_ptoken_claim_transactions([PTokenClaim(ALICE, POINTS_ID, 100, 40, PROOF)])

        payload = safe_batch_payload(ALICE.lower(), txs, chain_id=1, created_at=0)

        assert payload["chainId"] == "1"
        assert payload["meta"]["createdFromSafeAddress"] == ALICE
        assert payload["transactions"][0]["value"] == "0"
        assert payload["transactions"][0]["data"] == txs[0].data

    def test_file_emitter(self, tmp_path):
        txs = build_ptoken_claim_transactions([PTokenClaim(ALICE, POINTS_ID, 100, 40, PROOF)])
        emitter = SafeBatchFileEmitter(ALICE, str(tmp_path / "batches"))

        path = emitter.emit(txs, "claims:2024.12")

        assert path.endswith("claims-2024-12.json")
        with open(path) as f:
            payload = json.load(f)
        assert len(payload["transactions"]) == 1

    def test_memory_emitter(self):
        emitter = MemoryBatchEmitter()

        assert emitter.emit([], "empty") == "empty"
        assert emitter.batches == {"empty": []}

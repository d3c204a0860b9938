"""
rumpeldrop/tests/test_distribution.py

Tests for the distribution pipeline:
- build / top-up / verify
- artifact round trip through JSON
- RedemptionRightsGenerator end to end with scripted collaborators
"""

import json
import os

import pytest

from rumpeldrop.blockchain.merkle import hash_redemption_rights_leaf, MerkleTree
from rumpeldrop.config import WAD, Override, PTokenProgram, RunConfig
from rumpeldrop.distribution import (
    ClaimEntry,
    MerkleDistribution,
    PTokenSnapshot,
    RedemptionRightsGenerator,
    build_distribution,
    ptoken_snapshot_filename,
    read_distribution,
    top_up_distribution,
    verify_distribution,
    write_distribution,
    write_ptoken_snapshots,
)
from rumpeldrop.errors import EmptyTreeError, OverrideMismatchError, UpstreamDataError
from rumpeldrop.protocol.points import POINTS_ID_ETHENA_S4
from rumpeldrop.store.snapshot_store import InMemorySnapshotStore

from conftest import (
    ALICE,
    BOB,
    CAROL,
    POINTS_ID,
    POINTS_ID_2,
    POOL,
    PTOKEN,
    PTOKEN_2,
    ZERO,
    FakeChain,
    make_address,
    mint,
    transfer,
)


def make_config(programs, **kwargs) -> RunConfig:
    return RunConfig(programs=programs, **kwargs)


def make_program(ptoken=PTOKEN, points_id=POINTS_ID, rate=WAD // 10, **kwargs) -> PTokenProgram:
    return PTokenProgram(ptoken_address=ptoken, points_id=points_id, rewards_per_ptoken=rate, **kwargs)


PREVIOUS_ROOT = "0x" + "cd" * 32


def empty_store(distribution_id="1700000000"):
    return InMemorySnapshotStore(
        executed=[distribution_id],
        distributions={distribution_id: {"root": PREVIOUS_ROOT}},
        wallets={distribution_id: {}},
    )


# ============================================================================
# Build / verify
# ============================================================================

class TestBuildDistribution:
    """Tests for build_distribution."""

    def test_every_claim_verifies(self):
        distribution = build_distribution(
            {ALICE: {POINTS_ID: 50}, BOB: {POINTS_ID: 100, POINTS_ID_2: 3}},
            {CAROL: {POINTS_ID: 7}},
        )

        assert distribution.leaf_count == 4
        assert verify_distribution(distribution) == []

    def test_zero_amounts_excluded(self):
        distribution = build_distribution({ALICE: {POINTS_ID: 50}, BOB: {POINTS_ID: 0}})

        assert BOB not in distribution.redemption_rights
        assert distribution.leaf_count == 1

    def test_nothing_to_commit(self):
        with pytest.raises(EmptyTreeError):
            build_distribution({ALICE: {POINTS_ID: 0}})

    def test_idempotent(self):
        rights = {ALICE: {POINTS_ID: 50}, BOB: {POINTS_ID: 100}, CAROL: {POINTS_ID: 1}}

        first = build_distribution(rights).to_dict()
        second = build_distribution(dict(reversed(list(rights.items())))).to_dict()

        assert first == second

    def test_tampered_amount_detected(self):
        distribution = build_distribution({ALICE: {POINTS_ID: 50}, BOB: {POINTS_ID: 100}})
        distribution.redemption_rights[ALICE][POINTS_ID].amount = 51

        failures = verify_distribution(distribution)

        assert len(failures) == 1
        assert ALICE in failures[0]

    def test_amounts_are_decimal_strings(self):
        distribution = build_distribution({ALICE: {POINTS_ID: 10 ** 30}})

        data = distribution.to_dict()

        assert data["redemptionRights"][ALICE][POINTS_ID]["amount"] == str(10 ** 30)
        assert data["pTokens"] == {}

    def test_json_round_trip(self, tmp_path):
        distribution = build_distribution({ALICE: {POINTS_ID: 50}}, {BOB: {POINTS_ID: 9}})
        path = str(tmp_path / "out" / "merged-distribution.json")

        write_distribution(distribution, path)
        loaded = read_distribution(path)

        assert loaded.to_dict() == distribution.to_dict()
        assert verify_distribution(loaded) == []

    def test_read_without_root(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"redemptionRights": {}}))

        with pytest.raises(UpstreamDataError):
            read_distribution(str(path))

    def test_claim_entry_from_dict(self):
        entry = ClaimEntry.from_dict({"amount": "12", "proof": ["0x" + "00" * 32]})

        assert entry.amount == 12
        assert len(entry.proof) == 1


class TestTopUpDistribution:
    """Tests for top_up_distribution."""

    def test_proportional_top_up_regenerates_proofs(self):
        original = build_distribution(
            {ALICE: {POINTS_ID: 100}, BOB: {POINTS_ID: 300, POINTS_ID_2: 5}},
            {CAROL: {POINTS_ID: 7}},
        )

        updated = top_up_distribution(original, POINTS_ID, 40)

        assert updated.rights_amounts() == {
            ALICE: {POINTS_ID: 110},
            BOB: {POINTS_ID: 330, POINTS_ID_2: 5},
        }
        assert updated.ptoken_amounts() == {CAROL: {POINTS_ID: 7}}
        assert updated.root != original.root
        assert verify_distribution(updated) == []

    def test_unknown_points_id(self):
        original = build_distribution({ALICE: {POINTS_ID: 100}})

        with pytest.raises(UpstreamDataError):
            top_up_distribution(original, POINTS_ID_2, 40)


class TestPTokenSnapshotFiles:
    """Tests for pToken snapshot output."""

    def test_filename_from_symbol(self):
        assert ptoken_snapshot_filename(POINTS_ID_ETHENA_S4, PTOKEN) == "ptoken-snapshot-kpsats-4.json"

    def test_filename_fallback(self):
        assert ptoken_snapshot_filename(POINTS_ID, PTOKEN) == f"ptoken-snapshot-{PTOKEN.lower()}.json"

    def test_snapshot_name_clash_falls_back_to_address(self, tmp_path):
        snapshots = {
            PTOKEN: PTokenSnapshot(PTOKEN, 1, {ALICE: 1}),
            PTOKEN_2: PTokenSnapshot(PTOKEN_2, 1, {BOB: 2}),
        }
        programs = [
            make_program(PTOKEN, POINTS_ID_ETHENA_S4),
            make_program(PTOKEN_2, POINTS_ID_ETHENA_S4),
        ]

        paths = write_ptoken_snapshots(snapshots, programs, str(tmp_path))

        assert len(set(paths)) == 2
        assert os.path.basename(paths[0]) == "ptoken-snapshot-kpsats-4.json"
        assert os.path.basename(paths[1]) == f"ptoken-snapshot-{PTOKEN_2.lower()}.json"
        with open(paths[1]) as f:
            assert json.load(f)["balances"] == {BOB: "2"}


# ============================================================================
# Generator
# ============================================================================

class TestRedemptionRightsGenerator:
    """End-to-end runs with scripted chain and snapshot store."""

    @pytest.mark.trio
    async def test_three_holder_scenario(self):
        x, y, z = make_address(0x1), make_address(0x2), make_address(0x3)
        events = [mint(x, 1000), mint(y, 2000), mint(z, 500), transfer(z, ZERO, 500)]
        chain = FakeChain(events={PTOKEN: events})
        config = make_config([make_program(rate=10 ** 17)])

        generator = RedemptionRightsGenerator(config, chain, empty_store())
        distribution, snapshots, summary = await generator.generate()

        assert distribution.rights_amounts() == {x: {POINTS_ID: 100}, y: {POINTS_ID: 200}}
        assert distribution.leaf_count == 2
        leaf_x = hash_redemption_rights_leaf(x, POINTS_ID, 100)
        proof_x = distribution.redemption_rights[x][POINTS_ID].proof
        assert len(proof_x) == 1
        assert MerkleTree.verify_proof(leaf_x, proof_x, distribution.root)
        assert snapshots[PTOKEN].balances == {x: 1000, y: 2000}
        assert summary.is_clean

        # reproducible across runs
        rerun, _, _ = await RedemptionRightsGenerator(
            make_config([make_program(rate=10 ** 17)]), FakeChain(events={PTOKEN: events}), empty_store()
        ).generate()
        assert rerun.to_dict() == distribution.to_dict()

    @pytest.mark.trio
    async def test_release_fraction_and_overrides(self):
        events = [mint(ALICE, 35 * WAD), mint(POOL, 100)]
        chain = FakeChain(events={PTOKEN: events})
        config = make_config(
            [make_program(rate=WAD, release_numerator=25, release_denominator=35)],
            overrides=[Override.from_dict(POOL, {BOB: 60, CAROL: 40})],
        )

        distribution, _, summary = await RedemptionRightsGenerator(config, chain, empty_store()).generate()

        rights = distribution.rights_amounts()
        assert rights[ALICE][POINTS_ID] == 25 * WAD
        assert POOL not in rights
        # 60 * 25 / 35 = 42.8, 40 * 25 / 35 = 28.5
        assert rights[BOB][POINTS_ID] == 42
        assert rights[CAROL][POINTS_ID] == 28
        assert summary.warnings == []

    @pytest.mark.trio
    async def test_strict_override_mismatch_aborts(self):
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 10), mint(POOL, 100)]})
        config = make_config(
            [make_program(rate=WAD)],
            overrides=[Override.from_dict(POOL, {BOB: 90})],
            strict_overrides=True,
        )

        with pytest.raises(OverrideMismatchError):
            await RedemptionRightsGenerator(config, chain, empty_store()).generate()

    @pytest.mark.trio
    async def test_unclaimed_ptokens_carried_over(self):
        store = InMemorySnapshotStore(
            executed=["1", "2"],
            wallets={"2": {ALICE: {POINTS_ID: "500"}, BOB: {POINTS_ID: "300"}}},
        )
        chain = FakeChain(
            events={PTOKEN: [mint(ALICE, 1000)]},
            claimed={(ALICE, POINTS_ID): 200, (BOB, POINTS_ID): 300},
        )
        config = make_config([make_program(rate=WAD)])

        distribution, snapshots, summary = await RedemptionRightsGenerator(config, chain, store).generate()

        assert snapshots[PTOKEN].balances == {ALICE: 1300}
        assert distribution.ptoken_amounts() == {ALICE: {POINTS_ID: 500}, BOB: {POINTS_ID: 300}}
        assert verify_distribution(distribution) == []
        assert summary.totals[f"{POINTS_ID} unclaimed pTokens"] == "300"

    @pytest.mark.trio
    async def test_failed_claimed_lookup_counts_as_unclaimed(self):
        store = InMemorySnapshotStore(executed=["1"], wallets={"1": {BOB: {POINTS_ID: "300"}}})
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 1000)]}, failing={BOB})
        config = make_config([make_program(rate=WAD)])

        _, snapshots, summary = await RedemptionRightsGenerator(config, chain, store).generate()

        assert snapshots[PTOKEN].balances == {ALICE: 1000, BOB: 300}
        assert summary.failures_by_kind() == {"claimed_ptokens": 1}

    @pytest.mark.trio
    async def test_requested_distribution_not_executed(self):
        store = InMemorySnapshotStore(
            executed=["1", "2"],
            wallets={"1": {BOB: {POINTS_ID: "1"}}, "2": {CAROL: {POINTS_ID: "2"}}},
        )
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 10)]})
        config = make_config([make_program(rate=WAD)], distribution_id="99")

        distribution, _, _ = await RedemptionRightsGenerator(config, chain, store).generate()

        assert distribution.ptoken_amounts() == {CAROL: {POINTS_ID: 2}}

    @pytest.mark.trio
    async def test_two_programs_share_one_tree(self):
        chain = FakeChain(events={
            PTOKEN: [mint(ALICE, 10 * WAD)],
            PTOKEN_2: [mint(ALICE, 4 * WAD), mint(BOB, WAD)],
        })
        config = make_config([
            make_program(PTOKEN, POINTS_ID, rate=WAD),
            make_program(PTOKEN_2, POINTS_ID_2, rate=2 * WAD),
        ])

        distribution, snapshots, _ = await RedemptionRightsGenerator(config, chain, empty_store()).generate()

        assert distribution.rights_amounts() == {
            ALICE: {POINTS_ID: 10 * WAD, POINTS_ID_2: 8 * WAD},
            BOB: {POINTS_ID_2: 2 * WAD},
        }
        assert set(snapshots) == {PTOKEN, PTOKEN_2}
        assert verify_distribution(distribution) == []

    @pytest.mark.trio
    async def test_merge_by_owner(self):
        wallet_1, wallet_2 = make_address(0x101), make_address(0x102)
        chain = FakeChain(
            events={PTOKEN: [mint(wallet_1, 10), mint(wallet_2, 5)]},
            owners={wallet_1: [ALICE], wallet_2: [ALICE]},
        )
        config = make_config([make_program(rate=WAD)], merge_by_owner=True)

        distribution, _, _ = await RedemptionRightsGenerator(config, chain, empty_store()).generate()

        assert distribution.rights_amounts() == {ALICE: {POINTS_ID: 15}}

    @pytest.mark.trio
    async def test_malformed_event_aborts(self):
        chain = FakeChain(events={PTOKEN: [{"from": ZERO, "to": ALICE}]})
        config = make_config([make_program(rate=WAD)])

        with pytest.raises(UpstreamDataError):
            await RedemptionRightsGenerator(config, chain, empty_store()).generate()

    @pytest.mark.trio
    async def test_snapshot_files_written(self, tmp_path):
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 10)]})
        program = make_program(rate=WAD)
        config = make_config([program])

        _, snapshots, _ = await RedemptionRightsGenerator(config, chain, empty_store()).generate()
        paths = write_ptoken_snapshots(snapshots, config.programs, str(tmp_path))

        with open(paths[0]) as f:
            data = json.load(f)
        assert data == {"address": PTOKEN, "blockNumber": "1000", "balances": {ALICE: "10"}}

    @pytest.mark.trio
    async def test_previous_root_recorded(self):
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 10)]})
        config = make_config([make_program(rate=WAD)])

        _, _, summary = await RedemptionRightsGenerator(config, chain, empty_store()).generate()

        assert summary.totals["previous_root"] == PREVIOUS_ROOT
        assert summary.totals["distribution_id"] == "1700000000"

    @pytest.mark.trio
    async def test_missing_distribution_metadata_warns(self):
        store = InMemorySnapshotStore(executed=["1"], wallets={"1": {}})
        chain = FakeChain(events={PTOKEN: [mint(ALICE, 10)]})
        config = make_config([make_program(rate=WAD)])

        distribution, _, summary = await RedemptionRightsGenerator(config, chain, store).generate()

        assert distribution.rights_amounts() == {ALICE: {POINTS_ID: 10}}
        assert "previous_root" not in summary.totals
        assert any("No metadata for distribution 1" in w for w in summary.warnings)

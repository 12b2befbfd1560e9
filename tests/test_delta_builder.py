"""Tests for DeltaSnapshotBuilder."""

import pytest

from govsync.common.models import ActorRole, BuildMode, Outcome

from tests.fakes import P1, P2, SUBMITTED_AT, koios_row, vote_row

P3 = "gov_action1newproposal000000000000000000000000000000"


def comparable(snapshot) -> dict:
    return snapshot.model_dump(mode="json", exclude={"generated_at", "build_mode"})


def votes_on(snapshot, proposal_id):
    return [
        vote
        for role in ActorRole
        for actor in snapshot.actors(role)
        for vote in actor.votes
        if vote.proposal_id == proposal_id
    ]


class TestDeltaWatermark:
    """Tests for the vote paging watermark."""

    @pytest.mark.asyncio
    async def test_no_changes_reads_one_page(self, full_builder, delta_builder, world) -> None:
        """Test that an open proposal without new votes costs one page request."""
        base = await full_builder.build()
        before = dict(world.blockfrost.vote_page_requests)

        snapshot = await delta_builder.build(base)

        assert world.blockfrost.vote_page_requests[P1] - before[P1] == 1
        assert world.blockfrost.vote_page_requests[P2] == before[P2]
        assert snapshot.build_mode == BuildMode.DELTA
        assert comparable(snapshot) == comparable(base)

    @pytest.mark.asyncio
    async def test_new_vote_on_first_page(self, full_builder, delta_builder, world) -> None:
        """Test that a new vote is merged once and paging stops at the first stale page."""
        base = await full_builder.build()
        world.blockfrost.votes[P1].insert(0, vote_row("drep3", "drep", "yes", "v7"))
        world.blockfrost.txs["v7"] = {"hash": "v7", "block_time": SUBMITTED_AT + 20_000}
        before = world.blockfrost.vote_page_requests[P1]

        snapshot = await delta_builder.build(base)

        assert world.blockfrost.vote_page_requests[P1] - before == 2
        assert snapshot.vote_count() == base.vote_count() + 1
        drep3 = next(d for d in snapshot.dreps if d.id == "drep3")
        assert [(v.proposal_id, v.vote_tx_hash) for v in drep3.votes] == [(P1, "v7")]
        assert drep3.votes[0].voted_at_unix == SUBMITTED_AT + 20_000
        hashes = [v.vote_tx_hash for v in votes_on(snapshot, P1)]
        assert len(hashes) == len(set(hashes)) == 5
        assert snapshot.proposal_info[P1].vote_stats["drep"].yes == 2

    @pytest.mark.asyncio
    async def test_revote_replaces_earlier_vote(self, full_builder, delta_builder, world) -> None:
        """Test that a changed vote by a known DRep replaces the old record."""
        base = await full_builder.build()
        world.blockfrost.votes[P1].insert(0, vote_row("drep2", "drep", "yes", "v8"))
        world.blockfrost.txs["v8"] = {"hash": "v8", "block_time": SUBMITTED_AT + 30_000}

        snapshot = await delta_builder.build(base)

        drep2 = next(d for d in snapshot.dreps if d.id == "drep2")
        assert [(v.vote_tx_hash, v.vote.value) for v in drep2.votes] == [("v8", "Yes")]
        assert snapshot.vote_count() == base.vote_count()


class TestDeltaRefresh:
    """Tests for open-proposal refresh and new proposals."""

    @pytest.mark.asyncio
    async def test_outcome_change_propagates(self, full_builder, delta_builder, world) -> None:
        """Test that a proposal turning Yes updates every vote without duplicates."""
        base = await full_builder.build()
        world.blockfrost.details[P1]["ratified_epoch"] = 512

        snapshot = await delta_builder.build(base)

        assert snapshot.proposal_info[P1].outcome == Outcome.YES
        assert snapshot.proposal_info[P1].ratified_epoch == 512
        p1_votes = votes_on(snapshot, P1)
        assert len(p1_votes) == 4
        assert all(vote.outcome == Outcome.YES for vote in p1_votes)
        assert snapshot.vote_count() == base.vote_count()
        drep2 = next(d for d in snapshot.dreps if d.id == "drep2")
        assert drep2.consistency == 0

    @pytest.mark.asyncio
    async def test_detail_refresh_failure_is_tolerated(self, full_builder, delta_builder, world) -> None:
        """Test that a failed detail refresh keeps the known outcome."""
        base = await full_builder.build()
        world.blockfrost.failures.add(("get_proposal", P1))

        snapshot = await delta_builder.build(base)

        assert snapshot.proposal_info[P1].outcome == Outcome.PENDING
        assert snapshot.partial is False

    @pytest.mark.asyncio
    async def test_vote_failure_marks_partial(self, full_builder, delta_builder, world) -> None:
        """Test that a vote page failure in a delta is counted."""
        base = await full_builder.build()
        world.blockfrost.failures.add(("votes", P1))

        snapshot = await delta_builder.build(base)

        assert snapshot.vote_fetch_error_count == 1
        assert snapshot.partial is True
        assert snapshot.vote_count() == base.vote_count()

    @pytest.mark.asyncio
    async def test_base_is_not_mutated(self, full_builder, delta_builder, world) -> None:
        """Test that the delta works on a copy of its base."""
        base = await full_builder.build()
        world.blockfrost.details[P1]["ratified_epoch"] = 512
        world.blockfrost.votes[P1].insert(0, vote_row("drep3", "drep", "yes", "v7"))
        world.blockfrost.txs["v7"] = {"hash": "v7", "block_time": SUBMITTED_AT + 20_000}
        snapshot_before = comparable(base)

        await delta_builder.build(base)

        assert comparable(base) == snapshot_before


class TestDeltaMatchesFull:
    """Tests that a delta lands where a full rebuild would."""

    def add_new_proposal(self, world):
        world.blockfrost.proposals.insert(0, {"id": P3, "tx_hash": "p3tx", "cert_index": 0})
        world.blockfrost.details[P3] = {
            "id": P3,
            "tx_hash": "p3tx",
            "cert_index": 0,
            "governance_type": "info_action",
            "deposit": "100000000000",
            "expiration": 522,
        }
        world.blockfrost.txs["p3tx"] = {"hash": "p3tx", "block": "blk-512", "block_time": SUBMITTED_AT + 900_000}
        world.blockfrost.blocks["blk-512"] = 512
        world.blockfrost.txs["v9"] = {"hash": "v9", "block_time": SUBMITTED_AT + 910_000}
        world.blockfrost.votes[P3] = [vote_row("drep2", "drep", "abstain", "v9")]
        world.koios.vote_list.append(koios_row(P3, "drep2", "DRep", "v9", "https://example.org/why.json"))

    @pytest.mark.asyncio
    async def test_delta_equals_full_after_changes(self, full_builder, delta_builder, world) -> None:
        """Test delta and full agree after a new proposal, a new vote and an outcome change."""
        base = await full_builder.build()
        self.add_new_proposal(world)
        world.blockfrost.votes[P1].insert(0, vote_row("drep3", "drep", "yes", "v7"))
        world.blockfrost.txs["v7"] = {"hash": "v7", "block_time": SUBMITTED_AT + 20_000}
        world.blockfrost.details[P1]["ratified_epoch"] = 512

        delta = await delta_builder.build(base)
        full = await full_builder.build()

        assert P3 in delta.proposal_info
        assert delta.proposal_info[P3].submitted_epoch == 512
        p3_vote = next(v for v in votes_on(delta, P3))
        assert p3_vote.has_rationale is True
        assert comparable(delta) == comparable(full)

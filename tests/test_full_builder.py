"""Tests for FullSnapshotBuilder."""

import pytest

from govsync.common.errors import MissingCredentialError, UpstreamError
from govsync.common.models import ActorRole, BuildMode, Outcome, VoteValue
from govsync.sync.gate import is_complete

from tests.fakes import P1, P2, SUBMITTED_AT


def comparable(snapshot) -> dict:
    return snapshot.model_dump(mode="json", exclude={"generated_at", "build_mode"})


class TestFullBuild:
    """Tests for a full build over the fake providers."""

    @pytest.mark.asyncio
    async def test_builds_complete_snapshot(self, full_builder) -> None:
        """Test proposals, actors and counters of a clean build."""
        snapshot = await full_builder.build()

        assert snapshot.build_mode == BuildMode.FULL
        assert snapshot.latest_epoch == 512
        assert snapshot.proposal_count == 2
        assert snapshot.processed_proposal_count == 2
        assert snapshot.partial is False
        assert snapshot.notice == ""
        assert is_complete(snapshot)

        p1 = snapshot.proposal_info[P1]
        assert p1.action_name == "Fund the thing"
        assert p1.governance_type == "Treasury withdrawals"
        assert p1.outcome == Outcome.PENDING
        assert p1.submitted_epoch == 510
        assert p1.submitted_at_unix == SUBMITTED_AT
        assert p1.deposit_ada == 100_000
        assert p1.threshold_info.drep_required_pct == 67.0
        assert p1.vote_stats["drep"].yes == 1
        assert p1.vote_stats["drep"].no == 1
        assert p1.voting_summary["epoch_no"] == 510
        assert snapshot.proposal_info[P2].outcome == Outcome.YES

    @pytest.mark.asyncio
    async def test_actor_rows(self, full_builder) -> None:
        """Test DRep, committee and pool enrichment."""
        snapshot = await full_builder.build()

        assert [d.id for d in snapshot.dreps] == ["drep1", "drep2", "drep3"]
        drep1 = snapshot.dreps[0]
        assert drep1.name == "Alice"
        assert drep1.voting_power_ada == 5000.0
        assert drep1.status == "active"
        assert [v.proposal_id for v in drep1.votes] == [P2, P1]
        assert drep1.consistency == 100.0
        p1_vote = drep1.votes[1]
        assert p1_vote.has_rationale is True
        assert p1_vote.rationale_url == "ipfs://rationale-v1"
        assert p1_vote.voted_at_unix == SUBMITTED_AT + 3600
        assert p1_vote.response_hours == 1.0
        assert snapshot.dreps[2].votes == []
        assert snapshot.dreps[2].status == "expired"

        member = snapshot.committee_members[0]
        assert member.id == "cc_hot1"
        assert member.status == "active"
        assert member.cold_credential == "cc_cold1"
        assert member.koios_voter_id == "cc_hot1"
        assert {v.proposal_id: v.vote for v in member.votes} == {P1: VoteValue.YES, P2: VoteValue.NO}

        assert [p.id for p in snapshot.spos] == ["pool1", "pool2"]
        assert snapshot.spos[0].name == "ONE"
        assert snapshot.spos[0].voting_power_ada == 2_000_000
        assert snapshot.spos[0].votes[0].has_rationale is False

        assert snapshot.special_dreps["alwaysAbstain"].voting_power_ada == 9000.0
        assert all(d.id != "drep_always_abstain" for d in snapshot.dreps)

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, full_builder, world) -> None:
        """Test that an unchanged upstream yields the same snapshot twice."""
        first = await full_builder.build()
        tx_calls = world.blockfrost.calls["get_tx"]
        second = await full_builder.build()

        assert comparable(first) == comparable(second)
        assert world.blockfrost.calls["get_tx"] - tx_calls == 2

    @pytest.mark.asyncio
    async def test_skipped_proposal_marks_partial(self, full_builder, world) -> None:
        """Test that a failed detail fetch is counted and the build is partial."""
        world.blockfrost.failures.add(("get_proposal", P2))
        snapshot = await full_builder.build()

        assert snapshot.skipped_proposal_count == 1
        assert snapshot.processed_proposal_count == 1
        assert snapshot.partial is True
        assert "1 proposals skipped" in snapshot.notice
        assert P2 not in snapshot.proposal_info
        assert not is_complete(snapshot)

    @pytest.mark.asyncio
    async def test_vote_fetch_error_marks_partial(self, full_builder, world) -> None:
        """Test that a failed vote page is counted and the build is partial."""
        world.blockfrost.failures.add(("votes", P1))
        snapshot = await full_builder.build()

        assert snapshot.vote_fetch_error_count == 1
        assert snapshot.partial is True
        assert P1 in snapshot.proposal_info
        assert snapshot.proposal_info[P1].vote_stats["drep"].total == 0

    @pytest.mark.asyncio
    async def test_scan_limit(self, full_builder, config) -> None:
        """Test that a scan limit leaves the snapshot partial."""
        config.PROPOSAL_SCAN_LIMIT = 1
        snapshot = await full_builder.build()

        assert snapshot.scanned_proposal_count == 1
        assert snapshot.proposal_count == 2
        assert snapshot.partial is True
        assert snapshot.notice.startswith("Partial snapshot: scanned 1 of 2 proposals")

    @pytest.mark.asyncio
    async def test_missing_credentials(self, full_builder, world) -> None:
        """Test that a build without an API key fails before any request."""
        world.blockfrost.api_key = ""
        with pytest.raises(MissingCredentialError):
            await full_builder.build()
        assert world.blockfrost.calls["list_proposals"] == 0

    @pytest.mark.asyncio
    async def test_latest_epoch_failure_aborts(self, full_builder, world) -> None:
        """Test that the build fails when the current epoch is unavailable."""
        world.blockfrost.failures.add(("get_latest_epoch", ""))
        with pytest.raises(UpstreamError):
            await full_builder.build()

    @pytest.mark.asyncio
    async def test_progress_is_reported(self, world, resolver, tx_times, pool_profiles, config) -> None:
        """Test that the progress callback sees every processed proposal."""
        from govsync.sync.full import FullSnapshotBuilder

        progress = []
        builder = FullSnapshotBuilder(
            world.blockfrost, world.koios, world.anchors, resolver, tx_times, pool_profiles, config,
            on_progress=lambda processed, total: progress.append((processed, total)),
        )
        await builder.build()
        assert progress == [(1, 2), (2, 2)]

    @pytest.mark.asyncio
    async def test_votes_outside_roles_are_ignored(self, full_builder, world) -> None:
        """Test that unusable vote rows are skipped."""
        world.blockfrost.votes[P2].append({"tx_hash": "zz", "voter_role": "alien", "voter": "x", "vote": "yes"})
        world.blockfrost.votes[P2].append({"tx_hash": "zy", "voter_role": "drep", "voter": "drep9", "vote": "maybe"})
        snapshot = await full_builder.build()
        assert snapshot.proposal_info[P2].vote_stats[ActorRole.DREP.value].total == 1

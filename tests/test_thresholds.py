"""Tests for ratification threshold resolution."""

from govsync.common.models import ProposalInfo, Snapshot
from govsync.sync.thresholds import (
    CC_THRESHOLD_PCT,
    build_threshold_context,
    infer_parameter_group,
    refresh_all_threshold_info,
    requires_security_group_vote,
    resolve_threshold_info,
    to_percent,
)

PARAMS = {
    "dvt_treasury_withdrawal": 0.67,
    "dvt_hard_fork_initiation": 0.6,
    "pvt_hard_fork_initiation": 0.51,
    "dvt_p_p_network_group": 0.67,
    "dvt_p_p_economic_group": 0.67,
    "pvt_p_p_security_group": 0.51,
    "committee_min_size": "7",
}


def parameter_change(key: str):
    return {"tag": "ParameterChange", "contents": [None, {key: 1}, None]}


class TestThresholdContext:
    """Tests for build_threshold_context."""

    def test_fractions_become_percentages(self) -> None:
        """Test the conversion of parameter fractions."""
        assert to_percent(0.67) == 67.0
        assert to_percent(51) == 51.0
        assert to_percent("x") is None
        assert to_percent(None) is None

    def test_context_shape(self) -> None:
        """Test that DRep, pool and committee entries are filled."""
        context = build_threshold_context(PARAMS)
        assert context["drep"]["treasuryWithdrawal"] == 67.0
        assert context["pool"]["hardForkInitiation"] == 51.0
        assert context["pool"]["securityGroup"] == 51.0
        assert context["committeeMinSize"] == 7

    def test_missing_parameters(self) -> None:
        """Test that no parameters yields empty thresholds."""
        context = build_threshold_context(None)
        assert context["drep"]["treasuryWithdrawal"] is None
        assert context["committeeMinSize"] is None


class TestResolveThresholdInfo:
    """Tests for resolve_threshold_info."""

    def test_treasury_withdrawal(self) -> None:
        """Test that treasury withdrawals need DReps and the committee only."""
        info = resolve_threshold_info("treasury_withdrawals", None, build_threshold_context(PARAMS))
        assert info.drep_required_pct == 67.0
        assert info.pool_required_pct is None
        assert info.cc_required_pct == CC_THRESHOLD_PCT

    def test_hard_fork(self) -> None:
        """Test that hard forks need all three bodies."""
        info = resolve_threshold_info("Hard fork initiation", None, build_threshold_context(PARAMS))
        assert info.drep_required_pct == 60.0
        assert info.pool_required_pct == 51.0
        assert info.cc_required_pct == CC_THRESHOLD_PCT

    def test_parameter_change_groups(self) -> None:
        """Test the parameter group inference and security group vote."""
        context = build_threshold_context(PARAMS)
        network = resolve_threshold_info("parameter_change", parameter_change("maxBlockBodySize"), context)
        assert network.parameter_group == "network"
        assert network.drep_required_pct == 67.0
        assert network.pool_required_pct == 51.0

        economic = resolve_threshold_info("parameter_change", parameter_change("keyDeposit"), context)
        assert economic.parameter_group == "economic"
        assert economic.pool_required_pct is None

    def test_info_action_has_no_thresholds(self) -> None:
        """Test that info actions carry only a label."""
        info = resolve_threshold_info("info_action", None, build_threshold_context(PARAMS))
        assert info.drep_required_pct is None
        assert info.cc_required_pct is None
        assert info.threshold_label == "Informational action"

    def test_group_helpers_on_bad_input(self) -> None:
        """Test that malformed descriptions are tolerated."""
        assert infer_parameter_group("nonsense") is None
        assert requires_security_group_vote({"contents": []}) is False


class TestRefreshAllThresholdInfo:
    """Tests for refresh_all_threshold_info."""

    def test_refreshes_from_snapshot_context(self) -> None:
        """Test that every proposal is recomputed from the stored context."""
        snapshot = Snapshot(
            threshold_context=build_threshold_context(PARAMS),
            proposal_info={"p1": ProposalInfo(governance_type="Treasury withdrawals")},
        )
        assert refresh_all_threshold_info(snapshot) == 1
        assert snapshot.proposal_info["p1"].threshold_info.drep_required_pct == 67.0

    def test_no_context_is_a_no_op(self) -> None:
        """Test that a snapshot without context is left alone."""
        snapshot = Snapshot(proposal_info={"p1": ProposalInfo()})
        assert refresh_all_threshold_info(snapshot) == 0
        assert snapshot.proposal_info["p1"].threshold_info is None

"""Ratification thresholds per governance action type."""
from typing import Any, Dict, Optional

from govsync.common.models import ThresholdInfo

CC_THRESHOLD_PCT = 66.67

DREP_PARAM_KEYS = {
    "motionNoConfidence": "dvt_motion_no_confidence",
    "committeeNormal": "dvt_committee_normal",
    "committeeNoConfidence": "dvt_committee_no_confidence",
    "updateToConstitution": "dvt_update_to_constitution",
    "hardForkInitiation": "dvt_hard_fork_initiation",
    "ppNetworkGroup": "dvt_p_p_network_group",
    "ppEconomicGroup": "dvt_p_p_economic_group",
    "ppTechnicalGroup": "dvt_p_p_technical_group",
    "ppGovGroup": "dvt_p_p_gov_group",
    "treasuryWithdrawal": "dvt_treasury_withdrawal",
}
POOL_PARAM_KEYS = {
    "motionNoConfidence": "pvt_motion_no_confidence",
    "committeeNormal": "pvt_committee_normal",
    "committeeNoConfidence": "pvt_committee_no_confidence",
    "hardForkInitiation": "pvt_hard_fork_initiation",
}
PARAMETER_GROUP_KEYS = {
    "network": "ppNetworkGroup",
    "economic": "ppEconomicGroup",
    "technical": "ppTechnicalGroup",
    "governance": "ppGovGroup",
}
SECURITY_PARAM_PREFIXES = (
    "maxblockbody",
    "maxblockheader",
    "maxtxsize",
    "maxvaluesize",
    "maxblockexecution",
    "maxtxexecution",
    "maxcollateral",
    "minfee",
    "coinsperutxo",
    "txfeeperbyte",
    "txfeefixed",
)
ECONOMIC_MARKERS = (
    "minfee",
    "keydeposit",
    "pooldeposit",
    "coinsperutxo",
    "treasury",
    "monetaryexpansion",
    "poolpledge",
    "poolretire",
    "poolmargin",
)


def to_percent(value: Any) -> Optional[float]:
    """Fractions (<= 1) become percentages; None for non-numbers."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return round(number * 100, 2) if number <= 1 else round(number, 2)


def build_threshold_context(params: Optional[Dict]) -> Dict[str, Any]:
    """Threshold percentages from the latest epoch protocol parameters."""
    params = params or {}
    drep = {name: to_percent(params.get(key)) for name, key in DREP_PARAM_KEYS.items()}
    pool = {name: to_percent(params.get(key)) for name, key in POOL_PARAM_KEYS.items()}
    pool["securityGroup"] = to_percent(
        params.get("pvt_p_p_security_group", params.get("pvtpp_security_group"))
    )
    committee_min_size = params.get("committee_min_size")
    try:
        committee_min_size = int(committee_min_size) if committee_min_size is not None else None
    except (TypeError, ValueError):
        committee_min_size = None
    return {"drep": drep, "pool": pool, "committeeMinSize": committee_min_size}


def _parameter_keys(description: Any):
    if not isinstance(description, dict):
        return []
    contents = description.get("contents")
    if not isinstance(contents, list) or len(contents) < 2 or not isinstance(contents[1], dict):
        return []
    return [str(key).lower() for key in contents[1].keys()]


def infer_parameter_group(description: Any) -> Optional[str]:
    keys = _parameter_keys(description)
    if not keys:
        return None
    key = keys[0]
    if key.startswith("maxblock") or key.startswith("maxtx") or any(
        marker in key for marker in ("maxvaluesize", "maxcollateral", "refscript")
    ):
        return "network"
    if any(marker in key for marker in ECONOMIC_MARKERS):
        return "economic"
    if any(marker in key for marker in ("costmodel", "pricemem", "pricestep")) or "ex" in key:
        return "technical"
    if any(marker in key for marker in ("committee", "govaction", "drep")):
        return "governance"
    return None


def requires_security_group_vote(description: Any) -> bool:
    return any(key.startswith(SECURITY_PARAM_PREFIXES) for key in _parameter_keys(description))


def resolve_threshold_info(governance_type: Any, description: Any, context: Optional[Dict]) -> ThresholdInfo:
    """Required yes percentages for each voting body of an action type."""
    context = context or {}
    drep = context.get("drep") or {}
    pool = context.get("pool") or {}
    action = str(governance_type or "").strip().lower().replace(" ", "_")

    if action == "hard_fork_initiation":
        return ThresholdInfo(
            drep_required_pct=drep.get("hardForkInitiation"),
            pool_required_pct=pool.get("hardForkInitiation"),
            cc_required_pct=CC_THRESHOLD_PCT,
            threshold_label="Hard-fork thresholds",
        )
    if action == "new_committee":
        return ThresholdInfo(
            drep_required_pct=drep.get("committeeNormal"),
            pool_required_pct=pool.get("committeeNormal"),
            threshold_label="Committee election thresholds",
        )
    if action == "new_constitution":
        return ThresholdInfo(
            drep_required_pct=drep.get("updateToConstitution"),
            cc_required_pct=CC_THRESHOLD_PCT,
            threshold_label="Constitution update thresholds",
        )
    if action == "treasury_withdrawals":
        return ThresholdInfo(
            drep_required_pct=drep.get("treasuryWithdrawal"),
            cc_required_pct=CC_THRESHOLD_PCT,
            threshold_label="Treasury withdrawal thresholds",
        )
    if action == "no_confidence":
        return ThresholdInfo(
            drep_required_pct=drep.get("motionNoConfidence"),
            pool_required_pct=pool.get("motionNoConfidence"),
            threshold_label="No-confidence thresholds",
        )
    if action == "parameter_change":
        group = infer_parameter_group(description)
        group_key = PARAMETER_GROUP_KEYS.get(group or "")
        return ThresholdInfo(
            drep_required_pct=drep.get(group_key) if group_key else None,
            pool_required_pct=pool.get("securityGroup") if requires_security_group_vote(description) else None,
            cc_required_pct=CC_THRESHOLD_PCT,
            parameter_group=group,
            threshold_label=f"Parameter change ({group or 'unknown'}) thresholds",
        )
    if action == "info_action":
        return ThresholdInfo(threshold_label="Informational action")
    return ThresholdInfo(threshold_label="Governance thresholds")


def refresh_all_threshold_info(snapshot) -> int:
    """Recompute every proposal's thresholds from the snapshot's own context."""
    if not snapshot.threshold_context:
        return 0
    for info in snapshot.proposal_info.values():
        info.threshold_info = resolve_threshold_info(
            info.governance_type,
            info.governance_description,
            snapshot.threshold_context,
        )
    return len(snapshot.proposal_info)

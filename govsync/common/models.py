from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class ActorRole(str, Enum):
    DREP = "drep"
    COMMITTEE = "constitutional_committee"
    STAKE_POOL = "stake_pool"


class VoteValue(str, Enum):
    YES = "Yes"
    NO = "No"
    ABSTAIN = "Abstain"
    NO_CONFIDENCE = "NoConfidence"

    @classmethod
    def parse(cls, raw: Any) -> Optional["VoteValue"]:
        """Map provider spellings (`yes`, `Yes`, `no_confidence`, ...) to a value."""
        text = str(raw or "").strip().lower()
        if text == "yes":
            return cls.YES
        if text == "no":
            return cls.NO
        if text == "abstain":
            return cls.ABSTAIN
        if "no_confidence" in text or text == "noconfidence":
            return cls.NO_CONFIDENCE
        return None


class Outcome(str, Enum):
    PENDING = "Pending"
    YES = "Yes"
    NO = "No"
    UNKNOWN = "Unknown"

    @classmethod
    def from_detail(cls, detail: Optional[Dict]) -> "Outcome":
        """Yes once ratified or enacted, No once dropped or expired."""
        if not detail:
            return cls.PENDING
        if detail.get("enacted_epoch") is not None or detail.get("ratified_epoch") is not None:
            return cls.YES
        if detail.get("dropped_epoch") is not None or detail.get("expired_epoch") is not None:
            return cls.NO
        return cls.PENDING

    @property
    def is_open(self) -> bool:
        return self in (Outcome.PENDING, Outcome.UNKNOWN)


class BuildMode(str, Enum):
    FULL = "full"
    DELTA = "delta"


class GovModel(BaseModel):
    """Base model serialised with camelCase keys."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True
    }

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Vote(GovModel):
    """One actor's vote on one proposal."""
    proposal_id: str
    vote: VoteValue
    voter_role: ActorRole
    outcome: Outcome = Outcome.PENDING
    vote_tx_hash: str = ""
    voted_at_unix: Optional[int] = None
    voted_at: Optional[str] = None
    response_hours: Optional[float] = None
    has_rationale: Optional[bool] = None
    rationale_url: str = ""
    rationale_body_length: int = 0
    rationale_section_count: int = 0


class VoteTally(GovModel):
    yes: int = 0
    no: int = 0
    abstain: int = 0
    no_confidence: int = 0
    other: int = 0
    total: int = 0

    def add(self, value: Optional[VoteValue]):
        if value == VoteValue.YES:
            self.yes += 1
        elif value == VoteValue.NO:
            self.no += 1
        elif value == VoteValue.ABSTAIN:
            self.abstain += 1
        elif value == VoteValue.NO_CONFIDENCE:
            self.no_confidence += 1
        else:
            self.other += 1
        self.total += 1


class ThresholdInfo(GovModel):
    drep_required_pct: Optional[float] = None
    pool_required_pct: Optional[float] = None
    cc_required_pct: Optional[float] = None
    parameter_group: Optional[str] = None
    threshold_label: str = ""


class ProposalInfo(GovModel):
    """Governance action as aggregated from the primary and secondary indexers."""
    action_name: str = ""
    rationale: str = ""
    governance_type: str = "Unknown"
    governance_description: Optional[Any] = None
    outcome: Outcome = Outcome.PENDING
    submitted_epoch: Optional[int] = None
    submitted_at: Optional[str] = None
    submitted_at_unix: Optional[int] = None
    tx_hash: Optional[str] = None
    cert_index: Optional[int] = None
    deposit_ada: int = 0
    return_address: str = ""
    metadata_url: Optional[str] = None
    metadata_hash: Optional[str] = None
    expiration_epoch: Optional[int] = None
    ratified_epoch: Optional[int] = None
    enacted_epoch: Optional[int] = None
    dropped_epoch: Optional[int] = None
    expired_epoch: Optional[int] = None
    threshold_info: Optional[ThresholdInfo] = None
    vote_stats: Dict[str, VoteTally] = Field(default_factory=dict)
    voting_summary: Optional[Dict[str, Any]] = None


class Actor(GovModel):
    id: str
    name: str = ""
    status: str = "unknown"
    voting_power_ada: float = 0
    consistency: float = 0
    total_eligible_votes: int = 0
    first_vote_block_time: Optional[int] = None
    votes: List[Vote] = Field(default_factory=list)


class DRepProfile(GovModel):
    name: str = ""
    bio: str = ""
    motivations: str = ""
    objectives: str = ""
    qualifications: str = ""
    email: str = ""
    image_url: str = ""
    references: List[Dict[str, str]] = Field(default_factory=list)


class DRep(Actor):
    active: Optional[bool] = None
    retired: Optional[bool] = None
    expired: Optional[bool] = None
    active_epoch: Optional[int] = None
    last_active_epoch: Optional[int] = None
    has_script: Optional[bool] = None
    transparency_score: int = 20
    profile: DRepProfile = Field(default_factory=DRepProfile)


class CommitteeMember(Actor):
    hot_credential: Optional[str] = None
    cold_credential: Optional[str] = None
    expiration_epoch: Optional[int] = None
    koios_voter_id: str = ""


class StakePool(Actor):
    status: str = "registered"
    homepage: str = ""
    delegated_drep: str = ""
    delegation_status: str = "Not delegated"


class SpecialDRep(GovModel):
    id: str
    active: bool = False
    voting_power_ada: float = 0


ACTOR_MODELS = {
    ActorRole.DREP: DRep,
    ActorRole.COMMITTEE: CommitteeMember,
    ActorRole.STAKE_POOL: StakePool,
}


class Snapshot(GovModel):
    """Point-in-time aggregate of proposals, votes and actors."""
    schema_version: int = 1
    generated_at: str = ""
    build_mode: BuildMode = BuildMode.FULL
    latest_epoch: int = 0
    proposal_count: int = 0
    scanned_proposal_count: int = 0
    processed_proposal_count: int = 0
    skipped_proposal_count: int = 0
    vote_fetch_error_count: int = 0
    partial: bool = False
    notice: str = ""
    threshold_context: Dict[str, Any] = Field(default_factory=dict)
    proposal_info: Dict[str, ProposalInfo] = Field(default_factory=dict)
    special_dreps: Dict[str, SpecialDRep] = Field(default_factory=dict)
    dreps: List[DRep] = Field(default_factory=list)
    committee_members: List[CommitteeMember] = Field(default_factory=list)
    spos: List[StakePool] = Field(default_factory=list)
    historical: bool = False
    historical_kind: str = ""
    historical_cutoff_epoch: Optional[int] = None

    def actors(self, role: ActorRole) -> List[Actor]:
        if role == ActorRole.DREP:
            return self.dreps
        if role == ActorRole.COMMITTEE:
            return self.committee_members
        return self.spos

    def vote_count(self) -> int:
        return sum(len(actor.votes) for role in ActorRole for actor in self.actors(role))


class SyncStatus(GovModel):
    """Externally visible state of the sync loop."""
    syncing: bool = False
    last_error: Optional[str] = None
    last_completed_at: Optional[str] = None
    last_started_at: Optional[str] = None
    last_sync_mode: Optional[BuildMode] = None
    last_epoch_at_sync: Optional[int] = None
    total_proposals: int = 0
    processed_proposals: int = 0
    pending_snapshot_generated_at: Optional[str] = None

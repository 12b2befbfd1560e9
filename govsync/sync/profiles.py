"""Actor profile enrichment: DReps, committee members, stake pools."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from govsync.cache.pool_profiles import PoolProfileCache
from govsync.common.errors import UpstreamError
from govsync.common.models import (
    CommitteeMember,
    DRep,
    DRepProfile,
    ProposalInfo,
    SpecialDRep,
    StakePool,
    Vote,
)
from govsync.common.text import metadata_body, parse_json_object, pick_string

logger = logging.getLogger(__name__)

NAME_FIELDS = ("givenName", "given_name", "name", "displayName", "display_name", "title", "dRepName", "drepName")
SPECIAL_DREPS = {
    "alwaysAbstain": "drep_always_abstain",
    "alwaysNoConfidence": "drep_always_no_confidence",
}
COMMITTEE_RECENT_EPOCHS = 12


def is_special_drep(drep_id: str) -> bool:
    return drep_id in SPECIAL_DREPS.values()


# DReps

def resolve_name(metadata: Any) -> str:
    body = metadata_body(parse_json_object(metadata))
    if body is None:
        return ""
    for field in NAME_FIELDS:
        name = pick_string(body.get(field))
        if name:
            return name
    return ""


def transparency_score(json_metadata: Any) -> int:
    """Score 20..100 from which self-description fields a DRep published."""
    body = metadata_body(parse_json_object(json_metadata))
    if body is None:
        return 20
    score = 25
    if any(body.get(field) for field in ("givenName", "given_name", "name", "displayName", "display_name", "title")):
        score += 25
    if any(body.get(field) for field in ("objectives", "motivation", "rationale", "vision")):
        score += 20
    if any(body.get(field) for field in ("qualifications", "experience", "references", "links")):
        score += 20
    if any(body.get(field) for field in ("image", "image_url", "bio", "description")):
        score += 10
    return min(100, score)


def extract_image_url(image: Any) -> str:
    if isinstance(image, str):
        return image.strip()
    if isinstance(image, dict):
        for field in ("contentUrl", "url", "src", "@id"):
            picked = pick_string(image.get(field))
            if picked:
                return picked
    return ""


def extract_references(body: Dict) -> List[Dict[str, str]]:
    refs = body.get("references")
    out = []
    seen = set()
    for ref in refs if isinstance(refs, list) else []:
        if not isinstance(ref, dict):
            continue
        uri = pick_string(ref.get("uri"))
        if not uri or uri in seen:
            continue
        seen.add(uri)
        out.append({"label": pick_string(ref.get("label")) or uri, "uri": uri})
    return out


def extract_drep_profile(metadata: Any) -> DRepProfile:
    body = metadata_body(parse_json_object(metadata))
    if body is None:
        return DRepProfile()
    return DRepProfile(
        name=resolve_name(body),
        bio=pick_string(body.get("bio")),
        motivations=pick_string(body.get("motivations")) or pick_string(body.get("motivation")),
        objectives=pick_string(body.get("objectives")),
        qualifications=pick_string(body.get("qualifications")),
        email=pick_string(body.get("email")),
        image_url=extract_image_url(body.get("image")),
        references=extract_references(body),
    )


def merge_profiles(primary: DRepProfile, fallback: DRepProfile) -> DRepProfile:
    """Field-wise `primary or fallback`, references de-duplicated by URI."""
    refs = []
    seen = set()
    for ref in primary.references + fallback.references:
        uri = ref.get("uri")
        if uri and uri not in seen:
            seen.add(uri)
            refs.append(ref)
    return DRepProfile(
        name=primary.name or fallback.name,
        bio=primary.bio or fallback.bio,
        motivations=primary.motivations or fallback.motivations,
        objectives=primary.objectives or fallback.objectives,
        qualifications=primary.qualifications or fallback.qualifications,
        email=primary.email or fallback.email,
        image_url=primary.image_url or fallback.image_url,
        references=refs,
    )


def drep_status(detail: Dict) -> str:
    if detail.get("retired"):
        return "retired"
    if detail.get("expired"):
        return "expired"
    if detail.get("active"):
        return "active"
    return "inactive"


def apply_drep_detail(drep: DRep, detail: Optional[Dict]):
    if not detail:
        return
    drep.voting_power_ada = float(int(detail.get("amount") or 0) // 1_000_000)
    drep.active = detail.get("active")
    drep.retired = detail.get("retired")
    drep.expired = detail.get("expired")
    drep.active_epoch = detail.get("active_epoch")
    drep.last_active_epoch = detail.get("last_active_epoch")
    drep.has_script = detail.get("has_script")
    drep.status = drep_status(detail)


async def enrich_drep(blockfrost, anchors, drep: DRep, power_map: Dict[str, float]):
    """Detail, metadata profile and epoch power for one DRep.

    Failures are logged; the row keeps whatever was already known.
    """
    try:
        apply_drep_detail(drep, await blockfrost.get_drep(drep.id))
    except UpstreamError as e:
        logger.warning(f"Could not fetch DRep {drep.id}: {e}")

    try:
        envelope = await blockfrost.get_drep_metadata(drep.id)
    except UpstreamError as e:
        logger.debug(f"No metadata for DRep {drep.id}: {e}")
        envelope = None
    if isinstance(envelope, dict):
        json_metadata = envelope.get("json_metadata")
        drep.transparency_score = transparency_score(json_metadata)
        profile = extract_drep_profile(json_metadata)
        url = str(envelope.get("url") or "").strip()
        if url and anchors is not None and not profile.name:
            payload = await anchors.fetch_payload(url)
            profile = merge_profiles(profile, extract_drep_profile(payload))
        drep.profile = profile
        drep.name = profile.name or drep.name

    if drep.id in power_map:
        drep.voting_power_ada = power_map[drep.id]


async def fetch_special_dreps(blockfrost) -> Dict[str, SpecialDRep]:
    special: Dict[str, SpecialDRep] = {}
    for key, drep_id in SPECIAL_DREPS.items():
        try:
            detail = await blockfrost.get_drep(drep_id)
        except UpstreamError as e:
            logger.warning(f"Could not fetch special DRep {drep_id}: {e}")
            special[key] = SpecialDRep(id=drep_id)
            continue
        special[key] = SpecialDRep(
            id=drep_id,
            active=bool(detail.get("active", True)),
            voting_power_ada=float(int(detail.get("amount") or 0) // 1_000_000),
        )
    return special


# Constitutional committee

def committee_roster(info: Optional[Dict]) -> Dict[str, Dict]:
    """Committee members indexed by hot credential id and hot hex."""
    roster: Dict[str, Dict] = {}
    members = (info or {}).get("members")
    for member in members if isinstance(members, list) else []:
        if not isinstance(member, dict):
            continue
        for key in ("cc_hot_id", "cc_hot_hex"):
            value = str(member.get(key) or "").strip().lower()
            if value:
                roster.setdefault(value, member)
    return roster


def apply_committee_roster(member: CommitteeMember, entry: Optional[Dict], latest_epoch: int) -> bool:
    """Copy credentials and status from a roster entry. False when not listed."""
    if not entry:
        return False
    member.hot_credential = entry.get("cc_hot_id") or entry.get("cc_hot_hex") or member.hot_credential
    member.cold_credential = entry.get("cc_cold_id") or entry.get("cc_cold_hex") or member.cold_credential
    expiration = entry.get("expiration_epoch")
    member.expiration_epoch = int(expiration) if expiration is not None else None
    authorized = str(entry.get("status") or "").lower() == "authorized"
    not_expired = member.expiration_epoch is None or member.expiration_epoch > latest_epoch
    member.status = "active" if authorized and not_expired else "expired"
    return True


def committee_status_from_votes(
    votes: Iterable[Vote],
    proposal_info: Dict[str, ProposalInfo],
    latest_epoch: int,
) -> str:
    """Active when the member voted on something submitted in the last twelve epochs."""
    for vote in votes:
        info = proposal_info.get(vote.proposal_id)
        if info and info.submitted_epoch is not None and info.submitted_epoch >= latest_epoch - COMMITTEE_RECENT_EPOCHS:
            return "active"
    return "expired"


def name_from_anchor(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    authors = payload.get("authors")
    for author in authors if isinstance(authors, list) else []:
        if isinstance(author, dict) and isinstance(author.get("name"), str) and author["name"].strip():
            return author["name"].strip()
    return resolve_name(payload)


async def resolve_committee_name(koios, anchors, hot_id: str) -> str:
    """Author name from the member's recent vote anchors."""
    try:
        urls = await koios.get_committee_vote_meta_urls(hot_id)
    except UpstreamError as e:
        logger.debug(f"No vote anchors for committee member {hot_id}: {e}")
        return ""
    for url in urls:
        name = name_from_anchor(await anchors.fetch_payload(url))
        if name:
            return name
    return ""


# Stake pools

def pool_roster_fields(row: Dict) -> Dict[str, Any]:
    """Name, homepage and stake (ADA) from a `/pools/extended` row."""
    metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    name = pick_string(metadata.get("ticker")) or pick_string(metadata.get("name"))
    homepage = pick_string(metadata.get("homepage")) or pick_string(metadata.get("url"))
    stake = row.get("live_stake") or row.get("active_stake") or 0
    try:
        power = int(stake) / 1_000_000
    except (TypeError, ValueError):
        power = 0.0
    return {"name": name, "homepage": homepage, "voting_power_ada": power}


def apply_pool_roster(pool: StakePool, row: Optional[Dict]):
    if not row:
        return
    fields = pool_roster_fields(row)
    pool.name = fields["name"] or pool.name
    pool.homepage = fields["homepage"] or pool.homepage
    pool.voting_power_ada = fields["voting_power_ada"]
    pool.status = "registered"


def apply_pool_profile(pool: StakePool, profiles: PoolProfileCache):
    profile = profiles.get_profile(pool.id)
    if not profile:
        return
    pool.delegated_drep = profile.get("drepId", "") or ""
    pool.delegation_status = profile.get("delegationStatus") or pool.delegation_status

"""Text and field normalisation helpers shared by the builders and resolver."""
import json
import re
from typing import Any, Dict, List, Optional

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_INLINE_CODE = re.compile(r"`{1,3}([^`]+)`{1,3}")
_HEADING = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BULLET = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_NUMBERED = re.compile(r"^\s*\d+\.\s+", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")
_SPACE_RUNS = re.compile(r"[ \t]{2,}")

RATIONALE_BODY_FIELDS = [
    ("Abstract", "abstract"),
    ("Summary", "summary"),
    ("Motivation", "motivation"),
    ("Rationale", "rationaleStatement"),
    ("Rationale", "rationale"),
    ("Precedent", "precedentDiscussion"),
    ("Counterarguments", "counterargumentDiscussion"),
    ("Conclusion", "conclusion"),
]
RATIONALE_FALLBACK_FIELDS = ["reason", "justification", "explanation", "comment"]
RATIONALE_KEY_HINTS = ("rationale", "motivation", "reason", "comment")


def title_case(value: Any, default: str = "Unknown") -> str:
    """`treasury_withdrawals` -> `Treasury withdrawals`."""
    if not value:
        return default
    text = str(value).replace("_", " ")
    return text[:1].upper() + text[1:]


def clean_plain_text(value: Any) -> str:
    """Strip markdown decoration and collapse whitespace."""
    if not value:
        return ""
    text = str(value)
    text = _MARKDOWN_LINK.sub(r"\1", text)
    text = _INLINE_CODE.sub(r"\1", text)
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = _NUMBERED.sub("", text)
    text = text.replace("\r", "")
    text = _BLANK_RUNS.sub("\n\n", text)
    text = _SPACE_RUNS.sub(" ", text)
    return text.strip()


def pick_string(value: Any) -> str:
    """Return a trimmed string from a plain or JSON-LD `{"@value": ...}` field."""
    if isinstance(value, dict):
        value = value.get("@value")
    if isinstance(value, str):
        text = value.strip()
        if text and text.lower() != "[object object]":
            return text
    return ""


def parse_json_object(value: Any) -> Optional[Dict]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def metadata_body(payload: Any) -> Optional[Dict]:
    """CIP-100 documents keep their fields under `body`; older ones do not."""
    if not isinstance(payload, dict):
        return None
    body = payload.get("body")
    return body if isinstance(body, dict) else payload


def normalize_vote_role(value: Any) -> str:
    raw = str(value or "").lower()
    if not raw:
        return ""
    if "constitutional" in raw or "committee" in raw:
        return "constitutional_committee"
    if "drep" in raw:
        return "drep"
    if raw == "spo" or "stake_pool" in raw or "stakepool" in raw or "pool" in raw:
        return "stake_pool"
    return re.sub(r"\s+", "_", raw)


def normalize_literal(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip().lower()
    if not text:
        return ""
    text = re.sub(r"[- :.]", "_", text)
    return re.sub(r"_+", "_", text)


def looks_like_url(value: Any) -> bool:
    text = str(value or "").strip()
    return text.startswith(("ipfs://", "http://", "https://"))


def ipfs_candidates(url: str, gateways: List[str]) -> List[str]:
    """Expand an anchor URL into the list of URLs to try, in order."""
    url = (url or "").strip()
    if not url:
        return []
    if url.startswith("ipfs://"):
        cid_path = url[len("ipfs://"):]
        if cid_path.startswith("ipfs/"):
            cid_path = cid_path[len("ipfs/"):]
        return [f"{gateway.rstrip('/')}/{cid_path}" for gateway in gateways]
    if url.startswith("http://") or url.startswith("https://"):
        return [url]
    return []


def pick_rationale_text(payload: Any) -> str:
    """Best-effort plain text from a loosely structured rationale document."""
    if not payload:
        return ""
    if isinstance(payload, str):
        return clean_plain_text(payload)
    if not isinstance(payload, dict):
        return ""
    body = metadata_body(payload)

    structured = [
        clean_plain_text(body.get(field))
        for _, field in RATIONALE_BODY_FIELDS
        if isinstance(body.get(field), str) and body.get(field).strip()
    ]
    structured = [text for text in structured if text]
    if structured:
        return "\n\n".join(structured)

    for field in RATIONALE_FALLBACK_FIELDS:
        candidate = body.get(field)
        if isinstance(candidate, str) and candidate.strip():
            return clean_plain_text(candidate)
    for field in ("rationale", "motivation", "abstract", "summary"):
        candidate = payload.get(field)
        if isinstance(candidate, str) and candidate.strip():
            return clean_plain_text(candidate)

    stack: List[Any] = [payload]
    while stack:
        current = stack.pop()
        if not isinstance(current, dict):
            continue
        for key, value in current.items():
            lowered = str(key).lower()
            if isinstance(value, str) and value.strip() and any(hint in lowered for hint in RATIONALE_KEY_HINTS):
                return clean_plain_text(value)
            if isinstance(value, (dict, list)):
                stack.extend(value if isinstance(value, list) else [value])
    return ""


def extract_rationale_sections(payload: Any) -> List[Dict[str, str]]:
    """Titled sections in CIP-100/CIP-136 field order, duplicates removed."""
    body = metadata_body(payload)
    if body is None:
        return []
    sections = []
    seen = set()
    for title, field in RATIONALE_BODY_FIELDS:
        value = body.get(field)
        if not isinstance(value, str):
            continue
        text = clean_plain_text(value)
        if not text or text in seen:
            continue
        seen.add(text)
        sections.append({"title": title, "text": text})
    return sections


def committee_rationale_signals(raw: Any) -> Dict[str, int]:
    """Body length and section count of a committee rationale document."""
    payload = parse_json_object(raw)
    body = metadata_body(payload)
    if body is None:
        return {"body_length": 0, "section_count": 0}
    fields = ["rationaleStatement", "precedentDiscussion", "counterargumentDiscussion", "conclusion", "comment"]
    sections = [str(body.get(field) or "").strip() for field in fields]
    sections = [text for text in sections if text]
    return {"body_length": sum(len(text) for text in sections), "section_count": len(sections)}

"""Scoring engine: one LLM call per contact, validated into a bounded result.

The model is asked for an overall relevance score, a per-objective breakdown,
a rationale, and talking points. Nothing it returns is trusted as-is:

- every number is rounded and clamped to 0-100,
- breakdown entries are matched back to the event's objectives by index (or
  id); unknown references are dropped and duplicates collapsed,
- a missing overall score is derived from the breakdown, weighted by the
  objectives' relative weights,
- arrays default to empty, text fields to ``""``.

If the reply is not a JSON object at all, :func:`score_contact` returns a
deterministic fallback (score 0, no matches, generic rationale) flagged as
``degraded`` so the batch can count it without stopping.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from eventscout.llm import LLMClient, ScoringParseError
from eventscout.models import Contact, GuestScore, Objective
from eventscout.utils import clamp_int, extract_json_block

log = logging.getLogger(__name__)

UNKNOWN = "unknown"
MAX_TALKING_POINTS = 5
FALLBACK_RATIONALE = (
    "Could not generate detailed scoring because the model response was malformed. "
    "Manual review recommended."
)

SCORING_SYSTEM_PROMPT = """\
You are an event strategist ranking guests for an invite-only event.
Judge how well one contact serves the event's weighted objectives.
Higher weight means the objective matters more to the host.

Score guidelines: 80-100 = strong match, 60-79 = good match, 40-59 = moderate, \
20-39 = weak, 0-19 = poor match.
If you lack information about the contact, score conservatively (30-50) and \
note the data gap in the rationale. Do not invent facts.

Respond with ONLY valid JSON, no markdown.
"""

_RESPONSE_FORMAT = {
    "relevance_score": "<integer 0-100>",
    "matched_objectives": [
        {
            "objective_index": 0,
            "match_score": "<integer 0-100>",
            "explanation": "<why this contact does or does not match>",
        },
    ],
    "score_rationale": "<2-3 sentence overall assessment>",
    "talking_points": ["<point 1>", "<point 2>", "<point 3>"],
}


# ---------------------------------------------------------------------------
# Engine I/O types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContactSnapshot:
    """The attributes of a contact the engine and enrichers read."""
    id: str
    full_name: str
    company: str | None = None
    title: str | None = None
    industry: str | None = None
    role_seniority: str | None = None
    ai_summary: str | None = None
    tags: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    linkedin_url: str | None = None
    website: str | None = None
    enrichment_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_contact(cls, contact: Contact) -> ContactSnapshot:
        return cls(
            id=contact.id,
            full_name=contact.full_name,
            company=contact.company,
            title=contact.title,
            industry=contact.industry,
            role_seniority=contact.role_seniority,
            ai_summary=contact.ai_summary,
            tags=tuple(contact.tags),
            emails=tuple(contact.emails),
            linkedin_url=contact.linkedin_url,
            website=contact.website,
            enrichment_data=contact.enrichment_data,
        )


@dataclass(frozen=True)
class ObjectiveSpec:
    id: str
    text: str
    weight: float = 1.0

    @classmethod
    def from_objective(cls, obj: Objective) -> ObjectiveSpec:
        return cls(id=obj.id, text=obj.text, weight=obj.weight or 0.0)


@dataclass(frozen=True)
class EventContext:
    event_id: int
    workspace_id: str
    title: str = "Event"


@dataclass
class MatchedObjective:
    objective_id: str
    objective_text: str
    match_score: int
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "objective_id": self.objective_id,
            "objective_text": self.objective_text,
            "match_score": self.match_score,
            "explanation": self.explanation,
        }


@dataclass
class ScoreResult:
    relevance_score: int
    matched_objectives: list[MatchedObjective] = field(default_factory=list)
    rationale: str = ""
    talking_points: list[str] = field(default_factory=list)
    model_version: str = ""
    degraded: bool = False


def fallback_result(model_version: str = "") -> ScoreResult:
    """Deterministic minimal result used when the model reply is unusable."""
    return ScoreResult(
        relevance_score=0,
        matched_objectives=[],
        rationale=FALLBACK_RATIONALE,
        talking_points=[],
        model_version=model_version,
        degraded=True,
    )


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

_PROFILE_FIELDS: list[tuple[str, str]] = [
    ("Company", "company"),
    ("Title", "title"),
    ("Industry", "industry"),
    ("Seniority", "role_seniority"),
    ("Summary", "ai_summary"),
]

_ENRICHMENT_KEYS = ("company_info", "notable_facts")


def build_contact_profile(contact: ContactSnapshot) -> str:
    lines = [f"Name: {contact.full_name}"]
    for label, attr in _PROFILE_FIELDS:
        val = (getattr(contact, attr, None) or "").strip()
        lines.append(f"{label}: {val or UNKNOWN}")
    lines.append(f"Tags: {', '.join(contact.tags) if contact.tags else UNKNOWN}")
    for key in _ENRICHMENT_KEYS:
        val = contact.enrichment_data.get(key)
        if isinstance(val, list):
            val = "; ".join(str(v) for v in val if v)
        if val:
            lines.append(f"{key.replace('_', ' ').title()}: {val}")
    return "\n".join(lines)


def build_scoring_prompt(
    contact: ContactSnapshot, objectives: Sequence[ObjectiveSpec], event: EventContext,
) -> str:
    lines = [
        f'Score this contact\'s relevance to the event "{event.title}".',
        "",
        "## Contact Profile",
        build_contact_profile(contact),
        "",
        "## Event Objectives (weighted)",
    ]
    for i, obj in enumerate(objectives):
        lines.append(f"{i}. [Weight {obj.weight:g}] {obj.text}")
    lines.extend([
        "",
        "Respond in this exact JSON format:",
        json.dumps(_RESPONSE_FORMAT),
    ])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _resolve_objective(entry: dict[str, Any], position: int, objectives: Sequence[ObjectiveSpec]):
    by_id = {o.id: o for o in objectives}
    oid = entry.get("objective_id")
    if oid is not None and str(oid) in by_id:
        return by_id[str(oid)]
    idx = entry.get("objective_index", position)
    try:
        idx = int(idx)
    except (TypeError, ValueError):
        return None
    if 0 <= idx < len(objectives):
        return objectives[idx]
    return None


def _weighted_average(matches: list[MatchedObjective], objectives: Sequence[ObjectiveSpec]) -> int:
    weights = {o.id: max(0.0, o.weight) for o in objectives}
    total = sum(weights.get(m.objective_id, 0.0) for m in matches)
    if not matches:
        return 0
    if total <= 0:
        return clamp_int(sum(m.match_score for m in matches) / len(matches))
    return clamp_int(sum(m.match_score * weights.get(m.objective_id, 0.0) for m in matches) / total)


def parse_scoring_response(
    text: str, objectives: Sequence[ObjectiveSpec], model_version: str = "",
) -> ScoreResult:
    """Validate a raw model reply into a ScoreResult.

    Raises ScoringParseError when *text* holds no JSON object.
    """
    block = extract_json_block(text)
    if block is None:
        raise ScoringParseError(f"No JSON object in scoring response: {text[:200]!r}")
    try:
        raw = json.loads(block)
    except json.JSONDecodeError as exc:
        raise ScoringParseError(f"Invalid JSON in scoring response: {exc}") from exc
    if not isinstance(raw, dict):
        raise ScoringParseError("Scoring response is not a JSON object")

    entries = raw.get("matched_objectives")
    if not isinstance(entries, list):
        entries = []
    matches: list[MatchedObjective] = []
    seen: set[str] = set()
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        obj = _resolve_objective(entry, position, objectives)
        if obj is None or obj.id in seen:
            continue
        seen.add(obj.id)
        matches.append(MatchedObjective(
            objective_id=obj.id,
            objective_text=obj.text,
            match_score=clamp_int(entry.get("match_score")),
            explanation=str(entry.get("explanation") or ""),
        ))

    if raw.get("relevance_score") is None:
        relevance = _weighted_average(matches, objectives)
    else:
        relevance = clamp_int(raw.get("relevance_score"), default=_weighted_average(matches, objectives))

    points = raw.get("talking_points")
    if not isinstance(points, list):
        points = []
    talking_points = [str(p) for p in points if p][:MAX_TALKING_POINTS]

    rationale = raw.get("score_rationale", raw.get("rationale"))
    return ScoreResult(
        relevance_score=relevance,
        matched_objectives=matches,
        rationale=str(rationale or ""),
        talking_points=talking_points,
        model_version=model_version,
    )


# ---------------------------------------------------------------------------
# Score one contact
# ---------------------------------------------------------------------------


async def score_contact(
    contact: ContactSnapshot,
    objectives: Sequence[ObjectiveSpec],
    event: EventContext,
    client: LLMClient,
) -> ScoreResult:
    """Score one contact against the event's objectives.

    Provider failures (``ProviderError``) propagate to the caller; an
    unparseable reply degrades to :func:`fallback_result`.
    """
    if not objectives:
        raise ValueError("score_contact requires at least one objective")
    prompt = build_scoring_prompt(contact, objectives, event)
    text = await client.complete(SCORING_SYSTEM_PROMPT, prompt)
    try:
        return parse_scoring_response(text, objectives, model_version=client.model)
    except (ScoringParseError, ValueError, TypeError, OverflowError) as exc:
        log.warning("Scoring parse failure for contact %s (event %s): %s", contact.id, event.event_id, exc)
        return fallback_result(model_version=client.model)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def load_objectives(session: Session, event_id: int, workspace_id: str) -> list[ObjectiveSpec]:
    rows = session.execute(
        select(Objective)
        .where(Objective.event_id == event_id, Objective.workspace_id == workspace_id)
        .order_by(Objective.sort_order.asc(), Objective.weight.desc())
    ).scalars().all()
    return [ObjectiveSpec.from_objective(o) for o in rows]


def save_score_result(
    session: Session, contact_id: str, event_id: int, workspace_id: str, result: ScoreResult,
) -> None:
    """Upsert the score for (contact, event, workspace); latest write wins.

    Caller must commit.
    """
    values = {
        "contact_id": contact_id,
        "event_id": event_id,
        "workspace_id": workspace_id,
        "relevance_score": result.relevance_score,
        "matched_objectives_json": json.dumps([m.to_dict() for m in result.matched_objectives]),
        "rationale": result.rationale,
        "talking_points_json": json.dumps(result.talking_points),
        "model_version": result.model_version,
        "scored_at": datetime.now(UTC),
    }
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(GuestScore).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["contact_id", "event_id", "workspace_id"],
        set_={k: stmt.excluded[k] for k in values if k not in ("contact_id", "event_id", "workspace_id")},
    )
    session.execute(stmt)

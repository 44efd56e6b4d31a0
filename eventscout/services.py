"""Shared business logic for the HTTP app, the CLI and the batch processor."""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, literal, select, update
from sqlalchemy.orm import Session

from eventscout.jobs import InvalidScopeError, JobSetupError, create_job
from eventscout.jobs import get_active_job  # noqa: F401  (re-exported for the app and CLI)
from eventscout.models import (
    Contact, EnrichmentStatus, Event, GuestScore, Job, JobKind, Objective,
)
from eventscout.schemas import ContactPatch, MatchedObjectiveOut, ScoreFilters, ScoreOut

log = logging.getLogger(__name__)

MAX_ENRICHMENT_BATCH = 100

SCORE_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("0-25", 0, 25),
    ("26-50", 26, 50),
    ("51-75", 51, 75),
    ("76-100", 76, 100),
)


# ---------------------------------------------------------------------------
# Lookups and serialization
# ---------------------------------------------------------------------------


def get_event(session: Session, event_id: int, workspace_id: str) -> Event | None:
    return session.execute(
        select(Event).where(Event.id == event_id, Event.workspace_id == workspace_id)
    ).scalars().first()


def score_out(score: GuestScore) -> ScoreOut:
    return ScoreOut(
        contact_id=score.contact_id,
        event_id=score.event_id,
        workspace_id=score.workspace_id,
        relevance_score=score.relevance_score,
        matched_objectives=[
            MatchedObjectiveOut(**m) for m in score.matched_objectives if isinstance(m, dict)
        ],
        rationale=score.rationale or "",
        talking_points=score.talking_points,
        model_version=score.model_version or "",
        scored_at=score.scored_at,
    )


# ---------------------------------------------------------------------------
# Partial contact updates
# ---------------------------------------------------------------------------


def apply_contact_patch(
    session: Session,
    contact_id: str,
    workspace_id: str,
    patch: ContactPatch,
    add_cost_cents: int = 0,
) -> int:
    """Apply *patch* as one ``UPDATE``: each column becomes ``COALESCE(new, column)``.

    Unset fields keep their stored value. Returns the number of rows matched
    (0 when the contact is not in the workspace). Caller must commit.
    """
    values: dict[str, Any] = {}
    for name, value in patch.model_dump().items():
        column = getattr(Contact, name)
        values[name] = func.coalesce(literal(value, type_=column.type), column)
    if add_cost_cents:
        values["enrichment_cost_cents"] = Contact.enrichment_cost_cents + add_cost_cents
    result = session.execute(
        update(Contact)
        .where(Contact.id == contact_id, Contact.workspace_id == workspace_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Job creation boundary
# ---------------------------------------------------------------------------


def _workspace_contact_ids(
    session: Session, workspace_id: str, contact_ids: Sequence[str] | None = None,
) -> list[str]:
    """Resolve a scope into concrete ids: all contacts, or *contact_ids* kept in order."""
    stmt = select(Contact.id).where(Contact.workspace_id == workspace_id)
    if contact_ids is None:
        return list(session.execute(
            stmt.order_by(Contact.created_at.asc(), Contact.id.asc())
        ).scalars().all())
    wanted = list(dict.fromkeys(str(c) for c in contact_ids))
    if not wanted:
        return []
    known = set(session.execute(stmt.where(Contact.id.in_(wanted))).scalars().all())
    return [cid for cid in wanted if cid in known]


def create_scoring_job(
    session: Session, workspace_id: str, event_id: int, contact_ids: Sequence[str] | None = None,
) -> Job:
    """Snapshot the scope and create a SCORING job for *event_id*.

    ``contact_ids=None`` means every contact in the workspace, resolved now.
    Raises JobSetupError when the event is missing or has no objectives and
    InvalidScopeError when the scope resolves to nothing.
    """
    if get_event(session, event_id, workspace_id) is None:
        raise JobSetupError(f"Event {event_id} not found")
    objective_count = session.execute(
        select(func.count(Objective.id)).where(
            Objective.event_id == event_id, Objective.workspace_id == workspace_id,
        )
    ).scalar_one()
    if not objective_count:
        raise JobSetupError("Event has no objectives. Add objectives before scoring.")

    targets = _workspace_contact_ids(session, workspace_id, contact_ids)
    if not targets:
        raise InvalidScopeError("No contacts to score")
    return create_job(session, JobKind.SCORING, workspace_id, targets, event_id=event_id)


def create_enrichment_job(session: Session, workspace_id: str, contact_ids: Sequence[str]) -> Job:
    """Create an ENRICHMENT job and mark untouched contacts PENDING."""
    if not contact_ids:
        raise InvalidScopeError("contact_ids must not be empty")
    if len(contact_ids) > MAX_ENRICHMENT_BATCH:
        raise InvalidScopeError(f"Maximum {MAX_ENRICHMENT_BATCH} contacts per enrichment batch")
    targets = _workspace_contact_ids(session, workspace_id, contact_ids)
    if not targets:
        raise InvalidScopeError("No matching contacts in this workspace")

    job = create_job(session, JobKind.ENRICHMENT, workspace_id, targets)
    session.execute(
        update(Contact)
        .where(
            Contact.id.in_(targets),
            Contact.workspace_id == workspace_id,
            Contact.enrichment_status == EnrichmentStatus.NOT_STARTED,
        )
        .values(enrichment_status=EnrichmentStatus.PENDING)
    )
    session.commit()
    return job


# ---------------------------------------------------------------------------
# Score read boundary
# ---------------------------------------------------------------------------


def get_scores(
    session: Session, event_id: int, workspace_id: str, filters: ScoreFilters | None = None,
) -> list[GuestScore]:
    """Scores for an event, best first."""
    filters = filters or ScoreFilters()
    stmt = select(GuestScore).where(
        GuestScore.event_id == event_id,
        GuestScore.workspace_id == workspace_id,
        GuestScore.relevance_score >= filters.min_score,
        GuestScore.relevance_score <= filters.max_score,
    )
    if filters.contact_ids is not None:
        stmt = stmt.where(GuestScore.contact_id.in_(filters.contact_ids))
    stmt = (
        stmt.order_by(GuestScore.relevance_score.desc(), GuestScore.contact_id.asc())
        .offset(filters.offset)
        .limit(filters.limit)
    )
    return list(session.execute(stmt).scalars().all())


def compute_event_stats(session: Session, event_id: int, workspace_id: str) -> dict[str, Any]:
    """Score distribution and job counters for one event."""
    scores = session.execute(
        select(GuestScore.relevance_score).where(
            GuestScore.event_id == event_id, GuestScore.workspace_id == workspace_id,
        )
    ).scalars().all()
    distribution = {
        label: sum(1 for s in scores if low <= s <= high) for label, low, high in SCORE_BUCKETS
    }

    jobs = session.execute(
        select(Job.status, Job.failed_count).where(
            Job.event_id == event_id, Job.workspace_id == workspace_id,
        )
    ).all()
    by_status: Counter[str] = Counter(status for status, _ in jobs)

    return {
        "total_scored": len(scores),
        "average_score": round(sum(scores) / len(scores), 1) if scores else None,
        "min_score": min(scores) if scores else None,
        "max_score": max(scores) if scores else None,
        "distribution": distribution,
        "jobs_by_status": dict(by_status),
        "total_failed": sum(failed or 0 for _, failed in jobs),
    }

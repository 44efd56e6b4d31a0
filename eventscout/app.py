from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from eventscout import services
from eventscout.config import get_settings
from eventscout.db import get_session, init_db
from eventscout.jobs import InvalidScopeError, JobNotFoundError, JobSetupError, get_job
from eventscout.models import JobKind
from eventscout.processor import run_tick
from eventscout.ratelimit import RateLimiter
from eventscout.schemas import (
    JobCreated, JobOut, ScoreFilters, ScoringOverview, SeatingRequest, TickOut, TriggerEnrichment,
    TriggerScoring,
)
from eventscout.seating import suggest_seating
from eventscout.waitlist import decline_invitation

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db()
    app.state.rate_limiter = RateLimiter(settings.public_rate_limit, settings.public_rate_window_seconds)
    yield


app = FastAPI(
    title="EventScout",
    version="0.1.0",
    description=(
        "Guest relevance scoring and batch job API for invite-only events. "
        "Score contacts against weighted event objectives, track enrichment and "
        "scoring jobs, and drive waitlist and seating decisions from the scores."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Jobs", "description": "Batch job progress and the periodic processor trigger."},
        {"name": "Scoring", "description": "LLM-powered guest relevance scoring per event."},
        {"name": "Enrichment", "description": "Background contact enrichment."},
        {"name": "Invitations", "description": "Invitation status changes with waitlist follow-up."},
        {"name": "Seating", "description": "Score-driven table assignment suggestions."},
        {"name": "Analytics", "description": "Score distribution and job counters."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def workspace_id(x_workspace_id: str = Header(..., description="Workspace the request acts on")) -> str:
    value = x_workspace_id.strip()
    if not value:
        raise HTTPException(400, "X-Workspace-Id header is required")
    return value


def rate_limited(request: Request, workspace: str = Depends(workspace_id)) -> str:
    limiter: RateLimiter = request.app.state.rate_limiter
    client = request.client.host if request.client else "unknown"
    result = limiter.check(f"{workspace}:{client}")
    if not result.allowed:
        raise HTTPException(429, "Too many requests. Please try again later.")
    return workspace


def _event_or_404(session: Session, event_id: int, workspace: str):
    event = services.get_event(session, event_id, workspace)
    if event is None:
        raise HTTPException(404, "Event not found")
    return event


# ---------------------------------------------------------------------------
# Routes: Trigger
# ---------------------------------------------------------------------------


@app.get("/api/cron/process-jobs", response_model=TickOut,
         tags=["Jobs"], summary="Advance due enrichment and scoring jobs by one slice")
async def process_jobs(authorization: str | None = Header(None)):
    secret = get_settings().cron_secret
    if secret and not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
        raise HTTPException(401, "Unauthorized")
    counts = await run_tick()
    return TickOut(**counts, timestamp=datetime.now(UTC))


@app.get("/api/jobs/{job_id}", response_model=JobOut,
         tags=["Jobs"], summary="Get job status and progress")
async def get_job_status(
    job_id: str,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    try:
        return JobOut.from_job(get_job(session, job_id, workspace))
    except JobNotFoundError as exc:
        raise HTTPException(404, "Job not found") from exc


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/events/{event_id}/scoring", response_model=JobCreated, status_code=202,
          tags=["Scoring"], summary="Queue a scoring job for all or selected contacts")
async def trigger_scoring(
    event_id: int,
    body: TriggerScoring | None = None,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    _event_or_404(session, event_id, workspace)
    contact_ids = body.contact_ids if body else None
    try:
        job = services.create_scoring_job(session, workspace, event_id, contact_ids)
    except (JobSetupError, InvalidScopeError) as exc:
        raise HTTPException(400, str(exc)) from exc
    return JobCreated(
        job_id=job.id,
        total_contacts=job.total,
        message=f"Scoring job created for {job.total} contacts. Processing will begin shortly.",
    )


@app.get("/api/events/{event_id}/scoring", response_model=ScoringOverview,
         tags=["Scoring"], summary="List scores with stats and the active scoring job")
async def list_scores(
    event_id: int,
    min_score: int = Query(0, ge=0, le=100),
    max_score: int = Query(100, ge=0, le=100),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    _event_or_404(session, event_id, workspace)
    filters = ScoreFilters(min_score=min_score, max_score=max_score, limit=limit, offset=offset)
    scores = services.get_scores(session, event_id, workspace, filters)
    active = services.get_active_job(session, event_id, workspace, JobKind.SCORING)
    return ScoringOverview(
        scores=[services.score_out(s) for s in scores],
        stats=services.compute_event_stats(session, event_id, workspace),
        active_job=JobOut.from_job(active) if active else None,
    )


# ---------------------------------------------------------------------------
# Routes: Enrichment
# ---------------------------------------------------------------------------


@app.post("/api/contacts/enrich", response_model=JobCreated, status_code=202,
          tags=["Enrichment"], summary="Queue an enrichment job for up to 100 contacts")
async def trigger_enrichment(
    body: TriggerEnrichment,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    try:
        job = services.create_enrichment_job(session, workspace, body.contact_ids)
    except InvalidScopeError as exc:
        raise HTTPException(400, str(exc)) from exc
    return JobCreated(
        job_id=job.id,
        total_contacts=job.total,
        message=f"Enrichment job created for {job.total} contacts.",
    )


# ---------------------------------------------------------------------------
# Routes: Invitations
# ---------------------------------------------------------------------------


@app.post("/api/invitations/{invitation_id}/decline",
          tags=["Invitations"], summary="Decline an invitation and queue waitlist promotion")
async def decline(
    invitation_id: str,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    try:
        invitation = decline_invitation(session, invitation_id, workspace)
    except LookupError as exc:
        raise HTTPException(404, "Invitation not found") from exc
    return {"id": invitation.id, "status": invitation.status, "event_id": invitation.event_id}


# ---------------------------------------------------------------------------
# Routes: Seating
# ---------------------------------------------------------------------------


@app.post("/api/events/{event_id}/seating/suggest",
          tags=["Seating"], summary="Propose table assignments for accepted guests")
async def seating_suggest(
    event_id: int,
    body: SeatingRequest | None = None,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    _event_or_404(session, event_id, workspace)
    body = body or SeatingRequest()
    plan = suggest_seating(session, event_id, workspace, body.strategy, body.max_per_table)
    return {
        "batch_id": plan.batch_id,
        "strategy": plan.strategy,
        "suggestions": [
            {"contact_id": a.contact_id, "table_number": a.table_number, "seat_number": a.seat_number,
             "rationale": a.rationale, "confidence": a.confidence}
            for a in plan.assignments
        ],
        "unseated": plan.unseated,
    }


# ---------------------------------------------------------------------------
# Routes: Analytics
# ---------------------------------------------------------------------------


@app.get("/api/events/{event_id}/analytics",
         tags=["Analytics"], summary="Score distribution and job counters for an event")
async def analytics(
    event_id: int,
    workspace: str = Depends(rate_limited),
    session: Session = Depends(db_session),
):
    _event_or_404(session, event_id, workspace)
    return services.compute_event_stats(session, event_id, workspace)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("eventscout.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()

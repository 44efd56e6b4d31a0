"""Pydantic request/response schemas and value objects."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from eventscout.models import Job
from eventscout.seating import SeatingStrategy


class ContactPatch(BaseModel):
    """Partial update for a contact. ``None`` means "leave the column alone"."""
    full_name: str | None = None
    company: str | None = None
    title: str | None = None
    industry: str | None = None
    role_seniority: str | None = None
    ai_summary: str | None = None
    linkedin_url: str | None = None
    website: str | None = None
    enrichment_status: str | None = None
    enrichment_data_json: str | None = None
    enriched_at: datetime | None = None


class ScoreFilters(BaseModel):
    min_score: int = Field(default=0, ge=0, le=100)
    max_score: int = Field(default=100, ge=0, le=100)
    contact_ids: list[str] | None = None
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class TriggerScoring(BaseModel):
    contact_ids: list[str] | None = None  # omit to score every workspace contact


class TriggerEnrichment(BaseModel):
    contact_ids: list[str] = Field(min_length=1, max_length=100)


class SeatingRequest(BaseModel):
    strategy: SeatingStrategy = SeatingStrategy.SCORE_BALANCED
    max_per_table: int | None = Field(default=None, ge=1, le=50)


class JobOut(BaseModel):
    id: str
    kind: str
    workspace_id: str
    event_id: int | None
    status: str
    total: int
    completed_count: int
    failed_count: int
    progress: int
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobOut:
        return cls(
            id=job.id, kind=job.kind, workspace_id=job.workspace_id, event_id=job.event_id,
            status=job.status, total=job.total, completed_count=job.completed_count,
            failed_count=job.failed_count, progress=job.progress,
            error_message=job.error_message, created_at=job.created_at,
            started_at=job.started_at, completed_at=job.completed_at,
        )


class MatchedObjectiveOut(BaseModel):
    objective_id: str
    objective_text: str
    match_score: int
    explanation: str = ""


class ScoreOut(BaseModel):
    contact_id: str
    event_id: int
    workspace_id: str
    relevance_score: int
    matched_objectives: list[MatchedObjectiveOut] = []
    rationale: str = ""
    talking_points: list[str] = []
    model_version: str = ""
    scored_at: datetime


class ScoringOverview(BaseModel):
    scores: list[ScoreOut]
    stats: dict[str, Any]
    active_job: JobOut | None = None


class JobCreated(BaseModel):
    job_id: str
    total_contacts: int
    message: str


class TickOut(BaseModel):
    ok: bool = True
    enrichment_processed: int
    scoring_processed: int
    tasks_dispatched: int
    timestamp: datetime

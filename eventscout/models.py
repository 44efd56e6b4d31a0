from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from eventscout.utils import json_parse


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------


class JobKind(StrEnum):
    ENRICHMENT = "ENRICHMENT"
    SCORING = "SCORING"


class JobStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


DUE_STATUSES = (JobStatus.PENDING, JobStatus.IN_PROGRESS)


class EnrichmentStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InvitationStatus(StrEnum):
    INVITED = "INVITED"
    CONSIDERING = "CONSIDERING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    WAITLIST = "WAITLIST"


class InvitationTier(StrEnum):
    VIP = "VIP"
    GENERAL = "GENERAL"
    PLUS_ONE = "PLUS_ONE"


class InvitationPriority(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Inputs owned by the CRUD layer
# ---------------------------------------------------------------------------


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    emails_json: Mapped[str] = mapped_column(Text, default="[]")
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    title: Mapped[str | None] = mapped_column(String(300), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role_seniority: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags_json: Mapped[str] = mapped_column(Text, default="[]")
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    enrichment_status: Mapped[str] = mapped_column(String(20), default=EnrichmentStatus.NOT_STARTED)
    enrichment_data_json: Mapped[str] = mapped_column(Text, default="{}")
    enriched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    enrichment_cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    @property
    def tags(self) -> list[str]:
        raw = json_parse(self.tags_json, [])
        return [str(t) for t in raw] if isinstance(raw, list) else []

    @property
    def emails(self) -> list[str]:
        raw = json_parse(self.emails_json, [])
        out: list[str] = []
        for item in raw if isinstance(raw, list) else []:
            if isinstance(item, dict):
                item = item.get("email")
            if item:
                out.append(str(item))
        return out

    @property
    def enrichment_data(self) -> dict:
        data = json_parse(self.enrichment_data_json, {})
        return data if isinstance(data, dict) else {}


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    total_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tables_config_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    objectives: Mapped[list[Objective]] = relationship(
        "Objective", back_populates="event", cascade="all, delete-orphan",
        order_by="Objective.sort_order",
    )


class Objective(Base):
    __tablename__ = "event_objectives"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_id: Mapped[int] = mapped_column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    event: Mapped[Event] = relationship("Event", back_populates="objectives")


class Invitation(Base):
    __tablename__ = "invitations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    contact_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    full_name: Mapped[str] = mapped_column(String(300), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    status: Mapped[str] = mapped_column(String(20), default=InvitationStatus.INVITED)
    tier: Mapped[str] = mapped_column(String(20), default=InvitationTier.GENERAL)
    priority: Mapped[str] = mapped_column(String(20), default=InvitationPriority.MEDIUM)
    table_assignment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seat_assignment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=func.now())


# ---------------------------------------------------------------------------
# Batch subsystem (written only by jobs / scorer / processor)
# ---------------------------------------------------------------------------


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # JobKind
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    target_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING, index=True)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def target_ids(self) -> tuple[str, ...]:
        return tuple(str(t) for t in json_parse(self.target_ids_json, []))

    @property
    def total(self) -> int:
        return len(self.target_ids)

    @property
    def progress(self) -> int:
        total = self.total
        return round(self.completed_count / total * 100) if total else 0


class GuestScore(Base):
    __tablename__ = "guest_scores"
    __table_args__ = (
        UniqueConstraint("contact_id", "event_id", "workspace_id", name="uq_guest_score_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    relevance_score: Mapped[int] = mapped_column(Integer, default=0)
    matched_objectives_json: Mapped[str] = mapped_column(Text, default="[]")
    rationale: Mapped[str] = mapped_column(Text, default="")
    talking_points_json: Mapped[str] = mapped_column(Text, default="[]")
    model_version: Mapped[str] = mapped_column(String(100), default="")
    scored_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    @property
    def matched_objectives(self) -> list[dict]:
        return json_parse(self.matched_objectives_json, [])

    @property
    def talking_points(self) -> list[str]:
        return json_parse(self.talking_points_json, [])


class SeatingSuggestion(Base):
    __tablename__ = "seating_suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(36), nullable=False)
    table_number: Mapped[int] = mapped_column(Integer, nullable=False)
    seat_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rationale: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    strategy: Mapped[str] = mapped_column(String(30), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class OutboxTask(Base):
    __tablename__ = "outbox_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def payload(self) -> dict:
        data = json_parse(self.payload_json, {})
        return data if isinstance(data, dict) else {}

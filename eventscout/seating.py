"""Seating optimizer: batch-assigns accepted guests to tables using their scores.

Assignments are proposals. They are written to ``seating_suggestions`` under
a fresh ``batch_id`` and only reach an invitation through
:func:`apply_seating_assignment`.
"""
from __future__ import annotations

import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from eventscout.config import get_settings
from eventscout.models import (
    Contact, Event, GuestScore, Invitation, InvitationStatus, SeatingSuggestion,
)
from eventscout.utils import json_parse

log = logging.getLogger(__name__)

UNKNOWN_INDUSTRY = "unknown"


class SeatingStrategy(StrEnum):
    MIXED_INTERESTS = "MIXED_INTERESTS"
    SIMILAR_INTERESTS = "SIMILAR_INTERESTS"
    SCORE_BALANCED = "SCORE_BALANCED"


@dataclass(frozen=True)
class TableConfig:
    number: int
    seats: int


@dataclass(frozen=True)
class SeatingGuest:
    contact_id: str
    full_name: str
    industry: str
    relevance_score: int | None


@dataclass
class SeatingAssignment:
    contact_id: str
    table_number: int
    seat_number: int | None
    rationale: str
    confidence: float


@dataclass
class SeatingPlan:
    batch_id: str
    strategy: SeatingStrategy
    assignments: list[SeatingAssignment]
    unseated: list[str]


def resolve_tables(event: Event, max_per_table: int | None = None) -> list[TableConfig]:
    """Tables from the event's config, or generated from its capacity."""
    settings = get_settings()
    config = json_parse(event.tables_config_json, {})
    raw = config.get("tables", []) if isinstance(config, dict) else []
    tables = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict):
            continue
        try:
            number, seats = int(entry["number"]), int(entry["seats"])
        except (KeyError, TypeError, ValueError):
            continue
        if seats > 0:
            tables.append(TableConfig(number=number, seats=min(seats, max_per_table or seats)))
    if tables:
        return sorted(tables, key=lambda t: t.number)

    capacity = event.total_capacity or settings.default_event_capacity
    per_table = max_per_table or settings.default_table_seats
    return [TableConfig(number=i + 1, seats=per_table) for i in range(math.ceil(capacity / per_table))]


def load_guests(session: Session, event_id: int, workspace_id: str) -> list[SeatingGuest]:
    """Accepted guests with their latest score, best first (unscored last)."""
    rows = session.execute(
        select(Contact.id, Contact.full_name, Contact.industry, GuestScore.relevance_score)
        .join(Invitation, Invitation.contact_id == Contact.id)
        .outerjoin(GuestScore, and_(
            GuestScore.contact_id == Contact.id,
            GuestScore.event_id == event_id,
            GuestScore.workspace_id == workspace_id,
        ))
        .where(
            Invitation.event_id == event_id,
            Invitation.workspace_id == workspace_id,
            Invitation.status == InvitationStatus.ACCEPTED,
        )
        .distinct()  # one seat per contact, however many accepted invitations
    ).all()
    guests = [
        SeatingGuest(
            contact_id=cid, full_name=name,
            industry=(industry or "").strip().lower() or UNKNOWN_INDUSTRY,
            relevance_score=score,
        )
        for cid, name, industry, score in rows
    ]
    guests.sort(key=lambda g: (g.relevance_score is None, -(g.relevance_score or 0), g.full_name))
    return guests


# ---------------------------------------------------------------------------
# Strategies: each returns guests grouped per table number
# ---------------------------------------------------------------------------


def _score_balanced(guests: list[SeatingGuest], tables: list[TableConfig]) -> dict[int, list[SeatingGuest]]:
    """Snake draft: best guests spread so every table gets a high-value seat."""
    seating: dict[int, list[SeatingGuest]] = {t.number: [] for t in tables}
    order = list(tables)
    queue = list(guests)
    forward = True
    while queue:
        open_tables = [t for t in (order if forward else reversed(order)) if len(seating[t.number]) < t.seats]
        if not open_tables:
            break
        for table in open_tables:
            if not queue:
                break
            seating[table.number].append(queue.pop(0))
        forward = not forward
    return seating


def _by_industry(guests: list[SeatingGuest]) -> list[list[SeatingGuest]]:
    groups: dict[str, list[SeatingGuest]] = defaultdict(list)
    for g in guests:
        groups[g.industry].append(g)
    # Largest groups first, unknown industry last
    return sorted(
        groups.values(),
        key=lambda grp: (grp[0].industry == UNKNOWN_INDUSTRY, -len(grp), grp[0].industry),
    )


def _similar_interests(guests: list[SeatingGuest], tables: list[TableConfig]) -> dict[int, list[SeatingGuest]]:
    """Fill tables in order with one industry after another."""
    return _fill_in_order([g for grp in _by_industry(guests) for g in grp], tables)


def _fill_in_order(ordered: list[SeatingGuest], tables: list[TableConfig]) -> dict[int, list[SeatingGuest]]:
    seating: dict[int, list[SeatingGuest]] = {t.number: [] for t in tables}
    idx = 0
    for table in tables:
        take = ordered[idx: idx + table.seats]
        seating[table.number].extend(take)
        idx += len(take)
    return seating


def _mixed_interests(guests: list[SeatingGuest], tables: list[TableConfig]) -> dict[int, list[SeatingGuest]]:
    """Interleave industries, then fill tables in order so each table mixes backgrounds."""
    groups = _by_industry(guests)
    interleaved: list[SeatingGuest] = []
    while any(groups):
        for grp in groups:
            if grp:
                interleaved.append(grp.pop(0))
    return _fill_in_order(interleaved, tables)


_STRATEGIES = {
    SeatingStrategy.SCORE_BALANCED: _score_balanced,
    SeatingStrategy.SIMILAR_INTERESTS: _similar_interests,
    SeatingStrategy.MIXED_INTERESTS: _mixed_interests,
}

_RATIONALES = {
    SeatingStrategy.SCORE_BALANCED: "Spread by relevance score (score {score})",
    SeatingStrategy.SIMILAR_INTERESTS: "Grouped with guests from {industry}",
    SeatingStrategy.MIXED_INTERESTS: "Mixed table; brings a {industry} perspective",
}


def plan_seating(
    guests: list[SeatingGuest], tables: list[TableConfig], strategy: SeatingStrategy,
) -> tuple[list[SeatingAssignment], list[str]]:
    """Pure assignment step. Returns (assignments, unseated contact ids)."""
    strategy = SeatingStrategy(strategy)
    seating = _STRATEGIES[strategy](guests, tables)
    assignments: list[SeatingAssignment] = []
    seated: set[str] = set()
    for table in tables:
        for seat, guest in enumerate(seating[table.number], start=1):
            score = guest.relevance_score
            assignments.append(SeatingAssignment(
                contact_id=guest.contact_id,
                table_number=table.number,
                seat_number=seat,
                rationale=_RATIONALES[strategy].format(
                    score=score if score is not None else "n/a", industry=guest.industry,
                ),
                confidence=round(score / 100, 2) if score is not None else 0.5,
            ))
            seated.add(guest.contact_id)
    unseated = [g.contact_id for g in guests if g.contact_id not in seated]
    return assignments, unseated


def suggest_seating(
    session: Session,
    event_id: int,
    workspace_id: str,
    strategy: SeatingStrategy | str = SeatingStrategy.SCORE_BALANCED,
    max_per_table: int | None = None,
) -> SeatingPlan:
    """Propose table assignments and persist them as a suggestion batch. Commits."""
    event = session.execute(
        select(Event).where(Event.id == event_id, Event.workspace_id == workspace_id)
    ).scalars().first()
    if event is None:
        raise LookupError(f"Event {event_id} not found")
    strategy = SeatingStrategy(strategy)
    batch_id = str(uuid.uuid4())
    guests = load_guests(session, event_id, workspace_id)
    if not guests:
        return SeatingPlan(batch_id=batch_id, strategy=strategy, assignments=[], unseated=[])

    tables = resolve_tables(event, max_per_table)
    assignments, unseated = plan_seating(guests, tables, strategy)
    now = datetime.now(UTC)
    for a in assignments:
        session.add(SeatingSuggestion(
            batch_id=batch_id, event_id=event_id, workspace_id=workspace_id,
            contact_id=a.contact_id, table_number=a.table_number, seat_number=a.seat_number,
            rationale=a.rationale, confidence=a.confidence, strategy=strategy, created_at=now,
        ))
    session.commit()
    if unseated:
        log.warning("Seating batch %s: %d guests exceed table capacity", batch_id, len(unseated))
    log.info("Seating batch %s: %d assignments (%s) for event %s", batch_id, len(assignments), strategy, event_id)
    return SeatingPlan(batch_id=batch_id, strategy=strategy, assignments=assignments, unseated=unseated)


def apply_seating_assignment(
    session: Session, event_id: int, workspace_id: str, contact_id: str,
    table_number: int, seat_number: int | None = None,
) -> int:
    """Copy one assignment onto the guest's invitation. Returns rows updated. Commits."""
    invitations = session.execute(
        select(Invitation).where(
            Invitation.event_id == event_id,
            Invitation.workspace_id == workspace_id,
            Invitation.contact_id == contact_id,
        )
    ).scalars().all()
    for inv in invitations:
        inv.table_assignment = table_number
        inv.seat_assignment = seat_number
    session.commit()
    return len(invitations)

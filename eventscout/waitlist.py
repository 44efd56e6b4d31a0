from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.orm import Session

from eventscout.models import (
    Event, GuestScore, Invitation, InvitationPriority, InvitationStatus, InvitationTier,
)
from eventscout.tasks import enqueue_task

log = logging.getLogger(__name__)

PROMOTE_TASK = "waitlist.promote"

_TIER_RANK = case(
    (Invitation.tier == InvitationTier.VIP, 1),
    (Invitation.tier == InvitationTier.GENERAL, 2),
    (Invitation.tier == InvitationTier.PLUS_ONE, 3),
    else_=4,
)
_PRIORITY_RANK = case(
    (Invitation.priority == InvitationPriority.HIGH, 1),
    (Invitation.priority == InvitationPriority.MEDIUM, 2),
    (Invitation.priority == InvitationPriority.LOW, 3),
    else_=4,
)


@dataclass
class PromotionResult:
    promoted_ids: list[str] = field(default_factory=list)
    accepted_count: int = 0
    capacity: int | None = None

    @property
    def promoted(self) -> bool:
        return bool(self.promoted_ids)


def accepted_count(session: Session, event_id: int, workspace_id: str) -> int:
    return session.execute(
        select(func.count(Invitation.id)).where(
            Invitation.event_id == event_id,
            Invitation.workspace_id == workspace_id,
            Invitation.status == InvitationStatus.ACCEPTED,
        )
    ).scalar_one()


def waitlist_queue(session: Session, event_id: int, workspace_id: str) -> list[Invitation]:
    """WAITLIST invitations in promotion order: tier, priority, score, age."""
    score = GuestScore.relevance_score
    stmt = (
        select(Invitation)
        .outerjoin(GuestScore, and_(
            GuestScore.contact_id == Invitation.contact_id,
            GuestScore.event_id == Invitation.event_id,
            GuestScore.workspace_id == Invitation.workspace_id,
        ))
        .where(
            Invitation.event_id == event_id,
            Invitation.workspace_id == workspace_id,
            Invitation.status == InvitationStatus.WAITLIST,
        )
        .order_by(
            _TIER_RANK,
            _PRIORITY_RANK,
            case((score.is_(None), 1), else_=0),
            score.desc(),
            Invitation.created_at.asc(),
        )
    )
    return list(session.execute(stmt).scalars().all())


def promote_waitlist(session: Session, event_id: int, workspace_id: str) -> PromotionResult:
    """Fill open capacity from the waitlist, best candidates first.

    Each promotion is a guarded WAITLIST -> ACCEPTED update, so a concurrent
    promoter cannot promote the same invitation twice. Commits.
    """
    event = session.execute(
        select(Event).where(Event.id == event_id, Event.workspace_id == workspace_id)
    ).scalars().first()
    if event is None or not event.total_capacity:
        return PromotionResult(capacity=event.total_capacity if event else None)

    capacity = event.total_capacity
    accepted = accepted_count(session, event_id, workspace_id)
    result = PromotionResult(accepted_count=accepted, capacity=capacity)
    if accepted >= capacity:
        return result

    for invitation in waitlist_queue(session, event_id, workspace_id):
        if accepted >= capacity:
            break
        updated = session.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id, Invitation.status == InvitationStatus.WAITLIST)
            .values(status=InvitationStatus.ACCEPTED, updated_at=datetime.now(UTC))
        )
        if updated.rowcount == 0:
            continue
        accepted += 1
        result.promoted_ids.append(invitation.id)
        log.info(
            "Waitlist promotion: invitation %s (%s) accepted for event %s",
            invitation.id, invitation.full_name, event_id,
        )
    session.commit()
    result.accepted_count = accepted
    return result


def decline_invitation(session: Session, invitation_id: str, workspace_id: str) -> Invitation:
    """Mark an invitation DECLINED and queue a waitlist promotion. Commits."""
    invitation = session.execute(
        select(Invitation).where(Invitation.id == invitation_id, Invitation.workspace_id == workspace_id)
    ).scalars().first()
    if invitation is None:
        raise LookupError(f"Invitation {invitation_id} not found")
    if invitation.status == InvitationStatus.DECLINED:
        return invitation
    invitation.status = InvitationStatus.DECLINED
    invitation.updated_at = datetime.now(UTC)
    enqueue_task(session, PROMOTE_TASK, {"event_id": invitation.event_id, "workspace_id": workspace_id})
    session.commit()
    return invitation


def handle_promote_task(session: Session, payload: dict[str, Any]) -> PromotionResult:
    return promote_waitlist(session, int(payload["event_id"]), str(payload["workspace_id"]))

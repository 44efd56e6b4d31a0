"""Job store: durable batch-job records with a monotonic checkpoint.

Every write here is a single-row statement that commits on its own. Status
changes and checkpoint advances are guarded ``UPDATE ... WHERE`` statements,
so overlapping processor passes can race on the same row without a lock: the
loser sees ``NoopError`` / ``StaleCheckpointError`` and moves on.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from eventscout.models import DUE_STATUSES, Job, JobKind, JobStatus

log = logging.getLogger(__name__)


class InvalidScopeError(ValueError):
    """Job requested with an empty target scope."""


class StaleCheckpointError(Exception):
    """A checkpoint write lost a race against a newer one."""


class NoopError(Exception):
    """Guarded status transition found the job in a different state."""


class InvalidTransitionError(ValueError):
    """Requested status change is not part of the job state machine."""


class JobNotFoundError(LookupError):
    pass


class JobSetupError(Exception):
    """Job cannot make progress at all (e.g. the event has no objectives)."""


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def create_job(
    session: Session,
    kind: JobKind | str,
    workspace_id: str,
    target_ids: Sequence[str],
    event_id: int | None = None,
) -> Job:
    """Persist a PENDING job over a fixed, already-resolved list of contact ids."""
    kind = JobKind(kind)
    ids = [str(t) for t in target_ids]
    if not ids:
        raise InvalidScopeError("Job target scope is empty")
    if kind == JobKind.SCORING and event_id is None:
        raise InvalidScopeError("Scoring jobs require an event_id")
    job = Job(
        kind=kind,
        workspace_id=workspace_id,
        event_id=event_id,
        target_ids_json=json.dumps(ids),
        status=JobStatus.PENDING,
        completed_count=0,
        failed_count=0,
        created_at=datetime.now(UTC),
    )
    session.add(job)
    session.commit()
    log.info("Created %s job %s (%d targets, workspace=%s)", kind, job.id, len(ids), workspace_id)
    return job


def get_job(session: Session, job_id: str, workspace_id: str | None = None) -> Job:
    stmt = select(Job).where(Job.id == job_id)
    if workspace_id is not None:
        stmt = stmt.where(Job.workspace_id == workspace_id)
    job = session.execute(stmt.execution_options(populate_existing=True)).scalars().first()
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


def list_due_jobs(session: Session, kind: JobKind | str, limit: int) -> list[Job]:
    """PENDING / IN_PROGRESS jobs of *kind*, oldest first, at most *limit*."""
    stmt = (
        select(Job)
        .where(Job.kind == JobKind(kind), Job.status.in_(DUE_STATUSES))
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(session.execute(stmt).scalars().all())


def get_active_job(
    session: Session, event_id: int, workspace_id: str, kind: JobKind | str = JobKind.SCORING,
) -> Job | None:
    """Newest due job for an event, or None."""
    stmt = (
        select(Job)
        .where(
            Job.event_id == event_id,
            Job.workspace_id == workspace_id,
            Job.kind == JobKind(kind),
            Job.status.in_(DUE_STATUSES),
        )
        .order_by(Job.created_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def advance_checkpoint(
    session: Session, job_id: str, new_completed_count: int, delta_failed: int = 0,
) -> None:
    """Move the resumption cursor forward and add *delta_failed* failures.

    Raises StaleCheckpointError when the stored cursor is already past
    *new_completed_count*, or equal to it with failures to add (a slower
    writer replaying a slice somebody else already recorded).
    """
    if new_completed_count < 0 or delta_failed < 0:
        raise ValueError("Checkpoint values must be non-negative")
    job = get_job(session, job_id)
    if new_completed_count > job.total:
        raise ValueError(
            f"Checkpoint {new_completed_count} exceeds target size {job.total} for job {job_id}"
        )

    guard = Job.completed_count < new_completed_count
    if delta_failed == 0:
        guard = Job.completed_count <= new_completed_count
    result = session.execute(
        update(Job)
        .where(Job.id == job_id, guard)
        .values(
            completed_count=new_completed_count,
            failed_count=Job.failed_count + delta_failed,
        )
    )
    session.commit()
    if result.rowcount == 0:
        current = get_job(session, job_id).completed_count
        raise StaleCheckpointError(
            f"Job {job_id} checkpoint is {current}; refusing to write {new_completed_count}"
        )
    log.debug("Job %s checkpoint -> %d (+%d failed)", job_id, new_completed_count, delta_failed)


def transition_status(
    session: Session,
    job_id: str,
    from_status: JobStatus | str,
    to_status: JobStatus | str,
    error_message: str | None = None,
) -> None:
    """Compare-and-set the job status.

    Raises NoopError when the job is no longer in *from_status*; callers treat
    that as another pass having already done the work.
    """
    from_status, to_status = JobStatus(from_status), JobStatus(to_status)
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(f"{from_status} -> {to_status} is not a valid job transition")

    now = datetime.now(UTC)
    values: dict = {"status": to_status}
    if to_status == JobStatus.IN_PROGRESS:
        values["started_at"] = now
    else:
        values["completed_at"] = now
    if error_message is not None:
        values["error_message"] = error_message

    result = session.execute(
        update(Job).where(Job.id == job_id, Job.status == from_status).values(**values)
    )
    session.commit()
    if result.rowcount == 0:
        # Existence check so callers can tell "already moved" from "never existed"
        get_job(session, job_id)
        raise NoopError(f"Job {job_id} is no longer {from_status}")
    log.info("Job %s %s -> %s", job_id, from_status, to_status)


def fail_job(session: Session, job_id: str, reason: str) -> bool:
    """Administrative or setup failure from whichever due state the job is in.

    Returns False if the job had already reached a terminal state.
    """
    for from_status in DUE_STATUSES:
        try:
            transition_status(session, job_id, from_status, JobStatus.FAILED, error_message=reason)
            return True
        except NoopError:
            continue
    return False

"""Outbound task queue for side effects that must not be lost.

A state change that should trigger follow-up work (e.g. an invitation being
declined, which may open a seat for the waitlist) enqueues an ``OutboxTask`` in
the same transaction. The periodic tick drains the queue; failed handlers are
retried on later ticks until ``max_attempts``, then parked as FAILED with the
last error so they stay visible.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from eventscout.models import OutboxTask, TaskStatus

log = logging.getLogger(__name__)

TaskHandler = Callable[[Session, dict[str, Any]], Any]


def enqueue_task(session: Session, kind: str, payload: dict[str, Any]) -> OutboxTask:
    """Add a task to the caller's transaction (caller must commit)."""
    task = OutboxTask(
        kind=kind,
        payload_json=json.dumps(payload),
        status=TaskStatus.PENDING,
        created_at=datetime.now(UTC),
    )
    session.add(task)
    return task


def dispatch_pending_tasks(
    session: Session,
    handlers: Mapping[str, TaskHandler],
    limit: int = 20,
    max_attempts: int = 3,
) -> int:
    """Run up to *limit* pending tasks, oldest first. Returns how many succeeded."""
    tasks = session.execute(
        select(OutboxTask)
        .where(OutboxTask.status == TaskStatus.PENDING)
        .order_by(OutboxTask.created_at.asc(), OutboxTask.id.asc())
        .limit(limit)
    ).scalars().all()

    done = 0
    for task in tasks:
        handler = handlers.get(task.kind)
        if handler is None:
            task.attempts += 1
            task.status = TaskStatus.FAILED
            task.last_error = f"No handler registered for {task.kind!r}"
            task.processed_at = datetime.now(UTC)
            log.error("Outbox task %s has unknown kind %r", task.id, task.kind)
            session.commit()
            continue
        try:
            handler(session, task.payload)
        except Exception as exc:
            session.rollback()
            task.attempts += 1
            task.last_error = str(exc)[:2000]
            if task.attempts >= max_attempts:
                task.status = TaskStatus.FAILED
                task.processed_at = datetime.now(UTC)
                log.error("Outbox task %s (%s) failed permanently: %s", task.id, task.kind, exc)
            else:
                log.warning(
                    "Outbox task %s (%s) failed, attempt %d/%d: %s",
                    task.id, task.kind, task.attempts, max_attempts, exc,
                )
            session.commit()
            continue
        task.attempts += 1
        task.status = TaskStatus.DONE
        task.processed_at = datetime.now(UTC)
        session.commit()
        done += 1
    return done

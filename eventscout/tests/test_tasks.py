"""Tests for the outbound task queue."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from eventscout.models import Base, OutboxTask, TaskStatus
from eventscout.tasks import dispatch_pending_tasks, enqueue_task


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _tasks(session: Session) -> list[OutboxTask]:
    session.expire_all()
    return list(session.execute(select(OutboxTask).order_by(OutboxTask.id)).scalars().all())


class TestEnqueue:
    def test_enqueue_joins_caller_transaction(self, session):
        enqueue_task(session, "demo", {"x": 1})
        session.rollback()
        assert _tasks(session) == []

        enqueue_task(session, "demo", {"x": 1})
        session.commit()
        [task] = _tasks(session)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 0
        assert task.payload == {"x": 1}


class TestDispatch:
    def test_success_marks_done(self, session):
        handler = MagicMock()
        enqueue_task(session, "demo", {"x": 1})
        session.commit()

        assert dispatch_pending_tasks(session, {"demo": handler}) == 1

        handler.assert_called_once_with(session, {"x": 1})
        [task] = _tasks(session)
        assert task.status == TaskStatus.DONE
        assert task.attempts == 1
        assert task.processed_at is not None

    def test_unknown_kind_fails_immediately(self, session):
        enqueue_task(session, "mystery", {})
        session.commit()

        assert dispatch_pending_tasks(session, {}) == 0

        [task] = _tasks(session)
        assert task.status == TaskStatus.FAILED
        assert "mystery" in task.last_error

    def test_failing_handler_retried_then_parked(self, session):
        handler = MagicMock(side_effect=RuntimeError("downstream unavailable"))
        enqueue_task(session, "demo", {})
        session.commit()

        for expected_attempts in (1, 2):
            assert dispatch_pending_tasks(session, {"demo": handler}, max_attempts=3) == 0
            [task] = _tasks(session)
            assert task.status == TaskStatus.PENDING
            assert task.attempts == expected_attempts

        dispatch_pending_tasks(session, {"demo": handler}, max_attempts=3)
        [task] = _tasks(session)
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 3
        assert task.last_error == "downstream unavailable"

        dispatch_pending_tasks(session, {"demo": handler}, max_attempts=3)
        assert handler.call_count == 3

    def test_handler_failure_does_not_block_others(self, session):
        calls = []

        def flaky(sess, payload):
            calls.append(payload["n"])
            if payload["n"] == 1:
                raise ValueError("bad payload")

        for n in range(3):
            enqueue_task(session, "demo", {"n": n})
        session.commit()

        assert dispatch_pending_tasks(session, {"demo": flaky}) == 2
        assert calls == [0, 1, 2]
        assert [t.status for t in _tasks(session)] == [TaskStatus.DONE, TaskStatus.PENDING, TaskStatus.DONE]

    def test_limit(self, session):
        for n in range(5):
            enqueue_task(session, "demo", {"n": n})
        session.commit()
        assert dispatch_pending_tasks(session, {"demo": MagicMock()}, limit=2) == 2
        assert [t.status for t in _tasks(session)].count(TaskStatus.PENDING) == 3

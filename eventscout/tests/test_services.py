"""Tests for the job creation boundary, score reads, analytics and contact patches."""
from __future__ import annotations

import itertools
import json
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from eventscout.jobs import InvalidScopeError, JobSetupError, advance_checkpoint, create_job, fail_job
from eventscout.models import (
    Base, Contact, EnrichmentStatus, Event, GuestScore, Job, JobKind, Objective,
)
from eventscout.schemas import ContactPatch, ScoreFilters
from eventscout.services import (
    apply_contact_patch, compute_event_stats, create_enrichment_job, create_scoring_job,
    get_scores, score_out,
)

WS = "ws-test"


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


@pytest.fixture()
def make_contact(session: Session):
    counter = itertools.count()
    base = datetime(2025, 1, 1, tzinfo=UTC)

    def _make(name: str, workspace_id: str = WS, **fields) -> Contact:
        contact = Contact(
            workspace_id=workspace_id, full_name=name,
            created_at=base + timedelta(seconds=next(counter)), **fields,
        )
        session.add(contact)
        session.commit()
        return contact

    return _make


@pytest.fixture()
def event(session: Session) -> Event:
    ev = Event(workspace_id=WS, title="Dinner")
    session.add(ev)
    session.flush()
    session.add(Objective(event_id=ev.id, workspace_id=WS, text="Meet investors", weight=1.0))
    session.commit()
    return ev


def _job_count(session: Session) -> int:
    return session.execute(select(func.count(Job.id))).scalar_one()


def _score(session: Session, contact_id: str, event_id: int, value: int, **fields) -> None:
    session.add(GuestScore(
        contact_id=contact_id, event_id=event_id, workspace_id=WS, relevance_score=value, **fields,
    ))
    session.commit()


# ---------------------------------------------------------------------------
# Job creation boundary
# ---------------------------------------------------------------------------


class TestCreateScoringJob:
    def test_all_contacts_snapshotted_in_creation_order(self, session, make_contact, event):
        ids = [make_contact(n).id for n in ("a", "b", "c")]
        make_contact("foreign", workspace_id="other")

        job = create_scoring_job(session, WS, event.id)

        assert job.kind == JobKind.SCORING
        assert job.event_id == event.id
        assert job.target_ids == tuple(ids)

    def test_scope_is_frozen_at_creation(self, session, make_contact, event):
        make_contact("a")
        job = create_scoring_job(session, WS, event.id)
        make_contact("late")
        session.expire_all()
        assert session.get(Job, job.id).total == 1

    def test_explicit_ids_deduplicated_filtered_and_ordered(self, session, make_contact, event):
        a, b = make_contact("a"), make_contact("b")
        foreign = make_contact("foreign", workspace_id="other")

        job = create_scoring_job(session, WS, event.id, [b.id, "ghost", a.id, b.id, foreign.id])

        assert job.target_ids == (b.id, a.id)

    def test_no_objectives_rejected_before_store(self, session, make_contact):
        make_contact("a")
        bare = Event(workspace_id=WS, title="No goals")
        session.add(bare)
        session.commit()

        with pytest.raises(JobSetupError):
            create_scoring_job(session, WS, bare.id)
        assert _job_count(session) == 0

    def test_missing_event_rejected(self, session, make_contact):
        make_contact("a")
        with pytest.raises(JobSetupError):
            create_scoring_job(session, WS, 404)
        assert _job_count(session) == 0

    def test_event_of_other_workspace_rejected(self, session, make_contact, event):
        make_contact("a", workspace_id="other")
        with pytest.raises(JobSetupError):
            create_scoring_job(session, "other", event.id)

    def test_empty_scope_rejected(self, session, event):
        with pytest.raises(InvalidScopeError):
            create_scoring_job(session, WS, event.id)
        with pytest.raises(InvalidScopeError):
            create_scoring_job(session, WS, event.id, [])
        assert _job_count(session) == 0


class TestCreateEnrichmentJob:
    def test_marks_not_started_contacts_pending(self, session, make_contact):
        fresh = make_contact("fresh")
        done = make_contact("done", enrichment_status=EnrichmentStatus.COMPLETED)

        job = create_enrichment_job(session, WS, [fresh.id, done.id])

        assert job.kind == JobKind.ENRICHMENT
        assert job.event_id is None
        assert job.target_ids == (fresh.id, done.id)
        session.expire_all()
        assert session.get(Contact, fresh.id).enrichment_status == EnrichmentStatus.PENDING
        assert session.get(Contact, done.id).enrichment_status == EnrichmentStatus.COMPLETED

    def test_limits(self, session, make_contact):
        with pytest.raises(InvalidScopeError):
            create_enrichment_job(session, WS, [])
        with pytest.raises(InvalidScopeError):
            create_enrichment_job(session, WS, [f"c{i}" for i in range(101)])
        with pytest.raises(InvalidScopeError):
            create_enrichment_job(session, WS, ["ghost"])
        assert _job_count(session) == 0


# ---------------------------------------------------------------------------
# Score reads
# ---------------------------------------------------------------------------


class TestGetScores:
    def test_filters_and_order(self, session, event):
        for cid, value in (("a", 20), ("b", 90), ("c", 55), ("d", 90)):
            _score(session, cid, event.id, value)
        _score(session, "x", event.id + 1, 99)

        assert [s.contact_id for s in get_scores(session, event.id, WS)] == ["b", "d", "c", "a"]
        assert [s.contact_id for s in get_scores(session, event.id, WS, ScoreFilters(min_score=50, max_score=89))] == ["c"]
        assert [s.contact_id for s in get_scores(session, event.id, WS, ScoreFilters(contact_ids=["a", "d"]))] == ["d", "a"]
        assert [s.contact_id for s in get_scores(session, event.id, WS, ScoreFilters(limit=2, offset=1))] == ["d", "c"]
        assert get_scores(session, event.id, "other") == []

    def test_filter_bounds_validated(self):
        with pytest.raises(ValueError):
            ScoreFilters(limit=501)
        with pytest.raises(ValueError):
            ScoreFilters(min_score=-1)

    def test_score_out(self, session, event):
        _score(
            session, "a", event.id, 75, rationale="fit",
            matched_objectives_json=json.dumps([
                {"objective_id": "o1", "objective_text": "Meet investors", "match_score": 80, "explanation": "vc"},
            ]),
            talking_points_json=json.dumps(["ask about fund III"]),
        )
        out = score_out(get_scores(session, event.id, WS)[0])
        assert out.relevance_score == 75
        assert out.matched_objectives[0].objective_text == "Meet investors"
        assert out.talking_points == ["ask about fund III"]


class TestEventStats:
    def test_distribution_and_job_counters(self, session, make_contact, event):
        for cid, value in (("a", 0), ("b", 25), ("c", 26), ("d", 75), ("e", 76), ("f", 100)):
            _score(session, cid, event.id, value)
        done = create_job(session, JobKind.SCORING, WS, ["a", "b"], event_id=event.id)
        advance_checkpoint(session, done.id, 2, 1)
        failed = create_job(session, JobKind.SCORING, WS, ["a"], event_id=event.id)
        fail_job(session, failed.id, "setup")
        create_job(session, JobKind.SCORING, WS, ["a"], event_id=event.id)

        stats = compute_event_stats(session, event.id, WS)

        assert stats["total_scored"] == 6
        assert stats["min_score"] == 0
        assert stats["max_score"] == 100
        assert stats["average_score"] == 50.3
        assert stats["distribution"] == {"0-25": 2, "26-50": 1, "51-75": 1, "76-100": 2}
        assert stats["jobs_by_status"] == {"PENDING": 2, "FAILED": 1}
        assert stats["total_failed"] == 1

    def test_empty_event(self, session, event):
        stats = compute_event_stats(session, event.id, WS)
        assert stats["total_scored"] == 0
        assert stats["average_score"] is None
        assert stats["distribution"] == {"0-25": 0, "26-50": 0, "51-75": 0, "76-100": 0}


# ---------------------------------------------------------------------------
# Contact patches
# ---------------------------------------------------------------------------


class TestApplyContactPatch:
    def test_only_set_fields_change(self, session, make_contact):
        contact = make_contact("Ada", company="Engines", title="CEO", enrichment_cost_cents=2)
        now = datetime(2025, 6, 1, 12, 0)

        matched = apply_contact_patch(
            session, contact.id, WS,
            ContactPatch(industry="Hardware", enriched_at=now, enrichment_status=EnrichmentStatus.COMPLETED),
            add_cost_cents=3,
        )
        session.commit()

        assert matched == 1
        session.expire_all()
        row = session.get(Contact, contact.id)
        assert row.industry == "Hardware"
        assert row.company == "Engines"
        assert row.title == "CEO"
        assert row.enriched_at == now
        assert row.enrichment_status == EnrichmentStatus.COMPLETED
        assert row.enrichment_cost_cents == 5

    def test_other_workspace_not_touched(self, session, make_contact):
        contact = make_contact("Ada", workspace_id="other")
        assert apply_contact_patch(session, contact.id, WS, ContactPatch(company="X")) == 0

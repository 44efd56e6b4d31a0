"""Tests for the scoring engine: prompt building, reply validation, fallback, persistence."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from eventscout.llm import ProviderError, ScoringParseError
from eventscout.models import Base, Contact, Event, GuestScore, Objective
from eventscout.scorer import (
    FALLBACK_RATIONALE, MAX_TALKING_POINTS, ContactSnapshot, EventContext, MatchedObjective,
    ObjectiveSpec, ScoreResult, build_contact_profile, build_scoring_prompt, load_objectives,
    parse_scoring_response, save_score_result, score_contact,
)

WS = "ws-test"

OBJECTIVES = [
    ObjectiveSpec(id="o-investors", text="Meet seed investors", weight=3.0),
    ObjectiveSpec(id="o-hiring", text="Hire ML engineers", weight=1.0),
]
EVENT = EventContext(event_id=1, workspace_id=WS, title="Founders Dinner")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


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
def contact() -> ContactSnapshot:
    return ContactSnapshot(
        id="c1", full_name="Ada Lovelace", company="Analytical Engines",
        title="Partner", industry="Venture Capital", tags=("investor", "ai"),
        enrichment_data={"company_info": "Early-stage fund", "notable_facts": ["Led 12 seed rounds"]},
    )


def _mock_client(reply=None, side_effect=None) -> MagicMock:
    client = MagicMock()
    client.model = "test-model"
    client.complete = AsyncMock(return_value=reply, side_effect=side_effect)
    return client


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


class TestPrompt:
    def test_profile_marks_missing_fields_unknown(self):
        profile = build_contact_profile(ContactSnapshot(id="c2", full_name="Bare Name"))
        assert "Name: Bare Name" in profile
        assert "Company: unknown" in profile
        assert "Industry: unknown" in profile
        assert "Tags: unknown" in profile

    def test_profile_includes_enrichment_facts(self, contact):
        profile = build_contact_profile(contact)
        assert "Company Info: Early-stage fund" in profile
        assert "Notable Facts: Led 12 seed rounds" in profile
        assert "Tags: investor, ai" in profile

    def test_prompt_lists_weighted_objectives_by_index(self, contact):
        prompt = build_scoring_prompt(contact, OBJECTIVES, EVENT)
        assert '"Founders Dinner"' in prompt
        assert "0. [Weight 3] Meet seed investors" in prompt
        assert "1. [Weight 1] Hire ML engineers" in prompt
        assert "relevance_score" in prompt


# ---------------------------------------------------------------------------
# Reply validation
# ---------------------------------------------------------------------------


class TestParseScoringResponse:
    def test_valid_reply(self):
        reply = json.dumps({
            "relevance_score": 82,
            "matched_objectives": [
                {"objective_index": 0, "match_score": 95, "explanation": "Active seed investor"},
                {"objective_index": 1, "match_score": 20, "explanation": "Not hiring-related"},
            ],
            "score_rationale": "Strong investor fit.",
            "talking_points": ["Recent AI fund", "Board seats"],
        })
        result = parse_scoring_response(reply, OBJECTIVES, model_version="m1")
        assert result.relevance_score == 82
        assert [m.objective_id for m in result.matched_objectives] == ["o-investors", "o-hiring"]
        assert result.matched_objectives[0].objective_text == "Meet seed investors"
        assert result.rationale == "Strong investor fit."
        assert result.talking_points == ["Recent AI fund", "Board seats"]
        assert result.model_version == "m1"
        assert result.degraded is False

    def test_scores_are_rounded_and_clamped(self):
        reply = json.dumps({
            "relevance_score": 140,
            "matched_objectives": [
                {"objective_index": 0, "match_score": -5},
                {"objective_index": 1, "match_score": "66.6"},
            ],
        })
        result = parse_scoring_response(reply, OBJECTIVES)
        assert result.relevance_score == 100
        assert [m.match_score for m in result.matched_objectives] == [0, 67]

    @pytest.mark.parametrize("raw_score, expected", [
        ("Infinity", 100),
        ("1e999", 100),
        ("-Infinity", 0),
        ('"inf"', 100),
        ('"-inf"', 0),
    ])
    def test_infinite_scores_are_clamped(self, raw_score, expected):
        reply = (
            f'{{"relevance_score": {raw_score}, '
            f'"matched_objectives": [{{"objective_index": 0, "match_score": {raw_score}}}]}}'
        )
        result = parse_scoring_response(reply, OBJECTIVES)
        assert result.relevance_score == expected
        assert [m.match_score for m in result.matched_objectives] == [expected]

    def test_unknown_indexes_dropped_and_duplicates_collapsed(self):
        reply = json.dumps({
            "relevance_score": 50,
            "matched_objectives": [
                {"objective_index": 7, "match_score": 90},
                {"objective_index": 1, "match_score": 40},
                {"objective_index": 1, "match_score": 99},
                "not-an-object",
            ],
        })
        result = parse_scoring_response(reply, OBJECTIVES)
        assert len(result.matched_objectives) == 1
        assert result.matched_objectives[0].objective_id == "o-hiring"
        assert result.matched_objectives[0].match_score == 40

    def test_matches_by_objective_id(self):
        reply = json.dumps({
            "relevance_score": 10,
            "matched_objectives": [{"objective_id": "o-hiring", "match_score": 10}],
        })
        result = parse_scoring_response(reply, OBJECTIVES)
        assert result.matched_objectives[0].objective_id == "o-hiring"

    def test_missing_score_derived_from_weighted_matches(self):
        reply = json.dumps({
            "matched_objectives": [
                {"objective_index": 0, "match_score": 80},
                {"objective_index": 1, "match_score": 40},
            ],
        })
        result = parse_scoring_response(reply, OBJECTIVES)
        # (80*3 + 40*1) / 4
        assert result.relevance_score == 70

    def test_missing_score_without_matches_is_zero(self):
        result = parse_scoring_response("{}", OBJECTIVES)
        assert result.relevance_score == 0
        assert result.matched_objectives == []
        assert result.rationale == ""
        assert result.talking_points == []

    def test_talking_points_capped(self):
        reply = json.dumps({"relevance_score": 5, "talking_points": [f"p{i}" for i in range(9)]})
        result = parse_scoring_response(reply, OBJECTIVES)
        assert len(result.talking_points) == MAX_TALKING_POINTS

    def test_json_inside_markdown_fence(self):
        reply = 'Here you go:\n```json\n{"relevance_score": 61, "rationale": "ok"}\n```'
        result = parse_scoring_response(reply, OBJECTIVES)
        assert result.relevance_score == 61
        assert result.rationale == "ok"

    def test_no_json_raises(self):
        with pytest.raises(ScoringParseError):
            parse_scoring_response("I cannot help with that.", OBJECTIVES)

    def test_broken_json_raises(self):
        with pytest.raises(ScoringParseError):
            parse_scoring_response('{"relevance_score": 5,,}', OBJECTIVES)


# ---------------------------------------------------------------------------
# score_contact
# ---------------------------------------------------------------------------


class TestScoreContact:
    @pytest.mark.asyncio
    async def test_returns_parsed_result(self, contact):
        client = _mock_client(json.dumps({"relevance_score": 77}))
        result = await score_contact(contact, OBJECTIVES, EVENT, client)
        assert result.relevance_score == 77
        assert result.model_version == "test-model"
        client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unparsable_reply_falls_back(self, contact):
        client = _mock_client("Sorry, no JSON today")
        result = await score_contact(contact, OBJECTIVES, EVENT, client)
        assert result.degraded is True
        assert result.relevance_score == 0
        assert result.matched_objectives == []
        assert result.talking_points == []
        assert result.rationale == FALLBACK_RATIONALE

    @pytest.mark.asyncio
    async def test_overflowing_score_is_clamped_not_raised(self, contact):
        result = await score_contact(contact, OBJECTIVES, EVENT, _mock_client('{"relevance_score": 1e999}'))
        assert result.relevance_score == 100
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_unexpected_parse_error_falls_back(self, contact):
        client = _mock_client(json.dumps({"relevance_score": 50}))
        with patch("eventscout.scorer.parse_scoring_response", side_effect=OverflowError("too big")):
            result = await score_contact(contact, OBJECTIVES, EVENT, client)
        assert result.degraded is True
        assert result.relevance_score == 0

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, contact):
        client = _mock_client(side_effect=ProviderError("503"))
        with pytest.raises(ProviderError):
            await score_contact(contact, OBJECTIVES, EVENT, client)

    @pytest.mark.asyncio
    async def test_requires_objectives(self, contact):
        with pytest.raises(ValueError):
            await score_contact(contact, [], EVENT, _mock_client("{}"))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    def _result(self, score: int, rationale: str) -> ScoreResult:
        return ScoreResult(
            relevance_score=score,
            matched_objectives=[MatchedObjective("o1", "Meet investors", score, "why")],
            rationale=rationale,
            talking_points=["hello"],
            model_version="m",
        )

    def test_upsert_keeps_one_row_latest_wins(self, session: Session):
        save_score_result(session, "c1", 1, WS, self._result(40, "first"))
        session.commit()
        save_score_result(session, "c1", 1, WS, self._result(90, "second"))
        session.commit()

        rows = session.execute(select(GuestScore)).scalars().all()
        assert len(rows) == 1
        assert rows[0].relevance_score == 90
        assert rows[0].rationale == "second"
        assert rows[0].matched_objectives[0]["objective_id"] == "o1"
        assert rows[0].talking_points == ["hello"]

    def test_key_includes_event_and_workspace(self, session: Session):
        save_score_result(session, "c1", 1, WS, self._result(40, "a"))
        save_score_result(session, "c1", 2, WS, self._result(50, "b"))
        save_score_result(session, "c1", 1, "other", self._result(60, "c"))
        session.commit()
        assert session.execute(select(func.count(GuestScore.id))).scalar_one() == 3

    def test_load_objectives_in_sort_order(self, session: Session):
        event = Event(workspace_id=WS, title="Dinner")
        session.add(event)
        session.flush()
        session.add_all([
            Objective(event_id=event.id, workspace_id=WS, text="second", weight=1.0, sort_order=1),
            Objective(event_id=event.id, workspace_id=WS, text="first", weight=2.0, sort_order=0),
            Objective(event_id=event.id, workspace_id="other", text="foreign", sort_order=0),
        ])
        session.add(Contact(workspace_id=WS, full_name="unused"))
        session.commit()

        specs = load_objectives(session, event.id, WS)
        assert [s.text for s in specs] == ["first", "second"]
        assert specs[0].weight == 2.0

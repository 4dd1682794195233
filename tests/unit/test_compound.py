"""Tests for CompoundAggregator and ContextTracker."""

from datetime import datetime, timedelta

import pytest

from querymem.config import QueryMemSettings
from querymem.errors import ValidationError
from querymem.memory.compound import COMPOUND_TOOL_NAME, CompoundAggregator, ContextTracker
from querymem.memory.types import CompoundStep, Dependency, Relationship, Tier

NOW = datetime(2026, 3, 1, 12, 0, 0)
CONTACT_ID = "c" * 24


def contact_step(**params) -> CompoundStep:
    return CompoundStep("query_contact", {"search": "王小明", **params}, {"name": "王小明"})


def route_step(**params) -> CompoundStep:
    return CompoundStep("estimate_time", {"origin": "A", "destination": "B", **params}, {"minutes": 15})


class TestCompoundAggregator:
    """Tests for complexity, classification and unit construction."""

    @pytest.fixture
    def aggregator(self):
        return CompoundAggregator()

    def test_complexity_includes_relational_bonus(self, aggregator):
        # 2.5 + 4.0 + min(0.5 * 2, 2)
        assert aggregator.complexity([contact_step(), route_step()]) == 7.5

    def test_relational_bonus_capped(self, aggregator):
        steps = [contact_step() for _ in range(6)]
        assert aggregator.complexity(steps) == 6 * 2.5 + 2.0

    @pytest.mark.parametrize(
        "complexity,tier,confidence",
        [
            (12.0, Tier.LONG_TERM, 0.9),
            (15.5, Tier.LONG_TERM, 0.9),
            (8.0, Tier.MID_TERM, 0.8),
            (11.9, Tier.MID_TERM, 0.8),
            (7.5, Tier.SHORT_TERM, 0.7),
        ],
    )
    def test_classify(self, aggregator, complexity, tier, confidence):
        assert aggregator.classify(complexity) == (tier, confidence)

    def test_signature(self, aggregator):
        steps = [contact_step(), route_step(), contact_step()]
        assert aggregator.signature(steps) == "contact:王小明|route:a->b"

    def test_signature_none_without_key_fields(self, aggregator):
        assert aggregator.signature([CompoundStep("search_notes", {"query": "x"})]) is None

    def test_build(self, aggregator):
        unit = aggregator.build("ctx-1", [contact_step(), route_step()], now=NOW)

        assert unit.tool_name == COMPOUND_TOOL_NAME
        assert unit.query.is_compound is True
        assert unit.query.context_id == "ctx-1"
        assert unit.query.complexity_score == 7.5
        assert unit.query.signature == "contact:王小明|route:a->b"
        assert unit.storage.tier == Tier.SHORT_TERM
        assert unit.result.confidence == 0.7
        assert unit.storage.expires_at == NOW + timedelta(days=3)
        assert {"compound", "query_contact", "estimate_time", "travel_time"} <= unit.storage.tags

        steps = unit.steps()
        assert [s["toolName"] for s in steps] == ["query_contact", "estimate_time"]
        assert steps[0]["fingerprint"] == aggregator.canonicalizer.fingerprint(
            "query_contact", {"search": "王小明"}
        )
        assert unit.result.payload == {
            "steps": [
                {"toolName": "query_contact", "result": {"name": "王小明"}},
                {"toolName": "estimate_time", "result": {"minutes": 15}},
            ]
        }

    def test_build_long_term_has_no_expiry(self, aggregator):
        steps = [
            route_step(mode="walk", avoid="stairs", via="C", depart="9am"),
            route_step(mode="bus", avoid="rain", via="D", depart="5pm"),
        ]
        unit = aggregator.build("ctx-1", steps, now=NOW)
        assert unit.storage.tier == Tier.LONG_TERM
        assert unit.storage.expires_at is None

    def test_build_merges_dependencies(self, aggregator):
        steps = [CompoundStep("query_contact", {"contactId": CONTACT_ID})]
        unit = aggregator.build(
            "ctx-1", steps, dependencies=[Dependency("contact", CONTACT_ID, Relationship.REFERENCE)]
        )
        assert unit.dependencies == [Dependency("contact", CONTACT_ID, Relationship.PRIMARY)]

    def test_fingerprint_depends_on_steps(self, aggregator):
        a = aggregator.build("ctx-1", [contact_step(), route_step()])
        b = aggregator.build("ctx-2", [contact_step(), route_step()])
        c = aggregator.build("ctx-1", [route_step(), contact_step()])
        assert a.query.fingerprint == b.query.fingerprint
        assert a.query.fingerprint != c.query.fingerprint

    def test_build_requires_context(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.build("", [contact_step()])

    def test_build_requires_steps(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.build("ctx-1", [])

    def test_build_rejects_bad_parameters(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.build("ctx-1", [CompoundStep("query_contact", {"search": float("inf")})])

    def test_custom_breakpoints(self):
        aggregator = CompoundAggregator(settings=QueryMemSettings(compound_mid_term_complexity=7))
        assert aggregator.classify(7.5)[0] == Tier.MID_TERM


class TestContextTracker:
    """Tests for session context tracking."""

    @pytest.fixture
    def tracker(self):
        return ContextTracker()

    def test_create_and_get(self, tracker):
        context_id = tracker.create(now=NOW)
        context = tracker.get(context_id)
        assert context is not None
        assert context.steps == []
        assert context.created_at == NOW

    def test_create_with_id(self, tracker):
        assert tracker.create("session-1") == "session-1"

    def test_add_step(self, tracker):
        context_id = tracker.create(now=NOW)
        step = tracker.add_step(context_id, "query_contact", {"search": "王小明"}, {"id": 1}, NOW)
        assert step is not None
        context = tracker.get(context_id)
        assert len(context.steps) == 1
        assert context.complexity == 2.5

    def test_add_step_unknown_context(self, tracker):
        assert tracker.add_step("missing", "query_contact", {"search": "x"}) is None

    def test_is_compound(self, tracker):
        context_id = tracker.create(now=NOW)
        tracker.add_step(context_id, "query_contact", {"search": "王小明"}, now=NOW)
        assert tracker.is_compound(context_id) is False
        tracker.add_step(context_id, "estimate_time", {"origin": "A", "destination": "B"}, now=NOW)
        assert tracker.is_compound(context_id) is True

    def test_simple_steps_not_compound(self, tracker):
        context_id = tracker.create(now=NOW)
        tracker.add_step(context_id, "search_notes", {"q": "a"}, now=NOW)
        tracker.add_step(context_id, "search_notes", {"q": "b"}, now=NOW)
        assert tracker.is_compound(context_id) is False

    def test_entity_transfer_detected(self, tracker):
        context_id = tracker.create(now=NOW)
        tracker.add_step(context_id, "find_item", {"itemName": "笔"}, {"entityId": "e1"}, NOW)
        step = tracker.add_step(context_id, "query_item", {"entityId": "e1"}, now=NOW)
        assert step.relation == "entity_transfer"

    def test_location_transfer_detected(self, tracker):
        context_id = tracker.create(now=NOW)
        tracker.add_step(context_id, "query_location", {"name": "图书馆"}, {"location": {"name": "图书馆"}}, NOW)
        step = tracker.add_step(
            context_id, "estimate_time", {"origin": "图书馆", "destination": "食堂"}, now=NOW
        )
        assert step.relation == "location_transfer"

    def test_unrelated_steps(self, tracker):
        context_id = tracker.create(now=NOW)
        tracker.add_step(context_id, "query_contact", {"search": "a"}, {"phone": "1"}, NOW)
        step = tracker.add_step(context_id, "query_task", {"taskId": "t"}, now=NOW)
        assert step.relation is None

    def test_complete(self, tracker):
        context_id = tracker.create()
        assert tracker.complete(context_id) is True
        assert tracker.get(context_id).completed is True
        assert tracker.complete("missing") is False

    def test_cleanup_idle(self, tracker):
        stale = tracker.create("stale", now=NOW)
        fresh = tracker.create("fresh", now=NOW + timedelta(minutes=20))
        removed = tracker.cleanup(NOW + timedelta(minutes=45))
        assert removed == 1
        assert tracker.get(stale) is None
        assert tracker.get(fresh) is not None

    def test_cleanup_enforces_limit(self):
        tracker = ContextTracker(settings=QueryMemSettings(context_max_count=2))
        for i in range(3):
            tracker.create(f"ctx-{i}", now=NOW + timedelta(seconds=i))
        assert len(tracker.all()) == 3
        tracker.cleanup(NOW + timedelta(seconds=3))
        assert sorted(c.context_id for c in tracker.all()) == ["ctx-1", "ctx-2"]

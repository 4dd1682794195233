"""Tests for InvalidationEngine - entity change propagation."""

import logging
from datetime import datetime

import pytest

from querymem.config import QueryMemSettings
from querymem.errors import StoreUnavailable
from querymem.memory.invalidation import InvalidationEngine
from querymem.memory.types import (
    ChangeKind,
    Dependency,
    MemoryUnit,
    QueryInfo,
    Relationship,
    ResultInfo,
    StorageInfo,
    Tier,
)
from querymem.storage.sqlite import MemoryStore

NOW = datetime(2026, 3, 1, 12, 0, 0)


def add(store: MemoryStore, relationship: Relationship, confidence: float = 0.8) -> str:
    unit = MemoryUnit(
        id=store.generate_id(),
        query=QueryInfo(
            tool_name="find_item",
            fingerprint="fp",
            original_parameters={"itemId": "i1"},
            abstract_parameters={"itemId": "i1"},
        ),
        result=ResultInfo(payload={"room": "卧室"}, confidence=confidence),
        storage=StorageInfo(tier=Tier.LONG_TERM),
        dependencies=[Dependency("item", "i1", relationship)],
    )
    return store.add_unit(unit)


class TestInvalidationEngine:
    """Tests for created, updated and deleted reactions."""

    @pytest.fixture
    def store(self):
        store = MemoryStore(ephemeral=True)
        yield store
        store.close()

    @pytest.fixture
    def engine(self, store):
        return InvalidationEngine(store)

    def test_update_factors(self, engine):
        assert engine.update_factor(Relationship.PRIMARY) == 0.5
        assert engine.update_factor(Relationship.SECONDARY) == 0.7
        assert engine.update_factor(Relationship.REFERENCE) == 0.9

    @pytest.mark.parametrize(
        "relationship,expected",
        [
            (Relationship.PRIMARY, 0.4),
            (Relationship.SECONDARY, 0.56),
            (Relationship.REFERENCE, 0.72),
        ],
    )
    def test_updated_scales_confidence(self, store, engine, relationship, expected):
        unit_id = add(store, relationship)
        assert engine.on_entity_change("item", "i1", "updated") == 1
        assert store.get_unit(unit_id).confidence == pytest.approx(expected)

    def test_updated_strictly_decreases(self, store, engine):
        unit_id = add(store, Relationship.PRIMARY, confidence=0.9)
        engine.on_entity_change("item", "i1", ChangeKind.UPDATED)
        first = store.get_unit(unit_id).confidence
        engine.on_entity_change("item", "i1", ChangeKind.UPDATED)
        second = store.get_unit(unit_id).confidence
        assert first == pytest.approx(0.45)
        assert second == pytest.approx(first * 0.5)

    def test_deleted_force_expires(self, store, engine):
        unit_id = add(store, Relationship.REFERENCE)
        assert engine.on_entity_change("item", "i1", "deleted", now=NOW) == 1
        unit = store.get_unit(unit_id)
        assert unit.confidence == 0.0
        assert unit.storage.expires_at == NOW
        assert unit.is_retrievable(0.0) is False

    def test_created_discounts_reference_only(self, store, engine):
        primary = add(store, Relationship.PRIMARY)
        reference = add(store, Relationship.REFERENCE)
        assert engine.on_entity_change("item", "i1", "created") == 1
        assert store.get_unit(primary).confidence == pytest.approx(0.8)
        assert store.get_unit(reference).confidence == pytest.approx(0.76)

    def test_transferred_acts_as_update(self, store, engine):
        unit_id = add(store, Relationship.PRIMARY)
        engine.on_entity_change("item", "i1", "transferred")
        assert store.get_unit(unit_id).confidence == pytest.approx(0.4)

    def test_status_changed_acts_as_delete(self, store, engine):
        unit_id = add(store, Relationship.SECONDARY)
        engine.on_entity_change("item", "i1", "status_changed")
        assert store.get_unit(unit_id).confidence == 0.0

    def test_no_dependents(self, engine):
        assert engine.on_entity_change("item", "unknown", "deleted") == 0

    def test_other_entities_untouched(self, store, engine):
        unit_id = add(store, Relationship.PRIMARY)
        engine.on_entity_change("location", "i1", "deleted")
        assert store.get_unit(unit_id).confidence == pytest.approx(0.8)

    def test_unknown_change_kind(self, engine):
        with pytest.raises(ValueError):
            engine.on_entity_change("item", "i1", "renamed")

    def test_custom_factors(self, store):
        engine = InvalidationEngine(store, QueryMemSettings(primary_update_factor=0.25))
        unit_id = add(store, Relationship.PRIMARY)
        engine.on_entity_change("item", "i1", "updated")
        assert store.get_unit(unit_id).confidence == pytest.approx(0.2)

    def test_failure_on_one_unit_does_not_stop_cascade(self, store, engine, mocker, caplog):
        first = add(store, Relationship.PRIMARY)
        second = add(store, Relationship.PRIMARY)
        original = store.scale_confidence

        def flaky(unit_id, factor, now=None):
            if unit_id == first:
                raise StoreUnavailable("database is locked")
            return original(unit_id, factor, now)

        mocker.patch.object(store, "scale_confidence", side_effect=flaky)
        with caplog.at_level(logging.WARNING, logger="querymem.memory.invalidation"):
            affected = engine.on_entity_change("item", "i1", "updated")

        assert affected == 1
        assert store.get_unit(second).confidence == pytest.approx(0.4)
        assert "database is locked" in caplog.text

    def test_lookup_failure_propagates(self, store, engine, mocker):
        mocker.patch.object(store, "find_by_dependency", side_effect=StoreUnavailable("down"))
        with pytest.raises(StoreUnavailable):
            engine.on_entity_change("item", "i1", "updated")

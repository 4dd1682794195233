"""Dependency-driven invalidation of memory units.

Entities in the system of record emit one change event per mutation. The
engine finds every unit depending on the changed entity and adjusts its
confidence according to the change kind and the dependency relationship:

- deleted (and status_changed): confidence 0, expires now
- updated (and transferred, note_added): confidence x relationship factor
- created: only reference dependents are lightly discounted

Each unit is updated by its own atomic statement; a failure on one unit is
logged and does not stop the cascade.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from querymem.config import QueryMemSettings
from querymem.errors import StoreUnavailable
from querymem.memory.types import ChangeKind, Relationship
from querymem.storage.sqlite import MemoryStore

logger = logging.getLogger(__name__)

# Finer-grained events mapped onto the three core reactions
_EQUIVALENT_KIND = {
    ChangeKind.TRANSFERRED: ChangeKind.UPDATED,
    ChangeKind.NOTE_ADDED: ChangeKind.UPDATED,
    ChangeKind.STATUS_CHANGED: ChangeKind.DELETED,
}


class InvalidationEngine:
    """Applies entity change events to dependent memory units.

    Args:
        store: MemoryStore holding the units
        settings: QueryMemSettings with the relationship factors
    """

    def __init__(self, store: MemoryStore, settings: Optional[QueryMemSettings] = None):
        self.store = store
        self.settings = settings or QueryMemSettings()

    def update_factor(self, relationship: Relationship) -> float:
        """Confidence multiplier applied on an update of the entity."""
        if relationship == Relationship.PRIMARY:
            return self.settings.primary_update_factor
        if relationship == Relationship.SECONDARY:
            return self.settings.secondary_update_factor
        return self.settings.reference_update_factor

    def on_entity_change(
        self,
        entity_type: str,
        entity_id: str,
        change_kind: Union[ChangeKind, str],
        now: Optional[datetime] = None,
    ) -> int:
        """React to a change of one entity.

        Args:
            entity_type: Kind of the changed entity
            entity_id: Identifier of the changed entity
            change_kind: ChangeKind or its string value
            now: Reference time for forced expiry (default: now)

        Returns:
            Number of units whose confidence or expiry changed

        Raises:
            ValueError: If change_kind is not a known ChangeKind
            StoreUnavailable: If dependents cannot be looked up
        """
        kind = ChangeKind(change_kind)
        effective = _EQUIVALENT_KIND.get(kind, kind)
        now = now or datetime.now()

        dependents = self.store.find_by_dependency(entity_type, entity_id)
        if not dependents:
            logger.debug(f"No memory units depend on {entity_type}:{entity_id}")
            return 0

        affected = 0
        for unit_id, relationship in dependents:
            try:
                if self._apply(unit_id, relationship, effective, now):
                    affected += 1
            except StoreUnavailable as e:
                logger.warning(
                    f"Failed to apply {kind.value} of {entity_type}:{entity_id} to {unit_id}: {e}",
                    exc_info=True,
                )

        logger.info(
            f"Entity {entity_type}:{entity_id} {kind.value}: "
            f"{affected}/{len(dependents)} memory units affected"
        )
        return affected

    def _apply(self, unit_id: str, relationship: Relationship, kind: ChangeKind, now: datetime) -> bool:
        if kind == ChangeKind.DELETED:
            return self.store.expire_unit(unit_id, now)
        if kind == ChangeKind.UPDATED:
            return self.store.scale_confidence(unit_id, self.update_factor(relationship), now)
        if kind == ChangeKind.CREATED and relationship == Relationship.REFERENCE:
            return self.store.scale_confidence(unit_id, self.settings.created_reference_factor, now)
        return False

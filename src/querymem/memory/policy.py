"""Caching policy per tool and per entity category.

A policy row says which tier a result starts in, how much it is trusted,
when it expires and whether it may be cached at all. Lookup order is
category row, then tool row, then the global default.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Mapping, Optional

from querymem.config import QueryMemSettings
from querymem.memory.types import Tier


@dataclass(frozen=True)
class Policy:
    """One row of the policy table.

    Attributes:
        tier: Default tier of new units
        initial_confidence: Confidence assigned at store time
        expiry_days: Days until expiry, None to use the tier default
        memory_enabled: False disables both lookup and store
        volatile: Results go stale quickly and expire within hours
    """
    tier: Tier = Tier.MID_TERM
    initial_confidence: float = 0.8
    expiry_days: Optional[float] = None
    memory_enabled: bool = True
    volatile: bool = False


DEFAULT_POLICY = Policy()

DEFAULT_TOOL_POLICIES: dict[str, Policy] = {
    "find_item": Policy(Tier.MID_TERM, 0.9),
    "estimate_time": Policy(Tier.LONG_TERM, 0.7),
    "query_item": Policy(Tier.MID_TERM, 0.95),
    "query_location": Policy(Tier.LONG_TERM, 0.95),
    "query_contact": Policy(Tier.LONG_TERM, 0.95),
    "query_biodata": Policy(Tier.MID_TERM, 0.85),
    "query_task": Policy(Tier.SHORT_TERM, 0.8, volatile=True),
    # Real-time sources
    "get_latest_biodata": Policy(Tier.SHORT_TERM, 0.85, memory_enabled=False),
    "get_pending_tasks": Policy(Tier.SHORT_TERM, 0.7, memory_enabled=False),
}

DEFAULT_CATEGORY_POLICIES: dict[str, Policy] = {
    # Identity documents, valuables, keys and devices move too often and
    # matter too much to be answered from memory
    "DOCUMENT": Policy(Tier.SHORT_TERM, 0.8, memory_enabled=False),
    "VALUABLE": Policy(Tier.SHORT_TERM, 0.8, memory_enabled=False),
    "KEY": Policy(Tier.SHORT_TERM, 0.8, memory_enabled=False),
    "ELECTRONICS": Policy(Tier.SHORT_TERM, 0.9, memory_enabled=False),
    "STATIONERY": Policy(Tier.MID_TERM, 0.9),
    "CLOTHING": Policy(Tier.MID_TERM, 0.9),
    "MEDICINE": Policy(Tier.MID_TERM, 0.9),
    "CONTAINER": Policy(Tier.LONG_TERM, 0.95),
    "FOOD": Policy(Tier.SHORT_TERM, 0.8),
    "MISC": Policy(Tier.MID_TERM, 0.8),
}


class PolicyTable:
    """Pure lookup of caching policy.

    Args:
        settings: QueryMemSettings providing tier expiry defaults
        tool_policies: Rows overriding or extending the tool defaults
        category_policies: Rows overriding or extending the category defaults
        default: Global fallback row
    """

    def __init__(
        self,
        settings: Optional[QueryMemSettings] = None,
        tool_policies: Optional[Mapping[str, Policy]] = None,
        category_policies: Optional[Mapping[str, Policy]] = None,
        default: Policy = DEFAULT_POLICY,
    ):
        self._settings = settings or QueryMemSettings()
        self._tools = {**DEFAULT_TOOL_POLICIES, **(tool_policies or {})}
        self._categories = {**DEFAULT_CATEGORY_POLICIES, **(category_policies or {})}
        self._default = default

    def policy_for(self, tool_name: str, category: Optional[str] = None) -> Policy:
        """Resolve the policy of a tool, optionally refined by category.

        A category row only replaces the tool row when the category is known;
        a disabled tool stays disabled whatever the category says.
        """
        tool_policy = self._tools.get(tool_name, self._default)
        if category is None or category not in self._categories:
            return tool_policy
        category_policy = self._categories[category]
        if not tool_policy.memory_enabled:
            return replace(category_policy, memory_enabled=False)
        return replace(category_policy, volatile=tool_policy.volatile or category_policy.volatile)

    def is_enabled(self, tool_name: str, category: Optional[str] = None) -> bool:
        return self.policy_for(tool_name, category).memory_enabled

    def tier_expiry_days(self, tier: Tier) -> Optional[float]:
        """Default lifetime of a tier in days (None = never expires)."""
        if tier == Tier.SHORT_TERM:
            return self._settings.short_term_days
        if tier == Tier.MID_TERM:
            return self._settings.mid_term_days
        if tier == Tier.LONG_TERM:
            return self._settings.long_term_days
        return None

    def expiry_for(
        self,
        tier: Tier,
        policy: Optional[Policy] = None,
        expiry_days: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Compute the expiry time of a unit entering a tier.

        Long-term units never expire. Otherwise an explicit expiry_days wins,
        then a volatile policy (hours), then the policy row, then the tier
        default.
        """
        if tier in (Tier.LONG_TERM, Tier.ARCHIVED):
            return None
        now = now or datetime.now()
        if expiry_days is not None:
            return now + timedelta(days=expiry_days)
        if policy is not None and policy.volatile:
            return now + timedelta(hours=self._settings.volatile_expiry_hours)
        days = policy.expiry_days if policy is not None and policy.expiry_days is not None else None
        if days is None:
            days = self.tier_expiry_days(tier)
        if days is None:
            return None
        return now + timedelta(days=days)

"""Canonicalization and fingerprinting of tool parameters.

Raw tool parameters are turned into a stable template before hashing:
1. Volatile fields (timestamps, session identifiers, private hints) are removed
2. String values are Unicode-normalized (NFKC), case-folded and trimmed
3. A per-tool abstraction rule replaces identifying values with placeholders
   (an item name becomes its category tag, route endpoints become markers)
4. The result is serialized as canonical JSON and hashed with the tool name

Identical logical queries always produce byte-identical canonical JSON,
regardless of key order.
"""

import hashlib
import json
import math
import re
import unicodedata
from collections.abc import Mapping
from typing import Any, Callable, Optional

from querymem.config import QueryMemSettings
from querymem.errors import ValidationError
from querymem.memory.types import Dependency, Relationship

AbstractionRule = Callable[[dict[str, Any]], dict[str, Any]]

VOLATILE_KEYS = frozenset({
    "timestamp",
    "sessionId",
    "session_id",
    "contextId",
    "context_id",
    "requestId",
    "request_id",
    "skipMemory",
})

_WHITESPACE = re.compile(r"\s+")
_ENTITY_ID = re.compile(r"^[0-9a-fA-F]{24}$")

# Ordered: the first matching class wins
_ITEM_CATEGORIES: list[tuple[str, re.Pattern[str]]] = [
    ("DOCUMENT", re.compile(r"证|证件|证书|身份|护照|驾驶|学生证|工作证|passport|licen[cs]e|certificate|id card")),
    ("VALUABLE", re.compile(r"钱|钱包|现金|银行卡|信用卡|存折|财物|贵重|wallet|cash|credit card|bank card")),
    ("KEY", re.compile(r"钥匙|门卡|门禁|磁卡|锁|\bkeys?\b|keycard|access card")),
    ("ELECTRONICS", re.compile(r"手机|电脑|笔记本|平板|相机|硬盘|电子|设备|phone|laptop|tablet|camera|charger")),
    ("STATIONERY", re.compile(r"书|书本|教材|笔|钢笔|中性笔|铅笔|橡皮|文具|纸|\bbook|\bpen\b|pencil|eraser|paper")),
    ("CLOTHING", re.compile(r"衣|衣服|裤|裤子|袜|袜子|鞋|鞋子|衬衫|外套|帽|帽子|围巾|shirt|jacket|coat|shoes?|socks?|scarf")),
    ("MEDICINE", re.compile(r"药|药水|药片|药膏|医|医疗|治疗|medicine|pills?|ointment")),
    ("CONTAINER", re.compile(r"包|背包|书包|袋|箱|箱子|盒|盒子|\bbag|backpack|\bbox|suitcase")),
    ("FOOD", re.compile(r"食品|食物|吃的|喝的|零食|饮料|水|茶|咖啡|food|snack|drink|coffee|\btea\b")),
]

_ROUTE_CATEGORIES: list[tuple[str, re.Pattern[str]]] = [
    ("CAMPUS", re.compile(r"学院|大学|学校|校区|教学楼|宿舍|公寓|图书馆|食堂|campus|university|college|dorm|library")),
    ("SHOPPING", re.compile(r"商场|超市|购物|商店|店铺|市场|mall|supermarket|store|shop|market")),
    ("COMMUTE", re.compile(r"公司|单位|工作|办公|office|work")),
]

_TOOL_TAGS = {
    "find_item": "item_location",
    "estimate_time": "travel_time",
    "query_item": "item_info",
    "query_location": "location_info",
    "query_contact": "contact_info",
    "query_biodata": "biodata_info",
    "query_task": "task_info",
    "search_notes": "note_info",
}

# (param key, entity type, relationship) per tool; list-valued keys yield one
# dependency per element
_DEPENDENCY_FIELDS: dict[str, list[tuple[str, str, Relationship]]] = {
    "find_item": [
        ("itemId", "item", Relationship.PRIMARY),
        ("itemIds", "item", Relationship.PRIMARY),
    ],
    "estimate_time": [
        ("origin", "location", Relationship.PRIMARY),
        ("destination", "location", Relationship.PRIMARY),
    ],
    "query_item": [
        ("itemId", "item", Relationship.PRIMARY),
        ("containerId", "item", Relationship.PRIMARY),
    ],
    "query_location": [
        ("locationId", "location", Relationship.PRIMARY),
        ("hierarchyFor", "location", Relationship.PRIMARY),
        ("childrenOf", "location", Relationship.PRIMARY),
    ],
    "query_contact": [("contactId", "contact", Relationship.PRIMARY)],
    "query_biodata": [("recordId", "biodata", Relationship.PRIMARY)],
    "query_task": [("taskId", "task", Relationship.PRIMARY)],
    "transfer_item": [
        ("itemId", "item", Relationship.PRIMARY),
        ("targetLocationId", "location", Relationship.SECONDARY),
        ("targetContainerId", "item", Relationship.SECONDARY),
    ],
    "update_task_status": [("taskId", "task", Relationship.PRIMARY)],
}


def normalize_string(value: str) -> str:
    """NFKC-normalize, case-fold, trim and collapse whitespace."""
    normalized = unicodedata.normalize("NFKC", value).casefold().strip()
    return _WHITESPACE.sub(" ", normalized)


def is_volatile_key(key: str) -> bool:
    """Keys that never take part in a query's identity."""
    return key in VOLATILE_KEYS or key.startswith("_")


def categorize_item(item_name: str) -> str:
    """Classify an item name into a coarse category.

    Args:
        item_name: Free-text item name

    Returns:
        Category tag (DOCUMENT, VALUABLE, ..., MISC), UNKNOWN if empty
    """
    if not item_name:
        return "UNKNOWN"
    name = normalize_string(item_name)
    for category, pattern in _ITEM_CATEGORIES:
        if pattern.search(name):
            return category
    return "MISC"


def categorize_route(origin: Any, destination: Any) -> str:
    """Classify a route by the scene words of its endpoints."""
    text = " ".join(
        normalize_string(v) for v in (origin, destination) if isinstance(v, str)
    )
    for category, pattern in _ROUTE_CATEGORIES:
        if pattern.search(text):
            return category
    return "GENERAL"


def _abstract_find_item(params: dict[str, Any]) -> dict[str, Any]:
    item_name = params.get("itemName")
    if isinstance(item_name, str) and item_name:
        category = categorize_item(item_name)
        params["itemCategory"] = category
        params["itemName"] = f"<{category}>"
    return params


def _abstract_estimate_time(params: dict[str, Any]) -> dict[str, Any]:
    if params.get("origin") and params.get("destination"):
        params["routeType"] = categorize_route(params["origin"], params["destination"])
    if params.get("origin"):
        params["origin"] = "<ORIGIN>"
    if params.get("destination"):
        params["destination"] = "<DESTINATION>"
    return params


DEFAULT_RULES: dict[str, AbstractionRule] = {
    "find_item": _abstract_find_item,
    "estimate_time": _abstract_estimate_time,
}


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no spaces, UTF-8 kept as-is."""
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


class Canonicalizer:
    """Turns raw tool parameters into templates, fingerprints and metadata.

    Args:
        settings: QueryMemSettings providing tool complexity weights
        rules: Extra or replacement abstraction rules keyed by tool name

    Example:
        >>> canon = Canonicalizer()
        >>> a = canon.fingerprint("find_item", {"itemName": "Pen", "exactMatch": True})
        >>> b = canon.fingerprint("find_item", {"exactMatch": True, "itemName": " pen "})
        >>> a == b
        True
    """

    def __init__(
        self,
        settings: Optional[QueryMemSettings] = None,
        rules: Optional[Mapping[str, AbstractionRule]] = None,
    ):
        self._settings = settings or QueryMemSettings()
        self._rules: dict[str, AbstractionRule] = dict(DEFAULT_RULES)
        if rules:
            self._rules.update(rules)

    def register_rule(self, tool_name: str, rule: AbstractionRule) -> None:
        """Install or replace the abstraction rule of a tool."""
        self._rules[tool_name] = rule

    # =========================================================================
    # Normalization
    # =========================================================================

    def _normalize_value(self, value: Any, path: str) -> Any:
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, str):
            return normalize_string(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValidationError(f"Non-finite number at '{path}'")
            return value
        if isinstance(value, Mapping):
            return self._normalize_mapping(value, path)
        if isinstance(value, (list, tuple)):
            return [self._normalize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
        if isinstance(value, (set, frozenset)):
            items = [self._normalize_value(v, path) for v in value]
            return sorted(items, key=canonical_json)
        raise ValidationError(
            f"Unsupported parameter type {type(value).__name__} at '{path}'"
        )

    def _normalize_mapping(self, params: Mapping[Any, Any], path: str) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        for key, value in params.items():
            if not isinstance(key, str):
                raise ValidationError(f"Parameter keys must be strings, got {key!r} at '{path}'")
            if is_volatile_key(key):
                continue
            normalized[key] = self._normalize_value(value, f"{path}.{key}" if path else key)
        return normalized

    def normalize(self, params: Any) -> dict[str, Any]:
        """Strip volatile fields and normalize values recursively.

        Raises:
            ValidationError: If params is not a mapping or holds non-JSON values
        """
        if not isinstance(params, Mapping):
            raise ValidationError(
                f"Parameters must be a mapping, got {type(params).__name__}"
            )
        return self._normalize_mapping(params, "")

    # =========================================================================
    # Abstraction and fingerprinting
    # =========================================================================

    def abstract(self, tool_name: str, params: Any) -> dict[str, Any]:
        """Normalize params and apply the tool's abstraction rule.

        Unknown tools fall through with normalization only.
        """
        self._check_tool_name(tool_name)
        normalized = self.normalize(params)
        rule = self._rules.get(tool_name)
        if rule is None:
            return normalized
        return rule(normalized)

    def fingerprint(self, tool_name: str, params: Any) -> str:
        """Stable SHA-256 hex digest of tool name + abstract parameters."""
        return self.fingerprint_abstract(tool_name, self.abstract(tool_name, params))

    @staticmethod
    def fingerprint_abstract(tool_name: str, abstract_params: Any) -> str:
        content = tool_name + canonical_json(abstract_params)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @staticmethod
    def _check_tool_name(tool_name: Any) -> None:
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise ValidationError("Tool name must be a non-empty string")

    # =========================================================================
    # Derived metadata
    # =========================================================================

    def complexity_score(self, tool_name: str, params: Any) -> float:
        """Tool base weight plus parameter-shape weight.

        Each meaningful scalar adds 0.5 (False flags, None and empty strings
        add nothing); each non-empty list or mapping adds 1 + 0.25 per element.
        """
        self._check_tool_name(tool_name)
        score = self._settings.tool_weight(tool_name)
        for value in self.normalize(params).values():
            if value is None or value is False or value == "":
                continue
            if isinstance(value, (list, dict)):
                if value:
                    score += 1.0 + 0.25 * len(value)
            else:
                score += 0.5
        return score

    def category_for(self, tool_name: str, params: Any) -> Optional[str]:
        """Category used for policy lookup and fuzzy metadata bonus."""
        if not isinstance(params, Mapping):
            return None
        if tool_name == "find_item" and isinstance(params.get("itemName"), str):
            return categorize_item(params["itemName"])
        if tool_name == "estimate_time" and params.get("origin") and params.get("destination"):
            return categorize_route(params["origin"], params["destination"])
        return None

    def key_signature(self, tool_name: str, params: Any) -> Optional[str]:
        """Tool-specific key fields identifying the subject of a query.

        Returns:
            Signature like 'contact:王小明' or 'route:a->b', None if the
            tool has no key fields or they are absent
        """
        if not isinstance(params, Mapping):
            return None

        def _field(*names: str) -> Optional[str]:
            for name in names:
                value = params.get(name)
                if isinstance(value, str) and value.strip():
                    return normalize_string(value)
            return None

        if tool_name == "query_contact":
            subject = _field("search", "name", "contactId")
            return f"contact:{subject}" if subject else None
        if tool_name == "estimate_time":
            origin, destination = _field("origin"), _field("destination")
            if origin and destination:
                return f"route:{origin}->{destination}"
            return None
        if tool_name in ("find_item", "query_item"):
            subject = _field("itemName", "name", "itemId")
            return f"item:{subject}" if subject else None
        if tool_name == "query_location":
            subject = _field("name", "locationId")
            return f"location:{subject}" if subject else None
        if tool_name == "query_task":
            subject = _field("taskId", "title")
            return f"task:{subject}" if subject else None
        return None

    def extract_dependencies(self, tool_name: str, params: Any) -> list[Dependency]:
        """Entity dependencies implied by id-like parameters."""
        if not isinstance(params, Mapping):
            return []

        dependencies: list[Dependency] = []

        def _add(entity_type: Any, value: Any, relationship: Relationship) -> None:
            if isinstance(entity_type, str) and isinstance(value, str) and _ENTITY_ID.match(value):
                dependencies.append(Dependency(entity_type, value, relationship))

        for key, entity_type, relationship in _DEPENDENCY_FIELDS.get(tool_name, []):
            value = params.get(key)
            if isinstance(value, list):
                for element in value:
                    _add(entity_type, element, relationship)
            else:
                _add(entity_type, value, relationship)

        if tool_name in ("add_structured_note", "search_notes"):
            _add(params.get("entityType"), params.get("entityId"), Relationship.PRIMARY)
            for related in params.get("relatedEntities") or []:
                if isinstance(related, Mapping):
                    _add(related.get("type"), related.get("id"), Relationship.REFERENCE)

        return dependencies

    def generate_tags(self, tool_name: str, params: Any) -> set[str]:
        """Tool name, tool family tag and measurement tag (biodata)."""
        tags = {tool_name}
        family = _TOOL_TAGS.get(tool_name)
        if family:
            tags.add(family)
        if tool_name == "query_biodata" and isinstance(params, Mapping):
            measurement = params.get("measurementType")
            if isinstance(measurement, str) and measurement:
                tags.add(f"measurement_{normalize_string(measurement)}")
        return tags

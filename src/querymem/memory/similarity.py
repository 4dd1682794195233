"""Structural similarity between parameter trees.

Scores range from 0.0 (unrelated) to 1.0 (identical) and are computed
recursively by type:
- Primitives: equal values score 1, anything else 0
- Strings: exact, sensitive-term, token-overlap or edit-distance similarity,
  clamped to 0 below a floor
- Arrays: greedy best-match intersection over the longer length
- Objects: key coverage times mean value similarity, with early low scores
  when a category-discriminating key disagrees
"""

import re
from collections.abc import Mapping
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

from querymem.config import QueryMemSettings
from querymem.memory.canonical import normalize_string

# Identity, credential and key-like terms; strings containing them never
# fuzzy-match loosely
_SENSITIVE = re.compile(
    r"身份证|身份|护照|证件|驾驶证|学生证|工作证|密码|银行卡|信用卡|钥匙|门卡|"
    r"password|passcode|passport|credential|secret|token|api[ _-]?key|\bssn\b|\bpin\b|licen[cs]e"
)


def sensitive_terms(value: str) -> set[str]:
    """Sensitive keywords contained in a string."""
    return {match.group(0) for match in _SENSITIVE.finditer(normalize_string(value))}


class SimilarityScorer:
    """Recursive 0..1 similarity between two parameter trees.

    Args:
        settings: QueryMemSettings providing the floors and override scores
        discriminating_keys: Keys whose mismatch forces an early low score,
            mapped to that score (default: itemCategory and routeType)

    Example:
        >>> scorer = SimilarityScorer()
        >>> scorer.similarity({"origin": "a", "mode": "walk"}, {"origin": "a"})
        0.5
    """

    def __init__(
        self,
        settings: Optional[QueryMemSettings] = None,
        discriminating_keys: Optional[Mapping[str, float]] = None,
    ):
        self._settings = settings or QueryMemSettings()
        if discriminating_keys is None:
            discriminating_keys = {
                "itemCategory": self._settings.category_mismatch_score,
                "routeType": self._settings.route_mismatch_score,
            }
        self._discriminating = dict(discriminating_keys)

    def similarity(self, a: Any, b: Any) -> float:
        """Similarity of two JSON-like values in [0, 1]."""
        if isinstance(a, str) and isinstance(b, str):
            return self.string_similarity(a, b)
        if isinstance(a, Mapping) and isinstance(b, Mapping):
            return self.object_similarity(a, b)
        if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
            return self.array_similarity(a, b)
        # bool is an int subclass; True must not equal 1 here
        if isinstance(a, bool) != isinstance(b, bool):
            return 0.0
        if isinstance(a, (Mapping, list, tuple, str)) or isinstance(b, (Mapping, list, tuple, str)):
            return 0.0
        return 1.0 if a == b else 0.0

    def string_similarity(self, a: str, b: str) -> float:
        """Similarity of two strings with the sensitive rule and floor applied."""
        s1, s2 = normalize_string(a), normalize_string(b)
        if s1 == s2:
            return 1.0
        if not s1 or not s2:
            return 0.0

        terms1, terms2 = sensitive_terms(s1), sensitive_terms(s2)
        if terms1 or terms2:
            if terms1 & terms2:
                return self._settings.sensitive_match_score
            return 0.0

        tokens1 = [t for t in s1.split(" ") if len(t) > 1]
        tokens2 = [t for t in s2.split(" ") if len(t) > 1]
        if tokens1 and tokens2:
            common = [t for t in tokens1 if t in tokens2]
            score = len(common) / max(len(tokens1), len(tokens2))
        else:
            score = Levenshtein.normalized_similarity(s1, s2)

        if score < self._settings.string_floor:
            return 0.0
        return score

    def array_similarity(self, a: Any, b: Any) -> float:
        """Greedy best-match intersection divided by the longer length."""
        if not a and not b:
            return 1.0
        if not a or not b:
            return 0.0

        threshold = self._settings.array_match_threshold
        unmatched = list(range(len(b)))
        matched = 0
        for item in a:
            best_index: Optional[int] = None
            best_score = threshold
            for index in unmatched:
                score = self.similarity(item, b[index])
                if score > best_score:
                    best_index, best_score = index, score
                    if score == 1.0:
                        break
            if best_index is not None:
                unmatched.remove(best_index)
                matched += 1
        return matched / max(len(a), len(b))

    def object_similarity(self, a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
        """Key coverage times mean value similarity over common keys."""
        if not a and not b:
            return 1.0
        common = [key for key in a if key in b]
        if not common:
            return 0.0

        for key in common:
            override = self._discriminating.get(key)
            if override is not None and a[key] != b[key]:
                return override

        total = sum(self.similarity(a[key], b[key]) for key in common)
        coverage = len(common) / max(len(a), len(b))
        return coverage * (total / len(common))

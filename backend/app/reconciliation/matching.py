"""
Document-to-set matching.

Decides whether a document arriving in extractor role X can join a
pending matching set, by checking every matching link of a variation
that touches X against the set members already present.
"""

from __future__ import annotations

from typing import Any, Mapping

from rapidfuzz.distance import Levenshtein

from app.core.config import settings
from app.engine.formula import get_path, to_string


def string_similarity(a: Any, b: Any) -> float:
    """Normalized Levenshtein similarity of case-folded, trimmed strings (1.0 = identical)."""
    left = to_string(a).lower().strip()
    right = to_string(b).lower().strip()
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    return Levenshtein.normalized_similarity(left, right)


def values_match(left: Any, right: Any, match_type: str | None, threshold: float | None = None) -> bool:
    if (match_type or "exact") == "exact":
        return to_string(left) == to_string(right)
    limit = threshold if threshold is not None else settings.DEFAULT_FUZZY_THRESHOLD
    return string_similarity(left, right) >= limit


def header_of(metadata: Mapping[str, Any]) -> Mapping[str, Any]:
    """Flat record used for matching / formulas: the extracted header, else the metadata itself."""
    header = metadata.get("header")
    return header if isinstance(header, Mapping) else metadata


def document_qualifies(
    extractor_id: str,
    record: Mapping[str, Any],
    members: Mapping[str, Mapping[str, Any]],
    links: list[Mapping[str, Any]],
) -> bool:
    """
    True when the document can join a set holding ``members``.

    ``members`` maps extractor id → that member's flat record.  Links whose
    opposite extractor is absent, or where either field value is missing,
    are not evaluated.  At least one link must be evaluated and none may fail.
    """
    evaluated = False
    for link in links:
        if link.get("left_extractor_id") == extractor_id:
            own_field, other_id, other_field = link.get("left_field"), link.get("right_extractor_id"), link.get("right_field")
        elif link.get("right_extractor_id") == extractor_id:
            own_field, other_id, other_field = link.get("right_field"), link.get("left_extractor_id"), link.get("left_field")
        else:
            continue

        if other_id not in members:
            continue
        own_value = get_path(record, own_field or "")
        other_value = get_path(members[other_id], other_field or "")
        if own_value is None or other_value is None:
            continue

        evaluated = True
        if not values_match(own_value, other_value, link.get("match_type"), link.get("threshold")):
            return False
    return evaluated

"""
Comparison rules — header- and table-level formulas over a complete
matching set.

Each extractor's data is bound to its formula identifier (from the
rule's ``extractor_names``), so a formula reads like
``PO.total == Invoice.amount``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from app.engine.errors import FormulaError
from app.engine.formula import FormulaEvaluator, to_number, to_string
from app.reconciliation.matching import header_of

MISSING_ROW_ZERO = "zero"
MISSING_ROW_FAIL = "fail"

_NON_IDENTIFIER = re.compile(r"\W")


@dataclass
class ComparisonOutcome:
    rule_id: str
    passed: bool
    note: str | None = None


class ZeroRecord(dict):
    """Stand-in for a missing table row: every field reads as 0."""

    def get(self, key: Any, default: Any = None) -> Any:
        return super().get(key, 0)

    def __missing__(self, key: Any) -> Any:
        return 0


def formula_identifier(extractor_id: str, names: Mapping[str, str] | None) -> str:
    name = (names or {}).get(extractor_id) or extractor_id
    identifier = _NON_IDENTIFIER.sub("_", str(name))
    return f"_{identifier}" if identifier[:1].isdigit() else identifier


def within_tolerance(left: Any, right: Any, tolerance_type: str | None, tolerance_value: Any) -> bool:
    """Absolute: |a−b| ≤ t.  Percentage: |a−b| / |b| · 100 ≤ t (b ≠ 0)."""
    a, b, limit = to_number(left), to_number(right), to_number(tolerance_value)
    if a is None or b is None or limit is None:
        return False
    diff = abs(a - b)
    if tolerance_type == "absolute":
        return diff <= limit
    if tolerance_type == "percentage":
        return b != 0 and diff / abs(b) * 100 <= limit
    return False


class ComparisonRunner:
    """Evaluates a variation's comparison rules against complete set members."""

    def __init__(self, formulas: FormulaEvaluator) -> None:
        self.formulas = formulas

    def evaluate_variation(
        self,
        rule: Mapping[str, Any],
        variation: Mapping[str, Any],
        members: Mapping[str, Mapping[str, Any]],
    ) -> list[ComparisonOutcome]:
        """``members`` maps extractor id → that member's latest metadata."""
        names = rule.get("extractor_names") or {}
        policy = rule.get("missing_row_policy") or MISSING_ROW_ZERO
        outcomes = []
        for comparison in variation.get("comparison_rules") or []:
            if (comparison.get("level") or "header") == "table":
                outcome = self._table_rule(comparison, variation, members, names, policy)
            else:
                scope = {
                    formula_identifier(extractor_id, names): header_of(metadata)
                    for extractor_id, metadata in members.items()
                }
                passed, note = self._check(comparison, scope)
                outcome = ComparisonOutcome(str(comparison.get("id")), passed, note)
            outcomes.append(outcome)
        return outcomes

    # ─── Single formula ───────────────────────────────────

    def _check(self, comparison: Mapping[str, Any], scope: Mapping[str, Any]) -> tuple[bool, str | None]:
        formula = comparison.get("formula")
        if not formula:
            return True, None

        try:
            if self.formulas.evaluate_bool(formula, scope):
                return True, None
        except FormulaError as exc:
            return False, str(exc)

        tolerance_type = comparison.get("tolerance_type")
        tolerance_value = comparison.get("tolerance_value")
        if not tolerance_type or tolerance_value is None:
            return False, "Formula evaluated to false"

        try:
            sides = self.formulas.equality_sides(formula, scope)
        except FormulaError as exc:
            return False, str(exc)
        if sides is None:
            return False, "Tolerance only applies to a bare equality formula"
        if within_tolerance(sides[0], sides[1], tolerance_type, tolerance_value):
            return True, f"Passed within {tolerance_type} tolerance {tolerance_value}"
        return False, f"Outside {tolerance_type} tolerance {tolerance_value}"

    # ─── Table level ──────────────────────────────────────

    def _table_rule(
        self,
        comparison: Mapping[str, Any],
        variation: Mapping[str, Any],
        members: Mapping[str, Mapping[str, Any]],
        names: Mapping[str, str],
        policy: str,
    ) -> ComparisonOutcome:
        rule_id = str(comparison.get("id"))
        table_keys = [k for k in variation.get("table_keys") or [] if k.get("extractor_id") in members]
        if not table_keys:
            return ComparisonOutcome(rule_id, False, "No table keys configured for this variation")

        # extractor → {row key → row}
        indexed: dict[str, dict[str, Mapping[str, Any]]] = {}
        ordered_keys: list[str] = []
        for table_key in table_keys:
            extractor_id = table_key["extractor_id"]
            tables = members[extractor_id].get("tables") or {}
            rows = tables.get(table_key.get("table")) or []
            by_key: dict[str, Mapping[str, Any]] = {}
            for row in rows:
                key = to_string(row.get(table_key.get("column"))).strip()
                if key and key not in by_key:
                    by_key[key] = row
                    if key not in ordered_keys:
                        ordered_keys.append(key)
            indexed[extractor_id] = by_key

        if not ordered_keys:
            return ComparisonOutcome(rule_id, False, "No keyed rows found")

        for key in ordered_keys:
            scope: dict[str, Any] = {}
            for extractor_id, by_key in indexed.items():
                row = by_key.get(key)
                if row is None:
                    if policy == MISSING_ROW_FAIL:
                        return ComparisonOutcome(rule_id, False, f"Row '{key}' missing for {extractor_id}")
                    row = ZeroRecord()
                scope[formula_identifier(extractor_id, names)] = row

            passed, note = self._check(comparison, scope)
            if not passed:
                return ComparisonOutcome(rule_id, False, f"Row '{key}': {note}")

        return ComparisonOutcome(rule_id, True, None)

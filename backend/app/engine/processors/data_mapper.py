"""
DATA_MAPPER node — enriches document metadata from a data-map record set.

Node config::

    {
        "data_map_set_id": "...",
        "lookups": [
            {"schema_field": "vendor", "map_set_column": "name",
             "match_type": "fuzzy", "threshold": 0.85}
        ],
        "targets": [
            {"schema_field": "vendor_code", "map_set_column": "code"},
            {"schema_field": "Lines.price", "map_set_column": "rate",
             "target_type": "table_column", "mode": "calculation",
             "calculation_expression": "schema * mapset"}
        ]
    }

Header targets use the best record for the document; table-column
targets (``Table.column``) pick the best record per row.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from app.core.config import settings
from app.core.constants import DefinitionKind, NodeKind
from app.engine.formula import get_path
from app.engine.graph import Node
from app.engine.processors.base import NodeProcessor
from app.engine.results import Continue, RunContext
from app.reconciliation.matching import string_similarity

TABLE_COLUMN = "table_column"


def score_records(
    records: list[Mapping[str, Any]],
    lookups: list[Mapping[str, Any]],
    resolve: Callable[[str], Any],
) -> list[tuple[Mapping[str, Any], float]]:
    """
    Candidate records that satisfy every evaluable lookup, best first.

    Exact lookups require similarity 1.0; fuzzy ones the lookup threshold.
    Returns [] when no lookup could be evaluated.
    """
    candidates = [(record, 1.0) for record in records]
    evaluated = False

    for lookup in lookups:
        value = resolve(lookup.get("schema_field") or "")
        if value is None:
            continue
        evaluated = True
        threshold = lookup.get("threshold")
        if threshold is None:
            threshold = settings.DEFAULT_FUZZY_THRESHOLD

        scored = []
        for record, score in candidates:
            similarity = string_similarity(value, record.get(lookup.get("map_set_column")))
            if (lookup.get("match_type") or "exact") == "exact":
                if similarity == 1.0:
                    scored.append((record, score))
            elif similarity >= threshold:
                scored.append((record, min(score, similarity)))
        candidates = scored

    if not evaluated:
        return []
    return sorted(candidates, key=lambda item: item[1], reverse=True)


class DataMapperProcessor(NodeProcessor):
    kind = NodeKind.DATA_MAPPER

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        config = node.config or {}
        lookups = config.get("lookups") or []
        targets = config.get("targets") or []
        if not lookups or not targets:
            return self._continue(metadata)

        set_id = self._require(node, "data_map_set_id")
        data_map = await self._definition(ctx, node, DefinitionKind.DATA_MAP_SET, set_id)
        records = data_map.get("records") or []

        header = dict(metadata.get("header") or {})
        enriched = {**metadata}

        def resolve(path: str) -> Any:
            direct = get_path(metadata, path)
            return direct if direct is not None else header.get(path)

        header_targets = [t for t in targets if t.get("target_type") != TABLE_COLUMN]
        table_targets = [t for t in targets if t.get("target_type") == TABLE_COLUMN]

        # ── Header block ──────────────────────────
        if header_targets:
            candidates = score_records(records, lookups, resolve)
            if candidates:
                best = candidates[0][0]
                for target in header_targets:
                    field = target.get("schema_field")
                    value = self._target_value(target, resolve(field), best, ctx)
                    if field in header:
                        header[field] = value
                    else:
                        enriched[field] = value

        # ── Table block ───────────────────────────
        if table_targets:
            enriched["tables"] = self._map_tables(metadata, header, records, lookups, table_targets, ctx)

        if "header" in metadata or header:
            enriched["header"] = header
        return self._continue(enriched)

    def _map_tables(
        self,
        metadata: Mapping[str, Any],
        header: Mapping[str, Any],
        records: list[Mapping[str, Any]],
        lookups: list[Mapping[str, Any]],
        targets: list[Mapping[str, Any]],
        ctx: RunContext,
    ) -> dict[str, Any]:
        tables = dict(metadata.get("tables") or {})
        groups: dict[str, list[tuple[str, Mapping[str, Any]]]] = {}
        for target in targets:
            table, _, column = (target.get("schema_field") or "").partition(".")
            groups.setdefault(table, []).append((column or table, target))

        for table, columns in groups.items():
            rows = tables.get(table)
            if not isinstance(rows, list) or not rows:
                continue

            mapped_rows = []
            for row in rows:
                def resolve_row(path: str, row=row, table=table) -> Any:
                    prefix, _, column = path.partition(".")
                    if column and prefix == table:
                        return row.get(column)
                    value = header.get(path)
                    return value if value is not None else get_path(metadata, path)

                candidates = score_records(records, lookups, resolve_row)
                if not candidates:
                    mapped_rows.append(row)
                    continue
                best = candidates[0][0]
                new_row = dict(row)
                for column, target in columns:
                    new_row[column] = self._target_value(target, row.get(column), best, ctx)
                mapped_rows.append(new_row)
            tables[table] = mapped_rows
        return tables

    def _target_value(self, target: Mapping[str, Any], current: Any, record: Mapping[str, Any], ctx: RunContext) -> Any:
        mapset_value = record.get(target.get("map_set_column"))
        expression = target.get("calculation_expression")
        if target.get("mode") == "calculation" and expression:
            return ctx.services.formulas.evaluate(expression, {"schema": current, "mapset": mapset_value})
        return mapset_value

"""
Rewrite structured (MBQL) queries from source to target schema ids.

The rewrite never raises for missing mappings: it returns a best-effort
query together with every gap it found, and the caller decides which gaps
are fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from .mbql import (
    ClauseList,
    FieldRef,
    InnerQuery,
    Literal,
    Node,
    Op,
    SourceCard,
    SourceQuery,
    SourceTable,
    parse_structured_query,
    structured_query_to_mbql,
)
from .models import UnmatchedField, UnmatchedTable
from .schema_resolver import SchemaResolver

logger = logging.getLogger(__name__)


@dataclass
class StructuredRewrite:
    query: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)
    unmatched_tables: List[UnmatchedTable] = field(default_factory=list)
    unmatched_fields: List[UnmatchedField] = field(default_factory=list)
    unresolved_cards: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unmatched_tables and not self.unmatched_fields


class _Gaps:
    def __init__(self):
        # type: () -> None
        self.result = StructuredRewrite(query={})
        self._tables = set()  # type: Set[Any]
        self._fields = set()  # type: Set[Any]

    def warn(self, message):
        # type: (str) -> None
        logger.warning(message)
        self.result.warnings.append(message)

    def table(self, entry):
        # type: (UnmatchedTable) -> None
        if entry.source_table_id not in self._tables:
            self._tables.add(entry.source_table_id)
            self.result.unmatched_tables.append(entry)

    def field(self, entry):
        # type: (UnmatchedField) -> None
        if entry.source_field_id not in self._fields:
            self._fields.add(entry.source_field_id)
            self.result.unmatched_fields.append(entry)


class MbqlRewriter:
    def __init__(self, resolver, source_database_id, target_database_id):
        # type: (SchemaResolver, int, int) -> None
        self.resolver = resolver
        self.source_database_id = source_database_id
        self.target_database_id = target_database_id

    def rewrite(self, dataset_query, card_id_map):
        # type: (Dict[str, Any], Dict[int, int]) -> StructuredRewrite
        gaps = _Gaps()
        query = parse_structured_query(dataset_query)

        if query.database == self.source_database_id:
            query.database = self.target_database_id
        elif query.database != self.target_database_id:
            gaps.warn(
                "Query uses database {}, expected source database {}".format(
                    query.database, self.source_database_id
                )
            )

        self._rewrite_inner(query.query, card_id_map, gaps)
        gaps.result.query = structured_query_to_mbql(query)
        return gaps.result

    def _rewrite_inner(self, inner, card_id_map, gaps):
        # type: (InnerQuery, Dict[int, int], _Gaps) -> None
        source = inner.source
        if isinstance(source, SourceTable):
            self._rewrite_source_table(source, gaps)
        elif isinstance(source, SourceCard):
            new_card_id = card_id_map.get(source.card_id)
            if new_card_id is not None:
                logger.debug("Remapped card__%d to card__%d", source.card_id, new_card_id)
                source.card_id = new_card_id
            else:
                gaps.result.unresolved_cards.append(source.card_id)
                gaps.warn("Could not map nested card ID {}".format(source.card_id))
        elif isinstance(source, SourceQuery):
            self._rewrite_inner(source.query, card_id_map, gaps)

        for join in inner.joins:
            self._rewrite_inner(join, card_id_map, gaps)

        for key, clause in inner.clauses.items():
            inner.clauses[key] = self._rewrite_clause(clause, gaps)
        for name, clause in inner.expressions.items():
            inner.expressions[name] = self._rewrite_clause(clause, gaps)

    def _rewrite_source_table(self, source, gaps):
        # type: (SourceTable, _Gaps) -> None
        if not isinstance(source.table_id, int):
            return
        new_id = self.resolver.resolve_table(source.table_id)
        if new_id is not None:
            source.table_id = new_id
            return
        table = self.resolver.source_table(source.table_id)
        gaps.table(
            UnmatchedTable(
                source_table_id=source.table_id,
                source_table_name=table.name if table else "table ID {}".format(source.table_id),
                schema=table.schema if table else "",
            )
        )
        gaps.warn("Could not map table ID {}".format(source.table_id))

    def _rewrite_clause(self, node, gaps):
        # type: (Node, _Gaps) -> Node
        if isinstance(node, FieldRef):
            if isinstance(node.field_id, int):
                node.field_id = self._translate_field(node.field_id, gaps, "")
            options = node.options
            if options is not None and isinstance(options.get("source-field"), int):
                options["source-field"] = self._translate_field(
                    options["source-field"], gaps, "source-field "
                )
            return node
        if isinstance(node, Op):
            node.args = [self._rewrite_clause(a, gaps) for a in node.args]
            return node
        if isinstance(node, ClauseList):
            node.items = [self._rewrite_clause(i, gaps) for i in node.items]
            return node
        if isinstance(node, Literal):
            return node
        raise TypeError("Unknown clause node: {!r}".format(node))

    def _translate_field(self, field_id, gaps, role):
        # type: (int, _Gaps, str) -> int
        new_id = self.resolver.resolve_field(field_id)
        if new_id is not None:
            return new_id
        name, table_label = self.resolver.field_label(field_id)
        f = self.resolver.source_field(field_id)
        gaps.field(
            UnmatchedField(
                source_field_id=field_id,
                source_field_name=name,
                source_table_name=table_label,
                source_table_id=f.table_id if f else None,
            )
        )
        label = "{}.{}".format(table_label, name) if table_label else name
        gaps.warn("Could not map {}{} (id {})".format(role, label, field_id))
        return field_id

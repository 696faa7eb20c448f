"""
Correspondence between source and target schema objects (tables and fields).

Resolution precedence, first hit wins:

  1. a confirmed mapping from the mapping store
  2. exact (schema, name) match for tables, exact name match for fields
  3. case/whitespace/underscore-insensitive name match, only when unique
  4. unmatched; nothing is guessed

Confidence scores are only used to pre-populate mappings for human review.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from .models import (
    FieldDescriptor,
    FieldMapping,
    MappingCandidate,
    MappingMethod,
    SchemaCatalog,
    TableDescriptor,
    TableMapping,
    UnmatchedField,
    UnmatchedTable,
)

logger = logging.getLogger(__name__)

SCORE_EXACT_NAME = 1.0
SCORE_DISPLAY_NAME = 0.95
SCORE_NORMALIZED_NAME = 0.92
SCORE_SUBSTRING = 0.75
TABLE_NAME_BONUS = 0.3
MAX_ALTERNATIVES = 3

_NORMALIZE = re.compile(r"[\s_]+")


def normalize_name(name):
    # type: (Optional[str]) -> str
    return _NORMALIZE.sub("", (name or "").lower())


def score_name_match(name, display_name, candidate_name, candidate_display):
    # type: (str, str, str, str) -> Tuple[float, str]
    """Score how well a candidate name matches; (0.0, "") if it does not."""
    lname = (name or "").lower()
    lcand = (candidate_name or "").lower()
    ldisplay = (display_name or "").lower()
    lcand_display = (candidate_display or "").lower()

    if lname and lname == lcand:
        return SCORE_EXACT_NAME, "exact name match"
    if ldisplay and ldisplay == lcand_display:
        return SCORE_DISPLAY_NAME, "exact display name match"
    if normalize_name(name) and normalize_name(name) == normalize_name(candidate_name):
        return SCORE_NORMALIZED_NAME, "normalized name match"
    if lname and lcand and (lname in lcand or lcand in lname):
        return SCORE_SUBSTRING, "partial name overlap"
    return 0.0, ""


def rank_field_candidates(field, candidates):
    # type: (FieldDescriptor, List[FieldDescriptor]) -> List[MappingCandidate]
    ranked = []  # type: List[MappingCandidate]
    for cand in candidates:
        score, reason = score_name_match(
            field.name, field.display_name, cand.name, cand.display_name
        )
        if score > 0:
            ranked.append(MappingCandidate(id=cand.id, name=cand.name, score=score, reason=reason))
    ranked.sort(key=lambda c: (-c.score, c.id))
    return ranked


class SchemaResolver:
    def __init__(self, source, target, store):
        # type: (SchemaCatalog, SchemaCatalog, object) -> None
        self.source = source
        self.target = target
        self.store = store
        self._source_tables = {t.id: t for t in source.tables}  # type: Dict[int, TableDescriptor]
        self._target_tables = {t.id: t for t in target.tables}  # type: Dict[int, TableDescriptor]
        self._source_fields = source.field_index()  # type: Dict[int, FieldDescriptor]
        self._target_fields = target.field_index()  # type: Dict[int, FieldDescriptor]
        self.table_map = {}  # type: Dict[int, int]
        self.field_map = {}  # type: Dict[int, int]
        self.unmatched_tables = []  # type: List[UnmatchedTable]
        self.unmatched_fields = []  # type: List[UnmatchedField]

    @classmethod
    def load(cls, source, target, store):
        # type: (SchemaCatalog, SchemaCatalog, object) -> SchemaResolver
        resolver = cls(source, target, store)
        resolver.rebuild()
        return resolver

    # ------------------------------------------------------------------
    # Building the maps
    # ------------------------------------------------------------------

    def rebuild(self):
        # type: () -> None
        self.table_map = {}
        self.field_map = {}
        self.unmatched_tables = []
        self.unmatched_fields = []

        table_mappings = self.store.get_table_mappings()
        for m in table_mappings:
            if m.confirmed and not m.ignored and m.target_table_id is not None:
                self.table_map[m.source_table_id] = m.target_table_id
        if self.table_map:
            logger.info("Loaded %d confirmed table mappings", len(self.table_map))

        for table in self.source.tables:
            if table.id in self.table_map:
                continue
            match = self._match_table(table)
            if match is not None:
                self.table_map[table.id] = match.id
            else:
                self.unmatched_tables.append(
                    UnmatchedTable(
                        source_table_id=table.id,
                        source_table_name=table.name,
                        schema=table.schema,
                    )
                )

        confirmed_fields = {
            m.source_field_id: m.target_field_id
            for m in self.store.get_field_mappings()
            if m.confirmed and m.target_field_id is not None
        }
        for table in self.source.tables:
            self._match_fields(table, confirmed_fields)

        logger.info(
            "Mapped %d tables and %d fields (%d tables, %d fields unmatched)",
            len(self.table_map), len(self.field_map),
            len(self.unmatched_tables), len(self.unmatched_fields),
        )

    def _match_table(self, table):
        # type: (TableDescriptor) -> Optional[TableDescriptor]
        for t in self.target.tables:
            if t.schema == table.schema and t.name == table.name:
                return t
        key = normalize_name(table.name)
        loose = [t for t in self.target.tables if normalize_name(t.name) == key]
        if len(loose) == 1:
            logger.info(
                "Loose match for %s -> %s", table.qualified_name, loose[0].qualified_name
            )
            return loose[0]
        if len(loose) > 1:
            logger.debug(
                "Ambiguous loose match for %s: %s",
                table.qualified_name, [t.qualified_name for t in loose],
            )
        return None

    def _match_fields(self, table, confirmed_fields):
        # type: (TableDescriptor, Dict[int, int]) -> None
        target_table = self._target_tables.get(self.table_map.get(table.id))
        for f in table.fields:
            if f.id in confirmed_fields:
                self.field_map[f.id] = confirmed_fields[f.id]
                continue
            if target_table is None:
                continue
            match = self._match_field(f, target_table)
            if match is not None:
                self.field_map[f.id] = match.id
            else:
                self.unmatched_fields.append(
                    UnmatchedField(
                        source_field_id=f.id,
                        source_field_name=f.name,
                        source_table_name=table.qualified_name,
                        source_table_id=table.id,
                    )
                )

    def _match_field(self, field, target_table):
        # type: (FieldDescriptor, TableDescriptor) -> Optional[FieldDescriptor]
        for f in target_table.fields:
            if f.name == field.name:
                return f
        key = normalize_name(field.name)
        loose = [f for f in target_table.fields if normalize_name(f.name) == key]
        if len(loose) == 1:
            return loose[0]
        return None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_table(self, source_table_id):
        # type: (int) -> Optional[int]
        return self.table_map.get(source_table_id)

    def resolve_field(self, source_field_id):
        # type: (int) -> Optional[int]
        return self.field_map.get(source_field_id)

    def source_table(self, table_id):
        # type: (int) -> Optional[TableDescriptor]
        return self._source_tables.get(table_id)

    def source_field(self, field_id):
        # type: (int) -> Optional[FieldDescriptor]
        return self._source_fields.get(field_id)

    def field_label(self, field_id):
        # type: (int) -> Tuple[str, str]
        """Best available (field name, table label) for diagnostics."""
        f = self._source_fields.get(field_id)
        if f is None:
            return "field ID {}".format(field_id), ""
        table = self._source_tables.get(f.table_id)
        return f.name, table.qualified_name if table else ""

    def candidates_for_field(self, source_field_id):
        # type: (int) -> List[FieldDescriptor]
        f = self._source_fields.get(source_field_id)
        if f is None:
            return []
        target_table = self._target_tables.get(self.table_map.get(f.table_id))
        if target_table is None:
            return []
        return list(target_table.fields)

    def qualified_table_names(self):
        # type: () -> Dict[str, str]
        """Resolved ``schema.table`` renames, keyed by lower-cased source name."""
        names = {}  # type: Dict[str, str]
        for src_id, tgt_id in self.table_map.items():
            src = self._source_tables.get(src_id)
            tgt = self._target_tables.get(tgt_id)
            if src and tgt and src.schema:
                names[src.qualified_name.lower()] = tgt.qualified_name
        return names

    # ------------------------------------------------------------------
    # Manual overrides
    # ------------------------------------------------------------------

    def set_table_mapping(self, source_table_id, target_table_id):
        # type: (int, int) -> TableMapping
        src = self._source_tables.get(source_table_id)
        tgt = self._target_tables.get(target_table_id)
        mapping = TableMapping(
            source_table_id=source_table_id,
            source_table_name=src.qualified_name if src else "",
            suggested_target_table_id=target_table_id,
            suggested_target_table_name=tgt.qualified_name if tgt else "",
            confidence=1.0,
            confirmed=True,
            final_target_table_id=target_table_id,
        )
        for existing in self.store.get_table_mappings():
            if existing.source_table_id == source_table_id:
                mapping.alternatives = existing.alternatives
                break
        self.store.upsert_table_mapping(mapping)
        logger.info("Table mapping %d -> %d confirmed", source_table_id, target_table_id)
        self.rebuild()
        return mapping

    def set_field_mapping(self, source_field_id, target_field_id,
                          method=MappingMethod.MANUAL, confidence=1.0):
        # type: (int, int, MappingMethod, float) -> FieldMapping
        src = self._source_fields.get(source_field_id)
        tgt = self._target_fields.get(target_field_id)
        mapping = FieldMapping(
            source_field_id=source_field_id,
            source_field_name=src.name if src else "",
            source_table_id=src.table_id if src else None,
            suggested_target_field_id=target_field_id,
            suggested_target_field_name=tgt.name if tgt else "",
            target_table_id=tgt.table_id if tgt else None,
            confidence=confidence,
            method=method,
            confirmed=True,
            final_target_field_id=target_field_id,
        )
        self.store.upsert_field_mapping(mapping)
        self.field_map[source_field_id] = target_field_id
        self.unmatched_fields = [
            f for f in self.unmatched_fields if f.source_field_id != source_field_id
        ]
        logger.info("Field mapping %d -> %d confirmed (%s)", source_field_id, target_field_id, method.value)
        return mapping

    # ------------------------------------------------------------------
    # Bulk suggestion
    # ------------------------------------------------------------------

    def rank_table_candidates(self, table):
        # type: (TableDescriptor) -> List[MappingCandidate]
        ranked = []  # type: List[Tuple[float, int, MappingCandidate]]
        for cand in self.target.tables:
            score, reason = score_name_match(
                table.name, table.display_name, cand.name, cand.display_name
            )
            if table.name.lower() == cand.name.lower():
                score += TABLE_NAME_BONUS
            if score <= 0:
                continue
            same_schema = 0 if cand.schema == table.schema else 1
            ranked.append(
                (score, same_schema,
                 MappingCandidate(id=cand.id, name=cand.qualified_name, score=score, reason=reason))
            )
        ranked.sort(key=lambda r: (-r[0], r[1], r[2].id))
        return [r[2] for r in ranked]

    def suggest_table_mappings(self):
        # type: () -> List[TableMapping]
        existing = {m.source_table_id: m for m in self.store.get_table_mappings()}
        suggestions = []  # type: List[TableMapping]
        for table in self.source.tables:
            current = existing.get(table.id)
            if current is not None and (current.confirmed or current.ignored):
                continue
            ranked = self.rank_table_candidates(table)
            top = ranked[0] if ranked else None
            suggestions.append(
                TableMapping(
                    source_table_id=table.id,
                    source_table_name=table.qualified_name,
                    suggested_target_table_id=top.id if top else None,
                    suggested_target_table_name=top.name if top else "",
                    confidence=min(top.score, 1.0) if top else 0.0,
                    alternatives=ranked[:MAX_ALTERNATIVES],
                )
            )
        if suggestions:
            self.store.upsert_table_mappings(suggestions)
        logger.info("Suggested mappings for %d source tables", len(suggestions))
        return suggestions

    def auto_confirm(self, threshold=0.94):
        # type: (float) -> List[TableMapping]
        confirmed = []  # type: List[TableMapping]
        for m in self.store.get_table_mappings():
            if m.confirmed or m.ignored or m.suggested_target_table_id is None:
                continue
            if m.confidence > threshold:
                m.confirmed = True
                m.final_target_table_id = m.suggested_target_table_id
                confirmed.append(m)
                logger.info(
                    "Auto-confirmed %s -> %s (%.1f%%)",
                    m.source_table_name, m.suggested_target_table_name, m.confidence * 100,
                )
        if confirmed:
            self.store.upsert_table_mappings(confirmed)
            self.rebuild()
        return confirmed

    # ------------------------------------------------------------------
    # Oracle context
    # ------------------------------------------------------------------

    def describe_for_translation(self):
        # type: () -> str
        lines = [
            "Source database ID: {}".format(self.source.database_id),
            "Target database ID: {}".format(self.target.database_id),
            "",
            "=== TABLE MAPPINGS WITH SCHEMAS ===",
            "",
        ]
        for src_id in sorted(self.table_map):
            src = self._source_tables.get(src_id)
            tgt = self._target_tables.get(self.table_map[src_id])
            if src is None or tgt is None:
                continue
            lines.append("SOURCE TABLE: {} (ID: {})".format(src.qualified_name, src.id))
            lines.append("  Columns: {}".format(_columns(src)))
            lines.append("  MAPS TO")
            lines.append("TARGET TABLE: {} (ID: {})".format(tgt.qualified_name, tgt.id))
            lines.append("  Columns: {}".format(_columns(tgt)))
            lines.append("")

        lines.append("=== UNMAPPED TABLES ===")
        for missing in self.unmatched_tables:
            src = self._source_tables.get(missing.source_table_id)
            if src is not None:
                lines.append("{} (ID: {})".format(src.qualified_name, src.id))
                lines.append("  Columns: {}".format(_columns(src)))
        return "\n".join(lines)


def _columns(table):
    # type: (TableDescriptor) -> str
    return ", ".join("{}:{}".format(f.name, f.base_type) for f in table.fields)

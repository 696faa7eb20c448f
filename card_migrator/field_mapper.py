"""
Suggest a target field for an unmatched source field.

A heuristic pass runs first; the oracle is only consulted when no candidate
scores high enough, and its pick is accepted only if it names one of the
candidates. Suggestions are returned for review and never applied here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from .models import FieldDescriptor, MappingMethod
from .oracle import OracleError
from .schema_resolver import SchemaResolver, rank_field_candidates

logger = logging.getLogger(__name__)

HEURISTIC_ACCEPT_SCORE = 0.9
ORACLE_SCORE = 0.8

_FIELD_ID_PATTERN = re.compile(r"field_id:\s*(\d+)", re.IGNORECASE)
_REASON_PATTERN = re.compile(r"field_id:\s*\d+\s*\|?\s*(?:reason:\s*)?", re.IGNORECASE)


@dataclass
class FieldSuggestion:
    source_field_id: int
    target_field_id: int
    score: float
    reason: str
    method: MappingMethod


class FieldMapper:
    def __init__(self, resolver, oracle=None):
        # type: (SchemaResolver, Optional[object]) -> None
        self.resolver = resolver
        self.oracle = oracle

    def suggest(self, source_field_id):
        # type: (int) -> Optional[FieldSuggestion]
        field = self.resolver.source_field(source_field_id)
        if field is None:
            logger.warning("No metadata for source field %d", source_field_id)
            return None

        candidates = self.resolver.candidates_for_field(source_field_id)
        if not candidates:
            logger.warning("No candidates for source field %d", source_field_id)
            return None

        ranked = rank_field_candidates(field, candidates)
        if ranked and ranked[0].score >= HEURISTIC_ACCEPT_SCORE:
            best = ranked[0]
            return FieldSuggestion(
                source_field_id=source_field_id,
                target_field_id=best.id,
                score=best.score,
                reason=best.reason,
                method=MappingMethod.HEURISTIC,
            )

        if self.oracle is None:
            return None
        return self._ask_oracle(field, candidates)

    def _ask_oracle(self, field, candidates):
        # type: (FieldDescriptor, List[FieldDescriptor]) -> Optional[FieldSuggestion]
        _, table_label = self.resolver.field_label(field.id)
        prompt = "\n".join(
            [
                "We are mapping fields from a source database table to a target database table.",
                "Source table: {}".format(table_label),
                "Source field: {} (display: {}, id: {}, base_type: {})".format(
                    field.name, field.display_name or "n/a", field.id, field.base_type or "unknown"
                ),
                "Target table candidates (pick exactly one field id):",
            ]
            + [
                "- {}: {} (display: {})".format(c.id, c.name, c.display_name or "n/a")
                for c in candidates
            ]
            + [
                "",
                'Respond with a single line: "field_id: <id> | reason: <short reason>".',
            ]
        )

        try:
            text = self.oracle.complete(prompt).strip()
        except OracleError as e:
            logger.warning("Oracle field suggestion failed for field %d: %s", field.id, e)
            return None

        match = _FIELD_ID_PATTERN.search(text)
        if not match:
            logger.warning("Oracle gave no field id for field %d: %r", field.id, text[:100])
            return None

        chosen = int(match.group(1))
        if chosen not in {c.id for c in candidates}:
            logger.warning("Oracle chose field %d, which is not a candidate", chosen)
            return None

        return FieldSuggestion(
            source_field_id=field.id,
            target_field_id=chosen,
            score=ORACLE_SCORE,
            reason=_REASON_PATTERN.sub("", text, count=1).strip(),
            method=MappingMethod.EXTERNAL,
        )

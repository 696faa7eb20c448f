"""
Migration orchestrator: migrates one card at a time together with the
cards it depends on, then verifies and commits the result.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .config import MigrationConfig
from .dependency_resolver import CyclicDependencyError, DependencyGraph, extract_card_references
from .mapping_store import FileMappingStore
from .mbql_rewriter import MbqlRewriter
from .metabase_client import MetabaseApiError, MetabaseClient
from .models import (
    Card,
    CardState,
    ErrorKind,
    MigratedCard,
    MigrationFailure,
    MigrationOutcome,
    MigrationStatus,
    QueryKind,
    WaitingItem,
)
from .oracle import build_oracle
from .schema_resolver import SchemaResolver
from .sql_rewriter import NativeQueryRewriter
from .sql_translator import SqlTranslator, TranslationError

logger = logging.getLogger(__name__)

WAITING_STATE_KEY = "waiting_cards"
ON_HOLD_STATE_KEY = "on_hold_cards"

# Settings that point at source field ids or names and break on the target
FIELD_SPECIFIC_SETTINGS = (
    "column_settings",
    "table.columns",
    "graph.dimensions",
    "graph.metrics",
    "click_behavior",
)


def clean_visualization_settings(settings):
    # type: (Optional[Dict[str, Any]]) -> Dict[str, Any]
    cleaned = copy.deepcopy(settings or {})
    for key in FIELD_SPECIFIC_SETTINGS:
        cleaned.pop(key, None)
    return cleaned


def build_card_definition(card, dataset_query, suffix, collection_id=None):
    # type: (Card, Dict[str, Any], str, Optional[int]) -> Dict[str, Any]
    name = card.name
    if suffix and not name.endswith(suffix):
        name = "{} {}".format(name, suffix)
    return {
        "name": name,
        "description": card.description,
        "display": card.display,
        "dataset_query": dataset_query,
        "visualization_settings": clean_visualization_settings(card.visualization_settings),
        "collection_id": collection_id if collection_id is not None else card.collection_id,
    }


class CardMigrator:
    def __init__(self, config, client, store, resolver, translator):
        # type: (MigrationConfig, MetabaseClient, FileMappingStore, SchemaResolver, SqlTranslator) -> None
        self.config = config
        self.client = client
        self.store = store
        self.resolver = resolver
        self.translator = translator
        self.structured = MbqlRewriter(
            resolver, config.source_database_id, config.target_database_id
        )
        self.native = NativeQueryRewriter(
            resolver, translator, config.source_database_id, config.target_database_id
        )

    @classmethod
    def from_config(cls, config):
        # type: (MigrationConfig) -> CardMigrator
        client = MetabaseClient(config.metabase, config.retry)
        store = FileMappingStore(config.storage.path)
        resolver = SchemaResolver.load(
            client.get_schema(config.source_database_id),
            client.get_schema(config.target_database_id),
            store,
        )
        translator = SqlTranslator(build_oracle(config.oracle), store, config.retry)
        return cls(config, client, store, resolver, translator)

    # ------------------------------------------------------------------
    # Single card
    # ------------------------------------------------------------------

    def migrate_with_dependencies(self, card_id, dry_run=True, visited=None,
                                  collection_id=None, force=False, timeout=None):
        # type: (int, bool, Optional[Iterable[int]], Optional[int], bool, Optional[float]) -> MigrationOutcome
        """Migrate ``card_id`` after every card it references.

        Never raises: every failure is returned as a ``MigrationFailure``.
        ``timeout`` defaults to ``migration_timeout`` from the config; None
        in both places means no deadline.
        """
        if timeout is None:
            timeout = self.config.migration_timeout
        deadline = time.monotonic() + timeout if timeout else None
        path = frozenset(visited or ())

        logger.info(
            "Migrating card %d (%s%s)",
            card_id, "dry run" if dry_run else "live", ", force" if force else "",
        )
        try:
            result = self._migrate(card_id, dry_run, path, collection_id, force, deadline)
        except Exception as e:
            logger.exception("Unexpected error migrating card %d", card_id)
            result = MigrationFailure(
                card_id=card_id,
                kind=ErrorKind.UNKNOWN,
                message="{}: {}".format(type(e).__name__, e),
            )

        if not dry_run:
            self._update_waiting_area(result)
        return result

    def _migrate(self, card_id, dry_run, visited, collection_id, force, deadline):
        # type: (int, bool, frozenset, Optional[int], bool, Optional[float]) -> MigrationOutcome
        if card_id in visited:
            return self._failure(
                card_id, ErrorKind.CIRCULAR_DEPENDENCY,
                "Card {} is already on the migration path {}".format(card_id, sorted(visited)),
            )

        if _expired(deadline):
            return self._failure(card_id, ErrorKind.TIMEOUT, "Deadline expired before fetching card")

        logger.info("Step 1/6: Fetching card %d", card_id)
        try:
            card = self.client.get_card(card_id)
        except MetabaseApiError as e:
            return self._failure(card_id, ErrorKind.SOURCE_UNAVAILABLE, str(e))
        if card.query_kind is None:
            return self._failure(
                card_id, ErrorKind.UNKNOWN,
                "Unsupported query type {!r}".format(card.dataset_query.get("type")),
                card=card,
            )

        logger.info("Step 2/6: Resolving dependencies of card %d", card_id)
        path = visited | {card_id}
        mapped = self.store.get_card_id_mappings()
        dependencies = []  # type: List[MigrationOutcome]
        for dep_id in sorted(extract_card_references(card.dataset_query)):
            if dep_id in mapped:
                continue
            if _expired(deadline):
                return self._failure(
                    card_id, ErrorKind.TIMEOUT, "Deadline expired while migrating dependencies",
                    card=card, dependencies=dependencies,
                )
            logger.info("Card %d depends on unmigrated card %d", card_id, dep_id)
            child = self._migrate(dep_id, dry_run, path, collection_id, False, deadline)
            dependencies.append(child)
            if not child.ok:
                if child.kind == ErrorKind.CIRCULAR_DEPENDENCY:
                    return self._failure(
                        card_id, ErrorKind.CIRCULAR_DEPENDENCY,
                        "Dependency card {} is part of a reference cycle".format(dep_id),
                        card=card, cause=child, dependencies=dependencies,
                    )
                return self._failure(
                    card_id, ErrorKind.DEPENDENCY_NOT_MIGRATED,
                    "Dependency card {} was not migrated".format(dep_id),
                    card=card, cause=child, dependencies=dependencies,
                )

        existing = self.store.get_card_id_mapping(card_id)
        if existing is not None and not force:
            logger.info("Card %d already migrated as card %d", card_id, existing)
            try:
                migrated_query = self.client.get_card(existing).dataset_query
            except MetabaseApiError as e:
                logger.warning("Could not fetch target card %d: %s", existing, e)
                migrated_query = None
            return MigratedCard(
                card_id=card_id,
                card_name=card.name,
                status=MigrationStatus.ALREADY_MIGRATED,
                original_query=card.dataset_query,
                migrated_query=migrated_query,
                new_card_id=existing,
                card_url=self.client.card_url(existing),
                dry_run=dry_run,
                dependencies=dependencies,
            )

        if _expired(deadline):
            return self._failure(
                card_id, ErrorKind.TIMEOUT, "Deadline expired before rewriting",
                card=card, dependencies=dependencies,
            )

        logger.info("Step 3/6: Rewriting %s query of card %d", card.query_kind.value, card_id)
        card_map = self.store.get_card_id_mappings()
        outcome = self._rewrite(card, card_map, dry_run, dependencies)
        if isinstance(outcome, MigrationFailure):
            return outcome
        migrated_query, warnings = outcome

        if dry_run:
            logger.info("Step 4/6: Dry run, no card created for card %d", card_id)
            return MigratedCard(
                card_id=card_id,
                card_name=card.name,
                status=MigrationStatus.OK,
                original_query=card.dataset_query,
                migrated_query=migrated_query,
                new_card_id=existing,
                dry_run=True,
                warnings=warnings,
                dependencies=dependencies,
            )

        if _expired(deadline):
            return self._failure(
                card_id, ErrorKind.TIMEOUT, "Deadline expired before creating the target card",
                card=card, migrated_query=migrated_query, warnings=warnings,
                dependencies=dependencies,
            )

        logger.info("Step 4/6: Writing target card for card %d", card_id)
        definition = build_card_definition(
            card, migrated_query, self.config.card_name_suffix, collection_id
        )
        try:
            if force and existing is not None:
                self.client.update_card(existing, definition)
                new_card_id = existing
            else:
                new_card_id = self.client.create_card(definition)["id"]
        except MetabaseApiError as e:
            return self._failure(
                card_id, ErrorKind.TARGET_API_ERROR, str(e),
                card=card, migrated_query=migrated_query, warnings=warnings,
                dependencies=dependencies,
            )

        logger.info("Step 5/6: Verifying target card %d", new_card_id)
        verified, migrated_query = self._verify(card, new_card_id, migrated_query, warnings)

        logger.info("Step 6/6: Recording card mapping %d -> %d", card_id, new_card_id)
        self.store.set_card_id_mapping(card_id, new_card_id)

        return MigratedCard(
            card_id=card_id,
            card_name=card.name,
            status=MigrationStatus.OK,
            original_query=card.dataset_query,
            migrated_query=migrated_query,
            new_card_id=new_card_id,
            card_url=self.client.card_url(new_card_id),
            verified=verified,
            warnings=warnings,
            dependencies=dependencies,
        )

    def _rewrite(self, card, card_map, dry_run, dependencies):
        # type: (Card, Dict[int, int], bool, List[MigrationOutcome]) -> Any
        """Return ``(migrated_query, warnings)`` or a ``MigrationFailure``."""
        if card.query_kind == QueryKind.STRUCTURED:
            rw = self.structured.rewrite(card.dataset_query, card_map)
            if rw.unmatched_tables:
                return self._failure(
                    card.id, ErrorKind.MISSING_MAPPING_TABLE,
                    "Unmapped tables: {}".format(
                        ", ".join(t.source_table_name for t in rw.unmatched_tables)
                    ),
                    card=card, migrated_query=rw.query, warnings=rw.warnings,
                    unmatched_tables=rw.unmatched_tables, unmatched_fields=rw.unmatched_fields,
                    dependencies=dependencies,
                )
            if rw.unmatched_fields:
                return self._failure(
                    card.id, ErrorKind.MISSING_MAPPING_FIELD,
                    "Unmapped fields: {}".format(
                        ", ".join(
                            "{}.{}".format(f.source_table_name, f.source_field_name)
                            if f.source_table_name else f.source_field_name
                            for f in rw.unmatched_fields
                        )
                    ),
                    card=card, migrated_query=rw.query, warnings=rw.warnings,
                    unmatched_fields=rw.unmatched_fields, dependencies=dependencies,
                )
            query, warnings, unresolved = rw.query, rw.warnings, rw.unresolved_cards
        else:
            try:
                rw = self.native.rewrite(card.dataset_query, card_map)
            except TranslationError as e:
                return self._failure(
                    card.id, ErrorKind.TRANSLATION_FAILED, str(e),
                    card=card, dependencies=dependencies,
                )
            query, warnings, unresolved = rw.query, rw.warnings, rw.unresolved_cards

        if unresolved and not dry_run:
            return self._failure(
                card.id, ErrorKind.DEPENDENCY_NOT_MIGRATED,
                "Referenced cards have no migrated counterpart: {}".format(sorted(set(unresolved))),
                card=card, migrated_query=query, warnings=warnings, dependencies=dependencies,
            )
        return query, list(warnings)

    def _verify(self, card, new_card_id, migrated_query, warnings):
        # type: (Card, int, Dict[str, Any], List[str]) -> Any
        """Run the new card once; repair native SQL on error.

        Returns ``(verified, best_known_query)``. The target card already
        exists at this point, so errors here only mark it unverified.
        """
        error = self._execute(new_card_id)
        if not error:
            return True, migrated_query

        logger.warning("Card %d failed verification: %s", new_card_id, error)
        if card.query_kind != QueryKind.NATIVE:
            warnings.append("Verification failed: {}".format(error))
            return False, migrated_query

        context = self.resolver.describe_for_translation()
        current = migrated_query
        for attempt in range(1, self.config.repair_attempts + 1):
            current_sql = current["native"]["query"]
            try:
                fixed = self.translator.repair(card.native_sql, current_sql, error, context)
            except Exception as e:
                logger.exception("Repair of card %d raised", new_card_id)
                warnings.append("Repair attempt {} raised {}: {}".format(attempt, type(e).__name__, e))
                break
            if fixed is None:
                logger.info("No repair offered for card %d, stopping after %d attempts", new_card_id, attempt)
                break
            candidate = copy.deepcopy(current)
            candidate["native"]["query"] = fixed
            try:
                self.client.update_card(new_card_id, {"dataset_query": candidate})
            except Exception as e:
                logger.warning("Could not apply repair attempt %d to card %d: %s", attempt, new_card_id, e)
                warnings.append("Could not apply repair attempt {}: {}".format(attempt, e))
                break
            current = candidate
            error = self._execute(new_card_id)
            if not error:
                logger.info("Card %d repaired on attempt %d", new_card_id, attempt)
                warnings.append("Query repaired after {} attempt(s)".format(attempt))
                return True, current
            logger.warning("Repair attempt %d for card %d still fails: %s", attempt, new_card_id, error)

        warnings.append("Unverified: last execution error: {}".format(error))
        return False, current

    def _execute(self, card_id):
        # type: (int) -> Optional[str]
        """Run a target card once; the execution error message, or None."""
        try:
            return self.client.query_card(card_id).get("error")
        except Exception as e:
            logger.warning("Running card %d raised: %s", card_id, e)
            return "{}: {}".format(type(e).__name__, e)

    def _failure(self, card_id, kind, message, card=None, **kwargs):
        # type: (int, ErrorKind, str, Optional[Card], Any) -> MigrationFailure
        logger.error("Card %d failed (%s): %s", card_id, kind.value, message)
        return MigrationFailure(
            card_id=card_id,
            kind=kind,
            message=message,
            card_name=card.name if card else "",
            original_query=card.dataset_query if card else None,
            **kwargs
        )

    # ------------------------------------------------------------------
    # Waiting area
    # ------------------------------------------------------------------

    def waiting_area(self):
        # type: () -> List[WaitingItem]
        return [WaitingItem(**row) for row in self.store.get_state(WAITING_STATE_KEY) or []]

    def _update_waiting_area(self, result):
        # type: (MigrationOutcome) -> None
        waiting = {item.card_id: item for item in self.waiting_area()}
        for outcome in _walk(result):
            if outcome.ok:
                waiting.pop(outcome.card_id, None)
                continue
            waiting[outcome.card_id] = WaitingItem(
                card_id=outcome.card_id,
                card_name=outcome.card_name,
                kind=outcome.kind.value,
                reason=outcome.message,
                missing_tables=[t.source_table_name for t in outcome.unmatched_tables],
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        self.store.set_state(
            WAITING_STATE_KEY, [vars(waiting[k]) for k in sorted(waiting)]
        )

    # ------------------------------------------------------------------
    # Card states and batches
    # ------------------------------------------------------------------

    def card_states(self, cards=None):
        # type: (Optional[List[Card]]) -> Dict[int, CardState]
        if cards is None:
            cards = self.client.list_cards()
        cards = [c for c in cards if c.database_id == self.config.source_database_id]
        graph = DependencyGraph(cards)
        migrated = set(self.store.get_card_id_mappings())
        failed = {item.card_id for item in self.waiting_area()} - migrated

        seeds = set(failed)
        if self.config.hold_native_cards:
            seeds.update(c.id for c in cards if c.is_native and c.id not in migrated)
        blocked = graph.blocked_cards(sorted(seeds), migrated)

        states = {}  # type: Dict[int, CardState]
        for card in cards:
            if card.id in migrated:
                states[card.id] = CardState.MIGRATED
            elif card.id in failed:
                states[card.id] = CardState.FAILED
            elif card.id in blocked:
                states[card.id] = CardState.ON_HOLD
            elif graph.dependencies(card.id) <= migrated:
                states[card.id] = CardState.READY
            else:
                states[card.id] = CardState.UNMIGRATED
        return states

    def on_hold_cards(self, cards=None):
        # type: (Optional[List[Card]]) -> List[int]
        states = self.card_states(cards)
        current = {cid for cid, s in states.items() if s == CardState.ON_HOLD}
        previous = set(self.store.get_state(ON_HOLD_STATE_KEY) or [])
        still_held = {
            cid for cid in previous
            if states.get(cid) not in (CardState.MIGRATED, CardState.READY)
        }
        held = sorted(current | still_held)
        self.store.set_state(ON_HOLD_STATE_KEY, held)
        logger.info("%d cards on hold", len(held))
        return held

    def migrate_ready(self, dry_run=False, limit=None):
        # type: (bool, Optional[int]) -> List[MigrationOutcome]
        """Migrate every ready card, providers first, one at a time."""
        cards = [
            c for c in self.client.list_cards()
            if c.database_id == self.config.source_database_id
        ]
        results = []  # type: List[MigrationOutcome]

        stuck = set()  # type: Set[int]
        try:
            order = DependencyGraph(cards).migration_order()
        except CyclicDependencyError as e:
            stuck = set(e.cards)
            logger.warning("Skipping %d cards caught in or behind a dependency cycle", len(stuck))
            order = DependencyGraph([c for c in cards if c.id not in stuck]).migration_order()
            for cid in sorted(stuck):
                results.append(
                    self._failure(
                        cid, ErrorKind.CIRCULAR_DEPENDENCY,
                        "Card is part of, or depends on, a dependency cycle",
                        card=next(c for c in cards if c.id == cid),
                    )
                )

        states = self.card_states(cards)
        graph = DependencyGraph(cards)
        done = set(self.store.get_card_id_mappings())
        attempted = 0
        for cid in order:
            if limit is not None and attempted >= limit:
                break
            if states.get(cid) not in (CardState.READY, CardState.UNMIGRATED):
                continue
            if not graph.dependencies(cid) <= done:
                continue
            attempted += 1
            result = self.migrate_with_dependencies(cid, dry_run=dry_run)
            results.append(result)
            if result.ok:
                done.add(cid)

        ok = sum(1 for r in results if r.ok)
        logger.info("Batch finished: %d succeeded, %d failed", ok, len(results) - ok)
        return results

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_report(self, results, path=None):
        # type: (List[MigrationOutcome], Optional[str]) -> Dict[str, Any]
        report = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "summary": {
                "total": len(results),
                "migrated": sum(1 for r in results if r.status == MigrationStatus.OK),
                "already_migrated": sum(
                    1 for r in results if r.status == MigrationStatus.ALREADY_MIGRATED
                ),
                "failed": sum(1 for r in results if not r.ok),
                "unverified": sum(
                    1 for r in results if r.ok and not getattr(r, "verified", True)
                ),
            },
            "card_mappings": {
                str(k): v for k, v in sorted(self.store.get_card_id_mappings().items())
            },
            "details": [r.to_dict() for r in results],
            "waiting_area": [vars(item) for item in self.waiting_area()],
        }
        if path:
            with open(path, "w") as f:
                json.dump(report, f, indent=2)
            logger.info("Report written to %s", path)
        return report


def _expired(deadline):
    # type: (Optional[float]) -> bool
    return deadline is not None and time.monotonic() >= deadline


def _walk(result):
    # type: (MigrationOutcome) -> List[MigrationOutcome]
    """Every outcome reachable through dependencies and causes, innermost first."""
    seen = []  # type: List[MigrationOutcome]
    stack = [result]
    while stack:
        node = stack.pop()
        seen.append(node)
        stack.extend(node.dependencies)
        cause = getattr(node, "cause", None)
        if cause is not None and all(cause is not d for d in node.dependencies):
            stack.append(cause)
    return list(reversed(seen))

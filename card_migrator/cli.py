"""
CLI interface for the card migration tool.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter

from . import __version__
from .config import ConfigError, MigrationConfig
from .field_mapper import FieldMapper
from .metabase_client import MetabaseApiError
from .migrator import CardMigrator
from .models import CardState, MappingMethod


def setup_logging(verbose=False):
    # type: (bool) -> None
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def _banner(title):
    # type: (str) -> None
    print("\n" + "=" * 50)
    print(title)
    print("=" * 50)


def _print_result(result):
    # type: (object) -> None
    _banner("MIGRATION RESULT")
    print("  Card:      {} (id={})".format(result.card_name, result.card_id))
    print("  Status:    {}".format(result.status.value))
    if result.ok:
        if result.new_card_id is not None:
            print("  New card:  {}".format(result.new_card_id))
        if result.card_url:
            print("  URL:       {}".format(result.card_url))
        if result.dry_run:
            print("  Dry run:   no card was created")
        elif not result.verified:
            print("  ! Card was created but did not run cleanly")
    else:
        print("  Error:     {}: {}".format(result.kind.value, result.message))
        cause = result.cause
        while cause is not None:
            print("  Caused by: card {} {}: {}".format(cause.card_id, cause.kind.value, cause.message))
            cause = getattr(cause, "cause", None)
        for t in result.unmatched_tables:
            print("  Unmapped table: {} (id={})".format(t.source_table_name, t.source_table_id))
        for f in result.unmatched_fields:
            print("  Unmapped field: {}.{} (id={})".format(
                f.source_table_name, f.source_field_name, f.source_field_id
            ))

    if result.warnings:
        _banner("WARNINGS")
        for w in result.warnings:
            print("  !  {}".format(w))


def cmd_migrate(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    result = migrator.migrate_with_dependencies(
        args.card,
        dry_run=args.dry_run,
        collection_id=args.collection,
        force=args.force,
        timeout=args.timeout,
    )
    _print_result(result)
    if args.output:
        migrator.generate_report([result], args.output)
    return 0 if result.ok else 1


def cmd_preview(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    result = migrator.migrate_with_dependencies(args.card, dry_run=True)
    _print_result(result)

    _banner("ORIGINAL QUERY")
    print(json.dumps(result.original_query, indent=2))
    if result.migrated_query is not None:
        _banner("MIGRATED QUERY")
        print(json.dumps(result.migrated_query, indent=2))
    return 0 if result.ok else 1


def cmd_batch(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    results = migrator.migrate_ready(dry_run=args.dry_run, limit=args.limit)
    report = migrator.generate_report(results, args.output)

    _banner("BATCH RESULTS")
    summary = report["summary"]
    print("  Cards attempted:   {}".format(summary["total"]))
    print("  Migrated:          {}".format(summary["migrated"]))
    print("  Already migrated:  {}".format(summary["already_migrated"]))
    print("  Unverified:        {}".format(summary["unverified"]))
    print("  Failed:            {}".format(summary["failed"]))
    for r in results:
        if not r.ok:
            print("  ✗ {} (id={}): {}".format(r.card_name, r.card_id, r.kind.value))
    return 0 if summary["failed"] == 0 else 1


def cmd_status(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    states = migrator.card_states()
    held = migrator.on_hold_cards()
    counts = Counter(s for s in states.values())

    _banner("CARD STATUS")
    for state in CardState:
        print("  {:<12} {}".format(state.value, counts.get(state, 0)))

    if held:
        print("\n  On hold: {}".format(", ".join(str(c) for c in held)))

    waiting = migrator.waiting_area()
    if waiting:
        _banner("WAITING AREA")
        for item in waiting:
            print("  {} (id={}): {} - {}".format(item.card_name, item.card_id, item.kind, item.reason))
            if item.missing_tables:
                print("    missing tables: {}".format(", ".join(item.missing_tables)))
    return 0


def cmd_suggest_tables(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    suggestions = migrator.resolver.suggest_table_mappings()

    _banner("TABLE SUGGESTIONS")
    for m in suggestions:
        if m.suggested_target_table_id is None:
            print("  {} -> (no candidate)".format(m.source_table_name))
            continue
        print("  {} -> {} ({:.0%})".format(
            m.source_table_name, m.suggested_target_table_name, m.confidence
        ))
        for alt in m.alternatives[1:]:
            print("      alt: {} ({:.0%})".format(alt.name, min(alt.score, 1.0)))
    return 0


def cmd_auto_confirm(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    confirmed = migrator.resolver.auto_confirm(args.threshold)
    print("Confirmed {} table mappings above {:.0%}".format(len(confirmed), args.threshold))
    return 0


def cmd_map_table(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    m = migrator.resolver.set_table_mapping(args.source, args.target)
    print("Mapped table {} -> {}".format(
        m.source_table_name or args.source, m.suggested_target_table_name or args.target
    ))
    return 0


def cmd_map_field(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    m = migrator.resolver.set_field_mapping(args.source, args.target, MappingMethod.MANUAL)
    print("Mapped field {} -> {}".format(
        m.source_field_name or args.source, m.suggested_target_field_name or args.target
    ))
    return 0


def cmd_field_candidates(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    name, table = migrator.resolver.field_label(args.source)
    candidates = migrator.resolver.candidates_for_field(args.source)
    if not candidates:
        print("No candidates for {} (is its table mapped?)".format(name))
        return 1

    _banner("CANDIDATES FOR {}.{}".format(table, name) if table else "CANDIDATES FOR {}".format(name))
    for c in candidates:
        print("  {:>6}  {} ({})".format(c.id, c.name, c.base_type or "unknown"))
    return 0


def cmd_suggest_field(args):
    # type: (argparse.Namespace) -> int
    config = MigrationConfig.from_yaml(args.config)
    migrator = CardMigrator.from_config(config)
    mapper = FieldMapper(migrator.resolver, migrator.translator.oracle)
    suggestion = mapper.suggest(args.source)
    if suggestion is None:
        print("No suggestion for field {}".format(args.source))
        return 1
    print("Field {} -> {} ({:.0%}, {}): {}".format(
        suggestion.source_field_id, suggestion.target_field_id,
        suggestion.score, suggestion.method.value, suggestion.reason,
    ))
    if args.apply:
        migrator.resolver.set_field_mapping(
            suggestion.source_field_id, suggestion.target_field_id,
            suggestion.method, suggestion.score,
        )
        print("Mapping saved")
    return 0


def cmd_check(args):
    # type: (argparse.Namespace) -> int
    """Validate config and connectivity."""
    try:
        config = MigrationConfig.from_yaml(args.config)
        print("OK Config loaded from {}".format(args.config))
    except (ConfigError, OSError) as e:
        print("FAIL Config error: {}".format(e))
        return 1

    from .metabase_client import MetabaseClient

    try:
        client = MetabaseClient(config.metabase, config.retry)
        user = client.validate_connection() or {}
        print("OK Metabase connected as {}".format(user.get("email", "unknown")))
        for label, db_id in (("Source", config.source_database_id),
                             ("Target", config.target_database_id)):
            catalog = client.get_schema(db_id)
            print("OK {} database {}: {} tables".format(label, db_id, len(catalog.tables)))
    except (MetabaseApiError, ValueError, OSError) as e:
        print("FAIL Metabase connection error: {}".format(e))
        return 1

    if config.oracle.api_key:
        print("OK Oracle configured ({})".format(config.oracle.model))
    else:
        print("!  No GEMINI_API_KEY: native cards needing translation will fail")

    print("\nOK All checks passed. Ready to migrate.")
    return 0


def main():
    # type: () -> int
    parser = argparse.ArgumentParser(
        prog="card-migrator",
        description="Migrate Metabase cards between databases, dependencies first",
    )
    parser.add_argument(
        "--version", action="version", version="%(prog)s {}".format(__version__)
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add(name, func, help_text):
        # type: (str, object, str) -> argparse.ArgumentParser
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--config", "-c", required=True, help="Path to config YAML")
        p.set_defaults(func=func)
        return p

    p_migrate = add("migrate", cmd_migrate, "Migrate one card and its dependencies")
    p_migrate.add_argument("--card", type=int, required=True, help="Source card id")
    p_migrate.add_argument("--dry-run", action="store_true", help="Rewrite only, create nothing")
    p_migrate.add_argument("--force", action="store_true", help="Re-migrate an already migrated card")
    p_migrate.add_argument("--collection", type=int, help="Target collection id")
    p_migrate.add_argument("--timeout", type=float, help="Deadline in seconds")
    p_migrate.add_argument("--output", "-o", help="Write a JSON report")

    p_preview = add("preview", cmd_preview, "Show the rewritten query without creating a card")
    p_preview.add_argument("--card", type=int, required=True, help="Source card id")

    p_batch = add("batch", cmd_batch, "Migrate every ready card")
    p_batch.add_argument("--dry-run", action="store_true", help="Rewrite only, create nothing")
    p_batch.add_argument("--limit", type=int, help="Maximum number of cards to attempt")
    p_batch.add_argument("--output", "-o", help="Write a JSON report")

    add("status", cmd_status, "Show card states and the waiting area")
    add("suggest-tables", cmd_suggest_tables, "Suggest table mappings for review")

    p_auto = add("auto-confirm", cmd_auto_confirm, "Confirm high-confidence table suggestions")
    p_auto.add_argument("--threshold", type=float, default=0.94, help="Confidence threshold")

    p_map_table = add("map-table", cmd_map_table, "Confirm a table mapping")
    p_map_table.add_argument("source", type=int, help="Source table id")
    p_map_table.add_argument("target", type=int, help="Target table id")

    p_map_field = add("map-field", cmd_map_field, "Confirm a field mapping")
    p_map_field.add_argument("source", type=int, help="Source field id")
    p_map_field.add_argument("target", type=int, help="Target field id")

    p_candidates = add("field-candidates", cmd_field_candidates, "List target fields for a source field")
    p_candidates.add_argument("source", type=int, help="Source field id")

    p_suggest = add("suggest-field", cmd_suggest_field, "Suggest a target field for a source field")
    p_suggest.add_argument("source", type=int, help="Source field id")
    p_suggest.add_argument("--apply", action="store_true", help="Save the suggestion as confirmed")

    add("check", cmd_check, "Validate config and connectivity")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

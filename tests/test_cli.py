"""Tests for the command-line entry points, wired to the in-memory fakes."""

import json
import re

import pytest
from unittest.mock import patch

from card_migrator import cli

from conftest import structured_card


@pytest.fixture
def run(config, migrator):
    def _run(*argv):
        with patch.object(cli.MigrationConfig, "from_yaml", return_value=config), \
                patch.object(cli.CardMigrator, "from_config", return_value=migrator), \
                patch("sys.argv", ["card-migrator"] + list(argv)):
            return cli.main()
    return _run


class TestCli:
    def test_migrate_writes_report(self, run, metabase, tmp_path, capsys):
        metabase.cards[1] = structured_card(1, 10)
        report = tmp_path / "report.json"

        assert run("migrate", "-c", "config.yml", "--card", "1", "-o", str(report)) == 0
        assert "New card:  1001" in capsys.readouterr().out
        with open(str(report)) as f:
            assert json.load(f)["card_mappings"] == {"1": 1001}

    def test_failed_migration_exit_code(self, run, metabase, capsys):
        metabase.cards[7] = structured_card(7, 12)
        assert run("migrate", "-c", "config.yml", "--card", "7", "--dry-run") == 1
        out = capsys.readouterr().out
        assert "MissingMappingTable" in out
        assert "Unmapped table: legacy_events (id=12)" in out

    def test_preview_prints_both_queries(self, run, metabase, capsys):
        metabase.cards[1] = structured_card(1, 10)
        assert run("preview", "-c", "config.yml", "--card", "1") == 0
        out = capsys.readouterr().out
        assert "ORIGINAL QUERY" in out
        assert '"source-table": 200' in out
        assert metabase.created == []

    def test_status(self, run, metabase, capsys):
        metabase.cards[1] = structured_card(1, 10)
        assert run("status", "-c", "config.yml") == 0
        assert re.search(r"ready\s+1\n", capsys.readouterr().out)

    def test_map_table(self, run, resolver, capsys):
        assert run("map-table", "-c", "config.yml", "12", "201") == 0
        assert resolver.resolve_table(12) == 201
        assert "public.legacy_events" in capsys.readouterr().out

    def test_no_command(self, run):
        assert run() == 1

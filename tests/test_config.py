"""Tests for configuration loading."""

import pytest

from card_migrator.config import ConfigError, MetabaseConfig, MigrationConfig


class TestConfig:
    def test_from_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        path = tmp_path / "config.yml"
        path.write_text(
            "metabase:\n"
            "  url: http://metabase.test/\n"
            "  api_key: secret\n"
            "source_database_id: 1\n"
            "target_database_id: 2\n"
            "retry:\n"
            "  max_retries: 5\n"
            "hold_native_cards: false\n"
        )
        config = MigrationConfig.from_yaml(path)

        assert config.metabase.url == "http://metabase.test"
        assert config.source_database_id == 1
        assert config.target_database_id == 2
        assert config.retry.max_retries == 5
        assert config.retry.base_delay == 2.0
        assert not config.hold_native_cards
        assert config.repair_attempts == 3
        assert config.migration_timeout == 300.0
        assert config.card_name_suffix == "[migrated]"
        assert config.oracle.api_key is None

    def test_environment_fallbacks(self, monkeypatch):
        monkeypatch.setenv("METABASE_URL", "http://env.test")
        monkeypatch.setenv("METABASE_API_KEY", "env-key")
        monkeypatch.setenv("GEMINI_API_KEY", "gem")
        config = MigrationConfig.from_dict({"source_database_id": 1, "target_database_id": 2})

        assert config.metabase.url == "http://env.test"
        assert config.metabase.api_key == "env-key"
        assert config.oracle.api_key == "gem"

    def test_missing_database_ids(self):
        with pytest.raises(ConfigError, match="target_database_id"):
            MigrationConfig.from_dict({"metabase": {"url": "http://x"}, "source_database_id": 1})

    def test_missing_url(self, monkeypatch):
        monkeypatch.delenv("METABASE_URL", raising=False)
        with pytest.raises(ConfigError):
            MetabaseConfig()

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigError, match="Invalid config"):
            MigrationConfig.from_dict({
                "metabase": {"url": "http://x", "bogus": True},
                "source_database_id": 1,
                "target_database_id": 2,
            })

"""
Configuration model and loader for card migration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


class ConfigError(Exception):
    pass


@dataclass
class MetabaseConfig:
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 60.0

    def __post_init__(self):
        # type: () -> None
        if not self.url:
            self.url = os.environ.get("METABASE_URL")
        if not self.url:
            raise ConfigError("Metabase URL required: set metabase.url or METABASE_URL")
        self.url = self.url.rstrip("/")
        if not self.api_key:
            self.api_key = os.environ.get("METABASE_API_KEY")
        if not self.username:
            self.username = os.environ.get("METABASE_USERNAME")
        if not self.password:
            self.password = os.environ.get("METABASE_PASSWORD")


@dataclass
class OracleConfig:
    api_key: Optional[str] = None
    model: Optional[str] = None
    timeout: float = 120.0

    def __post_init__(self):
        # type: () -> None
        if not self.api_key:
            self.api_key = os.environ.get("GEMINI_API_KEY")
        if not self.model:
            self.model = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")


@dataclass
class StorageConfig:
    path: str = ".card_migrator"


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 2.0


@dataclass
class MigrationConfig:
    metabase: MetabaseConfig
    source_database_id: int
    target_database_id: int
    oracle: OracleConfig = field(default_factory=OracleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    card_name_suffix: str = "[migrated]"
    hold_native_cards: bool = True
    repair_attempts: int = 3
    migration_timeout: Optional[float] = 300.0

    @classmethod
    def from_yaml(cls, path):
        # type: (Union[str, Path]) -> MigrationConfig
        with open(str(path)) as f:
            raw = yaml.safe_load(f) or {}  # type: Dict[str, Any]
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw):
        # type: (Dict[str, Any]) -> MigrationConfig
        for key in ("source_database_id", "target_database_id"):
            if key not in raw:
                raise ConfigError("Missing required config key: {}".format(key))

        try:
            return cls(
                metabase=MetabaseConfig(**raw.get("metabase", {})),
                source_database_id=int(raw["source_database_id"]),
                target_database_id=int(raw["target_database_id"]),
                oracle=OracleConfig(**raw.get("oracle", {})),
                storage=StorageConfig(**raw.get("storage", {})),
                retry=RetryConfig(**raw.get("retry", {})),
                card_name_suffix=raw.get("card_name_suffix", "[migrated]"),
                hold_native_cards=raw.get("hold_native_cards", True),
                repair_attempts=int(raw.get("repair_attempts", 3)),
                migration_timeout=raw.get("migration_timeout", 300.0),
            )
        except TypeError as e:
            raise ConfigError("Invalid config: {}".format(e))

"""Shared fakes and fixtures for card_migrator tests."""

from __future__ import annotations

import copy

import pytest

from card_migrator.config import MetabaseConfig, MigrationConfig, RetryConfig, StorageConfig
from card_migrator.mapping_store import FileMappingStore
from card_migrator.metabase_client import MetabaseApiError
from card_migrator.migrator import CardMigrator
from card_migrator.models import Card, FieldDescriptor, SchemaCatalog, TableDescriptor
from card_migrator.schema_resolver import SchemaResolver
from card_migrator.sql_translator import SqlTranslator

SOURCE_DB = 1
TARGET_DB = 2


# ──────────────────────────────────────────────
# Catalogs
# ──────────────────────────────────────────────

def _table(table_id, schema, name, fields, display_name=""):
    return TableDescriptor(
        id=table_id,
        name=name,
        schema=schema,
        display_name=display_name or name.replace("_", " ").title(),
        fields=[
            FieldDescriptor(id=fid, name=fname, display_name=fname, base_type=btype, table_id=table_id)
            for fid, fname, btype in fields
        ],
    )


def make_source_catalog():
    return SchemaCatalog(
        database_id=SOURCE_DB,
        tables=[
            _table(10, "public", "orders", [
                (55, "CustomerID", "type/Integer"),
                (56, "total", "type/Float"),
                (57, "created_at", "type/DateTime"),
            ]),
            _table(11, "public", "customers", [
                (60, "id", "type/Integer"),
                (61, "name", "type/Text"),
                (62, "legacy_code", "type/Text"),
            ]),
            _table(12, "public", "legacy_events", [
                (70, "payload", "type/Text"),
            ]),
            _table(13, "public", "user_events", [
                (80, "id", "type/Integer"),
            ]),
        ],
    )


def make_target_catalog():
    return SchemaCatalog(
        database_id=TARGET_DB,
        tables=[
            _table(200, "default", "orders", [
                (210, "customer_id", "Int64"),
                (211, "total", "Float64"),
                (212, "created_at", "DateTime"),
            ]),
            _table(201, "default", "customers", [
                (220, "id", "Int64"),
                (221, "name", "String"),
            ]),
            _table(202, "default", "user_events", [
                (230, "id", "Int64"),
            ]),
            _table(203, "archive", "UserEvents", [
                (240, "id", "Int64"),
            ]),
        ],
    )


# ──────────────────────────────────────────────
# Cards
# ──────────────────────────────────────────────

def structured_card(card_id, source_table, name=None, **query):
    inner = {"source-table": source_table}
    inner.update(query)
    return {
        "id": card_id,
        "name": name or "Card {}".format(card_id),
        "display": "table",
        "collection_id": 5,
        "visualization_settings": {"table.pivot": False, "column_settings": {"x": {}}},
        "dataset_query": {"type": "query", "database": SOURCE_DB, "query": inner},
    }


def native_card(card_id, sql, name=None, template_tags=None):
    return {
        "id": card_id,
        "name": name or "Native {}".format(card_id),
        "display": "table",
        "collection_id": 5,
        "visualization_settings": {},
        "dataset_query": {
            "type": "native",
            "database": SOURCE_DB,
            "native": {"query": sql, "template-tags": template_tags or {}},
        },
    }


# ──────────────────────────────────────────────
# Fake collaborators
# ──────────────────────────────────────────────

class FakeMetabase:
    """In-memory stand-in for MetabaseClient."""

    def __init__(self, cards=None, source=None, target=None):
        self.cards = {c["id"]: c for c in (cards or [])}
        self.schemas = {
            SOURCE_DB: source or make_source_catalog(),
            TARGET_DB: target or make_target_catalog(),
        }
        self.created = []
        self.updated = []
        self.executed = []
        self.query_results = {}
        self.create_error = None
        self._next_id = 1000

    def card_url(self, card_id):
        return "http://metabase.test/question/{}".format(card_id)

    def get_card(self, card_id):
        if card_id not in self.cards:
            raise MetabaseApiError(404, "Not found.")
        return Card.from_api(copy.deepcopy(self.cards[card_id]))

    def list_cards(self):
        return [Card.from_api(copy.deepcopy(c)) for c in self.cards.values()]

    def get_schema(self, database_id):
        return self.schemas[database_id]

    def create_card(self, definition):
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        self.created.append((self._next_id, copy.deepcopy(definition)))
        self.cards[self._next_id] = dict(copy.deepcopy(definition), id=self._next_id)
        return {"id": self._next_id}

    def update_card(self, card_id, definition):
        self.updated.append((card_id, copy.deepcopy(definition)))
        if card_id in self.cards:
            self.cards[card_id].update(copy.deepcopy(definition))
        return {"id": card_id}

    def query_card(self, card_id):
        self.executed.append(card_id)
        queued = self.query_results.get(card_id)
        if queued:
            return queued.pop(0)
        return {"row_count": 1}


class FakeOracle:
    """Returns canned responses in order; exceptions in the list are raised."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("Unexpected oracle call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


# ──────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────

@pytest.fixture
def store(tmp_path):
    return FileMappingStore(tmp_path / "store")


@pytest.fixture
def resolver(store):
    return SchemaResolver.load(make_source_catalog(), make_target_catalog(), store)


@pytest.fixture
def config(tmp_path):
    return MigrationConfig(
        metabase=MetabaseConfig(url="http://metabase.test", api_key="test-key"),
        source_database_id=SOURCE_DB,
        target_database_id=TARGET_DB,
        storage=StorageConfig(path=str(tmp_path / "store")),
        retry=RetryConfig(max_retries=3, base_delay=0.01),
        migration_timeout=None,
    )


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def metabase():
    return FakeMetabase()


@pytest.fixture
def migrator(config, metabase, store, resolver, oracle):
    translator = SqlTranslator(oracle, store, config.retry)
    return CardMigrator(config, metabase, store, resolver, translator)

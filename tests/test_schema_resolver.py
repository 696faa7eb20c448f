"""Tests for source -> target table and field correspondence."""

from card_migrator.models import (
    FieldDescriptor,
    MappingMethod,
    SchemaCatalog,
    TableMapping,
)
from card_migrator.schema_resolver import (
    SchemaResolver,
    normalize_name,
    rank_field_candidates,
    score_name_match,
)

from conftest import _table, make_source_catalog, make_target_catalog


# ──────────────────────────────────────────────
# Tests: scoring helpers
# ──────────────────────────────────────────────

class TestScoring:
    def test_normalize_name(self):
        assert normalize_name("Customer_ID") == "customerid"
        assert normalize_name(" customer id ") == "customerid"
        assert normalize_name(None) == ""

    def test_score_levels(self):
        assert score_name_match("total", "", "Total", "")[0] == 1.0
        assert score_name_match("amt", "Amount", "amount_v2", "amount")[0] == 0.95
        assert score_name_match("CustomerID", "", "customer_id", "") == (0.92, "normalized name match")
        assert score_name_match("created", "", "created_at", "")[0] == 0.75
        assert score_name_match("foo", "", "bar", "") == (0.0, "")

    def test_rank_field_candidates(self):
        field = FieldDescriptor(id=1, name="user_id", display_name="User ID")
        candidates = [
            FieldDescriptor(id=3, name="id"),
            FieldDescriptor(id=2, name="userid"),
            FieldDescriptor(id=4, name="user_id"),
            FieldDescriptor(id=5, name="email"),
        ]
        ranked = rank_field_candidates(field, candidates)
        assert [c.id for c in ranked] == [4, 2, 3]
        assert ranked[0].score == 1.0


# ──────────────────────────────────────────────
# Tests: resolution precedence
# ──────────────────────────────────────────────

class TestTableResolution:
    def test_normalized_unique_match(self, resolver):
        assert resolver.resolve_table(10) == 200
        assert resolver.resolve_table(11) == 201

    def test_exact_schema_and_name_wins_over_loose(self, store):
        source = SchemaCatalog(1, [_table(10, "public", "orders", [])])
        target = SchemaCatalog(2, [
            _table(200, "default", "orders", []),
            _table(300, "public", "orders", []),
        ])
        resolver = SchemaResolver.load(source, target, store)
        assert resolver.resolve_table(10) == 300

    def test_ambiguous_loose_match_is_unmatched(self, resolver):
        assert resolver.resolve_table(13) is None
        assert 13 in [t.source_table_id for t in resolver.unmatched_tables]

    def test_no_candidate_is_unmatched(self, resolver):
        assert resolver.resolve_table(12) is None
        unmatched = {t.source_table_id: t for t in resolver.unmatched_tables}
        assert unmatched[12].source_table_name == "legacy_events"
        assert unmatched[12].schema == "public"

    def test_confirmed_mapping_takes_precedence(self, resolver):
        resolver.set_table_mapping(10, 201)
        assert resolver.resolve_table(10) == 201

    def test_confirmed_mapping_resolves_ambiguity(self, resolver):
        resolver.set_table_mapping(13, 203)
        assert resolver.resolve_table(13) == 203
        assert resolver.resolve_field(80) == 240

    def test_ignored_mapping_is_not_used(self, store):
        store.upsert_table_mapping(TableMapping(
            source_table_id=12,
            source_table_name="public.legacy_events",
            suggested_target_table_id=201,
            confirmed=True,
            ignored=True,
        ))
        resolver = SchemaResolver.load(make_source_catalog(), make_target_catalog(), store)
        assert resolver.resolve_table(12) is None

    def test_set_table_mapping_upserts(self, resolver, store):
        resolver.set_table_mapping(13, 203)
        resolver.set_table_mapping(13, 202)
        rows = [m for m in store.get_table_mappings() if m.source_table_id == 13]
        assert len(rows) == 1
        assert rows[0].final_target_table_id == 202
        assert resolver.resolve_table(13) == 202


class TestFieldResolution:
    def test_confirmed_table_and_normalized_field(self, store):
        store.upsert_table_mapping(TableMapping(
            source_table_id=10,
            source_table_name="public.orders",
            suggested_target_table_id=200,
            suggested_target_table_name="default.orders",
            confidence=1.0,
            confirmed=True,
            final_target_table_id=200,
        ))
        resolver = SchemaResolver.load(make_source_catalog(), make_target_catalog(), store)
        assert resolver.resolve_table(10) == 200
        assert resolver.resolve_field(55) == 210

    def test_exact_field_names(self, resolver):
        assert resolver.resolve_field(56) == 211
        assert resolver.resolve_field(61) == 221

    def test_unmatched_field_recorded_with_label(self, resolver):
        assert resolver.resolve_field(62) is None
        unmatched = {f.source_field_id: f for f in resolver.unmatched_fields}
        assert unmatched[62].source_field_name == "legacy_code"
        assert unmatched[62].source_table_name == "public.customers"

    def test_fields_of_unmapped_tables_are_not_guessed(self, resolver):
        assert resolver.resolve_field(70) is None

    def test_field_label(self, resolver):
        assert resolver.field_label(62) == ("legacy_code", "public.customers")
        assert resolver.field_label(999) == ("field ID 999", "")

    def test_candidates_for_field(self, resolver):
        assert [f.id for f in resolver.candidates_for_field(62)] == [220, 221]
        assert resolver.candidates_for_field(70) == []

    def test_set_field_mapping_survives_rebuild(self, resolver, store):
        resolver.set_field_mapping(62, 221)
        resolver.set_field_mapping(62, 221)
        assert resolver.resolve_field(62) == 221
        assert 62 not in [f.source_field_id for f in resolver.unmatched_fields]

        rows = [m for m in store.get_field_mappings() if m.source_field_id == 62]
        assert len(rows) == 1
        assert rows[0].method == MappingMethod.MANUAL

        resolver.rebuild()
        assert resolver.resolve_field(62) == 221


# ──────────────────────────────────────────────
# Tests: bulk suggestion
# ──────────────────────────────────────────────

class TestBulkSuggestion:
    def test_suggestions_are_stored_for_review(self, resolver, store):
        suggestions = {m.source_table_id: m for m in resolver.suggest_table_mappings()}

        assert suggestions[10].suggested_target_table_id == 200
        assert suggestions[10].confidence == 1.0
        assert not suggestions[10].confirmed

        events = suggestions[13]
        assert [a.id for a in events.alternatives] == [202, 203]
        assert events.alternatives[1].score == 0.92

        assert suggestions[12].suggested_target_table_id is None
        assert suggestions[12].confidence == 0.0

        assert all(len(m.alternatives) <= 3 for m in suggestions.values())
        assert len(store.get_table_mappings()) == 4

    def test_confirmed_mappings_are_left_alone(self, resolver, store):
        resolver.set_table_mapping(13, 203)
        suggestions = resolver.suggest_table_mappings()
        assert 13 not in [m.source_table_id for m in suggestions]
        stored = {m.source_table_id: m for m in store.get_table_mappings()}
        assert stored[13].final_target_table_id == 203
        assert stored[13].confirmed

    def test_auto_confirm(self, resolver):
        resolver.suggest_table_mappings()
        confirmed = resolver.auto_confirm(0.94)
        assert sorted(m.source_table_id for m in confirmed) == [10, 11, 13]
        assert resolver.resolve_table(13) == 202
        assert resolver.resolve_table(12) is None

    def test_auto_confirm_threshold_is_exclusive(self, resolver, store):
        resolver.suggest_table_mappings()
        assert resolver.auto_confirm(1.0) == []


# ──────────────────────────────────────────────
# Tests: translation context
# ──────────────────────────────────────────────

class TestTranslationContext:
    def test_qualified_table_names(self, resolver):
        assert resolver.qualified_table_names() == {
            "public.orders": "default.orders",
            "public.customers": "default.customers",
        }

    def test_describe_for_translation(self, resolver):
        text = resolver.describe_for_translation()
        assert "SOURCE TABLE: public.orders (ID: 10)" in text
        assert "TARGET TABLE: default.orders (ID: 200)" in text
        assert "customer_id:Int64" in text
        assert "=== UNMAPPED TABLES ===" in text
        assert "public.legacy_events (ID: 12)" in text

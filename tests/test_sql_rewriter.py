"""Tests for deterministic PostgreSQL -> ClickHouse SQL rewriting."""

from card_migrator.sql_rewriter import (
    apply_deterministic_rules,
    clean_whitespace,
    find_residual_constructs,
    rewrite_card_references,
    rewrite_table_references,
)


# ──────────────────────────────────────────────
# Tests: dialect rules
# ──────────────────────────────────────────────

class TestDeterministicRules:
    def test_cast_and_date_trunc(self):
        sql = "SELECT CAST(x AS date), date_trunc('day', ts) FROM t"
        assert apply_deterministic_rules(sql) == "SELECT toDate(x), toStartOfDay(ts) FROM t"

    def test_cast_type_variants(self):
        assert apply_deterministic_rules("CAST(a AS varchar(255))") == "toString(a)"
        assert apply_deterministic_rules("cast(a as double precision)") == "toFloat64(a)"
        assert apply_deterministic_rules("CAST(a AS timestamp with time zone)") == "toDateTime(a)"
        assert apply_deterministic_rules("CAST(a AS bigint)") == "toInt64(a)"
        assert apply_deterministic_rules("CAST(a AS boolean)") == "toBool(a)"

    def test_nested_casts(self):
        sql = "CAST(date_trunc('month', CAST(ts AS timestamp)) AS date)"
        assert apply_deterministic_rules(sql) == "toDate(toStartOfMonth(toDateTime(ts)))"

    def test_cast_with_function_argument(self):
        sql = "CAST(coalesce(a, 'x AS y') AS text)"
        assert apply_deterministic_rules(sql) == "toString(coalesce(a, 'x AS y'))"

    def test_postfix_casts(self):
        sql = (
            "SELECT created_at::date, '2020-01-01'::timestamp, (a + b)::numeric(10,2), "
            "o.amount::text::int FROM orders o"
        )
        assert apply_deterministic_rules(sql) == (
            "SELECT toDate(created_at), toDateTime('2020-01-01'), toFloat64((a + b)), "
            "toInt64(toString(o.amount)) FROM orders o"
        )

    def test_postfix_cast_on_function_and_parameter(self):
        assert apply_deterministic_rules("now()::date") == "toDate(now())"
        assert apply_deterministic_rules("{{start}}::date") == "toDate({{start}})"

    def test_postfix_cast_on_literal_with_escaped_quote(self):
        assert apply_deterministic_rules("SELECT 'it''s'::text AS s") == "SELECT toString('it''s') AS s"
        assert apply_deterministic_rules("WHERE d = '''q'''::date") == "WHERE d = toDate('''q''')"

    def test_date_trunc_units(self):
        assert apply_deterministic_rules("date_trunc('week', ts)") == "toStartOfWeek(ts, 1)"
        assert apply_deterministic_rules("DATE_TRUNC('Year', o.ts)") == "toStartOfYear(o.ts)"
        assert apply_deterministic_rules("date_trunc('hour', ts)") == "toStartOfHour(ts)"

    def test_date_parts(self):
        sql = "SELECT extract(year from created_at), date_part('month', created_at) FROM t"
        assert apply_deterministic_rules(sql) == "SELECT toYear(created_at), toMonth(created_at) FROM t"

    def test_string_renames_and_current_date(self):
        sql = (
            "SELECT char_length(name), btrim(name), strpos(name, 'a'), current_date "
            "FROM t WHERE note = 'current_date'"
        )
        assert apply_deterministic_rules(sql) == (
            "SELECT lengthUTF8(name), trimBoth(name), position(name, 'a'), today() "
            "FROM t WHERE note = 'current_date'"
        )

    def test_btrim_with_characters_is_left(self):
        assert apply_deterministic_rules("SELECT BTRIM(name) FROM t") == "SELECT trimBoth(name) FROM t"
        sql = "SELECT btrim(name, 'x') FROM t"
        assert apply_deterministic_rules(sql) == sql
        assert find_residual_constructs(sql) == ["btrim"]

    def test_quoted_strings_are_untouched(self):
        sql = "SELECT 'CAST(x AS date)' AS label, x::date FROM t WHERE y = 'a::text'"
        assert apply_deterministic_rules(sql) == (
            "SELECT 'CAST(x AS date)' AS label, toDate(x) FROM t WHERE y = 'a::text'"
        )

    def test_unknown_types_and_units_are_left(self):
        sql = "SELECT CAST(x AS money), y::interval, date_trunc('decade', ts) FROM t"
        assert apply_deterministic_rules(sql) == sql

    def test_plain_sql_unchanged(self):
        sql = "SELECT id, count(*) FROM orders GROUP BY id"
        assert apply_deterministic_rules(sql) == sql


# ──────────────────────────────────────────────
# Tests: residual detection
# ──────────────────────────────────────────────

class TestResidualConstructs:
    def test_clean_after_rules(self):
        sql = apply_deterministic_rules("SELECT CAST(x AS date), date_trunc('day', ts) FROM t")
        assert find_residual_constructs(sql) == []

    def test_postgres_only_functions(self):
        assert find_residual_constructs("SELECT to_char(ts, 'YYYY') FROM t") == ["to_char"]
        assert "string_agg" in find_residual_constructs("SELECT string_agg(name, ',') FROM t")
        assert "DISTINCT ON" in find_residual_constructs("SELECT DISTINCT ON (id) * FROM t")
        assert "interval literal" in find_residual_constructs("SELECT now() - interval '1 day'")
        assert "json operator" in find_residual_constructs("SELECT data->>'k' FROM t")

    def test_leftover_casts(self):
        sql = apply_deterministic_rules("SELECT CAST(x AS money), y::interval FROM t")
        residual = find_residual_constructs(sql)
        assert "cast" in residual
        assert "postfix cast" in residual

    def test_literals_are_ignored(self):
        assert find_residual_constructs("SELECT 'a::b', 'to_char(' FROM t") == []


# ──────────────────────────────────────────────
# Tests: context-dependent rewrites
# ──────────────────────────────────────────────

class TestTableReferences:
    NAMES = {
        "public.orders": "default.orders",
        "public.customers": "default.customers",
    }

    def test_qualified_names_replaced(self):
        sql = (
            'SELECT o.id FROM public.orders o JOIN "public"."customers" c ON o.id = c.id '
            "WHERE o.note = 'public.orders'"
        )
        new_sql, replaced = rewrite_table_references(sql, self.NAMES)
        assert new_sql == (
            "SELECT o.id FROM default.orders o JOIN default.customers c ON o.id = c.id "
            "WHERE o.note = 'public.orders'"
        )
        assert replaced == ["public.orders", "public.customers"]

    def test_case_insensitive_and_column_suffix(self):
        new_sql, _ = rewrite_table_references("SELECT Public.Orders.id FROM Public.Orders", self.NAMES)
        assert new_sql == "SELECT default.orders.id FROM default.orders"

    def test_unknown_names_untouched(self):
        sql = "SELECT * FROM public.orders_2024 JOIN other.orders ON 1 = 1"
        assert rewrite_table_references(sql, self.NAMES) == (sql, [])


class TestCardReferences:
    TAGS = {
        "#99-base-orders": {
            "id": "aaa", "name": "#99-base-orders", "display-name": "#99 Base Orders",
            "type": "card", "card-id": 99,
        },
        "#7": {"id": "bbb", "name": "#7", "display-name": "#7", "type": "card", "card-id": 7},
        "start": {"id": "ccc", "name": "start", "display-name": "Start", "type": "date"},
    }

    def test_remaps_known_cards(self):
        sql = "SELECT * FROM {{#99-base-orders}} b JOIN {{#7}} s ON b.id = s.id WHERE b.d > {{start}}"
        new_sql, tags, unresolved = rewrite_card_references(sql, self.TAGS, {99: 1099})

        assert new_sql == (
            "SELECT * FROM {{#1099-base-orders}} b JOIN {{#7}} s ON b.id = s.id WHERE b.d > {{start}}"
        )
        assert set(tags) == {"#1099-base-orders", "#7", "start"}
        assert tags["#1099-base-orders"]["card-id"] == 1099
        assert tags["#1099-base-orders"]["name"] == "#1099-base-orders"
        assert tags["#1099-base-orders"]["id"] == "aaa"
        assert tags["start"] == self.TAGS["start"]
        assert unresolved == [7]

    def test_input_tags_not_mutated(self):
        rewrite_card_references("{{#99-base-orders}}", self.TAGS, {99: 1099})
        assert self.TAGS["#99-base-orders"]["card-id"] == 99


class TestCleanWhitespace:
    def test_collapses_blank_lines(self):
        assert clean_whitespace("SELECT 1  \n\n\n\nFROM t\n") == "SELECT 1\n\nFROM t"

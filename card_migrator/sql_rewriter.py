"""
Deterministic rewriting of native PostgreSQL card queries into ClickHouse SQL.

The lexical rules here run before any oracle call. They respect quoted
strings and nested parentheses; anything they cannot translate is left in
place and reported by ``find_residual_constructs`` so the caller can decide
whether the oracle is needed.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_QUOTED_STRING = re.compile(r"'(?:[^']|'')*'")

# Postgres type name -> ClickHouse conversion function
_CAST_FUNCTIONS = {
    "date": "toDate",
    "timestamp": "toDateTime",
    "timestamptz": "toDateTime",
    "timestamp with time zone": "toDateTime",
    "timestamp without time zone": "toDateTime",
    "text": "toString",
    "varchar": "toString",
    "char": "toString",
    "character varying": "toString",
    "int": "toInt64",
    "int4": "toInt64",
    "int8": "toInt64",
    "integer": "toInt64",
    "bigint": "toInt64",
    "smallint": "toInt64",
    "numeric": "toFloat64",
    "decimal": "toFloat64",
    "float": "toFloat64",
    "float8": "toFloat64",
    "real": "toFloat64",
    "double precision": "toFloat64",
    "boolean": "toBool",
    "bool": "toBool",
}

_CAST_TYPE_NAMES = sorted(_CAST_FUNCTIONS, key=len, reverse=True)

_POSTFIX_CAST = re.compile(
    r"::\s*({})(\s*\([\d\s,]*\))?(?![\w])".format(
        "|".join(re.escape(t).replace(r"\ ", r"\s+") for t in _CAST_TYPE_NAMES)
    ),
    re.IGNORECASE,
)

_DATE_TRUNC_FUNCTIONS = {
    "minute": "toStartOfMinute({})",
    "hour": "toStartOfHour({})",
    "day": "toStartOfDay({})",
    "week": "toStartOfWeek({}, 1)",
    "month": "toStartOfMonth({})",
    "quarter": "toStartOfQuarter({})",
    "year": "toStartOfYear({})",
}

_DATE_PART_FUNCTIONS = {
    "year": "toYear",
    "quarter": "toQuarter",
    "month": "toMonth",
    "week": "toISOWeek",
    "day": "toDayOfMonth",
    "doy": "toDayOfYear",
    "hour": "toHour",
    "minute": "toMinute",
    "second": "toSecond",
}

_RENAMES = [
    (re.compile(r"\bcharacter_length\s*\(", re.IGNORECASE), "lengthUTF8("),
    (re.compile(r"\bchar_length\s*\(", re.IGNORECASE), "lengthUTF8("),
    (re.compile(r"\bstrpos\s*\(", re.IGNORECASE), "position("),
    (re.compile(r"\bcurrent_date\b(?!\s*\()", re.IGNORECASE), "today()"),
]

_RESIDUAL_PATTERNS = [
    ("postfix cast", re.compile(r"::")),
    ("to_char", re.compile(r"\bto_char\s*\(", re.IGNORECASE)),
    ("to_date", re.compile(r"\bto_date\s*\(", re.IGNORECASE)),
    ("to_timestamp", re.compile(r"\bto_timestamp\s*\(", re.IGNORECASE)),
    ("age", re.compile(r"\bage\s*\(", re.IGNORECASE)),
    ("generate_series", re.compile(r"\bgenerate_series\s*\(", re.IGNORECASE)),
    ("string_agg", re.compile(r"\bstring_agg\s*\(", re.IGNORECASE)),
    ("array_agg", re.compile(r"\barray_agg\s*\(", re.IGNORECASE)),
    ("btrim", re.compile(r"\bbtrim\s*\(", re.IGNORECASE)),
    ("split_part", re.compile(r"\bsplit_part\s*\(", re.IGNORECASE)),
    ("regexp_replace", re.compile(r"\bregexp_replace\s*\(", re.IGNORECASE)),
    ("unnest", re.compile(r"\bunnest\s*\(", re.IGNORECASE)),
    ("json function", re.compile(r"\bjsonb?_\w+\s*\(", re.IGNORECASE)),
    ("DISTINCT ON", re.compile(r"\bdistinct\s+on\s*\(", re.IGNORECASE)),
    ("interval literal", re.compile(r"\binterval\s*'", re.IGNORECASE)),
    ("json operator", re.compile(r"->>?|#>>?")),
    ("regex operator", re.compile(r"~\*|!~")),
    ("ILIKE ANY", re.compile(r"\bilike\s+any\b", re.IGNORECASE)),
    ("date_trunc", re.compile(r"\bdate_trunc\s*\(", re.IGNORECASE)),
    ("date_part", re.compile(r"\bdate_part\s*\(", re.IGNORECASE)),
    ("extract", re.compile(r"\bextract\s*\(", re.IGNORECASE)),
    ("cast", re.compile(r"\bcast\s*\(", re.IGNORECASE)),
]

_NATIVE_CARD_TAG = re.compile(r"\{\{\s*#(\d+)((?:-[\w-]*)?)\s*\}\}")
_QUALIFIED_NAME = re.compile(
    r'(?<![\w."])(?:"([^"]+)"|([A-Za-z_]\w*))\.(?:"([^"]+)"|([A-Za-z_]\w*))(?![\w"])'
)


# ──────────────────────────────────────────────
# Lexical helpers
# ──────────────────────────────────────────────

def _split_args(args_str):
    # type: (str) -> List[str]
    """Split function args on top-level commas, respecting nested parens and quotes."""
    args = []
    depth = 0
    current = []
    in_single = False
    in_double = False
    for char in args_str:
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif not in_single and not in_double:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            elif char == "," and depth == 0:
                args.append("".join(current).strip())
                current = []
                continue
        current.append(char)
    if current:
        args.append("".join(current).strip())
    return [a for a in args if a]


def _unquote(s):
    # type: (str) -> str
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1]
    return s


def _in_quotes(sql, index):
    # type: (str, int) -> bool
    return sql.count("'", 0, index) % 2 == 1


def _find_closing_paren(sql, open_idx):
    # type: (str, int) -> int
    depth = 0
    in_single = False
    for i in range(open_idx, len(sql)):
        char = sql[i]
        if char == "'":
            in_single = not in_single
        elif not in_single:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0:
                    return i
    return -1


def _find_opening_paren(sql, close_idx):
    # type: (str, int) -> int
    depth = 0
    in_single = False
    for i in range(close_idx, -1, -1):
        char = sql[i]
        if char == "'":
            in_single = not in_single
        elif not in_single:
            if char == ")":
                depth += 1
            elif char == "(":
                depth -= 1
                if depth == 0:
                    return i
    return -1


def _sub_outside_quotes(pattern, repl, sql):
    # type: (re.Pattern, Any, str) -> str
    parts = []
    pos = 0
    for m in _QUOTED_STRING.finditer(sql):
        parts.append(pattern.sub(repl, sql[pos:m.start()]))
        parts.append(m.group(0))
        pos = m.end()
    parts.append(pattern.sub(repl, sql[pos:]))
    return "".join(parts)


def _rewrite_calls(sql, name, handler):
    # type: (str, str, Callable[[str], Optional[str]]) -> str
    """Replace every ``name(...)`` call with ``handler(inner)``, innermost first.

    A handler returning None leaves the call as it was.
    """
    pattern = re.compile(r"\b{}\s*\(".format(re.escape(name)), re.IGNORECASE)
    out = []
    pos = 0
    while True:
        m = pattern.search(sql, pos)
        if not m:
            break
        if _in_quotes(sql, m.start()):
            out.append(sql[pos:m.end()])
            pos = m.end()
            continue
        open_idx = m.end() - 1
        close_idx = _find_closing_paren(sql, open_idx)
        if close_idx < 0:
            break
        inner = _rewrite_calls(sql[open_idx + 1:close_idx], name, handler)
        replacement = handler(inner)
        out.append(sql[pos:m.start()])
        if replacement is None:
            out.append(sql[m.start():open_idx + 1] + inner + ")")
        else:
            out.append(replacement)
        pos = close_idx + 1
    out.append(sql[pos:])
    return "".join(out)


def _cast_function(type_name):
    # type: (str) -> Optional[str]
    key = re.sub(r"\(.*\)$", "", type_name.strip().lower()).strip()
    key = re.sub(r"\s+", " ", key)
    return _CAST_FUNCTIONS.get(key)


# ──────────────────────────────────────────────
# Rules
# ──────────────────────────────────────────────

def _translate_cast_calls(sql):
    # type: (str) -> str
    """CAST(x AS date) -> toDate(x)"""

    def handler(inner):
        # type: (str) -> Optional[str]
        split_at = None
        depth = 0
        in_single = False
        for m in re.finditer(r"\s+as\s+|[()']", inner, re.IGNORECASE):
            token = m.group(0)
            if token == "'":
                in_single = not in_single
            elif in_single:
                continue
            elif token == "(":
                depth += 1
            elif token == ")":
                depth -= 1
            elif depth == 0:
                split_at = m
        if split_at is None:
            return None
        func = _cast_function(inner[split_at.end():])
        if func is None:
            return None
        return "{}({})".format(func, inner[:split_at.start()].strip())

    return _rewrite_calls(sql, "cast", handler)


def _operand_start(sql, end):
    # type: (str, int) -> int
    """Index where the operand ending just before ``end`` starts, or -1."""
    i = end
    while True:
        if i <= 0:
            return -1
        char = sql[i - 1]
        if char == "'":
            j = i - 2
            while j >= 0:
                if sql[j] == "'":
                    if j > 0 and sql[j - 1] == "'":
                        # escaped quote inside the literal
                        j -= 2
                        continue
                    break
                j -= 1
            start = j
        elif char == ")":
            j = _find_opening_paren(sql, i - 1)
            if j < 0:
                return -1
            while j > 0 and (sql[j - 1].isalnum() or sql[j - 1] == "_"):
                j -= 1
            start = j
        elif char == '"':
            j = i - 2
            while j >= 0 and sql[j] != '"':
                j -= 1
            start = j
        elif char == "}" and sql[:i].endswith("}}"):
            start = sql.rfind("{{", 0, i)
        elif char.isalnum() or char == "_":
            j = i - 1
            while j > 0 and (sql[j - 1].isalnum() or sql[j - 1] == "_"):
                j -= 1
            start = j
        else:
            return -1
        if start < 0:
            return -1
        if start > 0 and sql[start - 1] == ".":
            i = start - 1
            continue
        return start


def _translate_postfix_casts(sql):
    # type: (str) -> str
    """x::date -> toDate(x); chained casts nest from left to right."""
    pos = 0
    while True:
        m = _POSTFIX_CAST.search(sql, pos)
        if not m:
            return sql
        if _in_quotes(sql, m.start()):
            pos = m.end()
            continue
        start = _operand_start(sql, m.start())
        func = _cast_function(m.group(1))
        if start < 0 or func is None:
            pos = m.end()
            continue
        replacement = "{}({})".format(func, sql[start:m.start()])
        sql = sql[:start] + replacement + sql[m.end():]
        pos = start


def _translate_date_trunc(sql):
    # type: (str) -> str
    """date_trunc('day', ts) -> toStartOfDay(ts)"""

    def handler(inner):
        # type: (str) -> Optional[str]
        args = _split_args(inner)
        if len(args) != 2 or not args[0].startswith("'"):
            return None
        template = _DATE_TRUNC_FUNCTIONS.get(_unquote(args[0]).lower())
        if template is None:
            return None
        return template.format(args[1])

    return _rewrite_calls(sql, "date_trunc", handler)


def _translate_date_part(sql):
    # type: (str) -> str
    """date_part('year', ts) and extract(year from ts) -> toYear(ts)"""

    def part_handler(inner):
        # type: (str) -> Optional[str]
        args = _split_args(inner)
        if len(args) != 2 or not args[0].startswith("'"):
            return None
        func = _DATE_PART_FUNCTIONS.get(_unquote(args[0]).lower())
        if func is None:
            return None
        return "{}({})".format(func, args[1])

    def extract_handler(inner):
        # type: (str) -> Optional[str]
        m = re.match(r"^\s*(\w+)\s+from\s+(.*)$", inner, re.IGNORECASE | re.DOTALL)
        if not m:
            return None
        func = _DATE_PART_FUNCTIONS.get(m.group(1).lower())
        if func is None:
            return None
        return "{}({})".format(func, m.group(2).strip())

    sql = _rewrite_calls(sql, "date_part", part_handler)
    return _rewrite_calls(sql, "extract", extract_handler)


def _translate_btrim(sql):
    # type: (str) -> str
    # trimBoth only strips whitespace; btrim(s, chars) is left for the oracle
    def handler(inner):
        # type: (str) -> Optional[str]
        args = _split_args(inner)
        if len(args) != 1:
            return None
        return "trimBoth({})".format(args[0])

    return _rewrite_calls(sql, "btrim", handler)


def apply_deterministic_rules(sql):
    # type: (str) -> str
    """Pure lexical PostgreSQL -> ClickHouse substitutions."""
    original = sql
    sql = _translate_cast_calls(sql)
    sql = _translate_postfix_casts(sql)
    sql = _translate_date_trunc(sql)
    sql = _translate_date_part(sql)
    sql = _translate_btrim(sql)
    for pattern, repl in _RENAMES:
        sql = _sub_outside_quotes(pattern, repl, sql)
    if sql != original:
        logger.debug("Deterministic rules rewrote %d -> %d characters", len(original), len(sql))
    return sql


def find_residual_constructs(sql):
    # type: (str) -> List[str]
    """Names of PostgreSQL-only constructs still present outside string literals."""
    unquoted = _QUOTED_STRING.sub("''", sql)
    return [name for name, pattern in _RESIDUAL_PATTERNS if pattern.search(unquoted)]


def rewrite_table_references(sql, table_names):
    # type: (str, Dict[str, str]) -> Tuple[str, List[str]]
    """Replace schema-qualified source table names with their targets.

    ``table_names`` is keyed by lower-cased ``schema.table``. Returns the new
    SQL and the list of source names that were replaced.
    """
    replaced = []  # type: List[str]

    def replacer(m):
        # type: (re.Match) -> str
        schema = m.group(1) or m.group(2)
        table = m.group(3) or m.group(4)
        key = "{}.{}".format(schema, table).lower()
        target = table_names.get(key)
        if target is None:
            return m.group(0)
        replaced.append(key)
        return target

    sql = _sub_outside_quotes(_QUALIFIED_NAME, replacer, sql)
    return sql, replaced


def rewrite_card_references(sql, template_tags, card_id_map):
    # type: (str, Dict[str, Any], Dict[int, int]) -> Tuple[str, Dict[str, Any], List[int]]
    """Remap ``{{#<id>-slug}}`` references and card template tags.

    Returns the new SQL, the new template tags, and the card ids that have no
    mapping yet (those references are left unchanged).
    """
    unresolved = []  # type: List[int]

    def replacer(m):
        # type: (re.Match) -> str
        old_id = int(m.group(1))
        new_id = card_id_map.get(old_id)
        if new_id is None:
            if old_id not in unresolved:
                unresolved.append(old_id)
            return m.group(0)
        return "{{#" + str(new_id) + m.group(2) + "}}"

    sql = _NATIVE_CARD_TAG.sub(replacer, sql)

    new_tags = {}  # type: Dict[str, Any]
    for key, tag in (template_tags or {}).items():
        tag = copy.deepcopy(tag)
        if isinstance(tag, dict) and tag.get("type") == "card" and isinstance(tag.get("card-id"), int):
            old_id = tag["card-id"]
            new_id = card_id_map.get(old_id)
            if new_id is None:
                if old_id not in unresolved:
                    unresolved.append(old_id)
            else:
                m = _NATIVE_CARD_TAG.match("{{" + key + "}}")
                new_key = "#{}{}".format(new_id, m.group(2)) if m else key
                tag["card-id"] = new_id
                tag["name"] = new_key
                if tag.get("display-name", "").startswith("#"):
                    tag["display-name"] = new_key
                key = new_key
        new_tags[key] = tag
    return sql, new_tags, unresolved


def clean_whitespace(sql):
    # type: (str) -> str
    lines = sql.split("\n")
    cleaned = []  # type: List[str]
    prev_blank = False
    for line in lines:
        is_blank = not line.strip()
        if is_blank and prev_blank:
            continue
        cleaned.append(line.rstrip())
        prev_blank = is_blank
    return "\n".join(cleaned).strip()


# ──────────────────────────────────────────────
# Native dataset query rewrite
# ──────────────────────────────────────────────

@dataclass
class NativeRewrite:
    query: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)
    unresolved_cards: List[int] = field(default_factory=list)


class NativeQueryRewriter:
    """Rewrite a native dataset query: card refs, table names, then dialect."""

    def __init__(self, resolver, translator, source_database_id, target_database_id):
        # type: (Any, Any, int, int) -> None
        self.resolver = resolver
        self.translator = translator
        self.source_database_id = source_database_id
        self.target_database_id = target_database_id

    def rewrite(self, dataset_query, card_id_map):
        # type: (Dict[str, Any], Dict[int, int]) -> NativeRewrite
        """Raises ``TranslationError`` when the SQL cannot be translated."""
        native = dataset_query.get("native") or {}
        sql = native.get("query") or ""
        warnings = []  # type: List[str]

        sql, tags, unresolved = rewrite_card_references(
            sql, native.get("template-tags") or {}, card_id_map
        )
        for card_id in unresolved:
            warnings.append("Could not map referenced card ID {}".format(card_id))

        sql, replaced = rewrite_table_references(sql, self.resolver.qualified_table_names())
        if replaced:
            logger.info("Replaced %d table references: %s", len(replaced), ", ".join(sorted(set(replaced))))

        context = self.resolver.describe_for_translation()
        translated = self.translator.rewrite_text(sql, context)

        new_native = copy.deepcopy(native)
        new_native["query"] = clean_whitespace(translated)
        new_native["template-tags"] = tags

        query = copy.deepcopy(dataset_query)
        query["database"] = self.target_database_id
        query["native"] = new_native
        return NativeRewrite(query=query, warnings=warnings, unresolved_cards=unresolved)

"""
Typed representation of Metabase structured queries (MBQL).

A dataset query is parsed once into a closed set of node types and
serialized back to the same JSON shape. Shapes that are not recognised are
kept as ``Literal`` nodes and round-trip unchanged.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

CARD_SOURCE_PATTERN = re.compile(r"^card__(\d+)$")

FIELD_OPS = ("field", "field-id")
CLAUSE_KEYS = ("filter", "aggregation", "breakout", "order-by", "fields", "condition")


# ──────────────────────────────────────────────
# Clause nodes
# ──────────────────────────────────────────────

@dataclass
class Literal:
    value: Any


@dataclass
class FieldRef:
    op: str
    field_id: Any
    rest: List[Any] = field(default_factory=list)

    @property
    def options(self) -> Optional[Dict[str, Any]]:
        if self.rest and isinstance(self.rest[0], dict):
            return self.rest[0]
        return None


@dataclass
class Op:
    name: str
    args: List["Node"] = field(default_factory=list)


@dataclass
class ClauseList:
    items: List["Node"] = field(default_factory=list)


Node = Union[Literal, FieldRef, Op, ClauseList]


# ──────────────────────────────────────────────
# Query nodes
# ──────────────────────────────────────────────

@dataclass
class SourceTable:
    table_id: Any


@dataclass
class SourceCard:
    card_id: int


@dataclass
class SourceQuery:
    query: "InnerQuery"


Source = Union[SourceTable, SourceCard, SourceQuery]


@dataclass
class InnerQuery:
    source: Optional[Source] = None
    joins: List["InnerQuery"] = field(default_factory=list)
    clauses: Dict[str, Node] = field(default_factory=dict)
    expressions: Dict[str, Node] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    key_order: List[str] = field(default_factory=list)


@dataclass
class StructuredQuery:
    database: Any
    query: InnerQuery
    extra: Dict[str, Any] = field(default_factory=dict)


# ──────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────

def parse_clause(value):
    # type: (Any) -> Node
    if isinstance(value, list) and value and isinstance(value[0], str):
        op = value[0]
        if op in FIELD_OPS and len(value) >= 2 and not isinstance(value[1], (list, dict)):
            return FieldRef(op=op, field_id=value[1], rest=copy.deepcopy(value[2:]))
        return Op(name=op, args=[parse_clause(v) for v in value[1:]])
    if isinstance(value, list):
        return ClauseList(items=[parse_clause(v) for v in value])
    return Literal(value=copy.deepcopy(value))


def parse_source_table(value):
    # type: (Any) -> Source
    if isinstance(value, str):
        m = CARD_SOURCE_PATTERN.match(value)
        if m:
            return SourceCard(card_id=int(m.group(1)))
    return SourceTable(table_id=value)


def parse_inner_query(raw):
    # type: (Dict[str, Any]) -> InnerQuery
    inner = InnerQuery(key_order=list(raw.keys()))
    for key, value in raw.items():
        if key == "source-table":
            inner.source = parse_source_table(value)
        elif key == "source-query" and isinstance(value, dict):
            inner.source = SourceQuery(query=parse_inner_query(value))
        elif key == "joins" and isinstance(value, list):
            inner.joins = [
                parse_inner_query(j) if isinstance(j, dict) else InnerQuery(extra={"__raw__": j})
                for j in value
            ]
        elif key in CLAUSE_KEYS:
            inner.clauses[key] = parse_clause(value)
        elif key == "expressions" and isinstance(value, dict):
            inner.expressions = {name: parse_clause(v) for name, v in value.items()}
        else:
            inner.extra[key] = copy.deepcopy(value)
    return inner


def parse_structured_query(dataset_query):
    # type: (Dict[str, Any]) -> StructuredQuery
    extra = {
        k: copy.deepcopy(v)
        for k, v in dataset_query.items()
        if k not in ("database", "query")
    }
    raw = dataset_query.get("query")
    inner = parse_inner_query(raw) if isinstance(raw, dict) else InnerQuery()
    return StructuredQuery(database=dataset_query.get("database"), query=inner, extra=extra)


# ──────────────────────────────────────────────
# Serialization
# ──────────────────────────────────────────────

def clause_to_mbql(node):
    # type: (Node) -> Any
    if isinstance(node, FieldRef):
        return [node.op, node.field_id] + copy.deepcopy(node.rest)
    if isinstance(node, Op):
        return [node.name] + [clause_to_mbql(a) for a in node.args]
    if isinstance(node, ClauseList):
        return [clause_to_mbql(i) for i in node.items]
    if isinstance(node, Literal):
        return copy.deepcopy(node.value)
    raise TypeError("Unknown clause node: {!r}".format(node))


def source_to_mbql(source):
    # type: (Source) -> Any
    if isinstance(source, SourceCard):
        return "card__{}".format(source.card_id)
    if isinstance(source, SourceTable):
        return source.table_id
    if isinstance(source, SourceQuery):
        return inner_query_to_mbql(source.query)
    raise TypeError("Unknown source node: {!r}".format(source))


def inner_query_to_mbql(inner):
    # type: (InnerQuery) -> Any
    if "__raw__" in inner.extra:
        return copy.deepcopy(inner.extra["__raw__"])

    out = {}  # type: Dict[str, Any]
    for key in inner.key_order:
        if key in ("source-table", "source-query"):
            if inner.source is None:
                if key in inner.extra:
                    out[key] = copy.deepcopy(inner.extra[key])
                continue
            out["source-query" if isinstance(inner.source, SourceQuery) else "source-table"] = (
                source_to_mbql(inner.source)
            )
        elif key == "joins" and key not in inner.extra:
            out[key] = [inner_query_to_mbql(j) for j in inner.joins]
        elif key in inner.clauses:
            out[key] = clause_to_mbql(inner.clauses[key])
        elif key == "expressions" and key not in inner.extra:
            out[key] = {name: clause_to_mbql(n) for name, n in inner.expressions.items()}
        elif key in inner.extra:
            out[key] = copy.deepcopy(inner.extra[key])
    return out


def structured_query_to_mbql(query):
    # type: (StructuredQuery) -> Dict[str, Any]
    out = {"database": query.database}  # type: Dict[str, Any]
    out.update(copy.deepcopy(query.extra))
    out["query"] = inner_query_to_mbql(query.query)
    return out

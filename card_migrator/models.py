"""
Data models for cards, schema catalogs, mappings, and migration outcomes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


# Cards

class QueryKind(enum.Enum):
    STRUCTURED = "query"
    NATIVE = "native"

    @classmethod
    def of(cls, dataset_query):
        # type: (Optional[dict]) -> Optional[QueryKind]
        if not isinstance(dataset_query, dict):
            return None
        try:
            return cls(dataset_query.get("type"))
        except ValueError:
            return None


@dataclass(frozen=True)
class Card:
    id: int
    name: str
    dataset_query: Dict[str, Any]
    query_kind: Optional[QueryKind] = None
    database_id: Optional[int] = None
    description: Optional[str] = None
    display: str = "table"
    visualization_settings: Dict[str, Any] = field(default_factory=dict)
    collection_id: Optional[int] = None

    @classmethod
    def from_api(cls, payload):
        # type: (dict) -> Card
        dataset_query = payload.get("dataset_query") or {}
        return cls(
            id=payload["id"],
            name=payload.get("name") or "Card {}".format(payload["id"]),
            dataset_query=dataset_query,
            query_kind=QueryKind.of(dataset_query),
            database_id=dataset_query.get("database"),
            description=payload.get("description"),
            display=payload.get("display") or "table",
            visualization_settings=payload.get("visualization_settings") or {},
            collection_id=payload.get("collection_id"),
        )

    @property
    def is_native(self) -> bool:
        return self.query_kind == QueryKind.NATIVE

    @property
    def native_sql(self) -> str:
        native = self.dataset_query.get("native") or {}
        return native.get("query") or ""


# Schema catalogs

@dataclass
class FieldDescriptor:
    id: int
    name: str
    display_name: str = ""
    base_type: str = ""
    table_id: Optional[int] = None


@dataclass
class TableDescriptor:
    id: int
    name: str
    schema: str = ""
    display_name: str = ""
    fields: List[FieldDescriptor] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        if self.schema:
            return "{}.{}".format(self.schema, self.name)
        return self.name


@dataclass
class SchemaCatalog:
    database_id: int
    tables: List[TableDescriptor] = field(default_factory=list)

    @classmethod
    def from_metadata(cls, database_id, payload):
        # type: (int, dict) -> SchemaCatalog
        """Build a catalog from a ``/api/database/:id/metadata`` response."""
        tables = []  # type: List[TableDescriptor]
        for t in payload.get("tables") or []:
            fields = [
                FieldDescriptor(
                    id=f["id"],
                    name=f.get("name") or "",
                    display_name=f.get("display_name") or "",
                    base_type=f.get("base_type") or "",
                    table_id=t["id"],
                )
                for f in t.get("fields") or []
            ]
            tables.append(
                TableDescriptor(
                    id=t["id"],
                    name=t.get("name") or "",
                    schema=t.get("schema") or "",
                    display_name=t.get("display_name") or "",
                    fields=fields,
                )
            )
        return cls(database_id=database_id, tables=tables)

    def table(self, table_id):
        # type: (int) -> Optional[TableDescriptor]
        for t in self.tables:
            if t.id == table_id:
                return t
        return None

    def field_index(self):
        # type: () -> Dict[int, FieldDescriptor]
        return {f.id: f for t in self.tables for f in t.fields}


# Mappings

class MappingMethod(enum.Enum):
    HEURISTIC = "heuristic"
    EXTERNAL = "external"
    MANUAL = "manual"


@dataclass
class MappingCandidate:
    id: int
    name: str
    score: float
    reason: str = ""


@dataclass
class TableMapping:
    source_table_id: int
    source_table_name: str
    suggested_target_table_id: Optional[int]
    suggested_target_table_name: str = ""
    confidence: float = 0.0
    alternatives: List[MappingCandidate] = field(default_factory=list)
    confirmed: bool = False
    final_target_table_id: Optional[int] = None
    ignored: bool = False

    @property
    def target_table_id(self) -> Optional[int]:
        if self.final_target_table_id is not None:
            return self.final_target_table_id
        return self.suggested_target_table_id

    def to_dict(self):
        # type: () -> Dict[str, Any]
        return {
            "source_table_id": self.source_table_id,
            "source_table_name": self.source_table_name,
            "suggested_target_table_id": self.suggested_target_table_id,
            "suggested_target_table_name": self.suggested_target_table_name,
            "confidence": self.confidence,
            "alternatives": [vars(a).copy() for a in self.alternatives],
            "confirmed": self.confirmed,
            "final_target_table_id": self.final_target_table_id,
            "ignored": self.ignored,
        }

    @classmethod
    def from_dict(cls, data):
        # type: (dict) -> TableMapping
        return cls(
            source_table_id=data["source_table_id"],
            source_table_name=data.get("source_table_name", ""),
            suggested_target_table_id=data.get("suggested_target_table_id"),
            suggested_target_table_name=data.get("suggested_target_table_name", ""),
            confidence=float(data.get("confidence") or 0.0),
            alternatives=[MappingCandidate(**a) for a in data.get("alternatives") or []],
            confirmed=bool(data.get("confirmed")),
            final_target_table_id=data.get("final_target_table_id"),
            ignored=bool(data.get("ignored")),
        )


@dataclass
class FieldMapping:
    source_field_id: int
    source_field_name: str
    source_table_id: Optional[int]
    suggested_target_field_id: Optional[int]
    suggested_target_field_name: str = ""
    target_table_id: Optional[int] = None
    confidence: float = 0.0
    method: MappingMethod = MappingMethod.HEURISTIC
    confirmed: bool = False
    final_target_field_id: Optional[int] = None

    @property
    def target_field_id(self) -> Optional[int]:
        if self.final_target_field_id is not None:
            return self.final_target_field_id
        return self.suggested_target_field_id

    def to_dict(self):
        # type: () -> Dict[str, Any]
        return {
            "source_field_id": self.source_field_id,
            "source_field_name": self.source_field_name,
            "source_table_id": self.source_table_id,
            "suggested_target_field_id": self.suggested_target_field_id,
            "suggested_target_field_name": self.suggested_target_field_name,
            "target_table_id": self.target_table_id,
            "confidence": self.confidence,
            "method": self.method.value,
            "confirmed": self.confirmed,
            "final_target_field_id": self.final_target_field_id,
        }

    @classmethod
    def from_dict(cls, data):
        # type: (dict) -> FieldMapping
        return cls(
            source_field_id=data["source_field_id"],
            source_field_name=data.get("source_field_name", ""),
            source_table_id=data.get("source_table_id"),
            suggested_target_field_id=data.get("suggested_target_field_id"),
            suggested_target_field_name=data.get("suggested_target_field_name", ""),
            target_table_id=data.get("target_table_id"),
            confidence=float(data.get("confidence") or 0.0),
            method=MappingMethod(data.get("method") or "heuristic"),
            confirmed=bool(data.get("confirmed")),
            final_target_field_id=data.get("final_target_field_id"),
        )


@dataclass
class UnmatchedTable:
    source_table_id: Any
    source_table_name: str
    schema: str = ""


@dataclass
class UnmatchedField:
    source_field_id: Any
    source_field_name: str
    source_table_name: str = ""
    source_table_id: Optional[int] = None


# Migration outcomes

class ErrorKind(enum.Enum):
    CIRCULAR_DEPENDENCY = "CircularDependency"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    DEPENDENCY_NOT_MIGRATED = "DependencyNotMigrated"
    MISSING_MAPPING_TABLE = "MissingMappingTable"
    MISSING_MAPPING_FIELD = "MissingMappingField"
    TRANSLATION_FAILED = "TranslationFailed"
    TARGET_API_ERROR = "TargetApiError"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class MigrationStatus(enum.Enum):
    OK = "ok"
    ALREADY_MIGRATED = "already_migrated"
    FAILED = "failed"


class CardState(enum.Enum):
    UNMIGRATED = "unmigrated"
    READY = "ready"
    ON_HOLD = "on_hold"
    MIGRATED = "migrated"
    FAILED = "failed"


@dataclass
class MigratedCard:
    card_id: int
    card_name: str
    status: MigrationStatus
    original_query: Dict[str, Any]
    migrated_query: Optional[Dict[str, Any]] = None
    new_card_id: Optional[int] = None
    card_url: Optional[str] = None
    dry_run: bool = False
    verified: bool = True
    warnings: List[str] = field(default_factory=list)
    dependencies: List["MigrationOutcome"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self):
        # type: () -> Dict[str, Any]
        return {
            "status": self.status.value,
            "card_id": self.card_id,
            "card_name": self.card_name,
            "new_card_id": self.new_card_id,
            "card_url": self.card_url,
            "dry_run": self.dry_run,
            "verified": self.verified,
            "warnings": list(self.warnings),
            "original_query": self.original_query,
            "migrated_query": self.migrated_query,
            "dependencies": [d.to_dict() for d in self.dependencies],
        }


@dataclass
class MigrationFailure:
    card_id: int
    kind: ErrorKind
    message: str
    card_name: str = ""
    original_query: Optional[Dict[str, Any]] = None
    migrated_query: Optional[Dict[str, Any]] = None
    cause: Optional["MigrationFailure"] = None
    unmatched_tables: List[UnmatchedTable] = field(default_factory=list)
    unmatched_fields: List[UnmatchedField] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dependencies: List["MigrationOutcome"] = field(default_factory=list)

    @property
    def status(self) -> MigrationStatus:
        return MigrationStatus.FAILED

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self):
        # type: () -> Dict[str, Any]
        return {
            "status": self.status.value,
            "card_id": self.card_id,
            "card_name": self.card_name,
            "error_kind": self.kind.value,
            "message": self.message,
            "warnings": list(self.warnings),
            "unmatched_tables": [vars(t).copy() for t in self.unmatched_tables],
            "unmatched_fields": [vars(f).copy() for f in self.unmatched_fields],
            "original_query": self.original_query,
            "migrated_query": self.migrated_query,
            "cause": self.cause.to_dict() if self.cause else None,
            "dependencies": [d.to_dict() for d in self.dependencies],
        }


MigrationOutcome = Union[MigratedCard, MigrationFailure]


@dataclass
class WaitingItem:
    card_id: int
    card_name: str
    kind: str
    reason: str
    missing_tables: List[str] = field(default_factory=list)
    timestamp: str = ""

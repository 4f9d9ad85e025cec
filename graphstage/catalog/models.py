"""
Catalog models for a session store.

Each session store carries three bookkeeping tables next to the staged
data: the tables it holds (with fingerprints and per-column type counts),
the relationships between them, and the pagination state of any
cursor-paginated source. The dataclasses below are the shapes returned to
callers of the staging and query operations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (  # type: ignore
    Boolean, DateTime, Float, Index, Integer, JSON, String, Text, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column  # type: ignore


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for catalog models."""
    pass


class CatalogTable(Base):
    """
    A staged table and its inferred shape.

    `columns` maps column name to its JSON key, role (data or
    foreign_key), storage type and observed type counts, in declaration
    order.
    """
    __tablename__ = "_graphstage_tables"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="entity")
    path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    columns: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Junction endpoints
    parent_table: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    child_table: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CatalogRelationship(Base):
    """A directed edge between two staged tables."""
    __tablename__ = "_graphstage_relationships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_table: Mapped[str] = mapped_column(String(255), nullable=False)
    field_name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    cardinality: Mapped[str] = mapped_column(String(32), nullable=False)
    target_table: Mapped[str] = mapped_column(String(255), nullable=False)
    foreign_key_table: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    foreign_key_column: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    junction_table: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_table", "field_name", "target_table",
                         name="uq_graphstage_relationship"),
    )


class CatalogPagination(Base):
    """Pagination state of a cursor-paginated connection, one row per staging call."""
    __tablename__ = "_graphstage_pagination"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_root: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_next_page: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_previous_page: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    current_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    end_cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    staged_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_graphstage_pagination_table", "table_name"),
    )


# ========== Result shapes ==========

@dataclass
class PaginationInfo:
    """Cursor pagination carried over from a GraphQL connection."""
    has_next_page: bool = False
    has_previous_page: bool = False
    current_count: int = 0
    total_count: Optional[int] = None
    end_cursor: Optional[str] = None
    start_cursor: Optional[str] = None

    @property
    def suggestion(self) -> str:
        if self.has_next_page and self.end_cursor:
            return (
                f"More results are available upstream. Re-run the query with "
                f"after: \"{self.end_cursor}\" and stage the next page."
            )
        if self.has_next_page:
            return "More results are available upstream; request the next page and stage it."
        return "All available results are staged."

    @classmethod
    def from_catalog(cls, row: CatalogPagination) -> "PaginationInfo":
        return cls(
            has_next_page=row.has_next_page,
            has_previous_page=row.has_previous_page,
            current_count=row.current_count,
            total_count=row.total_count,
            end_cursor=row.end_cursor,
            start_cursor=row.start_cursor,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasNextPage": self.has_next_page,
            "hasPreviousPage": self.has_previous_page,
            "currentCount": self.current_count,
            "totalCount": self.total_count,
            "endCursor": self.end_cursor,
            "startCursor": self.start_cursor,
            "suggestion": self.suggestion,
        }


@dataclass
class RelationshipInfo:
    type: str  # foreign_key / junction_table
    source_table: str
    target_table: str
    cardinality: str  # one_to_one / one_to_many / many_to_many
    confidence: float
    foreign_key_table: Optional[str] = None
    foreign_key_column: Optional[str] = None
    junction_table_name: Optional[str] = None

    @classmethod
    def from_catalog(cls, row: CatalogRelationship) -> "RelationshipInfo":
        return cls(
            type=row.kind,
            source_table=row.source_table,
            target_table=row.target_table,
            cardinality=row.cardinality,
            confidence=row.confidence,
            foreign_key_table=row.foreign_key_table,
            foreign_key_column=row.foreign_key_column,
            junction_table_name=row.junction_table,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "cardinality": self.cardinality,
        }
        if self.foreign_key_column:
            result["foreign_key_table"] = self.foreign_key_table
            result["foreign_key_column"] = self.foreign_key_column
        if self.junction_table_name:
            result["junction_table_name"] = self.junction_table_name
        result["_meta"] = {"confidence": self.confidence}
        return result


@dataclass
class SchemaInfo:
    name: str
    columns: Dict[str, str]
    row_count: int
    sample_data: List[Dict[str, Any]]
    relationships: Dict[str, RelationshipInfo] = field(default_factory=dict)
    kind: str = "entity"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    data_types_confidence: Dict[str, float] = field(default_factory=dict)
    nullable: Dict[str, bool] = field(default_factory=dict)

    @property
    def quality_score(self) -> float:
        """Mean type confidence over the table's columns."""
        if not self.data_types_confidence:
            return 1.0
        return round(
            sum(self.data_types_confidence.values()) / len(self.data_types_confidence), 4)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "columns": dict(self.columns),
            "row_count": self.row_count,
            "sample_data": self.sample_data,
        }
        if self.relationships:
            result["relationships"] = {
                key: rel.to_dict() for key, rel in self.relationships.items()
            }
        result["_meta"] = {
            "kind": self.kind,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_updated": self.updated_at.isoformat() if self.updated_at else None,
            "inferred_at": utcnow().isoformat(),
            "quality_score": self.quality_score,
            "data_types_confidence": dict(self.data_types_confidence),
            "nullable": dict(self.nullable),
        }
        return result


@dataclass
class ProcessingResult:
    success: bool
    access_id: Optional[str] = None
    message: Optional[str] = None
    schemas: Dict[str, SchemaInfo] = field(default_factory=dict)
    pagination: Optional[PaginationInfo] = None
    processing_time_ms: float = 0.0
    staged_rows: int = 0
    optimization_hints: List[str] = field(default_factory=list)

    @property
    def table_count(self) -> int:
        return len(self.schemas)

    @property
    def total_rows(self) -> int:
        return sum(schema.row_count for schema in self.schemas.values())

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "schemas": {name: schema.to_dict() for name, schema in self.schemas.items()},
            "table_count": self.table_count,
            "total_rows": self.total_rows,
        }
        if self.pagination is not None:
            result["pagination"] = self.pagination.to_dict()
        result["_meta"] = {
            "processing_time_ms": self.processing_time_ms,
            "staged_rows": self.staged_rows,
            "optimization_hints": list(self.optimization_hints),
        }
        return result

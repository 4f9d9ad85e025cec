"""
Ingest module for JSON staging.

Provides type unification, schema analysis, relationship detection,
DDL generation and materialization of staged JSON documents.
"""

from graphstage.ingest.type_unifier import ColumnType, TypeTracker, detect_column_type, observe
from graphstage.ingest.schema_analyzer import (
    DraftSchema,
    DraftTable,
    FieldKind,
    JsonSchemaAnalyzer,
    infer_schema,
)
from graphstage.ingest.relationship_detector import (
    Cardinality,
    RelationshipDecision,
    RelationshipDetector,
    RelationshipKind,
)
from graphstage.ingest.ddl_generator import DDLGenerator
from graphstage.ingest.materializer import TableMaterializer
from graphstage.ingest.json_processor import JsonProcessor

__all__ = [  # ruff: noqa: RUF022
    # Type Unification
    "ColumnType",
    "TypeTracker",
    "detect_column_type",
    "observe",
    # Schema Analysis
    "DraftSchema",
    "DraftTable",
    "FieldKind",
    "JsonSchemaAnalyzer",
    "infer_schema",
    # Relationships
    "Cardinality",
    "RelationshipDecision",
    "RelationshipDetector",
    "RelationshipKind",
    # DDL Generation
    "DDLGenerator",
    # Processing
    "TableMaterializer",
    "JsonProcessor",
]

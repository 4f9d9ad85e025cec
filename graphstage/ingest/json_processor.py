"""
JSON staging pipeline.

Runs one staging call end to end against a session store:
1. Read the store's catalog
2. Infer a draft schema for the document against it
3. Materialize tables, rows and catalog in one transaction
4. Summarize the result with optimization hints
"""

import time
from typing import Any, Dict, List, Optional

from graphstage.catalog.models import PaginationInfo, ProcessingResult, SchemaInfo
from graphstage.common.logging_config import get_structured_logger
from graphstage.config.settings import Settings, get_settings
from graphstage.ingest.materializer import TableMaterializer, load_existing_tables
from graphstage.ingest.schema_analyzer import JsonSchemaAnalyzer
from graphstage.sessions.store import SessionStore

logger = get_structured_logger(__name__)

LARGE_TABLE_ROWS = 10_000


def generate_optimization_hints(
    schemas: Dict[str, SchemaInfo],
    pagination: Optional[PaginationInfo] = None,
    low_confidence_threshold: float = 0.8,
    upstream_errors: Optional[Any] = None,
) -> List[str]:
    """
    Suggestions for a consumer about to write SQL against staged tables.

    Args:
        schemas: SchemaInfo of the tables touched by the load
        pagination: Top-level pagination of the staged data, if any
        low_confidence_threshold: Confidence below which a column or
            relationship is flagged
        upstream_errors: `errors` array of the GraphQL envelope, if any

    Returns:
        List of human-readable hints
    """
    hints: List[str] = []

    for name, schema in schemas.items():
        for rel in schema.relationships.values():
            if rel.junction_table_name:
                join = (
                    f"Join {rel.source_table} to {rel.target_table} through "
                    f"{rel.junction_table_name}: JOIN {rel.junction_table_name} j "
                    f"ON j.parent_id = {rel.source_table}.id JOIN {rel.target_table} "
                    f"ON {rel.target_table}.id = j.child_id"
                )
            elif rel.foreign_key_table == rel.target_table:
                join = (
                    f"Join {rel.target_table} to {rel.source_table} with "
                    f"{rel.target_table}.{rel.foreign_key_column} = {rel.source_table}.id"
                )
            else:
                join = (
                    f"Join {rel.source_table} to {rel.target_table} with "
                    f"{rel.source_table}.{rel.foreign_key_column} = {rel.target_table}.id"
                )
            hints.append(join)

            if rel.confidence < low_confidence_threshold:
                hints.append(
                    f"Relationship {rel.source_table} -> {rel.target_table} was inferred "
                    f"with low confidence ({rel.confidence:.2f}); check for missing or "
                    f"irregular nested data"
                )

        for column, confidence in schema.data_types_confidence.items():
            if confidence < low_confidence_threshold:
                hints.append(
                    f"Column {name}.{column} mixes value types (confidence "
                    f"{confidence:.2f}); it is stored as {schema.columns.get(column)}"
                )

        if schema.row_count >= LARGE_TABLE_ROWS:
            hints.append(
                f"Table {name} holds {schema.row_count} rows; filter with WHERE "
                f"and use LIMIT when exploring it"
            )

    if pagination is not None and pagination.has_next_page:
        hints.append(pagination.suggestion)

    if upstream_errors:
        hints.append("The upstream response reported errors; staged data may be partial")

    # Relationships are listed on both of their tables
    return list(dict.fromkeys(hints))


class JsonProcessor:
    """
    Stages JSON documents into session stores.

    Loads into one store are serialized by the store's write lock; the
    whole load is one transaction, so a failed call leaves the store as
    it was.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        materializer: Optional[TableMaterializer] = None,
    ):
        self.settings = settings or get_settings()
        self.materializer = materializer or TableMaterializer(
            sample_size=self.settings.sample_size)

    def process(self, store: SessionStore, document: Any) -> ProcessingResult:
        """
        Stage a document into a store.

        Args:
            store: Target session store
            document: Parsed JSON or JSON text, optionally a GraphQL envelope

        Returns:
            ProcessingResult for the tables touched by this call

        Raises:
            SchemaInferenceError: The document cannot be represented as tables
            StorageError: The store failed while loading
        """
        start_time = time.perf_counter()

        with store.transaction() as conn:
            analyzer = JsonSchemaAnalyzer(
                root_table_name=self.settings.root_table_name,
                max_depth=self.settings.max_depth,
                max_staged_rows=self.settings.max_staged_rows,
                existing_tables=load_existing_tables(conn),
            )
            draft = analyzer.analyze(document)
            schemas = self.materializer.materialize(conn, draft)

        hints = generate_optimization_hints(
            schemas,
            pagination=draft.pagination,
            low_confidence_threshold=self.settings.low_confidence_threshold,
            upstream_errors=draft.upstream_errors,
        )
        processing_time_ms = round((time.perf_counter() - start_time) * 1000, 2)

        result = ProcessingResult(
            success=True,
            access_id=store.access_id,
            message=f"Staged {draft.row_count} rows into {len(schemas)} tables",
            schemas=schemas,
            pagination=draft.pagination,
            processing_time_ms=processing_time_ms,
            staged_rows=draft.row_count,
            optimization_hints=hints,
        )
        logger.info(
            "Staged JSON document",
            table_count=result.table_count,
            staged_rows=draft.row_count,
            processing_time_ms=processing_time_ms,
        )
        return result

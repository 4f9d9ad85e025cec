"""
Table Materializer.

Turns a draft schema into physical tables of a session store: creates or
extends tables, loads rows with synthetic keys offset past what the store
already holds, and records every table, relationship and pagination state
in the store's catalog. Everything runs on the caller's connection so the
whole load commits or rolls back together.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects import sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from graphstage.catalog.models import (
    CatalogPagination,
    CatalogRelationship,
    CatalogTable,
    RelationshipInfo,
    SchemaInfo,
    utcnow,
)
from graphstage.common.errors import SchemaInferenceError, StorageError
from graphstage.config.settings import get_settings
from graphstage.ingest.ddl_generator import PRIMARY_KEY, DDLGenerator
from graphstage.ingest.schema_analyzer import (
    DATA,
    ENTITY,
    DraftSchema,
    DraftTable,
    ExistingTable,
)
from graphstage.ingest.type_unifier import ColumnType, TypeTracker, coerce_value

logger = logging.getLogger(__name__)

_preparer = sqlite.dialect().identifier_preparer


def quote(name: str) -> str:
    return _preparer.quote(name)


def load_existing_tables(conn: Connection) -> Dict[str, ExistingTable]:
    """Read the catalog of a store into the shapes the analyzer matches against."""
    with Session(bind=conn) as session:
        return {
            row.name: ExistingTable(
                name=row.name,
                kind=row.kind,
                fingerprint=tuple(row.fingerprint or ()),
                columns=dict(row.columns or {}),
                parent_table=row.parent_table,
                child_table=row.child_table,
            )
            for row in session.scalars(select(CatalogTable))
        }


def _decode(value: Any, type_name: Optional[str]) -> Any:
    if value is None:
        return None
    if type_name == ColumnType.JSON.value and isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    if type_name == ColumnType.BOOLEAN.value and value in (0, 1):
        return bool(value)
    return value


class TableMaterializer:
    """Creates, extends and loads the tables of one session store."""

    def __init__(self, sample_size: Optional[int] = None):
        settings = get_settings()
        self.sample_size = sample_size if sample_size is not None else settings.sample_size

    def materialize(self, conn: Connection, draft: DraftSchema) -> Dict[str, SchemaInfo]:
        """
        Write a draft schema into the store.

        Args:
            conn: Writer connection inside an open transaction
            draft: Output of the schema analyzer

        Returns:
            SchemaInfo per table touched by this load
        """
        try:
            with Session(bind=conn, autoflush=False) as session:
                catalog = {row.name: row for row in session.scalars(select(CatalogTable))}

                types: Dict[str, Dict[str, TypeTracker]] = {}
                for table in draft.tables.values():
                    types[table.name] = self._resolve_types(table, catalog.get(table.name))

                # Fresh metadata per load, table definitions are not shared across stores
                ddl = DDLGenerator()
                sql_tables = {}
                for table in draft.tables.values():
                    sql_tables[table.name] = self._ensure_table(conn, ddl, table, types[table.name])

                # Offsets are taken before any insert so references stay consistent
                offsets = {
                    table.name: self._max_id(conn, table.name) if table.exists else 0
                    for table in draft.tables.values() if table.kind == ENTITY
                }

                for table in draft.tables.values():
                    rows = self._prepare_rows(table, types[table.name], offsets)
                    if rows:
                        conn.execute(sql_tables[table.name].insert(), rows)

                self._write_catalog(session, draft, catalog, types)
                session.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to materialize staged tables: {e}") from e
        except (OverflowError, ValueError) as e:
            # Raised by the driver while binding a value it cannot represent
            raise SchemaInferenceError(f"Staged value cannot be stored: {e}") from e

        logger.debug(
            "Materialized tables",
            extra={"extra_fields": {
                "tables": list(draft.tables),
                "rows": draft.row_count,
            }},
        )
        return self.describe(conn, list(draft.tables))

    def _resolve_types(
        self,
        table: DraftTable,
        catalog_row: Optional[CatalogTable],
    ) -> Dict[str, TypeTracker]:
        stored = dict(catalog_row.columns) if catalog_row is not None else {}
        trackers: Dict[str, TypeTracker] = {}

        for col_name, column in table.columns.items():
            if column.role != DATA:
                continue
            info = stored.get(col_name) or {}
            try:
                tracker = TypeTracker.from_counts(
                    info.get("type_counts") or {}, info.get("null_count", 0))
                if "type" in info:
                    # Columns that only ever held nulls keep their declared type
                    tracker.column_type = tracker.column_type or ColumnType(info["type"])
            except ValueError as e:
                raise SchemaInferenceError(
                    f"Column {table.name}.{col_name} has an unknown stored type: {e}") from e
            tracker.merge(column.tracker)
            trackers[col_name] = tracker

        return trackers

    def _column_types(self, table: DraftTable, trackers: Dict[str, TypeTracker]) -> Dict[str, ColumnType]:
        return {
            col_name: trackers[col_name].resolved_type if column.role == DATA else ColumnType.INTEGER
            for col_name, column in table.columns.items()
        }

    def _ensure_table(
        self,
        conn: Connection,
        ddl: DDLGenerator,
        table: DraftTable,
        trackers: Dict[str, TypeTracker],
    ):
        if table.kind == ENTITY:
            sql_table = ddl.build_entity_table(table.name, self._column_types(table, trackers))
        else:
            sql_table = ddl.build_junction_table(table.name)

        if not table.exists:
            conn.exec_driver_sql(ddl.generate_table_ddl(sql_table))
            return sql_table

        for column in table.new_columns:
            column_type = trackers[column.name].resolved_type if column.role == DATA else ColumnType.INTEGER
            conn.exec_driver_sql(ddl.build_add_column(table.name, column.name, column_type))
        return sql_table

    def _max_id(self, conn: Connection, table_name: str) -> int:
        result = conn.exec_driver_sql(
            f"SELECT COALESCE(MAX({quote(PRIMARY_KEY)}), 0) FROM {quote(table_name)}")
        return int(result.scalar() or 0)

    def _prepare_rows(
        self,
        table: DraftTable,
        trackers: Dict[str, TypeTracker],
        offsets: Dict[str, int],
    ) -> List[Dict[str, Any]]:
        rows = []
        for index, raw in enumerate(table.rows, start=1):
            row: Dict[str, Any] = {}
            if table.kind == ENTITY:
                row[PRIMARY_KEY] = index + offsets[table.name]
            for col_name, column in table.columns.items():
                value = raw.get(col_name)
                if column.role == DATA:
                    row[col_name] = coerce_value(value, trackers[col_name].resolved_type)
                elif value is not None:
                    row[col_name] = value + offsets.get(column.references, 0)
                else:
                    row[col_name] = None
            rows.append(row)
        return rows

    def _write_catalog(
        self,
        session: Session,
        draft: DraftSchema,
        catalog: Dict[str, CatalogTable],
        types: Dict[str, Dict[str, TypeTracker]],
    ) -> None:
        now = utcnow()

        for table in draft.tables.values():
            columns: Dict[str, Any] = {}
            for col_name, column in table.columns.items():
                entry: Dict[str, Any] = {"key": column.key, "role": column.role}
                if column.role == DATA:
                    entry.update(types[table.name][col_name].to_dict())
                else:
                    entry["type"] = ColumnType.INTEGER.value
                    entry["references"] = column.references
                columns[col_name] = entry

            row = catalog.get(table.name)
            if row is None:
                session.add(CatalogTable(
                    name=table.name,
                    kind=table.kind,
                    path=table.path,
                    fingerprint=list(table.fingerprint),
                    columns=columns,
                    parent_table=table.parent_table,
                    child_table=table.child_table,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                row.fingerprint = list(table.fingerprint)
                row.columns = columns
                row.updated_at = now

        existing_relationships = {
            (rel.source_table, rel.field_name, rel.target_table): rel
            for rel in session.scalars(select(CatalogRelationship))
        }
        for relationship in draft.relationships:
            key = (relationship.source_table, relationship.field_name, relationship.target_table)
            row = existing_relationships.get(key)
            if row is None:
                row = CatalogRelationship(
                    source_table=relationship.source_table,
                    field_name=relationship.field_name,
                    target_table=relationship.target_table,
                )
                session.add(row)
            row.kind = relationship.decision.kind.value
            row.cardinality = relationship.decision.cardinality.value
            row.confidence = relationship.decision.confidence
            row.foreign_key_table = relationship.foreign_key_table
            row.foreign_key_column = relationship.foreign_key_column
            row.junction_table = relationship.junction_table
            row.updated_at = now

        for table in draft.tables.values():
            page = table.pagination
            if page is None:
                continue
            session.add(CatalogPagination(
                table_name=table.name,
                is_root=table.name == draft.pagination_table,
                has_next_page=page.has_next_page,
                has_previous_page=page.has_previous_page,
                current_count=page.current_count,
                total_count=page.total_count,
                end_cursor=page.end_cursor,
                start_cursor=page.start_cursor,
                staged_at=now,
            ))

    def describe(self, conn: Connection, table_names: Optional[Iterable[str]] = None) -> Dict[str, SchemaInfo]:
        """
        Build SchemaInfo for tables of a store.

        Args:
            conn: Any connection to the store
            table_names: Tables to describe (all catalogued tables if None)

        Returns:
            SchemaInfo keyed by table name, in catalog order
        """
        with Session(bind=conn) as session:
            catalog = {row.name: row for row in session.scalars(
                select(CatalogTable).order_by(CatalogTable.created_at, CatalogTable.name))}
            relationships = list(session.scalars(
                select(CatalogRelationship).order_by(CatalogRelationship.id)))

        names = list(catalog) if table_names is None else [n for n in table_names if n in catalog]
        schemas: Dict[str, SchemaInfo] = {}

        for name in names:
            row = catalog[name]
            columns: Dict[str, str] = {}
            confidence: Dict[str, float] = {}
            if row.kind == ENTITY:
                columns[PRIMARY_KEY] = ColumnType.INTEGER.value
            for col_name, info in (row.columns or {}).items():
                columns[col_name] = info.get("type", ColumnType.TEXT.value)
                if info.get("role") == DATA:
                    confidence[col_name] = round(TypeTracker.from_counts(
                        info.get("type_counts") or {}, info.get("null_count", 0)).confidence, 4)

            row_count, nullable = self._null_profile(conn, name, columns)
            schemas[name] = SchemaInfo(
                name=name,
                columns=columns,
                row_count=row_count,
                sample_data=self._sample_rows(conn, row, columns),
                relationships=self._relationships_for(name, relationships),
                kind=row.kind,
                created_at=row.created_at,
                updated_at=row.updated_at,
                data_types_confidence=confidence,
                nullable=nullable,
            )

        return schemas

    def _null_profile(
        self,
        conn: Connection,
        table_name: str,
        columns: Dict[str, str],
    ) -> Tuple[int, Dict[str, bool]]:
        """Row count and, per column, whether any stored row holds NULL."""
        counts = ", ".join(f"COUNT({quote(col_name)})" for col_name in columns)
        values = conn.exec_driver_sql(
            f"SELECT COUNT(*), {counts} FROM {quote(table_name)}").one()
        row_count = int(values[0])
        # An empty table has no NOT NULL evidence for any column
        nullable = {
            col_name: row_count == 0 or int(count) < row_count
            for col_name, count in zip(columns, values[1:])
        }
        if PRIMARY_KEY in nullable:
            nullable[PRIMARY_KEY] = False
        return row_count, nullable

    def _sample_rows(self, conn: Connection, row: CatalogTable, columns: Dict[str, str]) -> List[Dict[str, Any]]:
        if self.sample_size <= 0:
            return []
        order = quote(PRIMARY_KEY) if row.kind == ENTITY else "rowid"
        result = conn.exec_driver_sql(
            f"SELECT * FROM {quote(row.name)} ORDER BY {order} LIMIT ?", (self.sample_size,))
        names = list(result.keys())
        return [
            {name: _decode(value, columns.get(name)) for name, value in zip(names, values)}
            for values in result
        ]

    def _relationships_for(
        self,
        table_name: str,
        relationships: List[CatalogRelationship],
    ) -> Dict[str, RelationshipInfo]:
        found: Dict[str, RelationshipInfo] = {}
        for rel in relationships:
            if rel.source_table == table_name:
                found[rel.field_name] = RelationshipInfo.from_catalog(rel)
            elif rel.foreign_key_table == table_name and rel.foreign_key_column:
                found[rel.foreign_key_column] = RelationshipInfo.from_catalog(rel)
        return found


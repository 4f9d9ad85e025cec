"""
DDL Generator for staged tables.

Derives SQL-safe table and column names from JSON keys and builds
SQLAlchemy table definitions (and their CREATE TABLE statements) for
entity tables and junction tables.
"""

import re
from typing import Dict, Iterable, List, Optional

from sqlalchemy import Boolean, Column, Float, Integer, MetaData, Table, Text
from sqlalchemy.dialects import sqlite
from sqlalchemy.schema import CreateTable

from graphstage.ingest.type_unifier import ColumnType

PRIMARY_KEY = "id"
JUNCTION_PARENT_COLUMN = "parent_id"
JUNCTION_CHILD_COLUMN = "child_id"

# Names that would shadow the synthetic key or need quoting in ad-hoc SQL
RESERVED_NAMES = {
    "id", "user", "group", "order", "table", "index", "key", "value",
    "default", "select", "from", "where", "join", "limit", "offset",
}

_PLURAL_ES_SUFFIXES = ("s", "x", "z", "ch", "sh")

TYPE_MAPPING = {
    ColumnType.INTEGER: Integer,
    ColumnType.REAL: Float,
    ColumnType.BOOLEAN: Boolean,
    ColumnType.TEXT: Text,
    ColumnType.JSON: Text,  # serialized JSON text
}


def sanitize_identifier(name: str) -> str:
    """
    Make a JSON key usable as a bare SQL identifier.

    Case is preserved; SQLite matches identifiers case-insensitively.
    """
    name = re.sub(r"[^0-9A-Za-z_]", "_", name.replace("[]", ""))
    name = name.strip("_") or "field"
    if name[0].isdigit():
        name = f"col_{name}"
    return name


def sanitize_column_name(name: str) -> str:
    name = sanitize_identifier(name)
    if name.lower() in RESERVED_NAMES:
        name = f"{name}_col"
    return name


def pluralize(name: str) -> str:
    """Naive English plural used for table names."""
    lower = name.lower()
    if lower.endswith("s") and not lower.endswith("ss"):
        return name
    if lower.endswith("y") and len(name) > 1 and lower[-2] not in "aeiou":
        return f"{name[:-1]}ies"
    if lower.endswith(_PLURAL_ES_SUFFIXES):
        return f"{name}es"
    return f"{name}s"


def table_name_for(field_name: str) -> str:
    name = pluralize(sanitize_identifier(field_name))
    if name.lower() in RESERVED_NAMES:
        name = f"{name}_tbl"
    return name


def table_name_for_path(path: str) -> str:
    """Disambiguated table name built from a dotted JSON path."""
    parts = [sanitize_identifier(p) for p in path.split(".") if p]
    return "_".join(parts) or "root"


def unique_name(name: str, taken: Iterable[str]) -> str:
    """Append a numeric suffix until the name is free (case-insensitive)."""
    taken_lower = {t.lower() for t in taken}
    if name.lower() not in taken_lower:
        return name
    counter = 2
    while f"{name}_{counter}".lower() in taken_lower:
        counter += 1
    return f"{name}_{counter}"


def foreign_key_column_for(name: str) -> str:
    return f"{sanitize_identifier(name)}_id"


class DDLGenerator:
    """
    Generates SQLAlchemy table definitions for a session store.

    Entity tables get a synthetic auto-incrementing integer primary key
    followed by the inferred columns in discovery order. Foreign-key
    columns are plain integers; referential integrity is advisory.
    Junction tables hold exactly two integer columns.
    """

    def __init__(self, metadata: Optional[MetaData] = None):
        self.metadata = metadata if metadata is not None else MetaData()

    def build_entity_table(self, table_name: str, columns: Dict[str, ColumnType]) -> Table:
        """
        Build an entity table definition.

        Args:
            table_name: Name of the table
            columns: Ordered mapping of column name to storage type

        Returns:
            SQLAlchemy Table bound to this generator's metadata
        """
        sql_columns: List[Column] = [
            Column(PRIMARY_KEY, Integer, primary_key=True, autoincrement=True)
        ]
        for col_name, column_type in columns.items():
            sql_columns.append(Column(col_name, TYPE_MAPPING[column_type], nullable=True))
        return Table(table_name, self.metadata, *sql_columns, extend_existing=True)

    def build_junction_table(self, table_name: str) -> Table:
        return Table(
            table_name,
            self.metadata,
            Column(JUNCTION_PARENT_COLUMN, Integer, nullable=False),
            Column(JUNCTION_CHILD_COLUMN, Integer, nullable=False),
            extend_existing=True,
        )

    def build_add_column(self, table_name: str, col_name: str, column_type: ColumnType) -> str:
        """ALTER TABLE statement adding a column to an existing table."""
        preparer = sqlite.dialect().identifier_preparer
        sql_type = TYPE_MAPPING[column_type]().compile(dialect=sqlite.dialect())
        return (
            f"ALTER TABLE {preparer.quote(table_name)} "
            f"ADD COLUMN {preparer.quote(col_name)} {sql_type}"
        )

    def generate_table_ddl(self, table: Table) -> str:
        """Render the CREATE TABLE statement for a table definition."""
        return str(CreateTable(table, if_not_exists=True).compile(dialect=sqlite.dialect())).strip()

"""
JSON Schema Analyzer.

Walks a staged JSON document and produces a draft relational schema:
one table per entity shape, typed columns, synthetic keys, foreign-key
columns and junction tables, plus the rows to load.

The walk works on shape groups: every object found at the same JSON path
(e.g. all elements of `drugs.nodes[].interactions[]`) is analyzed together,
so a field's representation is decided from all of its observations at
once rather than from the first one seen.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from graphstage.catalog.models import PaginationInfo
from graphstage.common.errors import SchemaInferenceError
from graphstage.config.settings import get_settings
from graphstage.ingest.ddl_generator import (
    JUNCTION_CHILD_COLUMN,
    JUNCTION_PARENT_COLUMN,
    PRIMARY_KEY,
    foreign_key_column_for,
    sanitize_column_name,
    table_name_for,
    table_name_for_path,
    unique_name,
)
from graphstage.ingest.pagination import (
    connection_elements,
    extract_pagination,
    is_connection,
    merge_pagination,
)
from graphstage.ingest.relationship_detector import (
    DetectionResult,
    FieldLink,
    RelationshipDecision,
    RelationshipDetector,
    content_fingerprint,
    nested_elements,
)
from graphstage.ingest.type_unifier import ColumnType, TypeTracker

ENVELOPE_KEYS = {"data", "errors", "extensions"}

# Column roles
DATA = "data"
FOREIGN_KEY = "foreign_key"  # nested object, column on the parent
PARENT_KEY = "parent_key"  # one-to-many, column on the child
JUNCTION_KEY = "junction_key"

ENTITY = "entity"
JUNCTION = "junction"


class FieldKind(str, Enum):
    """How a JSON field is represented relationally."""
    SCALAR = "scalar"
    JSON = "json"
    OBJECT = "object"
    ARRAY = "array"
    EMPTY_ARRAY = "empty_array"


def classify_field(values: Iterable[Any]) -> FieldKind:
    """
    Decide a field's representation from all of its observed values.

    Scalars mixed with objects or arrays, arrays of scalars, and objects
    that are always empty all fall back to a JSON column.
    """
    families: Set[str] = set()
    has_entities = False
    has_scalar_items = False
    has_nonempty_object = False

    for value in values:
        if value is None:
            continue
        if is_connection(value):
            families.add("array")
            has_entities = True
        elif isinstance(value, list):
            families.add("array")
            if any(isinstance(item, dict) for item in value):
                has_entities = True
            elif any(item is not None for item in value):
                has_scalar_items = True
        elif isinstance(value, dict):
            families.add("object")
            has_nonempty_object = has_nonempty_object or bool(value)
        else:
            families.add("scalar")

    if not families or families == {"scalar"}:
        return FieldKind.SCALAR
    if len(families) > 1:
        return FieldKind.JSON
    if families == {"object"}:
        return FieldKind.OBJECT if has_nonempty_object else FieldKind.JSON
    if has_entities:
        return FieldKind.ARRAY
    if has_scalar_items:
        return FieldKind.JSON
    return FieldKind.EMPTY_ARRAY


def has_scalar_fields(obj: Dict[str, Any]) -> bool:
    return any(
        value is not None and not isinstance(value, (dict, list))
        for value in obj.values()
    )


def unwrap_envelope(document: Any) -> Tuple[Any, Optional[Any]]:
    """
    Accept either a full GraphQL response or its data payload.

    Returns:
        Tuple of (payload, upstream errors or None)
    """
    if isinstance(document, (str, bytes, bytearray)):
        try:
            document = json.loads(document)
        except ValueError as e:
            raise SchemaInferenceError(f"Staged payload is not valid JSON: {e}") from e

    if isinstance(document, dict) and "data" in document and set(document) <= ENVELOPE_KEYS:
        errors = document.get("errors")
        if document["data"] is None:
            raise SchemaInferenceError(
                f"Upstream response carries no data: {json.dumps(errors, default=str)}")
        return document["data"], errors

    return document, None


def compatible(left: Tuple[str, ...], right: Tuple[str, ...]) -> bool:
    """Two fingerprints describe the same table (an empty shape fits anything)."""
    return left == right or not left or not right


@dataclass
class Observation:
    """One JSON object found at a group's path."""
    obj: Dict[str, Any]
    parent_index: Optional[int] = None
    row_id: Optional[int] = None
    reused: bool = False  # folded onto an identical earlier row
    skipped: bool = False  # an ancestor was folded, nothing to load


class ShapeGroup:
    """All objects found at one JSON path."""

    def __init__(
        self,
        path: str,
        field_name: str,
        name: str,
        parent: Optional["ShapeGroup"] = None,
        depth: int = 0,
    ):
        self.path = path
        self.field_name = field_name
        self.name = name
        self.parent = parent
        self.depth = depth
        self.observations: List[Observation] = []
        self.kinds: "OrderedDict[str, FieldKind]" = OrderedDict()
        self.trackers: Dict[str, TypeTracker] = {}
        self.children: "OrderedDict[str, ShapeGroup]" = OrderedDict()
        self.pagination: Optional[PaginationInfo] = None
        self.table: Optional["DraftTable"] = None

    @property
    def fingerprint(self) -> Tuple[str, ...]:
        return tuple(sorted(self.kinds))

    def field_values(self, key: str) -> List[Any]:
        return [obs.obj.get(key) for obs in self.observations]


@dataclass
class DraftColumn:
    name: str
    key: str
    role: str = DATA
    tracker: TypeTracker = field(default_factory=TypeTracker)
    references: Optional[str] = None
    is_new: bool = True

    @property
    def column_type(self) -> ColumnType:
        if self.role != DATA:
            return ColumnType.INTEGER
        return self.tracker.resolved_type


@dataclass
class ExistingTable:
    """A table already materialized in the session store."""
    name: str
    kind: str
    fingerprint: Tuple[str, ...]
    columns: Dict[str, Dict[str, Any]]
    parent_table: Optional[str] = None
    child_table: Optional[str] = None


class DraftTable:
    """A table to create or extend, with the rows to load into it."""

    def __init__(
        self,
        name: str,
        path: Optional[str] = None,
        fingerprint: Tuple[str, ...] = (),
        kind: str = ENTITY,
        exists: bool = False,
    ):
        self.name = name
        self.path = path
        self.fingerprint = fingerprint
        self.kind = kind
        self.exists = exists
        self.columns: "OrderedDict[str, DraftColumn]" = OrderedDict()
        self.rows: List[Dict[str, Any]] = []
        self.groups: List[ShapeGroup] = []
        self.pagination: Optional[PaginationInfo] = None
        self.parent_table: Optional[str] = None
        self.child_table: Optional[str] = None
        self._by_role_key: Dict[Tuple[str, str], str] = {}
        self._seen_content: Dict[str, int] = {}
        self._pairs: Set[Tuple[int, int]] = set()

    @classmethod
    def from_existing(cls, existing: ExistingTable) -> "DraftTable":
        table = cls(existing.name, fingerprint=existing.fingerprint,
                    kind=existing.kind, exists=True)
        table.parent_table = existing.parent_table
        table.child_table = existing.child_table
        for col_name, info in existing.columns.items():
            column = DraftColumn(
                name=col_name,
                key=info.get("key", col_name),
                role=info.get("role", DATA),
                references=info.get("references"),
                is_new=False,
            )
            table.columns[col_name] = column
            table._by_role_key[(column.role, column.key)] = col_name
        return table

    def absorb_fingerprint(self, fingerprint: Tuple[str, ...]) -> None:
        if not self.fingerprint:
            self.fingerprint = fingerprint

    def column(self, role: str, key: str, references: Optional[str] = None) -> DraftColumn:
        """Get or declare the column fed by a JSON key (or a relationship)."""
        col_name = self._by_role_key.get((role, key))
        if col_name is not None:
            return self.columns[col_name]

        if role == DATA:
            base = sanitize_column_name(key)
        elif role == JUNCTION_KEY:
            base = key
        else:
            base = foreign_key_column_for(key)
        col_name = unique_name(base, list(self.columns) + [PRIMARY_KEY])
        column = DraftColumn(name=col_name, key=key, role=role, references=references)
        self.columns[col_name] = column
        self._by_role_key[(role, key)] = col_name
        return column

    def column_name(self, role: str, key: str) -> str:
        return self._by_role_key[(role, key)]

    def add_row(self, values: Dict[str, Any]) -> int:
        """Append a row and return its local synthetic id (1-based)."""
        self.rows.append(values)
        return len(self.rows)

    def find_row(self, content: str) -> Optional[int]:
        return self._seen_content.get(content)

    def remember_row(self, content: str, row_id: int) -> None:
        self._seen_content[content] = row_id

    def add_pair(self, parent_id: int, child_id: int) -> None:
        if (parent_id, child_id) in self._pairs:
            return
        self._pairs.add((parent_id, child_id))
        self.rows.append({JUNCTION_PARENT_COLUMN: parent_id, JUNCTION_CHILD_COLUMN: child_id})

    @property
    def new_columns(self) -> List[DraftColumn]:
        return [column for column in self.columns.values() if column.is_new]


@dataclass
class DraftRelationship:
    source_table: str
    field_name: str
    target_table: str
    decision: RelationshipDecision
    foreign_key_table: Optional[str] = None
    foreign_key_column: Optional[str] = None
    junction_table: Optional[str] = None


@dataclass
class DraftSchema:
    tables: "OrderedDict[str, DraftTable]"
    relationships: List[DraftRelationship]
    pagination: Optional[PaginationInfo] = None
    pagination_table: Optional[str] = None
    upstream_errors: Optional[Any] = None

    @property
    def row_count(self) -> int:
        return sum(len(table.rows) for table in self.tables.values())


class JsonSchemaAnalyzer:
    """
    Analyzer for one staged JSON document.

    Builds shape groups depth-first, maps them onto tables (reusing tables
    already present in the session when the shape matches), asks the
    relationship detector how nested fields link up, then lays out
    columns and rows.
    """

    def __init__(
        self,
        root_table_name: Optional[str] = None,
        max_depth: Optional[int] = None,
        max_staged_rows: Optional[int] = None,
        existing_tables: Optional[Dict[str, ExistingTable]] = None,
        detector: Optional[RelationshipDetector] = None,
    ):
        settings = get_settings()

        self.root_table_name = root_table_name or settings.root_table_name
        self.max_depth = max_depth or settings.max_depth
        self.max_staged_rows = max_staged_rows or settings.max_staged_rows
        self.detector = detector or RelationshipDetector()
        self.existing_tables = {
            name.lower(): table for name, table in (existing_tables or {}).items()
        }

        self.groups: List[ShapeGroup] = []
        self.tables: "OrderedDict[str, DraftTable]" = OrderedDict()
        self.junctions: Dict[Tuple[str, str, str], DraftTable] = {}
        self.observation_count = 0

    # ---------- walk ----------

    def analyze(self, document: Any) -> DraftSchema:
        """
        Analyze a JSON document into a draft schema.

        Args:
            document: Parsed JSON (object or array) or its text, optionally
                wrapped in a GraphQL `{"data": ...}` envelope

        Returns:
            DraftSchema
        """
        root, upstream_errors = unwrap_envelope(document)

        if isinstance(root, list):
            self._build_group(
                path=self.root_table_name,
                field_name=self.root_table_name,
                name=self.root_table_name,
                parent=None,
                items=[(element, None) for element in nested_elements(root)],
                depth=0,
            )
        elif isinstance(root, dict):
            if not root:
                raise SchemaInferenceError("Nothing to stage: the document is an empty object")
            self._collect_object_root(root, path="", field_name=None, depth=0)
        else:
            raise SchemaInferenceError(
                f"Cannot stage a bare {type(root).__name__} value; expected an object or array")

        self._assign_tables()
        detection = self._detect_relationships()
        relationships = self._declare_columns(detection)
        self._build_rows(detection)

        pagination_group = min(
            (group for group in self.groups if group.pagination is not None),
            key=lambda group: group.depth,
            default=None,
        )
        return DraftSchema(
            tables=self.tables,
            relationships=relationships,
            pagination=pagination_group.pagination if pagination_group else None,
            pagination_table=pagination_group.table.name if pagination_group else None,
            upstream_errors=upstream_errors,
        )

    def _collect_object_root(
        self,
        obj: Dict[str, Any],
        path: str,
        field_name: Optional[str],
        depth: int,
    ) -> None:
        """Stage a top-level object, descending through pure containers."""
        if depth > self.max_depth:
            raise SchemaInferenceError(
                f"JSON nesting exceeds {self.max_depth} levels at '{path}'")

        if is_connection(obj):
            name = self._root_name(field_name)
            group = self._build_group(
                path=path or name,
                field_name=field_name or name,
                name=name,
                parent=None,
                items=[(element, None) for element in nested_elements(connection_elements(obj))],
                depth=depth,
            )
            group.pagination = extract_pagination(obj)
            return

        if has_scalar_fields(obj):
            name = self._root_name(field_name)
            self._build_group(
                path=path or name,
                field_name=field_name or name,
                name=name,
                parent=None,
                items=[(obj, None)],
                depth=depth,
            )
            return

        for key, value in obj.items():
            child_path = f"{path}.{key}" if path else key
            if isinstance(value, dict) and value and not is_connection(value):
                self._collect_object_root(value, child_path, key, depth + 1)
                continue
            group = self._build_group(
                path=child_path,
                field_name=key,
                name=table_name_for(key),
                parent=None,
                items=[(element, None) for element in nested_elements(value)],
                depth=depth + 1,
            )
            if is_connection(value):
                group.pagination = extract_pagination(value)

    def _root_name(self, field_name: Optional[str]) -> str:
        return table_name_for(field_name) if field_name else self.root_table_name

    def _build_group(
        self,
        path: str,
        field_name: str,
        name: str,
        parent: Optional[ShapeGroup],
        items: List[Tuple[Dict[str, Any], Optional[int]]],
        depth: int,
    ) -> ShapeGroup:
        if depth > self.max_depth:
            raise SchemaInferenceError(
                f"JSON nesting exceeds {self.max_depth} levels at '{path}'")

        self.observation_count += len(items)
        if self.observation_count > self.max_staged_rows:
            raise SchemaInferenceError(
                f"Staging would produce more than {self.max_staged_rows} rows "
                f"(limit reached at '{path}')")

        group = ShapeGroup(path, field_name, name, parent, depth)
        self.groups.append(group)

        for obj, parent_index in items:
            group.observations.append(Observation(obj, parent_index))
            for key in obj:
                group.kinds.setdefault(key, FieldKind.SCALAR)

        for key in list(group.kinds):
            values = group.field_values(key)
            kind = classify_field(values)
            group.kinds[key] = kind

            if kind in (FieldKind.SCALAR, FieldKind.JSON):
                tracker = TypeTracker()
                for value in values:
                    if kind == FieldKind.JSON:
                        tracker.add_json_value(value)
                    else:
                        tracker.add_value(value)
                group.trackers[key] = tracker

            elif kind == FieldKind.OBJECT:
                group.children[key] = self._build_group(
                    path=f"{path}.{key}",
                    field_name=key,
                    name=table_name_for(key),
                    parent=group,
                    items=[(value, index) for index, value in enumerate(values)
                           if isinstance(value, dict)],
                    depth=depth + 1,
                )

            else:
                child = self._build_group(
                    path=f"{path}.{key}",
                    field_name=key,
                    name=table_name_for(key),
                    parent=group,
                    items=[(element, index) for index, value in enumerate(values)
                           for element in nested_elements(value)],
                    depth=depth + 1,
                )
                child.pagination = merge_pagination(
                    [extract_pagination(value) for value in values if is_connection(value)])
                group.children[key] = child

        return group

    # ---------- tables ----------

    def _taken_names(self) -> List[str]:
        names = [table.name for table in self.tables.values()]
        names.extend(table.name for table in self.existing_tables.values())
        return names

    def _register(self, table: DraftTable) -> DraftTable:
        self.tables[table.name] = table
        return table

    def _find_draft(self, name: str) -> Optional[DraftTable]:
        for table in self.tables.values():
            if table.name.lower() == name.lower():
                return table
        return None

    def _resolve_table(self, group: ShapeGroup) -> DraftTable:
        fingerprint = group.fingerprint
        candidates = [group.name]
        if group.parent is not None or group.path != group.name:
            candidates.append(table_name_for_path(group.path))

        for candidate in candidates:
            table = self._find_draft(candidate)
            if table is not None:
                if table.kind == ENTITY and compatible(table.fingerprint, fingerprint):
                    table.absorb_fingerprint(fingerprint)
                    return table
                continue

            existing = self.existing_tables.get(candidate.lower())
            if existing is not None:
                if existing.kind == ENTITY and compatible(existing.fingerprint, fingerprint):
                    table = DraftTable.from_existing(existing)
                    table.path = group.path
                    table.absorb_fingerprint(fingerprint)
                    return self._register(table)
                continue

            return self._register(DraftTable(candidate, group.path, fingerprint))

        name = unique_name(table_name_for_path(group.path), self._taken_names())
        return self._register(DraftTable(name, group.path, fingerprint))

    def _assign_tables(self) -> None:
        for group in self.groups:
            table = self._resolve_table(group)
            table.groups.append(group)
            group.table = table
            if group.pagination is not None:
                table.pagination = merge_pagination(
                    [page for page in (table.pagination, group.pagination) if page is not None])

    def _junction_for(self, parent_table: str, field_name: str, child_table: str) -> DraftTable:
        key = (parent_table, field_name, child_table)
        if key in self.junctions:
            return self.junctions[key]

        base = f"{parent_table}_{child_table}"
        existing = self.existing_tables.get(base.lower())
        if (existing is not None and existing.kind == JUNCTION
                and existing.parent_table == parent_table
                and existing.child_table == child_table
                and self._find_draft(base) is None):
            table = DraftTable.from_existing(existing)
        else:
            table = DraftTable(unique_name(base, self._taken_names()), kind=JUNCTION)
            table.parent_table = parent_table
            table.child_table = child_table
            table.column(JUNCTION_KEY, JUNCTION_PARENT_COLUMN, references=parent_table)
            table.column(JUNCTION_KEY, JUNCTION_CHILD_COLUMN, references=child_table)

        self.junctions[key] = self._register(table)
        return table

    # ---------- relationships ----------

    def _detect_relationships(self) -> DetectionResult:
        links = []
        for group in self.groups:
            for key, child in group.children.items():
                if group.kinds[key] == FieldKind.EMPTY_ARRAY:
                    continue
                links.append(FieldLink(
                    parent_table=group.table.name,
                    field_name=key,
                    child_table=child.table.name,
                    child_values=group.field_values(key),
                ))
        return self.detector.detect(links)

    def _declare_columns(self, detection: DetectionResult) -> List[DraftRelationship]:
        relationships: "OrderedDict[Tuple[str, str, str], DraftRelationship]" = OrderedDict()

        for group in self.groups:
            table = group.table
            for key, kind in group.kinds.items():
                if kind in (FieldKind.SCALAR, FieldKind.JSON):
                    table.column(DATA, key).tracker.merge(group.trackers[key])
                elif kind == FieldKind.OBJECT:
                    child_table = group.children[key].table.name
                    column = table.column(FOREIGN_KEY, key, references=child_table)
                    rel_key = (table.name, key, child_table)
                    relationships.setdefault(rel_key, DraftRelationship(
                        source_table=table.name,
                        field_name=key,
                        target_table=child_table,
                        decision=detection.decisions[rel_key],
                        foreign_key_table=table.name,
                        foreign_key_column=column.name,
                    ))

            parent = group.parent
            if parent is None or parent.kinds[group.field_name] != FieldKind.ARRAY:
                continue

            rel_key = (parent.table.name, group.field_name, table.name)
            decision = detection.decisions[rel_key]
            if decision.is_junction:
                junction = self._junction_for(*rel_key)
                relationships.setdefault(rel_key, DraftRelationship(
                    source_table=parent.table.name,
                    field_name=group.field_name,
                    target_table=table.name,
                    decision=decision,
                    junction_table=junction.name,
                ))
            else:
                column = table.column(PARENT_KEY, parent.table.name, references=parent.table.name)
                relationships.setdefault(rel_key, DraftRelationship(
                    source_table=parent.table.name,
                    field_name=group.field_name,
                    target_table=table.name,
                    decision=decision,
                    foreign_key_table=table.name,
                    foreign_key_column=column.name,
                ))

        return list(relationships.values())

    # ---------- rows ----------

    def _build_rows(self, detection: DetectionResult) -> None:
        # Groups are listed parents-first, so parent rows exist before children
        for group in self.groups:
            table = group.table
            fold_duplicates = table.name in detection.junction_children
            data_keys = [key for key, kind in group.kinds.items()
                         if kind in (FieldKind.SCALAR, FieldKind.JSON)]

            for obs in group.observations:
                if group.parent is not None:
                    parent_obs = group.parent.observations[obs.parent_index]
                    if parent_obs.reused or parent_obs.skipped:
                        obs.skipped = True
                        continue

                values = {
                    table.column_name(DATA, key): obs.obj[key]
                    for key in data_keys if key in obs.obj
                }
                if fold_duplicates:
                    content = content_fingerprint(obs.obj)
                    row_id = table.find_row(content)
                    if row_id is not None:
                        obs.row_id = row_id
                        obs.reused = True
                        continue
                    obs.row_id = table.add_row(values)
                    table.remember_row(content, obs.row_id)
                else:
                    obs.row_id = table.add_row(values)

        for group in self.groups:
            parent = group.parent
            if parent is None:
                continue
            table = group.table
            parent_table = parent.table
            kind = parent.kinds[group.field_name]

            if kind == FieldKind.OBJECT:
                col_name = parent_table.column_name(FOREIGN_KEY, group.field_name)
                for obs in group.observations:
                    if obs.skipped:
                        continue
                    parent_obs = parent.observations[obs.parent_index]
                    parent_table.rows[parent_obs.row_id - 1][col_name] = obs.row_id
                continue
            if kind == FieldKind.EMPTY_ARRAY:
                continue

            decision = detection.decision_for(parent_table.name, group.field_name, table.name)
            if decision.is_junction:
                junction = self._junction_for(parent_table.name, group.field_name, table.name)
                for obs in group.observations:
                    if obs.skipped:
                        continue
                    parent_obs = parent.observations[obs.parent_index]
                    junction.add_pair(parent_obs.row_id, obs.row_id)
            else:
                col_name = table.column_name(PARENT_KEY, parent_table.name)
                for obs in group.observations:
                    if obs.skipped:
                        continue
                    parent_obs = parent.observations[obs.parent_index]
                    table.rows[obs.row_id - 1][col_name] = parent_obs.row_id


def infer_schema(
    document: Any,
    existing_tables: Optional[Dict[str, ExistingTable]] = None,
    **options: Any,
) -> DraftSchema:
    """Infer a draft schema for a JSON document with a fresh analyzer."""
    analyzer = JsonSchemaAnalyzer(existing_tables=existing_tables, **options)
    return analyzer.analyze(document)

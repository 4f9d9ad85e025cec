"""
Type unification for JSON scalars.

Classifies a JSON value into one of five storage types and merges repeated
observations of a field along a widening lattice:

    integer -> real -> text -> json
    boolean ---------> text -> json
"""

import json
from collections import defaultdict
from enum import Enum
from typing import Any, Dict, Optional


class ColumnType(str, Enum):
    """Storage types a staged column can take."""
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    TEXT = "text"
    JSON = "json"


NUMERIC_TYPES = {ColumnType.INTEGER, ColumnType.REAL}

# SQLite INTEGER is a signed 64-bit value
INTEGER_MIN = -(2 ** 63)
INTEGER_MAX = 2 ** 63 - 1


def detect_column_type(value: Any) -> Optional[ColumnType]:
    """
    Detect the storage type of a single JSON value.

    Args:
        value: The value to classify

    Returns:
        ColumnType, or None for JSON null (which carries no information)
    """
    if value is None:
        return None
    elif isinstance(value, bool):
        return ColumnType.BOOLEAN
    elif isinstance(value, int):
        # Wider integers keep their digits as text
        return ColumnType.INTEGER if INTEGER_MIN <= value <= INTEGER_MAX else ColumnType.TEXT
    elif isinstance(value, float):
        if value.is_integer() and INTEGER_MIN <= value <= INTEGER_MAX:
            return ColumnType.INTEGER
        return ColumnType.REAL
    elif isinstance(value, str):
        return ColumnType.TEXT
    else:
        return ColumnType.JSON


def widen(current: Optional[ColumnType], observed: Optional[ColumnType]) -> Optional[ColumnType]:
    """
    Merge two type observations into the narrowest type holding both.

    The merge is total: every pair of types has a result.
    """
    if current is None:
        return observed
    if observed is None or observed == current:
        return current
    if ColumnType.JSON in (current, observed):
        return ColumnType.JSON
    if {current, observed} <= NUMERIC_TYPES:
        return ColumnType.REAL
    return ColumnType.TEXT


def observe(current: Optional[ColumnType], value: Any) -> Optional[ColumnType]:
    """Fold one more value into a running type."""
    return widen(current, detect_column_type(value))


def coerce_value(value: Any, column_type: ColumnType) -> Any:
    """
    Convert a raw JSON value to the representation stored for a column type.

    Args:
        value: Raw JSON value
        column_type: Final type of the column

    Returns:
        Value ready for insertion (None stays None)
    """
    if value is None:
        return None

    if column_type == ColumnType.JSON:
        return json.dumps(value, sort_keys=True)
    if column_type == ColumnType.TEXT:
        if isinstance(value, str):
            return value
        # Keep JSON spelling for booleans and numbers
        return json.dumps(value)
    if column_type == ColumnType.REAL:
        return float(value)
    if column_type == ColumnType.INTEGER:
        return int(value)
    if column_type == ColumnType.BOOLEAN:
        return bool(value)
    raise ValueError(f"Unsupported column type: {column_type}")


class TypeTracker:
    """Running type observations for a single column."""

    def __init__(self):
        self.type_counts: Dict[ColumnType, int] = defaultdict(int)
        self.null_count = 0
        self.column_type: Optional[ColumnType] = None

    @classmethod
    def from_counts(cls, type_counts: Dict[str, int], null_count: int = 0) -> "TypeTracker":
        """Rebuild a tracker from persisted counts."""
        tracker = cls()
        for type_name, count in type_counts.items():
            column_type = ColumnType(type_name)
            tracker.type_counts[column_type] += count
            tracker.column_type = widen(tracker.column_type, column_type)
        tracker.null_count = null_count
        return tracker

    def add_value(self, value: Any) -> None:
        """Record a value observation for this column."""
        observed = detect_column_type(value)
        if observed is None:
            self.null_count += 1
            return
        self.type_counts[observed] += 1
        self.column_type = widen(self.column_type, observed)

    def add_json_value(self, value: Any) -> None:
        """Record a value that is stored as JSON regardless of its scalar type."""
        if value is None:
            self.null_count += 1
            return
        self.type_counts[ColumnType.JSON] += 1
        self.column_type = ColumnType.JSON

    def merge(self, other: "TypeTracker") -> None:
        for column_type, count in other.type_counts.items():
            self.type_counts[column_type] += count
        self.null_count += other.null_count
        self.column_type = widen(self.column_type, other.column_type)

    @property
    def resolved_type(self) -> ColumnType:
        """Final column type; all-null columns are stored as text."""
        return self.column_type or ColumnType.TEXT

    @property
    def observations(self) -> int:
        return sum(self.type_counts.values())

    @property
    def nullable(self) -> bool:
        return self.null_count > 0

    @property
    def confidence(self) -> float:
        """
        Fraction of non-null observations already matching the final type.

        1.0 for a column seen with one type throughout (or never seen with a
        value at all), 0.0 when every observation needed widening.
        """
        total = self.observations
        if total == 0:
            return 1.0
        return self.type_counts.get(self.resolved_type, 0) / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.resolved_type.value,
            "confidence": round(self.confidence, 4),
            "type_counts": {t.value: c for t, c in self.type_counts.items()},
            "null_count": self.null_count,
        }

"""
Unit tests for type detection, widening and coercion.
"""

import json

import pytest

from graphstage.ingest.type_unifier import (
    ColumnType,
    TypeTracker,
    coerce_value,
    detect_column_type,
    observe,
    widen,
)


class TestDetectColumnType:
    """Tests for single-value classification."""

    def test_null_carries_no_type(self):
        assert detect_column_type(None) is None

    def test_boolean_before_integer(self):
        assert detect_column_type(True) == ColumnType.BOOLEAN
        assert detect_column_type(False) == ColumnType.BOOLEAN

    def test_numbers(self):
        assert detect_column_type(42) == ColumnType.INTEGER
        assert detect_column_type(-1) == ColumnType.INTEGER
        assert detect_column_type(5.2) == ColumnType.REAL

    def test_integral_float_is_integer(self):
        assert detect_column_type(5.0) == ColumnType.INTEGER

    def test_integer_range_limits(self):
        assert detect_column_type(2 ** 63 - 1) == ColumnType.INTEGER
        assert detect_column_type(-(2 ** 63)) == ColumnType.INTEGER

    def test_integers_beyond_64_bits_are_text(self):
        assert detect_column_type(12345678901234567890) == ColumnType.TEXT
        assert detect_column_type(-(2 ** 63) - 1) == ColumnType.TEXT
        assert coerce_value(12345678901234567890, ColumnType.TEXT) == "12345678901234567890"

    def test_large_integral_float_stays_real(self):
        assert detect_column_type(1e20) == ColumnType.REAL

    def test_string(self):
        assert detect_column_type("") == ColumnType.TEXT
        assert detect_column_type("ABL1") == ColumnType.TEXT

    def test_leaf_containers_are_json(self):
        assert detect_column_type([]) == ColumnType.JSON
        assert detect_column_type({}) == ColumnType.JSON


class TestWidening:
    """Tests for the widening lattice."""

    @pytest.mark.parametrize("left,right,expected", [
        (ColumnType.INTEGER, ColumnType.INTEGER, ColumnType.INTEGER),
        (ColumnType.INTEGER, ColumnType.REAL, ColumnType.REAL),
        (ColumnType.REAL, ColumnType.INTEGER, ColumnType.REAL),
        (ColumnType.INTEGER, ColumnType.TEXT, ColumnType.TEXT),
        (ColumnType.BOOLEAN, ColumnType.INTEGER, ColumnType.TEXT),
        (ColumnType.BOOLEAN, ColumnType.TEXT, ColumnType.TEXT),
        (ColumnType.TEXT, ColumnType.JSON, ColumnType.JSON),
        (ColumnType.REAL, ColumnType.JSON, ColumnType.JSON),
    ])
    def test_widen_pairs(self, left, right, expected):
        assert widen(left, right) == expected
        assert widen(right, left) == expected

    def test_null_observations_keep_type(self):
        assert widen(None, ColumnType.REAL) == ColumnType.REAL
        assert widen(ColumnType.REAL, None) == ColumnType.REAL
        assert widen(None, None) is None

    def test_observe_folds_values(self):
        current = None
        for value in [1, None, 2, 3.5]:
            current = observe(current, value)
        assert current == ColumnType.REAL


class TestTypeTracker:
    """Tests for running per-column observations."""

    def test_uniform_column_has_full_confidence(self):
        tracker = TypeTracker()
        for value in ["a", "b", None]:
            tracker.add_value(value)

        assert tracker.resolved_type == ColumnType.TEXT
        assert tracker.confidence == 1.0
        assert tracker.null_count == 1
        assert tracker.nullable

    def test_confidence_is_fraction_matching_final_type(self):
        tracker = TypeTracker()
        for value in [1, 2, 2.5]:
            tracker.add_value(value)

        assert tracker.resolved_type == ColumnType.REAL
        assert tracker.confidence == pytest.approx(1 / 3)

    def test_every_observation_widened_gives_zero(self):
        tracker = TypeTracker()
        tracker.add_value(True)
        tracker.add_value(1)

        assert tracker.resolved_type == ColumnType.TEXT
        assert tracker.confidence == 0.0

    def test_all_null_column_is_text(self):
        tracker = TypeTracker()
        tracker.add_value(None)
        tracker.add_value(None)

        assert tracker.resolved_type == ColumnType.TEXT
        assert tracker.confidence == 1.0
        assert tracker.observations == 0

    def test_json_values(self):
        tracker = TypeTracker()
        tracker.add_json_value(["a"])
        tracker.add_json_value("plain")
        tracker.add_json_value(None)

        assert tracker.resolved_type == ColumnType.JSON
        assert tracker.type_counts[ColumnType.JSON] == 2
        assert tracker.null_count == 1

    def test_merge_and_rebuild_from_counts(self):
        first = TypeTracker()
        first.add_value(1)
        second = TypeTracker()
        second.add_value(1.5)
        first.merge(second)

        rebuilt = TypeTracker.from_counts(first.to_dict()["type_counts"], first.null_count)

        assert first.resolved_type == ColumnType.REAL
        assert rebuilt.resolved_type == ColumnType.REAL
        assert rebuilt.confidence == first.confidence

    def test_to_dict(self):
        tracker = TypeTracker()
        tracker.add_value(3)
        result = tracker.to_dict()

        assert result["type"] == "integer"
        assert result["type_counts"] == {"integer": 1}
        assert result["null_count"] == 0


class TestCoercion:
    """Tests for converting raw values to stored values."""

    def test_none_stays_none(self):
        for column_type in ColumnType:
            assert coerce_value(None, column_type) is None

    def test_json_is_serialized(self):
        stored = coerce_value({"b": 1, "a": [1, 2]}, ColumnType.JSON)
        assert json.loads(stored) == {"a": [1, 2], "b": 1}

    def test_text_keeps_json_spelling(self):
        assert coerce_value("x", ColumnType.TEXT) == "x"
        assert coerce_value(True, ColumnType.TEXT) == "true"
        assert coerce_value(5, ColumnType.TEXT) == "5"

    def test_numbers(self):
        assert coerce_value(5, ColumnType.REAL) == 5.0
        assert isinstance(coerce_value(5, ColumnType.REAL), float)
        assert coerce_value(5.0, ColumnType.INTEGER) == 5
        assert isinstance(coerce_value(5.0, ColumnType.INTEGER), int)

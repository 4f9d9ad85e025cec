"""
Unit tests for JSON schema analysis.
"""

import copy
import json

import pytest

from graphstage.common.errors import SchemaInferenceError
from graphstage.ingest.relationship_detector import Cardinality, RelationshipKind
from graphstage.ingest.schema_analyzer import (
    FieldKind,
    JsonSchemaAnalyzer,
    classify_field,
    infer_schema,
    unwrap_envelope,
)
from graphstage.ingest.type_unifier import ColumnType


def data_columns(table):
    return [name for name, column in table.columns.items() if column.role == "data"]


class TestClassifyField:
    """Tests for per-field representation decisions."""

    def test_scalars_and_nulls(self):
        assert classify_field([1, None, "x"]) == FieldKind.SCALAR
        assert classify_field([None, None]) == FieldKind.SCALAR

    def test_nested_object(self):
        assert classify_field([{"a": 1}, None, {}]) == FieldKind.OBJECT

    def test_only_empty_objects_are_json(self):
        assert classify_field([{}, {}]) == FieldKind.JSON

    def test_array_of_objects(self):
        assert classify_field([[{"a": 1}], [], None]) == FieldKind.ARRAY

    def test_connection_is_array(self):
        assert classify_field([{"nodes": [{"a": 1}], "pageInfo": {}}]) == FieldKind.ARRAY

    def test_scalar_array_is_json(self):
        assert classify_field([["a", "b"], ["c"]]) == FieldKind.JSON

    def test_empty_arrays(self):
        assert classify_field([[], None, []]) == FieldKind.EMPTY_ARRAY

    def test_mixed_families_are_json(self):
        assert classify_field([1, {"a": 1}]) == FieldKind.JSON
        assert classify_field([[{"a": 1}], {"a": 1}]) == FieldKind.JSON


class TestEnvelope:
    """Tests for GraphQL response unwrapping."""

    def test_data_envelope(self):
        payload, errors = unwrap_envelope({"data": {"x": 1}})
        assert payload == {"x": 1}
        assert errors is None

    def test_errors_are_returned(self):
        payload, errors = unwrap_envelope({"data": {"x": 1}, "errors": [{"message": "partial"}]})
        assert payload == {"x": 1}
        assert errors == [{"message": "partial"}]

    def test_missing_data_fails(self):
        with pytest.raises(SchemaInferenceError):
            unwrap_envelope({"data": None, "errors": [{"message": "boom"}]})

    def test_json_text(self):
        payload, _ = unwrap_envelope(json.dumps({"data": {"x": [1]}}))
        assert payload == {"x": [1]}

    def test_invalid_json_text(self):
        with pytest.raises(SchemaInferenceError):
            unwrap_envelope("{not json")

    def test_object_with_data_field_is_not_an_envelope(self):
        document = {"data": {"x": 1}, "name": "y"}
        payload, _ = unwrap_envelope(document)
        assert payload is document


class TestScalarDocuments:
    """Tests for documents without nesting."""

    def test_array_of_objects(self):
        draft = infer_schema([{"a": 1, "b": "x"}, {"a": 2, "b": "y"}])

        assert list(draft.tables) == ["root"]
        assert len(draft.tables["root"].rows) == 2
        assert draft.relationships == []

    def test_single_object(self):
        draft = infer_schema({"a": 1, "b": "x"})

        assert list(draft.tables) == ["root"]
        assert draft.tables["root"].rows == [{"a": 1, "b": "x"}]

    def test_new_key_adds_column(self):
        draft = infer_schema([{"a": 1}, {"a": 2, "b": "x"}])
        table = draft.tables["root"]

        assert data_columns(table) == ["a", "b"]
        assert "b" not in table.rows[0]
        assert table.rows[1]["b"] == "x"

    def test_types_widen(self):
        draft = infer_schema([{"score": 1}, {"score": 2.5}, {"score": None}])
        column = draft.tables["root"].columns["score"]

        assert column.column_type == ColumnType.REAL
        assert column.tracker.null_count == 1

    def test_scalar_elements_are_wrapped(self):
        draft = infer_schema([1, 2, 3])
        table = draft.tables["root"]

        assert data_columns(table) == ["value_col"]
        assert [row["value_col"] for row in table.rows] == [1, 2, 3]

    def test_reserved_keys_are_renamed(self):
        draft = infer_schema([{"id": "abc", "name": "x"}])

        assert data_columns(draft.tables["root"]) == ["id_col", "name"]

    def test_scalar_array_becomes_json_column(self):
        draft = infer_schema({"name": "x", "tags": ["a", "b"]})
        table = draft.tables["root"]

        assert list(draft.tables) == ["root"]
        assert table.columns["tags"].column_type == ColumnType.JSON

    def test_custom_root_table_name(self):
        analyzer = JsonSchemaAnalyzer(root_table_name="results")
        draft = analyzer.analyze([{"a": 1}])
        assert list(draft.tables) == ["results"]


class TestNestedDocuments:
    """Tests for relationships discovered while walking nested JSON."""

    def test_drug_interactions(self, drugs_response):
        draft = infer_schema(drugs_response)

        assert list(draft.tables) == ["drugs", "interactions", "genes"]
        assert list(draft.tables["interactions"].columns) == [
            "gene_id", "interactionScore", "drugs_id"]
        assert draft.tables["drugs"].rows == [{"name": "Imatinib"}]
        assert draft.tables["interactions"].rows == [
            {"gene_id": 1, "interactionScore": 5.2, "drugs_id": 1}]
        assert draft.tables["genes"].rows == [{"name": "ABL1"}]

        relationships = {(r.source_table, r.target_table): r for r in draft.relationships}
        to_interactions = relationships[("drugs", "interactions")]
        to_genes = relationships[("interactions", "genes")]

        assert to_interactions.decision.kind == RelationshipKind.FOREIGN_KEY
        assert to_interactions.decision.cardinality == Cardinality.ONE_TO_MANY
        assert to_interactions.decision.confidence == 1.0
        assert to_interactions.foreign_key_table == "interactions"
        assert to_interactions.foreign_key_column == "drugs_id"
        assert to_genes.decision.cardinality == Cardinality.ONE_TO_ONE
        assert to_genes.foreign_key_table == "interactions"
        assert to_genes.foreign_key_column == "gene_id"

    def test_identical_shapes_merge(self):
        document = [
            {"name": "a", "owner": {"login": "x"}},
            {"name": "b", "owner": {"login": "y"}},
        ]
        draft = infer_schema(document)

        assert len(draft.tables["owners"].rows) == 2
        assert [row["owner_id"] for row in draft.tables["root"].rows] == [1, 2]

    def test_missing_nested_object_leaves_null_key(self):
        draft = infer_schema([{"name": "a", "owner": {"login": "x"}}, {"name": "b"}])

        assert draft.tables["root"].rows[0]["owner_id"] == 1
        assert "owner_id" not in draft.tables["root"].rows[1]

    def test_empty_array_gives_empty_table(self):
        draft = infer_schema({"name": "x", "items": []})

        assert draft.tables["items"].rows == []
        assert list(draft.tables["items"].columns) == []
        assert draft.relationships == []

    def test_container_with_null_value(self):
        draft = infer_schema({"drugs": None, "genes": [{"name": "ABL1"}]})

        assert draft.tables["drugs"].rows == []
        assert len(draft.tables["genes"].rows) == 1

    def test_recurring_children_use_junction(self):
        document = [
            {"name": "A", "tags": [{"label": "x"}]},
            {"name": "B", "tags": [{"label": "x"}, {"label": "y"}]},
        ]
        draft = infer_schema(document)

        assert draft.tables["tags"].rows == [{"label": "x"}, {"label": "y"}]
        junction = draft.tables["root_tags"]
        assert junction.kind == "junction"
        assert junction.rows == [
            {"parent_id": 1, "child_id": 1},
            {"parent_id": 2, "child_id": 1},
            {"parent_id": 2, "child_id": 2},
        ]

        relationship = draft.relationships[0]
        assert relationship.decision.kind == RelationshipKind.JUNCTION_TABLE
        assert relationship.junction_table == "root_tags"
        # three elements, one duplicate
        assert relationship.decision.confidence == pytest.approx(1 - (1 / 3) / 2, abs=1e-3)

    def test_shared_child_shape_uses_junction(self):
        document = {
            "drugs": [{"name": "d1", "genes": [{"symbol": "g1"}]}],
            "diseases": [{"title": "t1", "genes": [{"symbol": "g2"}]}],
        }
        draft = infer_schema(document)

        assert set(draft.tables) == {
            "drugs", "genes", "diseases", "drugs_genes", "diseases_genes"}
        assert len(draft.tables["genes"].rows) == 2
        for relationship in draft.relationships:
            assert relationship.decision.kind == RelationshipKind.JUNCTION_TABLE
            assert relationship.decision.confidence == pytest.approx(0.9)

    def test_colliding_names_use_path(self):
        document = {
            "orders": [{"number": 1, "items": [{"sku": "x"}]}],
            "invoices": [{"number": 2, "items": [{"amount": 3}]}],
        }
        draft = infer_schema(document)

        assert "items" in draft.tables
        assert "invoices_items" in draft.tables
        assert data_columns(draft.tables["invoices_items"]) == ["amount"]

    def test_connection_pagination(self):
        document = {
            "data": {
                "genes": {
                    "nodes": [{"name": "ABL1"}, {"name": "KIT"}],
                    "pageInfo": {"hasNextPage": True, "endCursor": "abc"},
                    "totalCount": 10,
                }
            }
        }
        draft = infer_schema(document)

        assert list(draft.tables) == ["genes"]
        assert draft.pagination_table == "genes"
        assert draft.pagination.has_next_page
        assert draft.pagination.end_cursor == "abc"
        assert draft.pagination.current_count == 2
        assert draft.pagination.total_count == 10

    def test_edges_are_unwrapped(self):
        document = {"genes": {"edges": [{"cursor": "c1", "node": {"name": "ABL1"}}]}}
        draft = infer_schema(document)

        assert draft.tables["genes"].rows == [{"name": "ABL1"}]
        assert draft.pagination.end_cursor == "c1"

    def test_input_is_not_mutated(self, drugs_response):
        before = copy.deepcopy(drugs_response)
        infer_schema(drugs_response)
        assert drugs_response == before


class TestRejectedDocuments:
    """Tests for documents that cannot be staged."""

    @pytest.mark.parametrize("document", [42, "\"text\"", None, True, {}])
    def test_unstageable_roots(self, document):
        with pytest.raises(SchemaInferenceError):
            infer_schema(document)

    def test_depth_limit(self):
        document = [{"x": 1, "a": {"y": 1, "b": {"z": 1, "c": {"w": 1}}}}]
        with pytest.raises(SchemaInferenceError, match="nesting"):
            JsonSchemaAnalyzer(max_depth=2).analyze(document)

    def test_row_limit(self):
        with pytest.raises(SchemaInferenceError, match="more than 3 rows"):
            JsonSchemaAnalyzer(max_staged_rows=3).analyze([{"a": i} for i in range(5)])

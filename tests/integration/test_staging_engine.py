"""
Integration tests for staging and querying through the engine.
"""

import copy
import json
import os
import threading

import pytest

from graphstage.common.errors import GraphStageError, SchemaInferenceError, UnknownSessionError
from graphstage.common.metrics import rejected_statements_total
from graphstage.engine import StagingEngine

DRUG_GENE_JOIN = (
    "SELECT d.name AS drug, g.name AS gene, i.interactionScore AS score "
    "FROM drugs d "
    "JOIN interactions i ON i.drugs_id = d.id "
    "JOIN genes g ON i.gene_id = g.id"
)

GENES_PAGE = {
    "data": {
        "genes": {
            "nodes": [
                {"name": "ABL1", "longName": "ABL proto-oncogene 1"},
                {"name": "BRAF", "longName": "B-Raf proto-oncogene"},
            ],
            "pageInfo": {"hasNextPage": True, "endCursor": "Mg"},
            "totalCount": 5,
        }
    }
}


class TestStageThenQuery:
    """Tests for the stage/query round trip."""

    def test_drug_gene_join(self, engine, drugs_response):
        staged = engine.stage(drugs_response)
        details = staged["processing_details"]

        assert staged["access_id"]
        assert details["success"] is True
        assert details["table_count"] == 3
        assert set(details["schemas"]) == {"drugs", "interactions", "genes"}

        result = engine.query(staged["access_id"], DRUG_GENE_JOIN)
        assert result["success"] is True
        assert result["columns"] == ["drug", "gene", "score"]
        assert result["rows"] == [["Imatinib", "ABL1", 5.2]]

    def test_result_is_json_serializable(self, engine, drugs_response):
        staged = engine.stage(drugs_response)
        json.dumps(staged)
        json.dumps(engine.query(staged["access_id"], "SELECT * FROM interactions"))

    def test_json_text_input(self, engine, drugs_response):
        staged = engine.stage(json.dumps(drugs_response))
        result = engine.query(staged["access_id"], "SELECT name FROM drugs")
        assert result["rows"] == [["Imatinib"]]

    def test_data_payload_without_envelope(self, engine, drugs_response):
        staged = engine.stage(drugs_response["data"])
        assert set(staged["processing_details"]["schemas"]) == {"drugs", "interactions", "genes"}

    def test_input_is_not_mutated(self, engine, drugs_response):
        before = copy.deepcopy(drugs_response)
        engine.stage(drugs_response)
        assert drugs_response == before

    def test_pagination_is_reported(self, engine):
        staged = engine.stage(GENES_PAGE)
        pagination = staged["processing_details"]["pagination"]

        assert pagination["hasNextPage"] is True
        assert pagination["endCursor"] == "Mg"
        assert pagination["currentCount"] == 2
        assert pagination["totalCount"] == 5

        result = engine.query(staged["access_id"], "SELECT name FROM genes ORDER BY name")
        assert result["rows"] == [["ABL1"], ["BRAF"]]
        assert result["pagination"]["endCursor"] == "Mg"

    def test_staging_is_deterministic(self, engine, drugs_response):
        first = engine.stage(drugs_response)
        second = engine.stage(copy.deepcopy(drugs_response))

        assert first["access_id"] != second["access_id"]
        for access_id in (first["access_id"], second["access_id"]):
            assert engine.query(access_id, DRUG_GENE_JOIN)["rows"] == [["Imatinib", "ABL1", 5.2]]

        first_schemas = first["processing_details"]["schemas"]
        second_schemas = second["processing_details"]["schemas"]
        for name in first_schemas:
            assert first_schemas[name]["columns"] == second_schemas[name]["columns"]
            assert first_schemas[name]["sample_data"] == second_schemas[name]["sample_data"]

    def test_truncated_results(self, registry, test_settings):
        settings = test_settings.model_copy(update={"query_max_rows": 2})
        engine = StagingEngine(registry=registry, settings=settings)
        staged = engine.stage([{"n": i} for i in range(4)])

        result = engine.query(staged["access_id"], "SELECT n FROM root ORDER BY n")
        assert result["rows"] == [[0], [1]]
        assert result["truncated"] is True

    def test_drug_without_interactions(self, engine):
        staged = engine.stage({"data": {"drugs": {"nodes": [{"name": "Imatinib", "interactions": []}]}}})
        schemas = staged["processing_details"]["schemas"]

        assert schemas["interactions"]["row_count"] == 0
        result = engine.query(staged["access_id"], "SELECT COUNT(*) FROM interactions")
        assert result["rows"] == [[0]]

    def test_oversized_integer(self, engine):
        staged = engine.stage({"n": 12345678901234567890}, access_id="big")

        assert staged["processing_details"]["schemas"]["root"]["columns"]["n"] == "text"
        assert engine.query("big", "SELECT n FROM root")["rows"] == [["12345678901234567890"]]

    def test_catalog_is_queryable(self, engine, drugs_response):
        staged = engine.stage(drugs_response)
        result = engine.query(
            staged["access_id"],
            "SELECT source_table, target_table FROM _graphstage_relationships "
            "ORDER BY source_table, target_table",
        )
        assert result["success"] is True
        assert ["drugs", "interactions"] in result["rows"]


class TestAppending:
    """Tests for staging more data into an existing session."""

    def test_second_page_appends(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]

        second = copy.deepcopy(drugs_response)
        second["data"]["drugs"]["nodes"][0]["name"] = "Dasatinib"
        second["data"]["drugs"]["nodes"][0]["interactions"][0]["gene"]["name"] = "SRC"
        staged = engine.stage(second, access_id=access_id)

        assert staged["access_id"] == access_id
        result = engine.query(access_id, DRUG_GENE_JOIN + " ORDER BY d.id")
        assert result["rows"] == [["Imatinib", "ABL1", 5.2], ["Dasatinib", "SRC", 5.2]]

    def test_unrelated_document_gets_its_own_tables(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        engine.stage(GENES_PAGE, access_id=access_id)

        tables = engine.describe(access_id)
        assert "genes" in tables
        assert "genes_2" in tables
        assert engine.query(access_id, "SELECT COUNT(*) FROM genes_2")["rows"] == [[2]]


class TestRejections:
    """Tests for failures reported by the engine."""

    def test_write_statements_are_rejected(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        initial = rejected_statements_total._value.get()

        result = engine.query(access_id, "DROP TABLE drugs")

        assert result["success"] is False
        assert result["error_type"] == "DisallowedStatementError"
        assert result["rows"] == []
        assert rejected_statements_total._value.get() == initial + 1
        assert engine.query(access_id, "SELECT COUNT(*) FROM drugs")["rows"] == [[1]]

    def test_stacked_statements_are_rejected(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        result = engine.query(access_id, "SELECT 1; DELETE FROM drugs")

        assert result["success"] is False
        assert engine.query(access_id, "SELECT COUNT(*) FROM drugs")["rows"] == [[1]]

    def test_unknown_session(self, engine, drugs_response):
        engine.stage(drugs_response)
        result = engine.query("no-such-session", "SELECT 1")

        assert result["success"] is False
        assert result["error_type"] == "UnknownSessionError"
        assert result["columns"] == []

    def test_sql_error_is_reported(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        result = engine.query(access_id, "SELECT missing FROM drugs")

        assert result["success"] is False
        assert result["error_type"] == "SqlExecutionError"
        assert "missing" in result["message"]

    def test_invalid_json_raises(self, engine):
        with pytest.raises(SchemaInferenceError):
            engine.stage("{not json")

    @pytest.mark.parametrize("document", [42, "\"text\"", {}])
    def test_unstageable_documents(self, engine, document):
        with pytest.raises(SchemaInferenceError):
            engine.stage(document)

    def test_failed_first_stage_leaves_no_session(self, engine):
        with pytest.raises(SchemaInferenceError):
            engine.stage(42, access_id="broken")

        assert "broken" not in engine.registry
        assert not os.path.exists(engine.registry.path_for("broken"))
        assert engine.query("broken", "SELECT 1")["error_type"] == "UnknownSessionError"

    def test_unencodable_string_leaves_no_session(self, engine):
        with pytest.raises(GraphStageError):
            engine.stage('{"name": "\\ud800"}', access_id="surrogate")

        assert "surrogate" not in engine.registry
        assert engine.query("surrogate", "SELECT 1")["error_type"] == "UnknownSessionError"

    def test_concurrent_first_calls_keep_loaded_rows(self, engine, drugs_response):
        """A failing call never removes rows another call staged under the same id."""
        barrier = threading.Barrier(6)
        outcomes = []

        def stage(document):
            barrier.wait()
            try:
                engine.stage(document, access_id="shared")
                outcomes.append(True)
            except GraphStageError:
                outcomes.append(False)

        documents = [copy.deepcopy(drugs_response) if i % 2 else 42 for i in range(6)]
        threads = [threading.Thread(target=stage, args=(doc,)) for doc in documents]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        staged = outcomes.count(True)
        if staged:
            result = engine.query("shared", "SELECT COUNT(*) FROM drugs")
            assert result["rows"] == [[staged]]
        else:
            assert "shared" not in engine.registry

    def test_failed_append_keeps_session(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]

        with pytest.raises(SchemaInferenceError):
            engine.stage(42, access_id=access_id)

        assert engine.query(access_id, "SELECT name FROM drugs")["rows"] == [["Imatinib"]]


class TestDescribe:
    """Tests for inspecting a session."""

    def test_describe_lists_tables(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        tables = engine.describe(access_id)

        assert set(tables) == {"drugs", "interactions", "genes"}
        assert tables["genes"].columns == {"id": "integer", "name": "text"}
        assert tables["genes"].sample_data == [{"id": 1, "name": "ABL1"}]

    def test_describe_unknown_session(self, engine):
        with pytest.raises(UnknownSessionError):
            engine.describe("missing")

    def test_close_releases_sessions(self, engine, drugs_response):
        access_id = engine.stage(drugs_response)["access_id"]
        path = engine.registry.path_for(access_id)

        engine.close()

        assert not os.path.exists(path)
        assert engine.query(access_id, "SELECT 1")["success"] is False

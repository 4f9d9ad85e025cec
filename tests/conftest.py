# Test configuration

import copy

import pytest

from graphstage.config.settings import Settings
from graphstage.engine import StagingEngine
from graphstage.sessions.registry import SessionRegistry

DRUGS_RESPONSE = {
    "data": {
        "drugs": {
            "nodes": [
                {
                    "name": "Imatinib",
                    "interactions": [
                        {"gene": {"name": "ABL1"}, "interactionScore": 5.2},
                    ],
                }
            ]
        }
    }
}


@pytest.fixture
def test_settings(tmp_path):
    """Settings with session stores under the test's temp directory"""
    return Settings(
        store_dir=str(tmp_path / "stores"),
        json_logs=False,
        sample_size=5,
        query_max_rows=1000,
    )


@pytest.fixture
def registry(test_settings):
    registry = SessionRegistry(settings=test_settings)
    yield registry
    registry.close_all()


@pytest.fixture
def engine(registry, test_settings):
    engine = StagingEngine(registry=registry, settings=test_settings)
    yield engine
    engine.close()


@pytest.fixture
def drugs_response():
    return copy.deepcopy(DRUGS_RESPONSE)

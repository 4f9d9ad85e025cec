"""
graphstage: stage GraphQL/JSON results as relational tables and query
them with read-only SQL.
"""

from graphstage.common.errors import (
    DisallowedStatementError,
    GraphStageError,
    SchemaInferenceError,
    SqlExecutionError,
    StorageError,
    UnknownSessionError,
)
from graphstage.engine import StagingEngine, get_default_engine
from graphstage.selectors import select_best_node, top_by_score

__version__ = "0.1.0"

__all__ = [
    "StagingEngine",
    "get_default_engine",
    "select_best_node",
    "top_by_score",
    "GraphStageError",
    "SchemaInferenceError",
    "UnknownSessionError",
    "DisallowedStatementError",
    "SqlExecutionError",
    "StorageError",
]

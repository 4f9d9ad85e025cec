"""
Error taxonomy for staging and querying.

Every failure surfaced by the engine is one of these types so callers can
tell a bad JSON payload from a bad SQL statement or a broken store.
"""

from typing import Any, Dict, Optional


class GraphStageError(Exception):
    """Base class for all engine errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error_type": self.error_type, "message": self.reason}


class SchemaInferenceError(GraphStageError):
    """The staged JSON is malformed or cannot be represented as tables."""
    pass


class UnknownSessionError(GraphStageError):
    """A query referenced an access id with no staged session."""

    def __init__(self, access_id: Optional[str]):
        super().__init__(f"Unknown session: {access_id!r}")
        self.access_id = access_id


class DisallowedStatementError(GraphStageError):
    """The SQL is empty, holds several statements, or is not read-only."""
    pass


class SqlExecutionError(GraphStageError):
    """The embedded engine rejected or failed to run the statement."""
    pass


class StorageError(GraphStageError):
    """The underlying session store failed."""
    pass

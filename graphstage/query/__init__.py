"""Read-only SQL over session stores."""

from graphstage.query.executor import QueryExecutor, QueryResult
from graphstage.query.validator import validate_read_only

__all__ = ["QueryExecutor", "QueryResult", "validate_read_only"]

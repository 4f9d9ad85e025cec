"""
Query Executor.

Runs a validated read-only statement on a session's reader connection
and shapes the result: column names, row tuples, truncation flag and the
pagination of the staged data.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from graphstage.catalog.models import PaginationInfo
from graphstage.common.errors import SqlExecutionError, StorageError
from graphstage.common.logging_config import get_structured_logger
from graphstage.config.settings import Settings, get_settings
from graphstage.query.validator import validate_read_only
from graphstage.sessions.store import SessionStore

logger = get_structured_logger(__name__)

# SQLite virtual machine instructions between timeout checks
PROGRESS_STEPS = 1000


@dataclass
class QueryResult:
    columns: List[str]
    rows: List[List[Any]]
    truncated: bool = False
    execution_time_ms: float = 0.0
    pagination: Optional[PaginationInfo] = None
    tables: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": True,
            "columns": list(self.columns),
            "rows": [list(row) for row in self.rows],
            "row_count": self.row_count,
            "truncated": self.truncated,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.pagination is not None:
            result["pagination"] = self.pagination.to_dict()
        return result


class QueryExecutor:
    """Executes read-only SQL against session stores."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_rows: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.settings = settings or get_settings()
        self.max_rows = max_rows if max_rows is not None else self.settings.query_max_rows
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else self.settings.query_timeout_seconds
        )

    def execute(self, store: SessionStore, sql: str) -> QueryResult:
        """
        Validate and run a statement.

        Args:
            store: Session store to read
            sql: A single read-only statement

        Returns:
            QueryResult

        Raises:
            DisallowedStatementError: The statement is not a single SELECT
            SqlExecutionError: SQLite rejected the statement or it timed out
            StorageError: The store could not be read
        """
        statement = validate_read_only(sql)
        start_time = time.perf_counter()

        with store.read_connection() as conn:
            dbapi_connection = conn.connection.dbapi_connection
            if self.timeout_seconds:
                deadline = start_time + self.timeout_seconds
                dbapi_connection.set_progress_handler(
                    lambda: 1 if time.perf_counter() > deadline else 0, PROGRESS_STEPS)
            try:
                result = conn.exec_driver_sql(statement.sql)
                columns = list(result.keys())
                fetched = result.fetchmany(self.max_rows + 1)
                result.close()
            except DBAPIError as e:
                message = str(e.orig) if e.orig is not None else str(e)
                if "interrupted" in message:
                    message = f"Query exceeded the {self.timeout_seconds}s timeout"
                raise SqlExecutionError(message) from e
            except SQLAlchemyError as e:
                raise StorageError(f"Query failed: {e}") from e
            finally:
                if self.timeout_seconds:
                    dbapi_connection.set_progress_handler(None, 0)

        truncated = len(fetched) > self.max_rows
        rows = [list(row) for row in fetched[:self.max_rows]]
        execution_time_ms = round((time.perf_counter() - start_time) * 1000, 2)

        logger.debug(
            "Executed query",
            tables=statement.tables,
            row_count=len(rows),
            truncated=truncated,
            execution_time_ms=execution_time_ms,
        )
        return QueryResult(
            columns=columns,
            rows=rows,
            truncated=truncated,
            execution_time_ms=execution_time_ms,
            pagination=store.latest_pagination(statement.tables),
            tables=statement.tables,
        )

"""
Staging engine: the two calls made by the tool layer.

    stage(raw_json)          -> {"access_id", "processing_details"}
    query(access_id, sql)    -> {"success", "columns", "rows", ...}
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from graphstage.catalog.models import SchemaInfo
from graphstage.common.errors import DisallowedStatementError, GraphStageError
from graphstage.common.logging_config import (
    PerformanceTracker,
    bind_access_id,
    get_structured_logger,
    setup_logging,
)
from graphstage.common.metrics import rejected_statements_total, staged_rows_total, track_operation
from graphstage.config.settings import Settings, get_settings
from graphstage.ingest.json_processor import JsonProcessor
from graphstage.query.executor import QueryExecutor
from graphstage.sessions.registry import SessionRegistry, new_access_id

logger = get_structured_logger(__name__)


class StagingEngine:
    """
    Stages JSON into session stores and answers SQL against them.

    The registry is injected so tests and hosts control session lifetime;
    by default the engine owns a registry over `settings.store_dir`.
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or SessionRegistry(settings=self.settings)
        self.processor = JsonProcessor(settings=self.settings)
        self.executor = QueryExecutor(settings=self.settings)

    @track_operation("stage")
    def stage(self, raw_json: Any, access_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Stage a JSON document.

        Args:
            raw_json: Upstream response (or its `data` payload), parsed or as text
            access_id: Existing session to append to; a new id is minted if None

        Returns:
            Dict with `access_id` and `processing_details`

        Raises:
            SchemaInferenceError: The document cannot be staged
            StorageError: The session store failed
        """
        access_id = access_id or new_access_id()

        with bind_access_id(access_id):
            store, created = self.registry.acquire(access_id)
            try:
                with PerformanceTracker("stage", logging.getLogger(__name__)):
                    result = self.processor.process(store, raw_json)
            except Exception:
                # A failed first load must not leave a queryable session behind
                if created:
                    self.registry.discard_if_empty(access_id, store)
                raise

        if self.settings.metrics_enabled:
            staged_rows_total.inc(result.staged_rows)
        return {
            "access_id": access_id,
            "processing_details": result.to_dict(),
        }

    @track_operation("query")
    def query(self, access_id: str, sql: str) -> Dict[str, Any]:
        """
        Run a read-only statement against a staged session.

        Failures are reported in the result (`success: False`) and never
        carry partial rows.
        """
        with bind_access_id(access_id):
            try:
                with PerformanceTracker("query", logging.getLogger(__name__)):
                    store = self.registry.get(access_id)
                    return self.executor.execute(store, sql).to_dict()
            except GraphStageError as e:
                if isinstance(e, DisallowedStatementError) and self.settings.metrics_enabled:
                    rejected_statements_total.inc()
                logger.warning("Query failed", error_type=e.error_type, reason=e.reason)
                return {
                    "success": False,
                    "message": e.reason,
                    "error_type": e.error_type,
                    "columns": [],
                    "rows": [],
                }

    def describe(self, access_id: str) -> Dict[str, SchemaInfo]:
        """
        SchemaInfo of every table in a session.

        Raises:
            UnknownSessionError: No session was staged under this id
        """
        store = self.registry.get(access_id)
        with store.read_connection() as conn:
            return self.processor.materializer.describe(conn)

    def close(self) -> None:
        self.registry.close_all()


@lru_cache()
def get_default_engine() -> StagingEngine:
    """Process-wide engine for hosts that do not manage their own."""
    settings = get_settings()
    setup_logging(settings.log_level, json_format=settings.json_logs)
    return StagingEngine(settings=settings)

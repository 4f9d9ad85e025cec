"""
One session store: an embedded SQLite database holding the tables
staged under a single access id.
"""

import os
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from graphstage.catalog.database import check_store_connection, create_store_engines
from graphstage.catalog.models import CatalogPagination, CatalogTable, PaginationInfo, utcnow
from graphstage.common.errors import StorageError
from graphstage.common.logging_config import get_structured_logger

logger = get_structured_logger(__name__)


class SessionStore:
    """
    Embedded store of one session.

    Staging goes through `transaction()`, which holds the store's write
    lock so loads into the same session run one after another. Queries go
    through `read_connection()` and may run concurrently with each other.
    """

    def __init__(self, access_id: str, path: str, busy_timeout: float = 5.0):
        self.access_id = access_id
        self.path = path
        self.created_at = utcnow()
        self.write_lock = threading.RLock()
        self._closed = False

        try:
            self.writer, self.reader = create_store_engines(path, busy_timeout)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to open session store at {path}: {e}") from e

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Writer connection in one transaction; commits on success."""
        if self._closed:
            raise StorageError(f"Session store {self.access_id} is closed")
        with self.write_lock:
            # Evicted while this call waited for the lock
            if self._closed:
                raise StorageError(f"Session store {self.access_id} is closed")
            try:
                with self.writer.begin() as conn:
                    yield conn
            except SQLAlchemyError as e:
                raise StorageError(f"Session store write failed: {e}") from e

    @contextmanager
    def read_connection(self) -> Iterator[Connection]:
        """Pooled read-only connection."""
        if self._closed:
            raise StorageError(f"Session store {self.access_id} is closed")
        try:
            with self.reader.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StorageError(f"Session store read failed: {e}") from e

    def table_names(self) -> List[str]:
        with self.read_connection() as conn:
            with Session(bind=conn) as session:
                return list(session.scalars(
                    select(CatalogTable.name).order_by(CatalogTable.created_at, CatalogTable.name)))

    def latest_pagination(self, table_names: Optional[Iterable[str]] = None) -> Optional[PaginationInfo]:
        """
        Pagination to echo with a query result.

        The most recent pagination of the first listed table that has one,
        else the most recent top-level pagination of the session.
        """
        with self.read_connection() as conn:
            with Session(bind=conn) as session:
                for name in table_names or ():
                    row = session.scalars(
                        select(CatalogPagination)
                        .where(CatalogPagination.table_name == name)
                        .order_by(CatalogPagination.id.desc())
                        .limit(1)
                    ).first()
                    if row is not None:
                        return PaginationInfo.from_catalog(row)

                row = session.scalars(
                    select(CatalogPagination)
                    .where(CatalogPagination.is_root.is_(True))
                    .order_by(CatalogPagination.id.desc())
                    .limit(1)
                ).first()
                return PaginationInfo.from_catalog(row) if row is not None else None

    def is_healthy(self) -> bool:
        return not self._closed and check_store_connection(self.reader)

    def close(self, remove_file: bool = True) -> None:
        """Dispose both engines and, by default, delete the database files."""
        if self._closed:
            return
        with self.write_lock:
            self._closed = True
            self.reader.dispose()
            self.writer.dispose()

        if remove_file:
            for suffix in ("", "-wal", "-shm"):
                try:
                    os.remove(self.path + suffix)
                except FileNotFoundError:
                    continue
        logger.debug("Closed session store", path=self.path, removed=remove_file)

"""
Session Store Manager.

Maps access ids to their session stores. Staging creates stores on
demand; querying only ever looks them up.
"""

import hashlib
import os
import shutil
import tempfile
import threading
import uuid
from typing import Dict, List, Optional, Tuple

from graphstage.common.errors import UnknownSessionError
from graphstage.common.logging_config import get_structured_logger
from graphstage.common.metrics import active_sessions
from graphstage.config.settings import Settings, get_settings
from graphstage.sessions.store import SessionStore

logger = get_structured_logger(__name__)


def new_access_id() -> str:
    return str(uuid.uuid4())


class SessionRegistry:
    """
    Registry of live session stores, one SQLite file per access id.

    Stores live until evicted; eviction policy belongs to the caller.
    """

    def __init__(self, store_dir: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_dir = store_dir or self.settings.store_dir

        if store_dir:
            os.makedirs(store_dir, exist_ok=True)
            self._owns_dir = False
        else:
            store_dir = tempfile.mkdtemp(prefix="graphstage-")
            self._owns_dir = True

        self.store_dir = store_dir
        self._stores: Dict[str, SessionStore] = {}
        self._lock = threading.Lock()

    def path_for(self, access_id: str) -> str:
        """Database file of an access id (ids are arbitrary strings, names are not)."""
        digest = hashlib.sha256(access_id.encode("utf-8", "surrogatepass")).hexdigest()
        return os.path.join(self.store_dir, f"{digest}.sqlite3")

    def get_or_create(self, access_id: Optional[str] = None) -> SessionStore:
        """Get the store of an access id, creating it on first use."""
        store, _ = self.acquire(access_id)
        return store

    def acquire(self, access_id: Optional[str] = None) -> Tuple[SessionStore, bool]:
        """
        Get or create the store of an access id.

        Args:
            access_id: Caller-supplied id, or None to mint a new one

        Returns:
            Tuple of (store, whether this call created it)
        """
        access_id = access_id or new_access_id()

        with self._lock:
            store = self._stores.get(access_id)
            created = store is None
            if created:
                store = SessionStore(
                    access_id,
                    self.path_for(access_id),
                    busy_timeout=self.settings.sqlite_busy_timeout,
                )
                self._stores[access_id] = store
                active_sessions.set(len(self._stores))
                logger.info("Created session store", access_id=access_id, path=store.path)
            return store, created

    def get(self, access_id: Optional[str]) -> SessionStore:
        """
        Look up an existing store.

        Raises:
            UnknownSessionError: No store was staged under this id
        """
        with self._lock:
            store = self._stores.get(access_id) if isinstance(access_id, str) else None
        if store is None:
            raise UnknownSessionError(access_id)
        return store

    def evict(
        self,
        access_id: str,
        remove_file: bool = True,
        expected: Optional[SessionStore] = None,
    ) -> bool:
        """
        Close and forget a store.

        Args:
            access_id: Id of the store
            remove_file: Delete the database files as well
            expected: Only evict if the registered store is this one

        Returns:
            True if a store was evicted
        """
        with self._lock:
            store = self._stores.get(access_id)
            if store is None or (expected is not None and store is not expected):
                return False
            del self._stores[access_id]
            active_sessions.set(len(self._stores))
        store.close(remove_file=remove_file)
        logger.info("Evicted session store", access_id=access_id)
        return True

    def discard_if_empty(self, access_id: str, store: SessionStore) -> bool:
        """
        Evict a store that holds no staged tables.

        Used after a failed first load; a concurrent load that committed
        in the meantime keeps the store alive.

        Returns:
            True if the store was evicted
        """
        with store.write_lock:
            if store.closed or store.table_names():
                return False
            return self.evict(access_id, expected=store)

    def close_all(self) -> None:
        for access_id in self.access_ids():
            self.evict(access_id)
        if self._owns_dir:
            shutil.rmtree(self.store_dir, ignore_errors=True)

    def access_ids(self) -> List[str]:
        with self._lock:
            return list(self._stores)

    def __contains__(self, access_id: object) -> bool:
        with self._lock:
            return access_id in self._stores

    def __len__(self) -> int:
        with self._lock:
            return len(self._stores)

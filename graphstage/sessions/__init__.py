"""Session stores and the registry mapping access ids to them."""

from graphstage.sessions.registry import SessionRegistry, new_access_id
from graphstage.sessions.store import SessionStore

__all__ = ["SessionRegistry", "SessionStore", "new_access_id"]

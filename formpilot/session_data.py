"""
Cumulative per-session user data.
"""

import logging
import threading
from typing import Any, Dict, Mapping, Optional

from .models import UserData, normalize_user_data

logger = logging.getLogger(__name__)


class SessionDataStore:
    """
    In-memory map of session id to collected user facts.

    Data only grows by merge (later values overwrite the same keys) and is
    dropped as a whole on session teardown.
    """

    def __init__(self):
        self._data: Dict[str, UserData] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> UserData:
        """Return a copy of the session's user data (empty if unknown)."""
        with self._lock:
            return dict(self._data.get(session_id, {}))

    def merge(self, session_id: str, data: Optional[Mapping[str, Any]]) -> UserData:
        """
        Merge new values into the session's data.

        Args:
            session_id: Session identifier
            data: New values; they win over existing keys

        Returns:
            A copy of the merged data
        """
        updates = normalize_user_data(data)
        with self._lock:
            merged = dict(self._data.get(session_id, {}))
            merged.update(updates)
            self._data[session_id] = merged
        if updates:
            logger.debug(f"Session {session_id}: merged user data keys {sorted(updates)}")
        return dict(merged)

    def clear(self, session_id: str) -> None:
        """Forget everything collected for a session."""
        with self._lock:
            self._data.pop(session_id, None)

"""
Admission analytics.

Every decision is appended to the event ledger. Recording is best-effort:
a failed write is logged and never reaches the caller.
"""

import logging
from typing import List, Optional

from quota_gate.storage.db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS
from quota_gate.storage.models import AdmissionEvent
from quota_gate.storage.repository import (
    fetch_recent_admission_events,
    insert_admission_event,
)

logger = logging.getLogger(__name__)


class AnalyticsSink:
    """Append-only recorder for admission decisions."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self.db_path = db_path
        self.timeout = timeout

    def record(self, event: AdmissionEvent) -> bool:
        """Append an event. Returns False if it could not be stored."""
        try:
            insert_admission_event(event, self.db_path, self.timeout)
            return True
        except Exception:
            logger.warning(
                "Failed to record admission event for %s/%s (%s)",
                event.user_id, event.command_name, event.status, exc_info=True
            )
            return False

    def recent(
        self,
        user_id: Optional[str] = None,
        command_name: Optional[str] = None,
        limit: int = 100
    ) -> List[AdmissionEvent]:
        return fetch_recent_admission_events(
            user_id=user_id,
            command_name=command_name,
            limit=limit,
            db_path=self.db_path,
            timeout=self.timeout
        )

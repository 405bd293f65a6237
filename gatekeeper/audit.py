"""
Membership Audit Logger

Records every lifecycle transition (verified, rejected, promoted, demoted,
evicted, unchanged) to an append-only store.

Recording is fire-and-forget: a failing audit write is logged and never
interrupts the verification or re-check that produced it.
"""

import logging
import threading
from typing import Optional

from gatekeeper.database.contracts import AuditStore
from gatekeeper.types import AuditEntry

logger = logging.getLogger(__name__)


class AuditLogger:
    """Thread-safe, best-effort audit sink."""

    def __init__(self, store: AuditStore):
        self.store = store
        self._lock = threading.Lock()
        self.failures = 0

    def record(self, entry: AuditEntry) -> Optional[int]:
        """
        Append an entry.

        Returns:
            The stored entry id, or None when the write failed
        """
        try:
            with self._lock:
                entry_id = self.store.insert(entry)
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Audit write failed for {entry.community_id}/{entry.participant_id} "
                f"({entry.action.value}): {e}"
            )
            return None

        logger.debug(
            f"Audit {entry.action.value} {entry.community_id}/{entry.participant_id} "
            f"source={entry.source.value}"
        )
        return entry_id

"""
sequencer.py — Per-alert version assignment and mutation serialisation.

Two responsibilities:

    1. ``next_version`` hands out strictly increasing versions per alert id,
       starting at 1. Versions are only remembered once ``confirm`` records
       a successful commit, so a write that fails never leaves a gap behind.

    2. ``serialize(alert_id)`` is an async lock scoped to one alert id. The
       writer path holds it across *persist + publish*, which makes the
       order events enter session queues equal to version order. Different
       ids never contend; lock entries are dropped once idle.

Cross-process safety does not rely on this lock: the store's conditional
UPDATE (compare-and-set on the previously seen version) decides the winner
of racing resolves. The lock only avoids pointless losing attempts and keeps
publish order aligned within one process.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class EventSequencer:
    """Per-alert monotonic versions + per-alert mutation lock."""

    def __init__(self) -> None:
        self._committed: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    # ── Versions ──

    def next_version(self, alert_id: str, current: int = 0) -> int:
        """
        Version for the next mutation of ``alert_id``.

        ``current`` is the version the caller just read from the store;
        the result is greater than both that and anything confirmed here.
        """
        if current < 0:
            raise ValueError(f"current version must be >= 0, got {current}")
        return max(current, self._committed.get(alert_id, 0)) + 1

    def confirm(self, alert_id: str, version: int) -> None:
        """Record that ``version`` of ``alert_id`` was durably committed."""
        if version > self._committed.get(alert_id, 0):
            self._committed[alert_id] = version

    def last_committed(self, alert_id: str) -> int:
        return self._committed.get(alert_id, 0)

    def forget(self, alert_id: str) -> None:
        """Drop tracking for an alert that has been purged."""
        self._committed.pop(alert_id, None)

    # ── Serialisation ──

    @asynccontextmanager
    async def serialize(self, alert_id: str) -> AsyncIterator[None]:
        """Hold the mutation lock for ``alert_id``."""
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        self._holders[alert_id] = self._holders.get(alert_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[alert_id] - 1
            if remaining:
                self._holders[alert_id] = remaining
            else:
                del self._holders[alert_id]
                del self._locks[alert_id]

    def stats(self) -> Dict[str, int]:
        return {
            "tracked_alerts": len(self._committed),
            "active_locks": len(self._locks),
        }

"""
Background expiry reclamation.

Reads already hide expired alerts; this job only frees the rows. It runs
inside the API process as an asyncio task started from the app lifespan.

Usage:
    reclaimer = ExpiryReclaimer(store, sequencer, interval_seconds=300)
    await reclaimer.start()
    ...
    await reclaimer.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.alerts.store import AlertStore
from alerthub.app.core.config import settings
from alerthub.app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class ExpiryReclaimer:
    """Periodically purges expired alerts from the store."""

    def __init__(
        self,
        store: AlertStore,
        sequencer: EventSequencer,
        interval_seconds: Optional[float] = None,
    ):
        self._store = store
        self._sequencer = sequencer
        self._interval = interval_seconds or settings.RECLAIM_INTERVAL_SECONDS
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._purged = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Expiry reclaimer started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry reclaimer stopped")

    async def run_once(self) -> int:
        """Purge once; returns the number of alerts reclaimed."""
        ids = await self._store.purge_expired()
        for alert_id in ids:
            self._sequencer.forget(alert_id)
        self._runs += 1
        self._purged += len(ids)
        if ids:
            logger.info("Reclaimed %d expired alerts", len(ids))
        return len(ids)

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except StoreUnavailable as e:
                logger.warning("Reclaim skipped: %s", e.message)
            except Exception as e:
                logger.exception("Reclaimer error: %s", e)
            await asyncio.sleep(self._interval)

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "runs": self._runs,
            "purged": self._purged,
            "interval_seconds": self._interval,
        }

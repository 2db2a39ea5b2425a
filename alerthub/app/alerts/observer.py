"""
Observer side of the real-time channel.

``LocalAlertSet`` is the idempotent merge every viewer applies: a record
replaces the local copy only if its version is strictly higher, so
duplicated, replayed or reordered pushes are harmless.

``ObserverClient`` keeps a ``LocalAlertSet`` in sync with a running server
over ``/ws/alerts``, reconnecting after drops and resyncing from whatever
versions it already holds.

Usage:
    client = ObserverClient("ws://localhost:8000/ws/alerts")
    task = asyncio.create_task(client.run())
    ...
    print(client.alerts.active())
    await client.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import websockets

from alerthub.app.alerts.models import Alert, utc_now

logger = logging.getLogger(__name__)


class LocalAlertSet:
    """An observer's view of the alert set, merged by ``(id, version)``."""

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}

    def __len__(self) -> int:
        return len(self._alerts)

    def __contains__(self, alert_id: str) -> bool:
        return alert_id in self._alerts

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def merge(self, alert: Alert) -> bool:
        """Apply ``alert``; True if it changed the local view."""
        current = self._alerts.get(alert.id)
        if current is not None and current.version >= alert.version:
            return False
        self._alerts[alert.id] = alert
        return True

    def apply(self, message: Mapping[str, Any]) -> int:
        """
        Apply one server message (snapshot or live event).

        Returns the number of alerts that changed. Unknown kinds are ignored.
        """
        kind = message.get("kind")
        if kind == "snapshot":
            return sum(self.merge(Alert.from_dict(d)) for d in message.get("alerts", []))
        if kind in ("created", "resolved") and message.get("alert"):
            return int(self.merge(Alert.from_dict(message["alert"])))
        logger.debug("Ignoring message of kind %r", kind)
        return 0

    def last_versions(self) -> Dict[str, int]:
        return {alert_id: a.version for alert_id, a in self._alerts.items()}

    def active(self) -> List[Alert]:
        """Unresolved alerts, newest first."""
        live = [a for a in self._alerts.values() if not a.is_resolved]
        return sorted(live, key=lambda a: a.created_at, reverse=True)

    def all(self) -> List[Alert]:
        return sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        expired = [i for i, a in self._alerts.items() if a.is_expired(now)]
        for alert_id in expired:
            del self._alerts[alert_id]
        return len(expired)


class ObserverClient:
    """
    Reconnecting WebSocket observer.

    Each connection is a fresh server-side session: the client sends its
    retained ``lastVersions`` first, receives the catch-up snapshot, then
    live events until the socket drops.
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect_delay: float = 5.0,
        on_change: Optional[Callable[[LocalAlertSet], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.url = url
        self.alerts = LocalAlertSet()
        self._reconnect_delay = reconnect_delay
        self._on_change = on_change
        self._clock = clock
        self._running = False
        self._ws = None
        self.connections = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def hello(self) -> Dict[str, Any]:
        return {"lastVersions": self.alerts.last_versions()}

    def handle_message(self, raw: str) -> int:
        """Decode and merge one frame; malformed frames count as errors."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self.errors += 1
            logger.warning("Discarding non-JSON frame from %s", self.url)
            return 0
        changed = self.alerts.apply(message)
        if changed and self._on_change:
            self._on_change(self.alerts)
        return changed

    async def run(self) -> None:
        """Connect, resync, and follow live events until ``stop()``."""
        self._running = True
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self.connections += 1
                    dropped = self.alerts.prune_expired(self._clock())
                    if dropped:
                        logger.info("Dropped %d expired alerts before resync", dropped)
                    await ws.send(json.dumps(self.hello()))
                    async for raw in ws:
                        self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.WebSocketException) as e:
                self.errors += 1
                logger.warning("Observer connection to %s dropped: %s", self.url, e)
            finally:
                self._ws = None
            if self._running:
                await asyncio.sleep(self._reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

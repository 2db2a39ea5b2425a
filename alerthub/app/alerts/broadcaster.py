"""
broadcaster.py — Real-time fan-out of committed alert events.

═══════════════════════════════════════════════════════════════════════════
DELIVERY MODEL
═══════════════════════════════════════════════════════════════════════════

    writer path ──publish()──┬──▶ session A queue ──▶ sender A ──▶ socket A
      (holds per-id lock)    ├──▶ session B queue ──▶ sender B ──▶ socket B
                             └──▶ session C queue ✗ full → drop buffer,
                                                    force C into resync

    • publish() never awaits a socket: it does ``put_nowait`` into each
      session's bounded queue and returns.
    • Each session has exactly one sender task consuming its queue, so
      events for one alert leave in the order they were enqueued.
    • Before sending, an event is skipped unless its version is greater than
      the session's ``last_delivered`` for that alert (dedup + ordering).
    • ``last_delivered`` only advances after the send succeeded.
    • A failed send ends that session only. No retries: the observer
      reconnects and resyncs.

Session state machine:

    CONNECTING ──▶ RESYNCING ──▶ LIVE ──▶ DISCONNECTED
                       ▲           │
                       └─overflow──┘
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from alerthub.app.alerts.models import Alert, AlertEvent
from alerthub.app.core.config import settings
from alerthub.app.core.errors import DeliveryFailure

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class SessionState(str, Enum):
    CONNECTING   = "connecting"
    RESYNCING    = "resyncing"
    LIVE         = "live"
    DISCONNECTED = "disconnected"


class ObserverSession:
    """
    One observer connection and its delivery-tracking state.

    Owned by the ``Broadcaster``; only that session's sender task reads
    its queue or sends on its behalf.
    """

    def __init__(self, session_id: Optional[str] = None, queue_size: Optional[int] = None):
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.state = SessionState.CONNECTING
        self._queue: asyncio.Queue[AlertEvent] = asyncio.Queue(
            maxsize=queue_size or settings.SESSION_QUEUE_SIZE,
        )
        self._last_delivered: Dict[str, int] = {}
        self._resync_required = False
        # Set on overflow or close so a sender idle in next_event() wakes up.
        self._wakeup = asyncio.Event()
        self.overflows = 0
        self.delivered = 0

    def __repr__(self) -> str:
        return f"<ObserverSession {self.session_id} {self.state.value}>"

    # ── State ──

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.DISCONNECTED

    @property
    def resync_required(self) -> bool:
        return self._resync_required

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def begin_resync(self, known: Optional[Mapping[str, int]] = None) -> None:
        """Enter RESYNCING, merging versions the observer already holds."""
        if self.is_closed:
            return
        for alert_id, version in (known or {}).items():
            self._advance(alert_id, int(version))
        self._resync_required = False
        self._wakeup.clear()
        self.state = SessionState.RESYNCING

    def go_live(self) -> None:
        if not self.is_closed:
            self.state = SessionState.LIVE

    def close(self) -> None:
        """Terminal: drop buffered events and tracking state."""
        self.state = SessionState.DISCONNECTED
        self._drain()
        self._last_delivered.clear()
        self._wakeup.set()

    # ── Version tracking ──

    def last_delivered(self, alert_id: str) -> int:
        return self._last_delivered.get(alert_id, 0)

    def known_versions(self) -> Dict[str, int]:
        return dict(self._last_delivered)

    def should_deliver(self, alert: Alert) -> bool:
        return alert.version > self._last_delivered.get(alert.id, 0)

    def mark_delivered(self, alert: Alert) -> None:
        self._advance(alert.id, alert.version)

    def _advance(self, alert_id: str, version: int) -> None:
        if version > self._last_delivered.get(alert_id, 0):
            self._last_delivered[alert_id] = version

    # ── Queue ──

    def offer(self, event: AlertEvent) -> bool:
        """
        Enqueue without blocking.

        On overflow the whole buffer is dropped and the session is forced
        into RESYNCING; the event is not enqueued.
        """
        if self.is_closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._overflow()
            return False

    def _overflow(self) -> None:
        dropped = self._drain()
        self.overflows += 1
        self._resync_required = True
        self.state = SessionState.RESYNCING
        self._wakeup.set()
        logger.warning(
            "Session %s overflowed; dropped %d buffered events, forcing resync",
            self.session_id, dropped,
            extra={"session_id": self.session_id},
        )

    def _drain(self) -> int:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
                dropped += 1
            except asyncio.QueueEmpty:
                return dropped

    async def next_event(self) -> Optional[AlertEvent]:
        """
        Wait for the next queued event.

        Returns ``None`` when the session is closed or has been flagged for
        resync, including when that happens while waiting on an empty queue.
        """
        if self.is_closed or self._resync_required:
            return None
        event = self.next_event_nowait()
        if event is not None:
            return event

        getter = asyncio.ensure_future(self._queue.get())
        waker = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({getter, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (getter, waker):
                if not task.done():
                    task.cancel()

        if self.is_closed or self._resync_required:
            # An event taken in the same tick as an overflow is covered by the resync.
            return None
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    def next_event_nowait(self) -> Optional[AlertEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    # ── Delivery ──

    async def deliver(self, event: AlertEvent, send: SendFn) -> bool:
        """
        Send ``event`` if it is newer than what this session already has.

        Returns True when sent, False when skipped as stale/duplicate.
        Raises ``DeliveryFailure`` when ``send`` fails.
        """
        if not self.should_deliver(event.alert):
            return False
        try:
            await send(event.to_dict())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DeliveryFailure(self.session_id, str(e) or type(e).__name__) from e
        self.mark_delivered(event.alert)
        self.delivered += 1
        return True

    async def deliver_batch(self, message: Dict[str, Any], alerts: List[Alert], send: SendFn) -> None:
        """Send a pre-built snapshot message, then record every alert in it."""
        try:
            await send(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DeliveryFailure(self.session_id, str(e) or type(e).__name__) from e
        for alert in alerts:
            self.mark_delivered(alert)
        self.delivered += len(alerts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "pending": self.pending,
            "tracked_alerts": len(self._last_delivered),
            "delivered": self.delivered,
            "overflows": self.overflows,
        }


class Broadcaster:
    """
    Registry of live observer sessions + non-blocking publish.

    Constructed once per process (in the app lifespan) and passed to the
    writer path and the stream route.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.SESSION_QUEUE_SIZE
        self._sessions: Dict[str, ObserverSession] = {}
        self._published = 0
        self._overflows = 0

    def open_session(self, session_id: Optional[str] = None) -> ObserverSession:
        """Create a session in CONNECTING (not yet subscribed)."""
        return ObserverSession(session_id, queue_size=self._queue_size)

    def subscribe(self, session: ObserverSession) -> None:
        if session.is_closed:
            raise ValueError(f"cannot subscribe closed session {session.session_id}")
        self._sessions[session.session_id] = session
        logger.info(
            "Session %s subscribed (%d live)", session.session_id, len(self._sessions),
            extra={"session_id": session.session_id},
        )

    def unsubscribe(self, session: ObserverSession) -> None:
        removed = self._sessions.pop(session.session_id, None)
        session.close()
        if removed is not None:
            logger.info(
                "Session %s unsubscribed (%d live)", session.session_id, len(self._sessions),
                extra={"session_id": session.session_id},
            )

    def is_subscribed(self, session: ObserverSession) -> bool:
        return self._sessions.get(session.session_id) is session

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[ObserverSession]:
        return list(self._sessions.values())

    def publish(self, event: AlertEvent) -> int:
        """
        Enqueue ``event`` for every subscribed session.

        Returns the number of sessions that accepted it. Never raises on
        account of a session; overflowing sessions are forced into resync.
        """
        self._published += 1
        accepted = 0
        for session in list(self._sessions.values()):
            if session.offer(event):
                accepted += 1
            elif not session.is_closed:
                self._overflows += 1
        logger.debug(
            "Published %s %s v%d to %d/%d sessions",
            event.kind.value, event.alert_id, event.version,
            accepted, len(self._sessions),
            extra={"alert_id": event.alert_id, "version": event.version, "kind": event.kind.value},
        )
        return accepted

    def stats(self) -> Dict[str, Any]:
        states: Dict[str, int] = {}
        for s in self._sessions.values():
            states[s.state.value] = states.get(s.state.value, 0) + 1
        return {
            "sessions": len(self._sessions),
            "states": states,
            "events_published": self._published,
            "overflows": self._overflows,
            "queue_size": self._queue_size,
        }

"""
resync.py — Bring an observer session up to date, then keep it live.

═══════════════════════════════════════════════════════════════════════════
CLOSING THE SNAPSHOT / PUSH RACE
═══════════════════════════════════════════════════════════════════════════

    1. subscribe(session)          ← live events start queueing now
    2. batch = store.changed_since(known versions)
    3. send {"kind": "snapshot", "alerts": batch}
    4. mark every batch alert delivered, state → LIVE
    5. pump queue: skip anything not newer than last_delivered

Because the session subscribes *before* reading, a mutation committed
during step 2 is either in the batch, in the queue, or both. Step 5's
version filter drops the duplicates, so the observer never regresses to an
older state (e.g. a late ``created`` after the snapshot already showed the
alert resolved).

A session flagged by the broadcaster for overflow loops back to step 2,
using its own ``last_delivered`` map as the known versions. The flag wakes
a pump that is idle on an empty queue, so recovery does not wait for the
next publish.

If the session is closed while step 2 is in flight, the batch is thrown
away untouched.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from alerthub.app.alerts.broadcaster import Broadcaster, ObserverSession, SendFn
from alerthub.app.alerts.models import Alert
from alerthub.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


def snapshot_message(alerts: List[Alert]) -> Dict[str, Any]:
    return {"kind": "snapshot", "alerts": [a.to_dict() for a in alerts]}


def parse_last_versions(message: Optional[Mapping[str, Any]]) -> Optional[Dict[str, int]]:
    """
    Extract ``{"lastVersions": {id: version}}`` from a hello message.

    Malformed entries are ignored rather than rejected: an observer that
    sends garbage simply gets more of the snapshot.
    """
    if not message:
        return None
    raw = message.get("lastVersions")
    if not isinstance(raw, Mapping):
        return None
    known: Dict[str, int] = {}
    for alert_id, version in raw.items():
        try:
            v = int(version)
        except (TypeError, ValueError):
            continue
        if v > 0:
            known[str(alert_id)] = v
    return known


class ResyncProtocol:
    """Drives one session through CONNECTING → RESYNCING → LIVE."""

    def __init__(self, store: AlertStore, broadcaster: Broadcaster):
        self._store = store
        self._broadcaster = broadcaster

    async def resync(
        self,
        session: ObserverSession,
        last_versions: Optional[Mapping[str, int]] = None,
    ) -> List[Alert]:
        """
        Subscribe ``session`` (if needed) and compute its catch-up batch.

        Returns the alerts the observer is missing, oldest first. Returns
        an empty list without side effects if the session closed meanwhile.
        """
        session.begin_resync(last_versions)
        if session.is_closed:
            return []
        if not self._broadcaster.is_subscribed(session):
            self._broadcaster.subscribe(session)

        known = session.known_versions()
        batch = await self._store.changed_since(known)

        if session.is_closed:
            logger.info(
                "Session %s closed during resync; batch of %d abandoned",
                session.session_id, len(batch),
                extra={"session_id": session.session_id},
            )
            return []

        logger.info(
            "Session %s resync: %d known, %d to send",
            session.session_id, len(known), len(batch),
            extra={"session_id": session.session_id},
        )
        return batch

    async def send_batch(
        self,
        session: ObserverSession,
        batch: List[Alert],
        send: SendFn,
    ) -> None:
        """Send the catch-up batch as one message, then go LIVE."""
        if session.is_closed:
            return
        await session.deliver_batch(snapshot_message(batch), batch, send)
        session.go_live()

    async def run(
        self,
        session: ObserverSession,
        send: SendFn,
        last_versions: Optional[Mapping[str, int]] = None,
    ) -> None:
        """
        Resync ``session`` and pump its queue until it closes.

        ``DeliveryFailure`` from ``send`` propagates to the caller, which
        owns the connection and must unsubscribe the session.
        """
        batch = await self.resync(session, last_versions)
        await self.send_batch(session, batch, send)

        while not session.is_closed:
            if session.resync_required:
                logger.info(
                    "Session %s forced resync after overflow", session.session_id,
                    extra={"session_id": session.session_id},
                )
                batch = await self.resync(session, None)
                await self.send_batch(session, batch, send)
                continue

            event = await session.next_event()
            if event is None or session.resync_required:
                continue
            await session.deliver(event, send)

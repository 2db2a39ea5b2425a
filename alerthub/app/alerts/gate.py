"""
gate.py — Admin resolution gate.

Checks the caller's claim before any state is touched, then routes the
active → resolved transition through the same persist-then-publish path as
creation:

    claim.is_admin? ──no──▶ AuthorizationError   (no write, no broadcast)
          │ yes
          ▼
    serialize(alert_id)
      ├─ store.transition_resolved(alert_id)
      └─ publish(resolved)     only if this call did the transition
"""

from __future__ import annotations

import logging

from alerthub.app.alerts.broadcaster import Broadcaster
from alerthub.app.alerts.models import Alert, AlertEvent, AuthClaim
from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.alerts.store import AlertStore
from alerthub.app.core.errors import AuthorizationError

logger = logging.getLogger(__name__)


class ResolutionGate:
    def __init__(self, store: AlertStore, sequencer: EventSequencer, broadcaster: Broadcaster):
        self._store = store
        self._sequencer = sequencer
        self._broadcaster = broadcaster

    async def request_resolve(self, alert_id: str, claim: AuthClaim) -> Alert:
        if not claim.is_admin:
            logger.warning(
                "Resolve of %s denied for subject %s", alert_id, claim.subject_id or "anonymous",
                extra={"alert_id": alert_id, "subject_id": claim.subject_id},
            )
            raise AuthorizationError("resolve", subject_id=claim.subject_id)

        async with self._sequencer.serialize(alert_id):
            alert, changed = await self._store.transition_resolved(alert_id)
            if changed:
                self._broadcaster.publish(AlertEvent.for_alert(alert))

        logger.info(
            "Alert %s resolve by %s: %s (v%d)",
            alert_id, claim.subject_id or "admin",
            "resolved" if changed else "already resolved", alert.version,
            extra={"alert_id": alert_id, "subject_id": claim.subject_id, "version": alert.version},
        )
        return alert

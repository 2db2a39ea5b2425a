"""
service.py — Writer path and cached read path for alerts.

``AlertService`` wires the store, sequencer, broadcaster, resolution gate
and resync protocol together. One instance is built per process in the app
lifespan and handed to the routes through ``app.state``.

Write path (create):

    id = new id
    serialize(id):
        store.create(...)        ← commit point; failures propagate
        broadcaster.publish()    ← non-blocking, outcome ignored
    return alert

Read path (query):

    try store.query → refresh Redis snapshot → fresh result
    except StoreUnavailable → cached snapshot (stale=True) or re-raise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from alerthub.app.alerts.broadcaster import Broadcaster
from alerthub.app.alerts.gate import ResolutionGate
from alerthub.app.alerts.models import (
    Alert,
    AlertCategory,
    AlertEvent,
    AlertFilter,
    AuthClaim,
    EventKind,
    generate_alert_id,
)
from alerthub.app.alerts.resync import ResyncProtocol
from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.alerts.store import AlertStore, PositionInput, normalise_filter
from alerthub.app.core import cache
from alerthub.app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

QUERY_CACHE_PREFIX = "alerthub:alerts:query"


@dataclass
class QueryResult:
    alerts: List[Alert]
    stale: bool = False


class AlertService:
    def __init__(
        self,
        store: AlertStore,
        sequencer: EventSequencer,
        broadcaster: Broadcaster,
    ):
        self.store = store
        self.sequencer = sequencer
        self.broadcaster = broadcaster
        self.gate = ResolutionGate(store, sequencer, broadcaster)
        self.resync = ResyncProtocol(store, broadcaster)

    async def create(
        self,
        category: Union[str, AlertCategory],
        description: str,
        position: PositionInput = None,
    ) -> Alert:
        """Persist a new alert, then fan it out. Returns once persisted."""
        alert_id = generate_alert_id()
        async with self.sequencer.serialize(alert_id):
            alert = await self.store.create(
                category, description, position, alert_id=alert_id,
            )
            reached = self.broadcaster.publish(AlertEvent(EventKind.CREATED, alert))
        logger.info(
            "Alert %s queued for %d sessions", alert.id, reached,
            extra={"alert_id": alert.id, "recipient_count": reached},
        )
        return alert

    async def resolve(self, alert_id: str, claim: AuthClaim) -> Alert:
        return await self.gate.request_resolve(alert_id, claim)

    async def get(self, alert_id: str) -> Alert:
        return await self.store.get(alert_id)

    async def query(self, alert_filter: Optional[AlertFilter] = None) -> QueryResult:
        f = normalise_filter(alert_filter)
        key = cache.make_cache_key(QUERY_CACHE_PREFIX, f.to_dict())
        try:
            alerts = await self.store.query(f)
        except StoreUnavailable:
            cached = await cache.cache_get(key)
            if cached is None:
                raise
            now = self.store.now()
            alerts = [
                a for a in (Alert.from_dict(d) for d in cached)
                if not a.is_expired(now) and f.matches(a)
            ]
            logger.warning(
                "Store unavailable; serving %d cached alerts for %s", len(alerts), f.to_dict(),
            )
            return QueryResult(alerts=alerts, stale=True)

        await cache.cache_set(key, [a.to_dict() for a in alerts])
        return QueryResult(alerts=alerts)

    def stats(self) -> Dict[str, Any]:
        return {
            "broadcaster": self.broadcaster.stats(),
            "sequencer": self.sequencer.stats(),
        }

"""
store.py — Durable alert record (the single source of truth).

The store is the only component allowed to mutate alert state. It exposes a
small document interface over one ``alerts`` table:

    create            insert a new alert at version 1
    resolve           guarded active → resolved transition
    transition_resolved   unguarded transition used by the resolution gate
    get / query       point and filtered reads, newest first
    get_since         alerts with version above a threshold (resync)
    changed_since     alerts unknown to, or newer than, a version map (resync)
    purge_expired     physical reclamation of expired rows

═══════════════════════════════════════════════════════════════════════════
EXPIRY
═══════════════════════════════════════════════════════════════════════════

Every read filters on ``expires_at > now`` so an expired row is invisible
immediately, even before ``purge_expired`` deletes it. Deletion timing is
best-effort (see ``reclaimer.py``).

═══════════════════════════════════════════════════════════════════════════
CONCURRENT RESOLVES
═══════════════════════════════════════════════════════════════════════════

The transition is a compare-and-set:

    UPDATE alerts
       SET status='resolved', resolved_at=:now, version=:next
     WHERE id=:id AND version=:seen AND status='active'

Exactly one racing writer matches the row. A loser re-reads and returns
the already-resolved record, so resolve stays idempotent under contention.

Driver or connection failures surface as ``StoreUnavailable``.
"""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import (
    Any, AsyncIterator, Callable, List, Mapping, Optional, Tuple, Union,
)

from sqlalchemy import Float, Integer, String, Text, delete, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from alerthub.app.alerts.models import (
    Alert,
    AlertCategory,
    AlertFilter,
    AlertStatus,
    Position,
    generate_alert_id,
    utc_now,
)
from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.core.config import settings
from alerthub.app.core.database import Base, UTCDateTime
from alerthub.app.core.errors import (
    AuthorizationError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

PositionInput = Union[Position, Tuple[float, float], Mapping[str, Any], None]


# ═══════════════════════════════════════════════════════════════════════════
# ORM Record
# ═══════════════════════════════════════════════════════════════════════════

class AlertRecord(Base):
    """Persisted form of ``Alert`` — one row per alert id."""

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    category: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[str] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=AlertStatus.ACTIVE.value)
    version: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRecord":
        return cls(
            id=alert.id,
            category=alert.category.value,
            description=alert.description,
            latitude=alert.position.latitude if alert.position else None,
            longitude=alert.position.longitude if alert.position else None,
            status=alert.status.value,
            version=alert.version,
            created_at=alert.created_at,
            resolved_at=alert.resolved_at,
            expires_at=alert.expires_at,
        )

    def to_alert(self) -> Alert:
        position = None
        if self.latitude is not None and self.longitude is not None:
            position = Position(self.latitude, self.longitude)
        return Alert(
            id=self.id,
            category=AlertCategory(self.category),
            description=self.description,
            position=position,
            status=AlertStatus(self.status),
            created_at=self.created_at,
            resolved_at=self.resolved_at,
            version=self.version,
            expires_at=self.expires_at,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Input Validation
# ═══════════════════════════════════════════════════════════════════════════

def parse_category(value: Union[str, AlertCategory, None]) -> AlertCategory:
    """Coerce ``value`` into an ``AlertCategory`` or raise ``ValidationError``."""
    if isinstance(value, AlertCategory):
        return value
    try:
        return AlertCategory(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid category '{value}'. "
            f"Must be one of: {[c.value for c in AlertCategory]}",
            field="category",
        )


def _validate_description(description: Optional[str]) -> str:
    if description is None or not str(description).strip():
        raise ValidationError("Description must not be empty", field="description")
    return str(description).strip()


def _validate_position(position: PositionInput) -> Optional[Position]:
    if position is None:
        return None
    if isinstance(position, Position):
        lat, lon = position.latitude, position.longitude
    elif isinstance(position, Mapping):
        lat, lon = position.get("latitude"), position.get("longitude")
        if lat is None and lon is None:
            return None
    else:
        lat, lon = position

    if lat is None or lon is None:
        raise ValidationError(
            "Position needs both latitude and longitude", field="position",
        )
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise ValidationError("Position must be numeric", field="position")
    if math.isnan(lat) or math.isnan(lon):
        raise ValidationError("Position must be numeric", field="position")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError("Latitude must be within [-90, 90]", field="position.latitude")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError("Longitude must be within [-180, 180]", field="position.longitude")
    return Position(lat, lon)


def _as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def normalise_filter(alert_filter: Optional[AlertFilter]) -> AlertFilter:
    """UTC-normalise time bounds and reject an inverted window."""
    if alert_filter is None:
        return AlertFilter()
    from_time = _as_utc(alert_filter.from_time)
    to_time = _as_utc(alert_filter.to_time)
    if from_time and to_time and from_time > to_time:
        raise ValidationError(
            "'from' must not be later than 'to'", field="from",
            **{"from": from_time.isoformat(), "to": to_time.isoformat()},
        )
    return AlertFilter(category=alert_filter.category, from_time=from_time, to_time=to_time)


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class AlertStore:
    """
    SQLAlchemy-backed alert log.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Bound to the application's engine.
    sequencer : EventSequencer
        Source of per-alert versions.
    retention : timedelta, optional
        Lifetime of a record; defaults to ``ALERT_RETENTION_DAYS``.
    clock : callable, optional
        Returns the current aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sequencer: EventSequencer,
        *,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._sessions = session_factory
        self._sequencer = sequencer
        self._retention = retention or timedelta(days=settings.ALERT_RETENTION_DAYS)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session, translating connectivity failures to ``StoreUnavailable``."""
        try:
            async with self._sessions() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            logger.error("Store %s failed: %s", operation, e)
            raise StoreUnavailable(operation, str(e)) from e

    # ── Mutations ──

    async def create(
        self,
        category: Union[str, AlertCategory],
        description: str,
        position: PositionInput = None,
        *,
        alert_id: Optional[str] = None,
    ) -> Alert:
        """Persist a new active alert at version 1."""
        alert_category = parse_category(category)
        text_body = _validate_description(description)
        alert_position = _validate_position(position)

        alert_id = alert_id or generate_alert_id()
        now = self._clock()
        version = self._sequencer.next_version(alert_id)
        alert = Alert(
            id=alert_id,
            category=alert_category,
            description=text_body,
            position=alert_position,
            status=AlertStatus.ACTIVE,
            created_at=now,
            expires_at=now + self._retention,
            version=version,
        )

        async with self._session("create") as session:
            session.add(AlertRecord.from_alert(alert))
            await session.commit()

        self._sequencer.confirm(alert_id, version)
        logger.info(
            "Alert %s created [%s] v%d",
            alert.id, alert.category.value, alert.version,
            extra={"alert_id": alert.id, "version": alert.version},
        )
        return alert

    async def resolve(self, alert_id: str, authorized: bool) -> Alert:
        """
        Resolve ``alert_id`` on behalf of a caller.

        Raises ``AuthorizationError`` before touching storage when the
        caller lacks the admin claim. Already-resolved alerts are returned
        unchanged.
        """
        if not authorized:
            raise AuthorizationError("resolve")
        alert, _ = await self.transition_resolved(alert_id)
        return alert

    async def transition_resolved(self, alert_id: str) -> Tuple[Alert, bool]:
        """
        Move ``alert_id`` to resolved.

        Returns
        -------
        (Alert, bool)
            The current record and whether this call performed the
            transition (False for an already-resolved alert or a lost race).
        """
        now = self._clock()
        async with self._session("resolve") as session:
            record = await session.get(AlertRecord, alert_id)
            if record is None or record.expires_at <= now:
                raise NotFoundError("Alert", id=alert_id)

            current = record.to_alert()
            if current.is_resolved:
                logger.debug("Alert %s already resolved (v%d)", alert_id, current.version)
                return current, False

            version = self._sequencer.next_version(alert_id, current.version)
            result = await session.execute(
                update(AlertRecord)
                .where(
                    AlertRecord.id == alert_id,
                    AlertRecord.version == current.version,
                    AlertRecord.status == AlertStatus.ACTIVE.value,
                )
                .values(
                    status=AlertStatus.RESOLVED.value,
                    resolved_at=now,
                    version=version,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount == 1:
                self._sequencer.confirm(alert_id, version)
                resolved = current.resolved(now, version)
                logger.info(
                    "Alert %s resolved v%d", alert_id, version,
                    extra={"alert_id": alert_id, "version": version},
                )
                return resolved, True

            # Lost the compare-and-set: someone else resolved it first.
            winner = await session.get(AlertRecord, alert_id, populate_existing=True)
            if winner is None:
                raise NotFoundError("Alert", id=alert_id)
            logger.info("Alert %s resolve lost race; returning v%d", alert_id, winner.version)
            return winner.to_alert(), False

    # ── Reads ──

    async def get(self, alert_id: str) -> Alert:
        now = self._clock()
        async with self._session("get") as session:
            record = await session.get(AlertRecord, alert_id)
            if record is None or record.expires_at <= now:
                raise NotFoundError("Alert", id=alert_id)
            return record.to_alert()

    async def query(self, alert_filter: Optional[AlertFilter] = None) -> List[Alert]:
        """Non-expired alerts matching every supplied filter, newest first."""
        f = normalise_filter(alert_filter)
        stmt = select(AlertRecord).where(AlertRecord.expires_at > self._clock())
        if f.category is not None:
            stmt = stmt.where(AlertRecord.category == f.category.value)
        if f.from_time is not None:
            stmt = stmt.where(AlertRecord.created_at >= f.from_time)
        if f.to_time is not None:
            stmt = stmt.where(AlertRecord.created_at <= f.to_time)
        stmt = stmt.order_by(AlertRecord.created_at.desc(), AlertRecord.id.desc())

        async with self._session("query") as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [r.to_alert() for r in rows]

    async def get_since(self, version: int = 0) -> List[Alert]:
        """Non-expired alerts whose version exceeds ``version``, oldest first."""
        stmt = (
            select(AlertRecord)
            .where(
                AlertRecord.expires_at > self._clock(),
                AlertRecord.version > version,
            )
            .order_by(AlertRecord.created_at.asc(), AlertRecord.id.asc())
        )
        async with self._session("get_since") as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [r.to_alert() for r in rows]

    async def changed_since(self, known: Optional[Mapping[str, int]] = None) -> List[Alert]:
        """
        Alerts the caller does not hold at their current version.

        ``known`` maps alert id → highest version the caller has. ``None``
        or an empty mapping yields the full live snapshot.
        """
        if not known:
            return await self.get_since(0)
        alerts = await self.get_since(0)
        return [a for a in alerts if a.version > known.get(a.id, 0)]

    # ── Maintenance ──

    async def purge_expired(self) -> List[str]:
        """Delete expired rows; returns the purged ids."""
        now = self._clock()
        async with self._session("purge") as session:
            ids = (
                await session.execute(
                    select(AlertRecord.id).where(AlertRecord.expires_at <= now)
                )
            ).scalars().all()
            if ids:
                await session.execute(
                    delete(AlertRecord)
                    .where(AlertRecord.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        return list(ids)

    async def ping(self) -> None:
        async with self._session("ping") as session:
            await session.execute(text("SELECT 1"))

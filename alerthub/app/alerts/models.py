"""
models.py — Shared data structures for the alert distribution engine.

Defines:
    • AlertCategory — fixed incident categories
    • AlertStatus   — active → resolved lifecycle
    • EventKind     — what a pushed event represents
    • Position      — optional (latitude, longitude)
    • Alert         — the central incident record
    • AlertEvent    — one committed mutation, as fanned out to observers
    • AlertFilter   — query filter for the pull path
    • AuthClaim     — pre-validated caller capability

═══════════════════════════════════════════════════════════════════════════
VERSIONING
═══════════════════════════════════════════════════════════════════════════

Every mutation stamps a per-alert version:

    Mutation      Version    Status
    ─────────     ───────    ────────
    create        1          active
    resolve       2          resolved

Observers merge by ``(alert.id, alert.version)``: a record replaces the
local copy only when its version is strictly greater. Versions are not a
global sequence — no ordering is implied across different alert ids.

═══════════════════════════════════════════════════════════════════════════
RETENTION
═══════════════════════════════════════════════════════════════════════════

``expires_at = created_at + retention`` (7 days by default). Reads treat a
record as gone from ``expires_at`` onwards, regardless of whether the
reclaimer has physically deleted it yet.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertCategory(str, Enum):
    """Incident categories accepted at creation."""
    FIRE       = "fire"
    FLOOD      = "flood"
    EARTHQUAKE = "earthquake"
    VIOLENCE   = "violence"
    MEDICAL    = "medical"


class AlertStatus(str, Enum):
    """One-way lifecycle: active → resolved (no un-resolve)."""
    ACTIVE   = "active"
    RESOLVED = "resolved"


class EventKind(str, Enum):
    """Kind of a pushed event."""
    CREATED  = "created"
    RESOLVED = "resolved"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def generate_alert_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Position:
    """A known incident location in decimal degrees."""
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class Alert:
    """
    A single reported emergency.

    Instances are immutable snapshots of one committed version; a mutation
    produces a new ``Alert`` with a higher ``version``.

    Attributes
    ----------
    id : str
        Assigned at creation, never changes.
    category : AlertCategory
    description : str
        Non-empty free text.
    position : Position | None
        ``None`` means "location unknown" — never rendered as (0, 0).
    status : AlertStatus
    created_at : datetime
        UTC, immutable.
    resolved_at : datetime | None
        Set exactly once, on the active → resolved transition.
    version : int
        Per-alert mutation counter (1 on creation).
    expires_at : datetime
        End of the retention window.
    """
    id: str
    category: AlertCategory
    description: str
    created_at: datetime
    expires_at: datetime
    version: int = 1
    status: AlertStatus = AlertStatus.ACTIVE
    position: Optional[Position] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status is AlertStatus.RESOLVED

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def resolved(self, at: datetime, version: int) -> "Alert":
        """Copy of this alert in the resolved state at ``version``."""
        return replace(
            self,
            status=AlertStatus.RESOLVED,
            resolved_at=at,
            version=version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "description": self.description,
            "position": self.position.to_dict() if self.position else None,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": (
                self.resolved_at.isoformat() if self.resolved_at else None
            ),
            "version": self.version,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        pos = data.get("position")
        return cls(
            id=data["id"],
            category=AlertCategory(data["category"]),
            description=data["description"],
            position=(
                Position(pos["latitude"], pos["longitude"]) if pos else None
            ),
            status=AlertStatus(data["status"]),
            created_at=_parse_ts(data["created_at"]),
            resolved_at=_parse_ts(data.get("resolved_at")),
            version=int(data["version"]),
            expires_at=_parse_ts(data["expires_at"]),
        )


@dataclass(frozen=True)
class AlertEvent:
    """One committed mutation, as delivered to observer sessions."""
    kind: EventKind
    alert: Alert

    @property
    def alert_id(self) -> str:
        return self.alert.id

    @property
    def version(self) -> int:
        return self.alert.version

    @classmethod
    def for_alert(cls, alert: Alert) -> "AlertEvent":
        """Event describing the alert's current state."""
        kind = EventKind.RESOLVED if alert.is_resolved else EventKind.CREATED
        return cls(kind=kind, alert=alert)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "alert": self.alert.to_dict()}


@dataclass(frozen=True)
class AlertFilter:
    """Pull-path filter. Every supplied field must match; bounds are inclusive."""
    category: Optional[AlertCategory] = None
    from_time: Optional[datetime] = None
    to_time: Optional[datetime] = None

    def matches(self, alert: Alert) -> bool:
        if self.category is not None and alert.category is not self.category:
            return False
        if self.from_time is not None and alert.created_at < self.from_time:
            return False
        if self.to_time is not None and alert.created_at > self.to_time:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value if self.category else None,
            "from": self.from_time.isoformat() if self.from_time else None,
            "to": self.to_time.isoformat() if self.to_time else None,
        }


@dataclass(frozen=True)
class AuthClaim:
    """
    Caller capability, validated upstream.

    The engine trusts only ``is_admin``; ``subject_id`` is carried for
    audit logging.
    """
    is_admin: bool = False
    subject_id: Optional[str] = field(default=None)

"""
Pydantic schemas for the alert API.

Separated from the route handlers so they are reusable across the REST
routes, the WebSocket stream and tests.

``category`` is accepted as a plain string and validated by the store so an
unknown category produces the same 400 ``VALIDATION_ERROR`` envelope as any
other domain validation failure.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from alerthub.app.alerts.models import Alert


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class PositionIn(BaseModel):
    """Incident location; omit entirely when unknown."""
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[13.0827],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[80.2707],
    )


class CreateAlertRequest(BaseModel):
    """Body of ``POST /api/v1/alerts``."""
    category: str = Field(
        ..., examples=["fire"],
        description="fire / flood / earthquake / violence / medical",
    )
    description: str = Field(..., examples=["building ablaze"])
    position: Optional[PositionIn] = Field(
        None, description="Omit when the location is unknown",
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class PositionOut(BaseModel):
    latitude: float
    longitude: float


class AlertOut(BaseModel):
    """Serialised ``Alert``. ``position`` is null when unknown, never (0, 0)."""
    id: str
    category: str
    description: str
    position: Optional[PositionOut] = None
    status: str
    created_at: str
    resolved_at: Optional[str] = None
    version: int
    expires_at: str

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertOut":
        return cls(**alert.to_dict())


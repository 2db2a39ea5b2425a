"""
FastAPI dependencies.

The ``AlertService`` lives on ``app.state`` (built in the lifespan), so
routes receive it by injection rather than through a module global.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from alerthub.app.alerts.models import AuthClaim
from alerthub.app.alerts.service import AlertService
from alerthub.app.core.security import claim_from_header


def get_alert_service(request: Request) -> AlertService:
    return request.app.state.alert_service


def get_claim(authorization: Optional[str] = Header(None)) -> AuthClaim:
    """Caller claim from ``Authorization: Bearer <jwt>``; 401 when absent/invalid."""
    return claim_from_header(authorization)

"""
Bearer-token verification → authorisation claim.

Tokens are minted by an external identity service (HS256 JWT carrying
``sub`` and ``role``). This module only verifies them and reduces the
payload to the ``AuthClaim`` the resolution gate understands, so the gate
keeps a stable interface if the credential mechanism changes.
"""

from __future__ import annotations

import logging
from typing import Optional

import jwt as pyjwt

from alerthub.app.alerts.models import AuthClaim
from alerthub.app.core.config import settings
from alerthub.app.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


def claim_from_token(token: str) -> AuthClaim:
    """Verify ``token`` and build the caller's claim."""
    try:
        payload = pyjwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except pyjwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except pyjwt.InvalidTokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    return AuthClaim(
        is_admin=payload.get("role") == settings.ADMIN_ROLE,
        subject_id=str(subject) if subject is not None else None,
    )


def claim_from_header(authorization: Optional[str]) -> AuthClaim:
    """Parse an ``Authorization: Bearer <jwt>`` header value."""
    if not authorization:
        raise AuthenticationError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Expected 'Authorization: Bearer <token>'")
    return claim_from_token(token.strip())

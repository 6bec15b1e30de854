"""
Caller Identity
===============
Verifies `Authorization: Bearer <jwt>` and turns the claims into a Requester.

Tokens are issued elsewhere; this module only checks them.
Claims: `sub` (organization id, or `organizationId` when present) and
`userType` (`admin` grants access to every organization).

pip install PyJWT
"""

from typing import Optional

import jwt
import structlog
from fastapi import Header, Request

from donations.errors import AuthenticationError
from donations.models import Requester
from donations.settings import DonationSettings

logger = structlog.get_logger().bind(component="auth")


def requester_from_token(token: str, settings: DonationSettings) -> Requester:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.info("token_rejected", error=str(e))
        raise AuthenticationError("Invalid token")

    subject = claims.get("organizationId") or claims.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")
    return Requester(
        organization_id=str(subject),
        is_admin=str(claims.get("userType", "")).lower() == "admin",
    )


async def get_requester(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Requester:
    """FastAPI dependency for authenticated routes."""
    if not authorization:
        raise AuthenticationError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return requester_from_token(token.strip(), request.app.state.container.settings)

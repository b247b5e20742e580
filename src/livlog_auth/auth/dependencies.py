"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current user from the request.

The authenticated user travels as a typed CurrentUser value produced by
a dependency, never as a string key looked up in some ambient context.
Validation is pure (signature + expiry), so no database session is opened
just to authenticate.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from livlog_auth.auth.tokens import CredentialIssuer, ExpiredTokenError, TokenError


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated user making the request."""

    user_id: uuid.UUID
    email: Optional[str] = None


def get_issuer(request: Request) -> CredentialIssuer:
    """The process-wide issuer built at startup (see main.create_app)."""
    return request.app.state.issuer


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    issuer: CredentialIssuer = Depends(get_issuer),
) -> CurrentUser:
    """Extract the current user (required: 401 if missing or invalid)."""
    if not authorization:
        raise _unauthorized("Authorization header required")

    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token:
        raise _unauthorized("Invalid authorization header format")

    try:
        claims = issuer.validate(token)
    except ExpiredTokenError:
        raise _unauthorized("Token has expired")
    except TokenError:
        raise _unauthorized("Invalid token")

    return CurrentUser(user_id=claims.user_id, email=claims.email)

"""Session authentication for FastAPI.

The auth service issues HS256 session JWTs. This module only verifies them
and turns the claims into a ``Principal``; sign-in, sign-up and email
verification live in the auth service.
"""

from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated user on whose behalf an action is taken."""

    principal_id: str
    email_verified: bool = False


def decode_session_token(token: str, secret: str) -> Principal:
    """Verify and decode a session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    try:
        payload = pyjwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={
                "verify_exp": True,
                "require": ["sub", "exp"],
            },
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    return Principal(principal_id=sub, email_verified=payload.get("email_verified") is True)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> Principal:
    """FastAPI dependency that extracts and validates the session JWT.

    Usage::

        @router.post("/protected")
        async def protected(principal: Principal = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    settings = get_settings()
    if not settings.session_secret:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")

    principal = decode_session_token(credentials.credentials, settings.session_secret)

    # Exposed to the exception handlers for audit logging
    request.state.user_id = principal.principal_id

    return principal

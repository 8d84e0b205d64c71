"""
Fiscalismia - Security Layer

Bearer JWT authentication for API endpoints.

The raw Authorization header is kept on the AuthContext so that internal
sub-requests (TSV to SQL conversion during the ETL) run as the same principal.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from .config import Settings, get_settings


@dataclass(frozen=True)
class AuthContext:
    """
    Authentication context for the current request.

    Attributes:
        subject: The authenticated user (JWT "sub" or "user" claim)
        authorization: The Authorization header exactly as received
    """

    subject: str | None
    authorization: str


def _decode_jwt(token: str, secret: str) -> dict | None:
    """Decode an HS256 token. Returns the payload if valid, None otherwise."""
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token has expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {type(e).__name__}")
        return None


async def get_current_user(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """
    FastAPI dependency for authenticating requests.

    Expects `Authorization: Bearer <token>`.

    Raises:
        HTTPException 401: If authentication fails
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    secret = settings.FISCALISMIA_JWT_SECRET
    if not secret:
        logger.error("FISCALISMIA_JWT_SECRET not configured, cannot validate JWT")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication unavailable",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = _decode_jwt(authorization[7:], secret)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub") or payload.get("user")
    logger.debug(f"Authenticated via JWT: subject={subject}")
    return AuthContext(subject=subject, authorization=authorization)

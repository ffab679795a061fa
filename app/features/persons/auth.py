"""
Bearer token utilities.

Tokens are issued by the platform's login service; this backend only
verifies them and reads the person ("sub") and tenant ("tid") claims.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import jwt
from fastapi import HTTPException, status

from app.core import config


@dataclass(frozen=True)
class TokenClaims:
    person_id: str
    tenant_id: str | None


def verify_jwt_token(token: str) -> TokenClaims:
    """
    Verify a bearer token and return its claims.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            config.AUTH_JWT_SECRET,
            algorithms=[config.AUTH_JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenClaims(person_id=payload["sub"], tenant_id=payload.get("tid"))


def issue_jwt_token(person_id: str, tenant_id: str | None = None, expires_in: int = 3600) -> str:
    """Issue a token for a person; used by seed scripts and tests."""
    payload = {
        "sub": person_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if tenant_id:
        payload["tid"] = tenant_id
    return jwt.encode(payload, config.AUTH_JWT_SECRET, algorithm=config.AUTH_JWT_ALGORITHM)

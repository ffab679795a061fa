"""
FastAPI dependencies for identifying the calling person.
"""
from dataclasses import dataclass
from typing import Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.persons.models import Person
from app.features.persons.auth import verify_jwt_token


security = HTTPBearer()


@dataclass(frozen=True)
class Identity:
    """The authenticated person and the tenant the request acts in."""
    person: Person
    tenant_id: str | None


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Identity:
    """
    Resolve the bearer token to a person and tenant.

    The tenant comes from the token's "tid" claim and falls back to the
    person's home tenant.

    Usage:
        @router.get("/me")
        async def get_me(identity: Identity = Depends(get_current_identity)):
            return identity.person
    """
    claims = verify_jwt_token(credentials.credentials)

    result = await db.execute(
        select(Person).where(Person.id == claims.person_id, Person.deleted_at.is_(None))
    )
    person = result.scalar_one_or_none()

    if person is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown person",
        )

    if not person.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Person account is deactivated",
        )

    return Identity(person=person, tenant_id=claims.tenant_id or person.tenant_id)


async def get_current_person(
    identity: Annotated[Identity, Depends(get_current_identity)]
) -> Person:
    return identity.person


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"

"""
Person feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.persons.models import Person
from app.features.persons.schemas import PersonCreate, PersonUpdate, PersonResponse
from app.features.persons.dependencies import Identity, get_current_identity
from app.features.permissions.dependencies import get_authz, ensure_permission, require_permission
from app.features.permissions.engine import AuthorizationEngine
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["persons"])


async def get_person_by_id(
    person_id: str,
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Person:
    """Get a person that is not soft-deleted or raise 404."""
    result = await db.execute(
        select(Person).where(Person.id == person_id, Person.deleted_at.is_(None))
    )
    person = result.scalar_one_or_none()

    if person is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Person not found"
        )

    return person


@router.get("/me", response_model=PersonResponse)
async def get_current_person_profile(
    identity: Annotated[Identity, Depends(get_current_identity)]
):
    """Get the authenticated person's profile."""
    return identity.person


@router.post("/", response_model=PersonResponse, status_code=status.HTTP_201_CREATED)
async def create_person(
    person_data: PersonCreate,
    request: Request,
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a person in a tenant (CREATE_PERSONS in that tenant)."""
    tenant_id = person_data.tenant_id or identity.tenant_id
    await ensure_permission(authz, identity, "CREATE_PERSONS", tenant_id, request)

    new_person = Person(**person_data.model_dump(exclude={"tenant_id"}), tenant_id=tenant_id)
    db.add(new_person)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Person with this email already exists"
        )
    await db.refresh(new_person)

    log.info("Created person %s in tenant %s", new_person.id, tenant_id)
    return new_person


@router.get("/", response_model=list[PersonResponse])
async def list_persons(
    identity: Annotated[Identity, Depends(require_permission("VIEW_PERSONS"))],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50
):
    """List persons whose home tenant is the current tenant."""
    query = (
        select(Person)
        .where(Person.tenant_id == identity.tenant_id, Person.deleted_at.is_(None))
        .order_by(Person.last_name, Person.first_name)
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{person_id}", response_model=PersonResponse)
async def get_person(
    request: Request,
    person: Annotated[Person, Depends(get_person_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)]
):
    """Get a person by ID."""
    if person.id != identity.person.id:
        await ensure_permission(authz, identity, "VIEW_PERSONS", person.tenant_id, request)
    return person


@router.patch("/{person_id}", response_model=PersonResponse)
async def update_person(
    update_data: PersonUpdate,
    request: Request,
    person: Annotated[Person, Depends(get_person_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update a person; a status change takes effect on the next check."""
    await ensure_permission(authz, identity, "EDIT_PERSONS", person.tenant_id, request)

    # Update only provided fields
    update_dict = update_data.model_dump(exclude_unset=True)
    for field, value in update_dict.items():
        setattr(person, field, value)

    await db.commit()
    await db.refresh(person)

    if "status" in update_dict:
        authz.cache.invalidate(person.id)
    return person


@router.delete("/{person_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_person(
    request: Request,
    person: Annotated[Person, Depends(get_person_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Soft-delete a person. Their assignments stop applying at once."""
    await ensure_permission(authz, identity, "DELETE_PERSONS", person.tenant_id, request)

    person.soft_delete()
    await db.commit()

    authz.cache.invalidate(person.id)
    log.info("Deleted person %s", person.id)

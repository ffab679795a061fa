"""
Seed script to bootstrap the first administrator.

Run this script after database initialization to create:
- A default tenant
- An administrator person whose home tenant it is
- A global SUPER_ADMIN role assignment for that person

It prints a bearer token for the administrator so the API can be used
right away. Running it again reuses the existing rows.

Usage:
    uv run python -m scripts.seed_admin
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db, AsyncSessionLocal
from app.features.permissions.engine import build_engine
from app.features.permissions.hierarchy import SUPER_ADMIN
from app.features.persons.auth import issue_jwt_token
from app.features.persons.models import Person
from app.features.tenants.models import Tenant
from app.utils import get_logger


log = get_logger(__name__)


DEFAULT_TENANT = {
    "name": os.environ.get("SEED_TENANT_NAME", "Default Tenant"),
    "slug": os.environ.get("SEED_TENANT_SLUG", "default"),
}

DEFAULT_ADMIN = {
    "email": os.environ.get("SEED_ADMIN_EMAIL", "admin@example.com"),
    "first_name": "Platform",
    "last_name": "Administrator",
}


async def seed_tenant(db: AsyncSession) -> Tenant:
    """Create the default tenant unless its slug is taken."""
    result = await db.execute(select(Tenant).where(Tenant.slug == DEFAULT_TENANT["slug"]))
    tenant = result.scalars().first()
    if tenant:
        log.debug("Tenant '%s' already exists, skipping", tenant.slug)
        return tenant

    tenant = Tenant(**DEFAULT_TENANT)
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    log.info("Created tenant: %s", tenant.slug)
    return tenant


async def seed_admin(db: AsyncSession, tenant: Tenant) -> Person:
    """Create the administrator person unless the email is taken."""
    result = await db.execute(select(Person).where(Person.email == DEFAULT_ADMIN["email"]))
    admin = result.scalars().first()
    if admin:
        log.debug("Person '%s' already exists, skipping", admin.email)
        return admin

    admin = Person(**DEFAULT_ADMIN, tenant_id=tenant.id)
    db.add(admin)
    await db.commit()
    await db.refresh(admin)
    log.info("Created administrator: %s", admin.email)
    return admin


async def main():
    """Main function to seed the first administrator."""
    log.info("Starting administrator seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        tenant = await seed_tenant(db)
        admin = await seed_admin(db, tenant)
        break  # Only use first session

    authz = build_engine(AsyncSessionLocal)
    assignment = await authz.assignments.assign_role(
        subject_id=admin.id,
        tenant_id=None,
        role_type=SUPER_ADMIN,
        assigned_by=None,
        is_primary=True,
    )

    log.info("Administrator seeding completed successfully!")
    log.info("  tenant:     %s (%s)", tenant.slug, tenant.id)
    log.info("  person:     %s (%s)", admin.email, admin.id)
    log.info("  assignment: %s %s (global)", assignment.role_type, assignment.id)
    print(issue_jwt_token(admin.id, tenant.id, expires_in=24 * 3600))


if __name__ == "__main__":
    asyncio.run(main())

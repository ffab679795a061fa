"""Shared pytest fixtures for the authorization engine tests."""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database.engine import get_db, init_db, make_session_factory
from app.features.permissions.audit import AuditEvent, AuditSink
from app.features.permissions.engine import AuthorizationEngine, build_engine
from app.features.persons.auth import issue_jwt_token
from app.features.persons.models import Person, PersonStatus
from app.features.tenants.models import Tenant


class RecordingAuditSink(AuditSink):
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]

    def of(self, action: str) -> List[AuditEvent]:
        return [event for event in self.events if event.action == action]


@pytest_asyncio.fixture()
async def db_engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite database, fresh for every test."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authz.sqlite'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture()
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture()
def authz(session_factory: async_sessionmaker[AsyncSession], audit: RecordingAuditSink) -> AuthorizationEngine:
    return build_engine(
        session_factory,
        audit=audit,
        cache_ttl_seconds=60,
        read_timeout=2.0,
        retry_backoff=0,
        include_global=True,
    )


@pytest.fixture()
def make_tenant(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[Tenant]]:
    counter = {"n": 0}

    async def _make(name: Optional[str] = None, is_active: bool = True) -> Tenant:
        counter["n"] += 1
        async with session_factory() as session:
            tenant = Tenant(
                name=name or f"Tenant {counter['n']}",
                slug=f"tenant-{counter['n']}",
                is_active=is_active,
            )
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)
            return tenant

    return _make


@pytest.fixture()
def make_person(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[Person]]:
    counter = {"n": 0}

    async def _make(tenant_id: Optional[str] = None, status: PersonStatus = PersonStatus.ACTIVE) -> Person:
        counter["n"] += 1
        async with session_factory() as session:
            person = Person(
                email=f"person{counter['n']}@example.com",
                first_name="Test",
                last_name=f"Person {counter['n']}",
                tenant_id=tenant_id,
                status=status,
            )
            session.add(person)
            await session.commit()
            await session.refresh(person)
            return person

    return _make


@pytest_asyncio.fixture()
async def tenant(make_tenant) -> Tenant:
    return await make_tenant("Tenant T")


@pytest_asyncio.fixture()
async def subject(make_person, tenant: Tenant) -> Person:
    return await make_person(tenant.id)


@pytest_asyncio.fixture()
async def admin(make_person, tenant: Tenant, authz: AuthorizationEngine) -> Person:
    """A person holding a global SUPER_ADMIN assignment."""

    person = await make_person(tenant.id)
    await authz.assignments.assign_role(person.id, None, "SUPER_ADMIN", assigned_by=None, is_primary=True)
    return person


@pytest.fixture()
def auth_headers() -> Callable[..., dict]:
    """Bearer header for a person, acting in their home tenant unless told otherwise."""

    def _headers(person: Person, tenant_id: Optional[str] = None) -> dict:
        return {"Authorization": f"Bearer {issue_jwt_token(person.id, tenant_id or person.tenant_id)}"}

    return _headers


@pytest_asyncio.fixture()
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    authz: AuthorizationEngine,
) -> AsyncIterator[AsyncClient]:
    """HTTPX client bound to the app, with the database and engine swapped for the test ones."""

    from app.main import app

    async def _get_test_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    previous_engine = app.state.authz
    app.state.authz = authz
    app.state.limiter.enabled = False
    app.dependency_overrides[get_db] = _get_test_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.authz = previous_engine
    app.state.limiter.enabled = True

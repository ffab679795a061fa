"""
Wiring of the authorization engine components.

One ``AuthorizationEngine`` per process; the FastAPI app keeps it on
``app.state.authz``. Tests build their own against a scratch database.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.assignments import RoleAssignmentStore
from app.features.permissions.audit import AuditSink, DatabaseAuditSink, LoggingAuditSink
from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.catalog import PermissionCatalog, get_catalog
from app.features.permissions.gate import AuthorizationGate
from app.features.permissions.grants import GrantStore
from app.features.permissions.hierarchy import RoleHierarchyRegistry
from app.features.permissions.resolver import PermissionResolver
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class AuthorizationEngine:
    catalog: PermissionCatalog
    cache: ResolvedPermissionCache
    audit: AuditSink
    registry: RoleHierarchyRegistry
    grants: GrantStore
    assignments: RoleAssignmentStore
    resolver: PermissionResolver
    gate: AuthorizationGate


def audit_sink_from_config(session_factory: async_sessionmaker[AsyncSession]) -> AuditSink:
    if config.AUDIT_SINK == "database":
        return DatabaseAuditSink(session_factory)
    if config.AUDIT_SINK != "logging":
        log.warning("Unknown AUDIT_SINK %r, falling back to logging", config.AUDIT_SINK)
    return LoggingAuditSink()


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    audit: Optional[AuditSink] = None,
    cache_ttl_seconds: Optional[float] = None,
    read_timeout: Optional[float] = None,
    retry_backoff: Optional[float] = None,
    include_global: Optional[bool] = None,
) -> AuthorizationEngine:
    """Assemble every component around one session factory, audit sink and cache."""
    catalog = get_catalog()
    cache = ResolvedPermissionCache(
        config.AUTHZ_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
    )
    audit = audit or audit_sink_from_config(session_factory)
    registry = RoleHierarchyRegistry(session_factory, audit, cache, catalog=catalog)
    resolver = PermissionResolver(
        session_factory,
        registry,
        cache,
        catalog=catalog,
        read_timeout=read_timeout,
        retry_backoff=retry_backoff,
        include_global=include_global,
    )
    log.info(
        "Authorization engine ready: catalog %s (%d keys), hierarchy %s",
        catalog.version, len(catalog), registry.version,
    )
    return AuthorizationEngine(
        catalog=catalog,
        cache=cache,
        audit=audit,
        registry=registry,
        grants=GrantStore(session_factory, audit, cache, catalog=catalog),
        assignments=RoleAssignmentStore(session_factory, registry, audit, cache),
        resolver=resolver,
        gate=AuthorizationGate(resolver, audit),
    )

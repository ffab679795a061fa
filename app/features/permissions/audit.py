"""
Audit events produced by the authorization engine.

The engine only produces events; storing and reviewing them belongs to the
compliance subsystem. Two sinks ship here: one that logs, one that writes
``AuditLog`` rows.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.base import utcnow
from app.features.permissions.models import AuditLog
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class AuditSink:
    """Receives audit events. Subclasses override ``write``."""

    async def write(self, event: AuditEvent) -> None:
        raise NotImplementedError

    async def emit(self, event: AuditEvent) -> None:
        # An audit failure never changes an authorization outcome
        try:
            await self.write(event)
        except Exception:
            log.exception("Failed to emit audit event %s for %s:%s", event.action, event.resource_type, event.resource_id)


class LoggingAuditSink(AuditSink):
    async def write(self, event: AuditEvent) -> None:
        log.info(
            "Audit: actor=%s action=%s resource=%s:%s tenant=%s details=%s",
            event.actor_id, event.action, event.resource_type, event.resource_id, event.tenant_id, event.details,
        )


class DatabaseAuditSink(AuditSink):
    """Writes each event as an ``AuditLog`` row in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def write(self, event: AuditEvent) -> None:
        async with self.session_factory() as session:
            session.add(AuditLog(
                actor_id=event.actor_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                tenant_id=event.tenant_id,
                details=_json_safe(event.details),
                ip_address=event.details.get("ip_address"),
                user_agent=event.details.get("user_agent"),
            ))
            await session.commit()


def _json_safe(details: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in details.items()
    }

"""
Authorization gate: the enforcement point request handlers call.

Always answers with a bool. Unknown keys are denied, and a store that cannot be
read denies too. Every denial is reported to the audit sink.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.features.permissions.audit import AuditEvent, AuditSink
from app.features.permissions.errors import AuthorizationUnavailableError
from app.features.permissions.resolver import PermissionResolver
from app.utils import get_logger


log = get_logger(__name__)

DENIED_ACTION = "authorization.denied"


class AuthorizationGate:
    def __init__(self, resolver: PermissionResolver, audit: AuditSink):
        self.resolver = resolver
        self.audit = audit

    async def _resolved(self, subject_id: str, tenant_id: Optional[str]) -> Optional[Dict[str, bool]]:
        try:
            return await self.resolver.resolve(subject_id, tenant_id)
        except AuthorizationUnavailableError:
            log.warning("Permission store unavailable, denying %s in tenant %s", subject_id, tenant_id)
            return None

    async def _deny(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        keys: List[str],
        mode: str,
        reason: str,
        context: Optional[Dict[str, Any]],
    ) -> bool:
        log.info("Denied %s (%s %s) in tenant %s: %s", subject_id, mode, keys, tenant_id, reason)
        details: Dict[str, Any] = {"permission_keys": keys, "mode": mode, "reason": reason, "outcome": "denied"}
        if context:
            details.update(context)
        await self.audit.emit(AuditEvent(
            action=DENIED_ACTION,
            resource_type="permission",
            resource_id=None,
            actor_id=subject_id,
            tenant_id=tenant_id,
            details=details,
        ))
        return False

    async def check(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        keys: Iterable[str],
        mode: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Dict[str, bool]]:
        """Decide ``keys`` in ``mode`` ("any" or "all") and return the per-key outcomes too."""
        keys = list(keys)
        outcomes = {key: False for key in keys}
        if not keys:
            return await self._deny(subject_id, tenant_id, keys, mode, "no_permissions_requested", context), outcomes

        resolved = await self._resolved(subject_id, tenant_id)
        if resolved is None:
            return await self._deny(subject_id, tenant_id, keys, mode, "unavailable", context), outcomes

        # Unknown keys are absent from the resolved map and read as denied
        outcomes = {key: resolved.get(key, False) for key in keys}
        allowed = any(outcomes.values()) if mode == "any" else all(outcomes.values())
        if allowed:
            return True, outcomes
        return await self._deny(subject_id, tenant_id, keys, mode, "not_granted", context), outcomes

    async def authorize(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        required_key: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        allowed, _ = await self.check(subject_id, tenant_id, [required_key], "all", context)
        return allowed

    async def authorize_any(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        required_keys: Iterable[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """True when at least one of ``required_keys`` is granted."""
        allowed, _ = await self.check(subject_id, tenant_id, required_keys, "any", context)
        return allowed

    async def authorize_all(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        required_keys: Iterable[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """True when every one of ``required_keys`` is granted."""
        allowed, _ = await self.check(subject_id, tenant_id, required_keys, "all", context)
        return allowed

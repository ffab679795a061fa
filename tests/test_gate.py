"""Authorization gate tests."""

import pytest

from app.features.permissions.audit import AuditSink
from app.features.permissions.errors import AuthorizationUnavailableError
from app.features.permissions.gate import DENIED_ACTION, AuthorizationGate


pytestmark = pytest.mark.asyncio


class _UnavailableResolver:
    async def resolve(self, subject_id, tenant_id):
        raise AuthorizationUnavailableError("Permission store is unavailable")


async def test_authorize(authz, subject, tenant, audit) -> None:
    await authz.assignments.assign_role(subject.id, tenant.id, "TRAINER", assigned_by=None)

    assert await authz.gate.authorize(subject.id, tenant.id, "VIEW_ENROLLMENTS")
    assert not await authz.gate.authorize(subject.id, tenant.id, "EDIT_COURSES")
    assert len(audit.of(DENIED_ACTION)) == 1


async def test_unknown_key_is_denied(authz, admin, tenant) -> None:
    assert await authz.gate.authorize(admin.id, tenant.id, "EDIT_COURSES")
    assert not await authz.gate.authorize(admin.id, tenant.id, "LAUNCH_ROCKETS")


async def test_authorize_any_and_all(authz, subject, tenant) -> None:
    await authz.assignments.assign_role(subject.id, tenant.id, "MANAGER", assigned_by=None)

    assert await authz.gate.authorize_any(subject.id, tenant.id, ["DELETE_COURSES", "EDIT_EMPLOYEES"])
    assert not await authz.gate.authorize_any(subject.id, tenant.id, ["DELETE_COURSES", "DELETE_USERS"])
    assert await authz.gate.authorize_all(subject.id, tenant.id, ["VIEW_EMPLOYEES", "EDIT_EMPLOYEES"])
    assert not await authz.gate.authorize_all(subject.id, tenant.id, ["VIEW_EMPLOYEES", "DELETE_EMPLOYEES"])


async def test_empty_key_lists_are_denied(authz, admin, tenant, audit) -> None:
    assert not await authz.gate.authorize_any(admin.id, tenant.id, [])
    assert not await authz.gate.authorize_all(admin.id, tenant.id, [])

    reasons = [event.details["reason"] for event in audit.of(DENIED_ACTION)]
    assert reasons == ["no_permissions_requested", "no_permissions_requested"]


async def test_denial_is_audited_with_context(authz, subject, tenant, audit) -> None:
    context = {"ip_address": "10.0.0.7", "user_agent": "pytest", "path": "/courses/1", "method": "DELETE"}

    allowed = await authz.gate.authorize_all(subject.id, tenant.id, ["DELETE_COURSES", "VIEW_COURSES"], context=context)

    assert not allowed
    [event] = audit.of(DENIED_ACTION)
    assert event.actor_id == subject.id
    assert event.tenant_id == tenant.id
    assert event.details["permission_keys"] == ["DELETE_COURSES", "VIEW_COURSES"]
    assert event.details["mode"] == "all"
    assert event.details["reason"] == "not_granted"
    assert event.details["outcome"] == "denied"
    assert event.details["ip_address"] == "10.0.0.7"
    assert event.details["path"] == "/courses/1"


async def test_gate_fails_closed(subject, tenant, audit) -> None:
    gate = AuthorizationGate(_UnavailableResolver(), audit)

    assert not await gate.authorize(subject.id, tenant.id, "VIEW_COURSES")
    assert not await gate.authorize_any(subject.id, tenant.id, ["VIEW_COURSES"])
    assert [event.details["reason"] for event in audit.of(DENIED_ACTION)] == ["unavailable", "unavailable"]


async def test_failing_audit_sink_does_not_change_the_answer(authz, subject, tenant) -> None:
    class _ExplodingSink(AuditSink):
        async def write(self, event):
            raise RuntimeError("sink down")

    gate = AuthorizationGate(authz.resolver, _ExplodingSink())

    assert not await gate.authorize(subject.id, tenant.id, "DELETE_COURSES")


async def test_check_returns_outcomes_from_one_resolution(authz, subject, tenant, audit) -> None:
    await authz.assignments.assign_role(subject.id, tenant.id, "MANAGER", assigned_by=None)
    calls = []
    resolve = authz.resolver.resolve

    async def counting_resolve(subject_id, tenant_id):
        calls.append((subject_id, tenant_id))
        return await resolve(subject_id, tenant_id)

    authz.resolver.resolve = counting_resolve
    gate = AuthorizationGate(authz.resolver, audit)

    allowed, outcomes = await gate.check(subject.id, tenant.id, ["VIEW_EMPLOYEES", "DELETE_EMPLOYEES"], "any")

    assert allowed
    assert outcomes == {"VIEW_EMPLOYEES": True, "DELETE_EMPLOYEES": False}
    assert calls == [(subject.id, tenant.id)]


async def test_check_fails_closed_with_all_false_outcomes(subject, tenant, audit) -> None:
    gate = AuthorizationGate(_UnavailableResolver(), audit)

    allowed, outcomes = await gate.check(subject.id, tenant.id, ["VIEW_COURSES"], "all")

    assert not allowed
    assert outcomes == {"VIEW_COURSES": False}

"""HTTP API tests."""

import pytest

from app.features.permissions.audit import AuditEvent, DatabaseAuditSink


pytestmark = pytest.mark.asyncio


async def test_health(async_client) -> None:
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}

    root = (await async_client.get("/")).json()
    assert root["authorization"]["catalog_version"]
    assert root["authorization"]["hierarchy_version"]


async def test_missing_token_is_rejected(async_client) -> None:
    response = await async_client.get("/permissions/roles")
    assert response.status_code in (401, 403)


async def test_denied_request_gets_structured_body(async_client, subject, audit, auth_headers) -> None:
    response = await async_client.get("/permissions/roles", headers=auth_headers(subject))

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "access_denied"
    assert "VIEW_ROLES" in body["message"]
    assert body["timestamp"]

    [event] = audit.of("authorization.denied")
    assert event.details["path"] == "/permissions/roles"
    assert event.details["method"] == "GET"


async def test_catalog(async_client, subject, auth_headers) -> None:
    response = await async_client.get("/permissions/catalog", params={"resource": "COURSES"}, headers=auth_headers(subject))

    assert response.status_code == 200
    keys = {entry["key"] for entry in response.json()["permissions"]}
    assert "EDIT_COURSES" in keys
    assert all(key.endswith("_COURSES") for key in keys)


async def test_check_and_effective(async_client, authz, subject, tenant, auth_headers) -> None:
    await authz.assignments.assign_role(subject.id, tenant.id, "MANAGER", assigned_by=None)
    headers = auth_headers(subject)

    response = await async_client.post(
        "/permissions/check",
        json={"permission_keys": ["VIEW_EMPLOYEES", "DELETE_EMPLOYEES"], "mode": "any"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json() == {"allowed": True, "results": {"VIEW_EMPLOYEES": True, "DELETE_EMPLOYEES": False}}

    response = await async_client.post(
        "/permissions/check",
        json={"permission_keys": ["VIEW_EMPLOYEES", "DELETE_EMPLOYEES"]},
        headers=headers,
    )
    assert response.json()["allowed"] is False

    response = await async_client.get("/permissions/effective", params={"explain": True}, headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["permissions"]["EDIT_EMPLOYEES"] is True
    assert "EDIT_EMPLOYEES" in body["granted"]
    assert body["decisions"]["VIEW_COURSES"]["role_type"] == "EMPLOYEE"


async def test_reading_someone_else_needs_view_roles(async_client, subject, admin, auth_headers) -> None:
    response = await async_client.get(
        "/permissions/effective", params={"person_id": admin.id}, headers=auth_headers(subject)
    )
    assert response.status_code == 403

    response = await async_client.get(
        "/permissions/effective", params={"person_id": subject.id}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert not any(response.json()["permissions"].values())


async def test_custom_role_lifecycle(async_client, admin, tenant, auth_headers) -> None:
    headers = auth_headers(admin)

    response = await async_client.post(
        "/permissions/roles",
        json={"name": "Junior Admin", "parent_role_type": "admin", "description": "No deletes"},
        headers=headers,
    )
    assert response.status_code == 201
    assert response.json()["role_type"] == "JUNIOR_ADMIN"
    assert response.json()["tenant_id"] == tenant.id

    duplicate = await async_client.post(
        "/permissions/roles", json={"name": "junior admin", "parent_role_type": "MANAGER"}, headers=headers
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_role"

    orphan = await async_client.post(
        "/permissions/roles", json={"name": "Night Shift", "parent_role_type": "SUPERVISOR"}, headers=headers
    )
    assert orphan.status_code == 422
    assert orphan.json()["code"] == "invalid_parent"

    response = await async_client.put(
        "/permissions/roles/JUNIOR_ADMIN/grants/DELETE_EMPLOYEES", json={"granted": False}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["version"] == 1

    invalid = await async_client.put(
        "/permissions/roles/JUNIOR_ADMIN/grants/DELETE_EVERYTHING", json={"granted": False}, headers=headers
    )
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "invalid_permission_key"

    roles = (await async_client.get("/permissions/roles", headers=headers)).json()["roles"]
    assert "JUNIOR_ADMIN" in {role["role_type"] for role in roles}

    response = await async_client.get("/permissions/roles/junior_admin", headers=headers)
    assert response.json()["parent"] == "ADMIN"
    assert response.json()["is_custom"] is True

    response = await async_client.delete("/permissions/roles/JUNIOR_ADMIN", headers=headers)
    assert response.status_code == 204
    response = await async_client.get("/permissions/roles/JUNIOR_ADMIN", headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "unknown_role"


async def test_assignment_and_grant_flow(async_client, authz, admin, subject, tenant, auth_headers) -> None:
    headers = auth_headers(admin)

    response = await async_client.post(
        "/permissions/assignments",
        json={"person_id": subject.id, "role_type": "employee", "is_primary": True},
        headers=headers,
    )
    assert response.status_code == 201
    assignment = response.json()
    assert assignment["role_type"] == "EMPLOYEE"
    assert assignment["tenant_id"] == tenant.id
    assert assignment["is_primary"] is True

    url = f"/permissions/assignments/{assignment['id']}/grants/EDIT_COURSES"
    first = await async_client.put(url, json={"granted": True, "expected_version": 0}, headers=headers)
    assert first.status_code == 200
    assert await authz.gate.authorize(subject.id, tenant.id, "EDIT_COURSES")

    stale = await async_client.put(url, json={"granted": False, "expected_version": 0}, headers=headers)
    assert stale.status_code == 409
    assert stale.json()["code"] == "concurrent_modification"

    response = await async_client.put(url, json={"granted": False, "expected_version": 1}, headers=headers)
    assert response.status_code == 200
    assert not await authz.gate.authorize(subject.id, tenant.id, "EDIT_COURSES")

    grants = (await async_client.get(f"/permissions/assignments/{assignment['id']}/grants", headers=headers)).json()
    assert [(grant["permission_key"], grant["granted"]) for grant in grants] == [("EDIT_COURSES", False)]

    assert (await async_client.delete(url, headers=headers)).status_code == 204
    assert (await async_client.delete(url, headers=headers)).status_code == 204

    listed = await async_client.get("/permissions/assignments", params={"person_id": subject.id}, headers=headers)
    assert [a["id"] for a in listed.json()] == [assignment["id"]]

    stats = (await async_client.get("/permissions/roles/statistics", headers=headers)).json()
    assert stats["counts"] == {"EMPLOYEE": 1}

    response = await async_client.delete(f"/permissions/assignments/{assignment['id']}", headers=headers)
    assert response.status_code == 204
    response = await async_client.get(f"/permissions/assignments/{assignment['id']}", headers=headers)
    assert response.status_code == 404


async def test_assigning_needs_a_higher_role(async_client, authz, make_person, tenant, auth_headers) -> None:
    manager = await make_person(tenant.id)
    target = await make_person(tenant.id)
    assignment = await authz.assignments.assign_role(manager.id, tenant.id, "HR_MANAGER", assigned_by=None)
    headers = auth_headers(manager)

    allowed = await async_client.post(
        "/permissions/assignments", json={"person_id": target.id, "role_type": "EMPLOYEE"}, headers=headers
    )
    assert allowed.status_code == 201

    refused = await async_client.post(
        "/permissions/assignments", json={"person_id": target.id, "role_type": "ADMIN"}, headers=headers
    )
    assert refused.status_code == 403

    global_refused = await async_client.post(
        "/permissions/assignments",
        json={"person_id": target.id, "role_type": "EMPLOYEE", "is_global": True},
        headers=headers,
    )
    assert global_refused.status_code == 403

    unknown = await async_client.post(
        "/permissions/assignments", json={"person_id": target.id, "role_type": "WIZARD"}, headers=headers
    )
    assert unknown.status_code == 404

    # Cannot touch grants without EDIT_ROLES
    response = await async_client.put(
        f"/permissions/assignments/{assignment.id}/grants/DELETE_EMPLOYEES", json={"granted": True}, headers=headers
    )
    assert response.status_code == 403


async def test_audit_logs_are_scoped_to_the_tenant(async_client, session_factory, admin, tenant, make_tenant, auth_headers) -> None:
    other = await make_tenant()
    sink = DatabaseAuditSink(session_factory)
    await sink.emit(AuditEvent(action="grant.upserted", resource_type="role_assignment", tenant_id=tenant.id))
    await sink.emit(AuditEvent(action="authorization.denied", resource_type="permission", tenant_id=tenant.id,
                               details={"ip_address": "10.0.0.1"}))
    await sink.emit(AuditEvent(action="grant.upserted", resource_type="role_assignment", tenant_id=other.id))

    response = await async_client.get("/permissions/audit-logs", headers=auth_headers(admin))
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert {item["tenant_id"] for item in body["items"]} == {tenant.id}

    filtered = await async_client.get(
        "/permissions/audit-logs", params={"action": "authorization.denied"}, headers=auth_headers(admin)
    )
    [item] = filtered.json()["items"]
    assert item["ip_address"] == "10.0.0.1"


async def test_tenant_and_person_management(async_client, authz, admin, subject, tenant, auth_headers) -> None:
    headers = auth_headers(admin)

    response = await async_client.post("/tenants/", json={"name": "Acme", "slug": "acme"}, headers=headers)
    assert response.status_code == 201
    acme = response.json()
    conflict = await async_client.post("/tenants/", json={"name": "Acme 2", "slug": "acme"}, headers=headers)
    assert conflict.status_code == 409

    denied = await async_client.post("/tenants/", json={"name": "Nope", "slug": "nope"}, headers=auth_headers(subject))
    assert denied.status_code == 403

    response = await async_client.post(
        "/persons/",
        json={"email": "new.hire@example.com", "first_name": "New", "last_name": "Hire", "tenant_id": acme["id"]},
        headers=headers,
    )
    assert response.status_code == 201
    assert response.json()["tenant_id"] == acme["id"]

    # Deactivating a person cuts their permissions immediately
    await authz.assignments.assign_role(subject.id, tenant.id, "MANAGER", assigned_by=None)
    assert await authz.gate.authorize(subject.id, tenant.id, "VIEW_EMPLOYEES")
    response = await async_client.patch(f"/persons/{subject.id}", json={"status": "inactive"}, headers=headers)
    assert response.status_code == 200
    assert not await authz.gate.authorize(subject.id, tenant.id, "VIEW_EMPLOYEES")

    me = await async_client.get("/persons/me", headers=headers)
    assert me.json()["id"] == admin.id

    response = await async_client.delete(f"/tenants/{acme['id']}", headers=headers)
    assert response.status_code == 204
    assert (await async_client.get(f"/tenants/{acme['id']}", headers=headers)).status_code == 404


async def test_granting_needs_the_key_yourself(async_client, authz, make_person, admin, tenant, auth_headers) -> None:
    tenant_admin = await make_person(tenant.id)
    own = await authz.assignments.assign_role(tenant_admin.id, tenant.id, "ADMIN", assigned_by=None)
    await authz.registry.register_custom_role("Course Lead", "EMPLOYEE", tenant.id, created_by=None)
    headers = auth_headers(tenant_admin)

    escalate = await async_client.put(
        f"/permissions/assignments/{own.id}/grants/EDIT_TENANTS", json={"granted": True}, headers=headers
    )
    assert escalate.status_code == 403
    assert escalate.json()["code"] == "access_denied"
    assert not await authz.gate.authorize(tenant_admin.id, tenant.id, "EDIT_TENANTS")

    role_escalate = await async_client.put(
        "/permissions/roles/COURSE_LEAD/grants/EDIT_TENANTS", json={"granted": True}, headers=headers
    )
    assert role_escalate.status_code == 403

    # Denying and handing out held keys stay open
    denied = await async_client.put(
        f"/permissions/assignments/{own.id}/grants/EDIT_TENANTS", json={"granted": False}, headers=headers
    )
    assert denied.status_code == 200
    held = await async_client.put(
        "/permissions/roles/COURSE_LEAD/grants/EDIT_COURSES", json={"granted": True}, headers=headers
    )
    assert held.status_code == 200

    by_super_admin = await async_client.put(
        "/permissions/roles/COURSE_LEAD/grants/EDIT_TENANTS", json={"granted": True}, headers=auth_headers(admin)
    )
    assert by_super_admin.status_code == 200


async def test_list_role_holders(async_client, authz, admin, subject, tenant, auth_headers) -> None:
    await authz.assignments.assign_role(subject.id, tenant.id, "TRAINER", assigned_by=None)

    response = await async_client.get("/permissions/roles/trainer/assignments", headers=auth_headers(admin))
    assert response.status_code == 200
    [holder] = response.json()
    assert holder["person"]["id"] == subject.id
    assert holder["person"]["email"] == subject.email
    assert holder["assignment"]["role_type"] == "TRAINER"

    unknown = await async_client.get("/permissions/roles/WIZARD/assignments", headers=auth_headers(admin))
    assert unknown.status_code == 404

    denied = await async_client.get("/permissions/roles/TRAINER/assignments", headers=auth_headers(subject))
    assert denied.status_code == 403

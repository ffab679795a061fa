"""
Permission management feature module.

Implements tenant-scoped role-based access control: a role hierarchy with
tenant custom roles, a static permission catalog, explicit allow/deny grants,
and the resolver and gate that answer authorization checks.
"""

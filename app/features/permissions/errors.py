"""
Exceptions raised by the authorization engine.

Validation errors surface to the administrative caller. Persistence failures
on the read path surface as ``AuthorizationUnavailableError`` and make the
gate deny.
"""


class AuthorizationEngineError(Exception):
    """Base class for authorization engine errors."""

    code = "authorization_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnknownRoleError(AuthorizationEngineError):
    """Raised when a role type is neither built-in nor a live custom role of the tenant."""

    code = "unknown_role"

    def __init__(self, role_type: str, tenant_id: str | None = None):
        super().__init__(f"Unknown role type '{role_type}' for tenant {tenant_id}")
        self.role_type = role_type
        self.tenant_id = tenant_id


class DuplicateRoleError(AuthorizationEngineError):
    """Raised when an active role with the same token already exists."""

    code = "duplicate_role"


class InvalidParentError(AuthorizationEngineError):
    """Raised when a custom role's parent is missing or would create a cycle."""

    code = "invalid_parent"


class RoleInUseError(AuthorizationEngineError):
    """Raised when deactivating a custom role that still has children or live assignments."""

    code = "role_in_use"


class InvalidPermissionKeyError(AuthorizationEngineError):
    """Raised when a permission key is not in the catalog."""

    code = "invalid_permission_key"

    def __init__(self, key: str):
        super().__init__(f"Permission '{key}' is not registered")
        self.key = key


class ConcurrentModificationError(AuthorizationEngineError):
    """Raised when a write was based on a stale version; the caller must re-read and retry."""

    code = "concurrent_modification"


class AuthorizationUnavailableError(AuthorizationEngineError):
    """Raised when the store cannot be read; callers must fail closed."""

    code = "authorization_unavailable"


class AssignmentNotFoundError(AuthorizationEngineError):
    code = "assignment_not_found"


class SubjectNotFoundError(AuthorizationEngineError):
    code = "subject_not_found"


class PermissionDeniedError(AuthorizationEngineError):
    """Raised at the HTTP boundary when the gate answers False."""

    code = "access_denied"

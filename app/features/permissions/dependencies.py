"""
Permission checking dependencies for route protection.

Implements:
- Access to the process-wide authorization engine
- FastAPI dependencies that call the authorization gate
- Mapping of engine errors to HTTP responses
"""
from typing import Dict, Any, Optional, List, Type
from fastapi import Depends, Request, status
from starlette.responses import JSONResponse

from app.core.database.base import utcnow
from app.features.persons.dependencies import Identity, get_current_identity
from app.features.permissions.catalog import get_catalog
from app.features.permissions.engine import AuthorizationEngine
from app.features.permissions.errors import (
    AuthorizationEngineError,
    AuthorizationUnavailableError,
    AssignmentNotFoundError,
    ConcurrentModificationError,
    DuplicateRoleError,
    InvalidParentError,
    InvalidPermissionKeyError,
    PermissionDeniedError,
    RoleInUseError,
    SubjectNotFoundError,
    UnknownRoleError,
)
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Engine Access
# ============================================================================

def get_authz(request: Request) -> AuthorizationEngine:
    """Authorization engine built at startup and kept on ``app.state.authz``."""
    return request.app.state.authz


def request_context(request: Request) -> Dict[str, Any]:
    """Request attributes recorded with audit events."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
        "method": request.method,
    }


# ============================================================================
# Error Responses
# ============================================================================

ERROR_STATUS: Dict[Type[AuthorizationEngineError], int] = {
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    UnknownRoleError: status.HTTP_404_NOT_FOUND,
    AssignmentNotFoundError: status.HTTP_404_NOT_FOUND,
    SubjectNotFoundError: status.HTTP_404_NOT_FOUND,
    DuplicateRoleError: status.HTTP_409_CONFLICT,
    RoleInUseError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    InvalidParentError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidPermissionKeyError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AuthorizationUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_body(code: str, message: str) -> Dict[str, str]:
    return {"code": code, "message": message, "timestamp": utcnow().isoformat()}


def engine_error_response(exc: AuthorizationEngineError) -> JSONResponse:
    """Structured ``{code, message, timestamp}`` response for an engine error."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content=error_body(exc.code, exc.message))


# ============================================================================
# Route Protection
# ============================================================================

def _validate_keys(keys: List[str]) -> List[str]:
    catalog = get_catalog()
    unknown = [key for key in keys if not catalog.is_valid_key(key)]
    if unknown:
        raise ValueError(f"Unknown permission keys in route declaration: {unknown}")
    return keys


def _protect(keys: List[str], mode: str):
    keys = _validate_keys(list(keys))

    async def permission_dependency(
        request: Request,
        identity: Identity = Depends(get_current_identity),
        authz: AuthorizationEngine = Depends(get_authz),
    ) -> Identity:
        context = request_context(request)
        if mode == "any":
            allowed = await authz.gate.authorize_any(identity.person.id, identity.tenant_id, keys, context)
        else:
            allowed = await authz.gate.authorize_all(identity.person.id, identity.tenant_id, keys, context)

        if not allowed:
            if len(keys) == 1:
                message = f"Permission denied: requires {keys[0]}"
            elif mode == "any":
                message = f"Permission denied: requires one of {', '.join(keys)}"
            else:
                message = f"Permission denied: requires all of {', '.join(keys)}"
            raise PermissionDeniedError(message)

        return identity

    return permission_dependency


def require_permission(key: str):
    """
    FastAPI dependency to require a single permission key.

    Usage:
        @router.get("/employees")
        async def list_employees(
            identity: Identity = Depends(require_permission("VIEW_EMPLOYEES"))
        ):
            # Caller may view employees in identity.tenant_id
            pass

    Args:
        key: Permission key, e.g. "VIEW_EMPLOYEES"

    Returns:
        Dependency function that returns the caller's identity if allowed

    Raises:
        PermissionDeniedError: rendered as 403 {code, message, timestamp}
    """
    return _protect([key], "all")


def require_any_permission(keys: List[str]):
    """
    FastAPI dependency to require ANY of the specified permission keys.

    Usage:
        @router.get("/reports")
        async def get_reports(
            identity: Identity = Depends(require_any_permission(["VIEW_REPORTS", "EXPORT_REPORTS"]))
        ):
            pass
    """
    return _protect(keys, "any")


def require_all_permissions(keys: List[str]):
    """FastAPI dependency to require ALL of the specified permission keys."""
    return _protect(keys, "all")


async def ensure_permission(
    authz: AuthorizationEngine,
    identity: Identity,
    key: str,
    tenant_id: Optional[str],
    request: Request,
) -> None:
    """
    Check a permission inside a route when the tenant comes from the path or body.

    Raises:
        PermissionDeniedError: the caller lacks ``key`` in ``tenant_id``
    """
    if not await authz.gate.authorize(identity.person.id, tenant_id, key, request_context(request)):
        raise PermissionDeniedError(f"Permission denied: requires {key}")

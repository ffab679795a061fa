"""
Canonical permission catalog.

Every permission key is ``{ACTION}_{RESOURCE}`` (for example ``VIEW_EMPLOYEES``).
The catalog is built once from the static table below; changing it requires a
new deployment, bump ``CATALOG_VERSION`` when you do.
"""
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Iterable, Mapping

CATALOG_VERSION = "2025.07.1"


@dataclass(frozen=True)
class PermissionDefinition:
    """Describes a permission entry in the catalog."""

    key: str
    resource: str
    action: str
    label: str


ACTION_LABELS: Mapping[str, str] = {
    "VIEW": "View",
    "CREATE": "Create",
    "EDIT": "Edit",
    "DELETE": "Delete",
    "MANAGE": "Manage",
    "ASSIGN": "Assign",
    "REVOKE": "Revoke",
    "EXPORT": "Export",
    "DOWNLOAD": "Download",
}

CRUD = ("VIEW", "CREATE", "EDIT", "DELETE")

RESOURCE_ACTIONS: Mapping[str, tuple[str, ...]] = {
    # Registry
    "COMPANIES": CRUD,
    "PERSONS": CRUD,
    "EMPLOYEES": CRUD,
    "TRAINERS": CRUD,
    "USERS": CRUD + ("MANAGE",),
    # Training
    "COURSES": CRUD,
    "ENROLLMENTS": ("VIEW", "MANAGE"),
    "SCHEDULES": CRUD,
    "DOCUMENTS": CRUD + ("DOWNLOAD",),
    # Billing
    "QUOTES": CRUD,
    "INVOICES": CRUD,
    # Compliance
    "GDPR": CRUD + ("MANAGE",),
    "GDPR_DATA": ("VIEW", "EXPORT", "DELETE"),
    "CONSENTS": ("VIEW", "MANAGE"),
    "AUDIT_LOGS": ("VIEW", "EXPORT"),
    # Reporting
    "REPORTS": CRUD + ("EXPORT",),
    "ANALYTICS": ("VIEW",),
    # Administration
    "ROLES": CRUD + ("ASSIGN", "REVOKE"),
    "HIERARCHY": CRUD + ("MANAGE",),
    "TENANTS": CRUD,
    "ADMINISTRATION": CRUD,
    "SYSTEM_SETTINGS": ("VIEW", "EDIT"),
}


def make_key(resource: str, action: str) -> str:
    return f"{action.upper()}_{resource.upper()}"


def _definitions(table: Mapping[str, tuple[str, ...]]) -> Iterable[PermissionDefinition]:
    for resource, actions in table.items():
        for action in actions:
            yield PermissionDefinition(
                key=make_key(resource, action),
                resource=resource,
                action=action,
                label=f"{ACTION_LABELS[action]} {resource.replace('_', ' ').lower()}",
            )


class PermissionCatalog:
    """Read-only registry of valid permission keys."""

    def __init__(self, definitions: Iterable[PermissionDefinition], version: str = CATALOG_VERSION):
        by_key: dict[str, PermissionDefinition] = {}
        by_resource: dict[str, set[str]] = {}
        for definition in definitions:
            if definition.key in by_key:
                raise ValueError(f"Duplicate permission key '{definition.key}'")
            by_key[definition.key] = definition
            by_resource.setdefault(definition.resource, set()).add(definition.key)

        self.version = version
        self._by_key = MappingProxyType(by_key)
        self._by_resource = MappingProxyType(
            {resource: frozenset(keys) for resource, keys in by_resource.items()}
        )
        self._keys = frozenset(by_key)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def is_valid_key(self, key: str) -> bool:
        return key in self._by_key

    def keys(self) -> frozenset[str]:
        return self._keys

    def get(self, key: str) -> PermissionDefinition | None:
        return self._by_key.get(key)

    def definitions(self) -> list[PermissionDefinition]:
        return sorted(self._by_key.values(), key=lambda d: (d.resource, d.action))

    def resources(self) -> frozenset[str]:
        return frozenset(self._by_resource)

    def permissions_for_resource(self, resource: str) -> frozenset[str]:
        """Return every key defined for ``resource``; empty for an unknown resource."""
        return self._by_resource.get(resource.upper(), frozenset())

    def all_denied(self) -> dict[str, bool]:
        return dict.fromkeys(self._keys, False)


@lru_cache(maxsize=1)
def get_catalog() -> PermissionCatalog:
    """Return the process-wide catalog."""
    return PermissionCatalog(_definitions(RESOURCE_ACTIONS))

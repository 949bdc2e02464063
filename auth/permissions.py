"""
auth/permissions.py -- Role to capability resolution with inheritance.

Pure lookups over two static tables: the direct permissions of each role, and
an acyclic role hierarchy. A role inherits every permission of every ancestor,
transitively. Nothing here touches storage or the network.

Unknown roles resolve to an empty permission set rather than raising -- an
unrecognised role simply has no capabilities.
"""

from __future__ import annotations

from collections.abc import Mapping

ROLES = ("ADMIN", "MANAGER", "AGENT", "COMPLIANCE")

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "AGENT": frozenset({"read_leads", "update_lead_status"}),
    "MANAGER": frozenset({"read_leads", "assign_leads", "view_team_performance"}),
    "ADMIN": frozenset({"read_leads", "assign_leads", "manage_users", "system_configuration"}),
    "COMPLIANCE": frozenset({"read_leads", "audit_logs", "compliance_reports"}),
}

ROLE_HIERARCHY: dict[str, tuple[str, ...]] = {
    "ADMIN": ("MANAGER", "AGENT", "COMPLIANCE"),
    "MANAGER": ("AGENT",),
    "COMPLIANCE": (),
    "AGENT": (),
}


class PermissionResolver:
    """Resolve permissions for a role table and hierarchy.

    The default instance uses ROLE_PERMISSIONS / ROLE_HIERARCHY. Tests and
    tenants with custom roles can construct their own.
    """

    def __init__(
        self,
        permissions: Mapping[str, frozenset[str] | set[str]] = ROLE_PERMISSIONS,
        hierarchy: Mapping[str, tuple[str, ...] | list[str]] = ROLE_HIERARCHY,
    ) -> None:
        self._permissions = {role: frozenset(perms) for role, perms in permissions.items()}
        self._hierarchy = {role: tuple(parents) for role, parents in hierarchy.items()}

    def ancestors(self, role: str) -> list[str]:
        """Return every role ``role`` inherits from, nearest first, without duplicates.

        A visited set guards the walk so a misconfigured (cyclic) hierarchy
        terminates instead of recursing forever.
        """
        seen: set[str] = {role}
        order: list[str] = []
        stack = list(reversed(self._hierarchy.get(role, ())))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            stack.extend(reversed(self._hierarchy.get(current, ())))
        return order

    def has_direct(self, role: str, permission: str) -> bool:
        if not role or not permission:
            return False
        return permission in self._permissions.get(role, frozenset())

    def has_with_inheritance(self, role: str, permission: str) -> bool:
        if self.has_direct(role, permission):
            return True
        return any(self.has_direct(parent, permission) for parent in self.ancestors(role))

    def all_permissions(self, role: str) -> frozenset[str]:
        if not role:
            return frozenset()
        combined = set(self._permissions.get(role, frozenset()))
        for parent in self.ancestors(role):
            combined |= self._permissions.get(parent, frozenset())
        return frozenset(combined)


default_resolver = PermissionResolver()


def has_permission(role: str, permission: str) -> bool:
    """Inheritance-aware check against the default role table."""
    return default_resolver.has_with_inheritance(role, permission)


def get_all_permissions(role: str) -> frozenset[str]:
    return default_resolver.all_permissions(role)

"""
Role-based access control resolution.

Roles are held globally (``organization_id`` is ``None``) or scoped to one
tenant. A tenant-scoped grant never satisfies a check that requires the
global grant of the same role.
"""

import logging
from collections.abc import Iterable

from .audit import AuditEventType, AuditTrail
from .exceptions import PermissionDeniedError, RoleNotFoundError
from .roles import DEFAULT_ROLE_PERMISSIONS, DEFAULT_ROLE_TABLES, AssignmentTier, PermissionName, RoleTables
from .store.base import CredentialStore
from .types import Permission, Role, RoleAssignment

logger = logging.getLogger(__name__)


class RbacResolver:
    """Computes effective roles and permission decisions for principals.

    The resolver holds no state of its own; every answer is derived from the
    store's role assignments and the injected ``RoleTables``.
    """

    def __init__(
        self,
        store: CredentialStore,
        tables: RoleTables = DEFAULT_ROLE_TABLES,
        audit: AuditTrail | None = None,
    ):
        self.store = store
        self.tables = tables
        self.audit = audit or AuditTrail()

    async def primary_role(self, principal_id: str) -> str:
        """Highest-priority role held in any scope; the default role if none."""
        assignments = await self.store.get_role_assignments(principal_id)
        return self.tables.highest(a.role_name for a in assignments)

    async def all_role_names(self, principal_id: str) -> list[str]:
        """Distinct role names held in any scope, most senior first."""
        assignments = await self.store.get_role_assignments(principal_id)
        names = {a.role_name for a in assignments}
        return sorted(names, key=lambda name: (-self.tables.rank(name), name))

    async def role_claims(self, principal_id: str) -> tuple[str, list[str]]:
        """Primary role and full role list from a single store read."""
        assignments = await self.store.get_role_assignments(principal_id)
        names = {a.role_name for a in assignments}
        ordered = sorted(names, key=lambda name: (-self.tables.rank(name), name))
        return self.tables.highest(names), ordered

    def _tier_held(
        self, tier: AssignmentTier, assignments: Iterable[RoleAssignment], tenant_id: str | None
    ) -> bool:
        for assignment in assignments:
            if assignment.role_name != tier.role:
                continue
            if tier.tenant_scoped:
                if assignment.organization_id == tenant_id:
                    return True
            elif assignment.is_global:
                return True
        return False

    async def _governing_tier(
        self, principal_id: str, tenant_id: str | None
    ) -> AssignmentTier | None:
        """The most senior assignment tier the principal holds for this scope."""
        assignments = await self.store.get_role_assignments(principal_id)
        for tier in self.tables.tiers:
            if self._tier_held(tier, assignments, tenant_id):
                return tier
        return None

    async def assignable_roles(self, principal_id: str, tenant_id: str | None = None) -> list[str]:
        """Roles this principal may grant, most senior first."""
        tier = await self._governing_tier(principal_id, tenant_id)
        if tier is None:
            return []
        return sorted(tier.grantable, key=lambda name: (-self.tables.rank(name), name))

    async def can_assign(
        self, assigner_id: str, role_name: str, tenant_id: str | None = None
    ) -> bool:
        # Evaluation stops at the first tier held; a junior tier never
        # overrides the answer of a senior one.
        tier = await self._governing_tier(assigner_id, tenant_id)
        if tier is None:
            return False
        return tier.role == self.tables.superuser or role_name in tier.grantable

    async def has_permission(
        self, principal_id: str, permission_name: str, tenant_id: str | None = None
    ) -> bool:
        """Check a permission through role membership.

        Without a tenant only global assignments count; with a tenant, global
        assignments and those scoped to that tenant count. The superuser and
        the operator-bypass roles apply only when held globally.
        """
        assignments = await self.store.get_role_assignments(principal_id)
        global_roles = {a.role_name for a in assignments if a.is_global}

        if self.tables.superuser in global_roles:
            return True

        bypass_roles = self.tables.operator_bypass.get(permission_name, frozenset())
        if global_roles & bypass_roles:
            return True

        applicable = {
            a.role_name
            for a in assignments
            if a.is_global or (tenant_id is not None and a.organization_id == tenant_id)
        }
        if not applicable:
            return False

        permissions = await self.store.get_permissions_for_roles(applicable)
        return permission_name in permissions

    async def require_permission(
        self, principal_id: str, permission_name: str, tenant_id: str | None = None
    ) -> None:
        """
        Raise unless the principal holds the permission.

        Raises:
            PermissionDeniedError: If the check fails
        """
        if await self.has_permission(principal_id, permission_name, tenant_id):
            self.audit.record(
                AuditEventType.AUTHZ_GRANT,
                principal_id=principal_id,
                permission=permission_name,
                tenant_id=tenant_id,
            )
            return

        self.audit.record(
            AuditEventType.AUTHZ_DENY,
            principal_id=principal_id,
            reason="missing_permission",
            permission=permission_name,
            tenant_id=tenant_id,
        )
        raise PermissionDeniedError(permission_name, resource=tenant_id)

    async def _ensure_role_exists(self, role_name: str) -> None:
        if self.tables.rank(role_name) >= 0:
            return
        if await self.store.get_role(role_name) is None:
            raise RoleNotFoundError(f"Role not found: {role_name}")

    async def _authorize_assignment(
        self, assigner_id: str, principal_id: str, role_name: str, tenant_id: str | None, action: str
    ) -> RoleAssignment:
        await self._ensure_role_exists(role_name)
        if not await self.can_assign(assigner_id, role_name, tenant_id):
            self.audit.record(
                AuditEventType.AUTHZ_DENY,
                principal_id=assigner_id,
                reason=f"cannot_{action}_role",
                target=principal_id,
                role=role_name,
                tenant_id=tenant_id,
            )
            raise PermissionDeniedError(f"{action}_role:{role_name}", resource=tenant_id)
        return RoleAssignment(principal_id=principal_id, role_name=role_name, organization_id=tenant_id)

    async def assign_role(
        self, assigner_id: str, principal_id: str, role_name: str, tenant_id: str | None = None
    ) -> RoleAssignment:
        """
        Grant a role after checking the assigner may grant it in this scope.

        Assigning an already-held role is a no-op.

        Raises:
            RoleNotFoundError: If the role is neither built in nor defined
            PermissionDeniedError: If the assigner may not grant the role
        """
        assignment = await self._authorize_assignment(
            assigner_id, principal_id, role_name, tenant_id, "assign"
        )
        if await self.store.add_role_assignment(assignment):
            self.audit.record(
                AuditEventType.ROLE_ASSIGN,
                principal_id=principal_id,
                assigned_by=assigner_id,
                role=role_name,
                tenant_id=tenant_id,
            )
        return assignment

    async def remove_role(
        self, assigner_id: str, principal_id: str, role_name: str, tenant_id: str | None = None
    ) -> bool:
        """Revoke a role under the same rules as granting it."""
        assignment = await self._authorize_assignment(
            assigner_id, principal_id, role_name, tenant_id, "remove"
        )
        removed = await self.store.remove_role_assignment(assignment)
        if removed:
            self.audit.record(
                AuditEventType.ROLE_REMOVE,
                principal_id=principal_id,
                removed_by=assigner_id,
                role=role_name,
                tenant_id=tenant_id,
            )
        return removed

    async def seed_defaults(self) -> list[Role]:
        """Define every built-in role and the standard permission catalog."""
        for permission in PermissionName:
            await self.store.define_permission(Permission(name=permission.value))

        roles = []
        for role_name in self.tables.priority:
            roles.append(
                await self.store.define_role(
                    Role(
                        name=role_name,
                        permissions=list(DEFAULT_ROLE_PERMISSIONS.get(role_name, ())),
                    )
                )
            )
        logger.info(f"Seeded {len(roles)} roles and {len(PermissionName)} permissions")
        return roles

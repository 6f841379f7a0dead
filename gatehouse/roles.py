"""Role hierarchy and delegated-assignment tables.

The tables are plain frozen values. ``RbacResolver`` receives a
``RoleTables`` instance at construction, so tests can inject alternates
without touching module state.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class RoleName(str, Enum):
    """Built-in roles, declared from least to most privileged."""

    EMPLOYEE = "employee"
    TEAM_MANAGER = "team_manager"
    HIRING_MANAGER = "hiring_manager"
    RECRUITER = "recruiter"
    LEARNING_SPECIALIST = "learning_specialist"
    SUCCESSION_PLANNER = "succession_planner"
    HR_MANAGER = "hr_manager"
    ORGANIZATION_MANAGER = "organization_manager"
    ORGANIZATION_ADMIN = "organization_admin"
    CLAVEHR_OPERATOR = "clavehr_operator"
    SUPER_ADMIN = "super_admin"


class PermissionName(str, Enum):
    """Standard permission catalog."""

    MANAGE_SYSTEM = "manage_system"
    VIEW_SYSTEM_LOGS = "view_system_logs"
    MANAGE_ORGANIZATIONS = "manage_organizations"
    MANAGE_ORGANIZATION_SETTINGS = "manage_organization_settings"
    MANAGE_USERS = "manage_users"
    VIEW_ALL_USERS = "view_all_users"
    MANAGE_ROLES = "manage_roles"
    MANAGE_ONBOARDING = "manage_onboarding"
    MANAGE_OFFBOARDING = "manage_offboarding"
    MANAGE_PERFORMANCE = "manage_performance"
    VIEW_PERFORMANCE_REPORTS = "view_performance_reports"
    MANAGE_GOALS = "manage_goals"
    MANAGE_SUCCESSION = "manage_succession"
    MANAGE_LEARNING = "manage_learning"
    MANAGE_RECRUITMENT = "manage_recruitment"
    VIEW_ANALYTICS = "view_analytics"


DEFAULT_ROLE = RoleName.EMPLOYEE.value

_ORG_OPERATIONAL_ROLES = (
    RoleName.ORGANIZATION_MANAGER,
    RoleName.HR_MANAGER,
    RoleName.HIRING_MANAGER,
    RoleName.TEAM_MANAGER,
    RoleName.EMPLOYEE,
    RoleName.RECRUITER,
    RoleName.LEARNING_SPECIALIST,
    RoleName.SUCCESSION_PLANNER,
)


@dataclass(frozen=True)
class AssignmentTier:
    """One rung of the delegated-assignment ladder.

    ``tenant_scoped`` tiers are matched against the requested tenant; the
    others only count when the role is held globally.
    """

    role: str
    grantable: frozenset[str]
    tenant_scoped: bool


def _tier(role: RoleName, grantable, tenant_scoped: bool) -> AssignmentTier:
    return AssignmentTier(
        role=role.value,
        grantable=frozenset(r.value for r in grantable),
        tenant_scoped=tenant_scoped,
    )


def _default_tiers() -> tuple[AssignmentTier, ...]:
    everything = tuple(RoleName)
    return (
        _tier(RoleName.SUPER_ADMIN, everything, tenant_scoped=False),
        _tier(
            RoleName.CLAVEHR_OPERATOR,
            [r for r in everything if r is not RoleName.SUPER_ADMIN],
            tenant_scoped=False,
        ),
        _tier(RoleName.ORGANIZATION_ADMIN, _ORG_OPERATIONAL_ROLES, tenant_scoped=True),
        _tier(
            RoleName.ORGANIZATION_MANAGER,
            (RoleName.EMPLOYEE, RoleName.TEAM_MANAGER),
            tenant_scoped=True,
        ),
        _tier(RoleName.HR_MANAGER, (RoleName.EMPLOYEE,), tenant_scoped=True),
    )


def _default_bypass() -> Mapping[str, frozenset[str]]:
    return MappingProxyType(
        {
            PermissionName.MANAGE_ORGANIZATIONS.value: frozenset(
                {RoleName.CLAVEHR_OPERATOR.value}
            ),
        }
    )


@dataclass(frozen=True)
class RoleTables:
    """Immutable lookup tables consumed by the RBAC resolver.

    Attributes:
        priority: Role names from least to most privileged.
        tiers: Assignment tiers in descending seniority; evaluation stops at
            the first tier the assigner holds.
        superuser: Role that passes every permission and assignment check.
        operator_bypass: Permission name -> global roles that hold it
            without an explicit role-permission grant.
        default_role: Role reported when a principal holds none.
    """

    priority: tuple[str, ...] = tuple(r.value for r in RoleName)
    tiers: tuple[AssignmentTier, ...] = field(default_factory=_default_tiers)
    superuser: str = RoleName.SUPER_ADMIN.value
    operator_bypass: Mapping[str, frozenset[str]] = field(default_factory=_default_bypass)
    default_role: str = DEFAULT_ROLE

    def rank(self, role_name: str) -> int:
        """Position in the priority order; unknown roles rank below all known ones."""
        try:
            return self.priority.index(role_name)
        except ValueError:
            return -1

    def highest(self, role_names) -> str:
        names = list(role_names)
        if not names:
            return self.default_role
        return max(names, key=self.rank)


DEFAULT_ROLE_TABLES = RoleTables()

DEFAULT_ROLE_PERMISSIONS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        RoleName.ORGANIZATION_ADMIN.value: (
            PermissionName.MANAGE_ORGANIZATION_SETTINGS.value,
            PermissionName.MANAGE_USERS.value,
            PermissionName.VIEW_ALL_USERS.value,
            PermissionName.MANAGE_ROLES.value,
            PermissionName.VIEW_ANALYTICS.value,
        ),
        RoleName.ORGANIZATION_MANAGER.value: (
            PermissionName.MANAGE_USERS.value,
            PermissionName.VIEW_ALL_USERS.value,
            PermissionName.VIEW_ANALYTICS.value,
        ),
        RoleName.HR_MANAGER.value: (
            PermissionName.MANAGE_USERS.value,
            PermissionName.VIEW_ALL_USERS.value,
            PermissionName.MANAGE_ONBOARDING.value,
            PermissionName.MANAGE_OFFBOARDING.value,
            PermissionName.MANAGE_PERFORMANCE.value,
            PermissionName.VIEW_PERFORMANCE_REPORTS.value,
        ),
        RoleName.HIRING_MANAGER.value: (PermissionName.MANAGE_RECRUITMENT.value,),
        RoleName.RECRUITER.value: (PermissionName.MANAGE_RECRUITMENT.value,),
        RoleName.LEARNING_SPECIALIST.value: (PermissionName.MANAGE_LEARNING.value,),
        RoleName.SUCCESSION_PLANNER.value: (PermissionName.MANAGE_SUCCESSION.value,),
        RoleName.TEAM_MANAGER.value: (
            PermissionName.MANAGE_GOALS.value,
            PermissionName.VIEW_PERFORMANCE_REPORTS.value,
        ),
        RoleName.EMPLOYEE.value: (PermissionName.MANAGE_GOALS.value,),
        RoleName.CLAVEHR_OPERATOR.value: (
            PermissionName.VIEW_SYSTEM_LOGS.value,
            PermissionName.VIEW_ALL_USERS.value,
        ),
    }
)

from dataclasses import dataclass
from enum import StrEnum


class ProviderRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    STAFF = "staff"
    VIEWER = "viewer"


# lower rank = more authority
ROLE_HIERARCHY: dict[ProviderRole, int] = {
    ProviderRole.OWNER: 1,
    ProviderRole.ADMIN: 2,
    ProviderRole.SUPERVISOR: 3,
    ProviderRole.STAFF: 4,
    ProviderRole.VIEWER: 5,
}

INVITABLE_ROLES: frozenset[ProviderRole] = frozenset(
    role for role in ProviderRole if role != ProviderRole.OWNER
)


def map_legacy_role(role: str) -> ProviderRole | None:
    """
    Normalize a stored role name. Rows written before the supervisor role
    existed still say "manager".
    """
    normalized = role.strip().lower()
    if normalized == "manager":
        normalized = ProviderRole.SUPERVISOR.value
    try:
        return ProviderRole(normalized)
    except ValueError:
        return None


def has_higher_or_equal_role(a: ProviderRole, b: ProviderRole) -> bool:
    return ROLE_HIERARCHY[a] <= ROLE_HIERARCHY[b]


@dataclass(frozen=True)
class Capabilities:
    can_invite_members: bool
    can_remove_members: bool
    can_manage_roles: bool
    can_manage_team: bool
    can_assign_bookings: bool
    can_view_analytics: bool


def capabilities_for(role: ProviderRole) -> Capabilities:
    is_admin = has_higher_or_equal_role(role, ProviderRole.ADMIN)
    is_supervisor = has_higher_or_equal_role(role, ProviderRole.SUPERVISOR)
    return Capabilities(
        can_invite_members=is_admin,
        can_remove_members=is_admin,
        can_manage_roles=is_admin,
        can_manage_team=is_supervisor,
        can_assign_bookings=is_supervisor,
        can_view_analytics=is_admin,
    )

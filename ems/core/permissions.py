"""Role-permission policy.

Every gated route asks one question: may an actor holding ``role`` perform
``action`` on ``resource``? The answer lives in ``PERMISSIONS`` and nowhere else.
"""
from enum import Enum
from typing import Iterable

from ems.models.enums import Role


class Resource(str, Enum):
    EMPLOYEE = "employee"
    USER = "user"
    AUDIT_LOG = "audit_log"


class Action(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    CHANGE_ROLE = "change_role"
    BAN = "ban"
    RESET_PASSWORD = "reset_password"
    EXPORT = "export"


ALL_ROLES = frozenset(Role)
ADMIN_ONLY = frozenset({Role.ADMIN})

PERMISSIONS: dict[tuple[Resource, Action], frozenset[Role]] = {
    (Resource.EMPLOYEE, Action.VIEW): ALL_ROLES,
    (Resource.EMPLOYEE, Action.CREATE): frozenset({Role.SUPER_USER, Role.ADMIN}),
    (Resource.EMPLOYEE, Action.EDIT): ADMIN_ONLY,
    (Resource.EMPLOYEE, Action.DELETE): ADMIN_ONLY,

    (Resource.USER, Action.VIEW): ADMIN_ONLY,
    (Resource.USER, Action.CREATE): ADMIN_ONLY,
    (Resource.USER, Action.EDIT): ADMIN_ONLY,
    (Resource.USER, Action.DELETE): ADMIN_ONLY,
    (Resource.USER, Action.CHANGE_ROLE): ADMIN_ONLY,
    (Resource.USER, Action.BAN): ADMIN_ONLY,
    (Resource.USER, Action.RESET_PASSWORD): ADMIN_ONLY,

    (Resource.AUDIT_LOG, Action.VIEW): ADMIN_ONLY,
    (Resource.AUDIT_LOG, Action.EXPORT): ADMIN_ONLY,
}


def allowed_roles(resource: Resource, action: Action) -> frozenset[Role]:
    """Roles permitted to perform ``action`` on ``resource``; empty if the pair is unknown."""
    return PERMISSIONS.get((resource, action), frozenset())


def is_allowed(role: Role | str, resource: Resource, action: Action) -> bool:
    try:
        role = Role(role)
    except ValueError:
        return False
    return role in allowed_roles(resource, action)


def describe_roles(roles: Iterable[Role]) -> str:
    ordered = sorted(set(roles), key=lambda r: r.rank, reverse=True)
    return ", ".join(role.value for role in ordered)


def access_denied_message(roles: Iterable[Role]) -> str:
    return f"Access Denied: Required role(s): {describe_roles(roles)}"

from enum import Enum

class Role(str, Enum):
    USER = "user"
    SUPER_USER = "super_user"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]


# Privilege order, lowest first.
ROLE_RANK = {
    Role.USER: 0,
    Role.SUPER_USER: 1,
    Role.ADMIN: 2,
}


class AuditAction(str, Enum):
    EMPLOYEE_CREATE = "EMPLOYEE_CREATE"
    EMPLOYEE_UPDATE = "EMPLOYEE_UPDATE"
    EMPLOYEE_DELETE = "EMPLOYEE_DELETE"

    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_ROLE_CHANGE = "USER_ROLE_CHANGE"
    USER_BAN = "USER_BAN"
    USER_UNBAN = "USER_UNBAN"
    FIRST_ADMIN_CREATED = "FIRST_ADMIN_CREATED"

    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"

    EXPORT_DATA = "EXPORT_DATA"


class AuditResource(str, Enum):
    EMPLOYEE = "employee"
    USER = "user"
    AUTH = "auth"
    SYSTEM = "system"

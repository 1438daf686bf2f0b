from ems.models.audit import AuditLog
from ems.models.auth import RefreshToken
from ems.models.employee import Employee
from ems.models.enums import AuditAction, AuditResource, Role
from ems.models.user import User


__all__ = [
    "AuditLog",
    "AuditAction",
    "AuditResource",
    "Employee",
    "RefreshToken",
    "Role",
    "User",
]

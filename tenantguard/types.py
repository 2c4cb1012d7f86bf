"""Enums and type aliases for tenantguard."""

from enum import StrEnum


class LegacyRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class PlanTier(StrEnum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


class PermissionKind(StrEnum):
    CRUD = "crud"
    MANAGEMENT = "management"
    CUSTOM = "custom"


class HostKind(StrEnum):
    RESERVED = "reserved"
    TENANT = "tenant"


class ContextState(StrEnum):
    UNSET = "unset"
    RESOLVING = "resolving"
    BOUND = "bound"
    REJECTED = "rejected"


class SwitchFailure(StrEnum):
    TARGET_NOT_FOUND = "target_not_found"
    TARGET_INACTIVE = "target_inactive"
    UNAUTHORIZED = "unauthorized"
    ALREADY_CURRENT = "already_current"


class SecurityEventType(StrEnum):
    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"

    # Authorization
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Tenancy
    TENANT_SWITCH = "TENANT_SWITCH"
    CROSS_TENANT_ACCESS = "CROSS_TENANT_ACCESS"
    TENANT_DATA_BREACH = "TENANT_DATA_BREACH"

    # Data
    SENSITIVE_DATA_ACCESS = "SENSITIVE_DATA_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"
    BULK_OPERATION = "BULK_OPERATION"

    # System
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Administration
    ADMIN_ACTION = "ADMIN_ACTION"
    CONFIGURATION_CHANGE = "CONFIGURATION_CHANGE"
    USER_MANAGEMENT = "USER_MANAGEMENT"


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def alerts(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)

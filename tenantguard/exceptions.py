"""Exception hierarchy for tenantguard."""


class TenantGuardError(Exception):
    """Base exception for all tenantguard errors."""


class TenantNotFound(TenantGuardError):
    """Raised when no organization matches the requested subdomain."""


class InvalidTenant(TenantGuardError):
    """Raised when the requested organization is deactivated."""


class AccessDenied(TenantGuardError):
    """Raised when a principal lacks membership or permission in a tenant."""


class SwitchError(TenantGuardError):
    """Base for tenant switch failures."""


class UnauthorizedSwitch(SwitchError):
    """Raised when a principal may not switch into the target tenant."""


class InvalidTarget(SwitchError):
    """Raised when a switch target is not a subdomain or organization."""


class RoleNotEditable(TenantGuardError):
    """Raised when modifying or deleting a locked role."""


class InvalidDelegation(TenantGuardError):
    """Raised when a permission delegation fails validation."""


class MalformedAuthorizationRequest(TenantGuardError, ValueError):
    """Raised when an authorization check is asked about no resource."""


class StorageError(TenantGuardError):
    """Raised when storage operations fail."""


class ConfigError(TenantGuardError):
    """Raised when configuration is invalid."""

"""Resource references the permission engine reasons about."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tenantguard.exceptions import MalformedAuthorizationRequest
from tenantguard.models.database import (
    Organization,
    OrganizationMembership,
    PermissionDelegation,
    Role,
    User,
)

# Attributes copied from arbitrary objects when they expose them
_OWNERSHIP_ATTRS = (
    "created_by_id",
    "assignee_id",
    "user_id",
    "team_id",
    "service_id",
    "active",
)


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """A typed resource, optionally a concrete instance.

    ``org_id`` is the owning tenant. A reference without ``id`` and
    ``org_id`` stands for the resource class as a whole.
    """

    resource_type: str
    org_id: str | None = None
    id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    is_class: bool = False

    @classmethod
    def of(cls, resource_type: str) -> ResourceRef:
        return cls(resource_type=resource_type, is_class=True)

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


def describe(subject: Any) -> ResourceRef:
    """Turn a model instance, reference or resource-type name into a ResourceRef."""
    if subject is None:
        raise MalformedAuthorizationRequest("Authorization subject must not be None")
    if isinstance(subject, ResourceRef):
        return subject
    if isinstance(subject, str):
        if not subject:
            raise MalformedAuthorizationRequest("Authorization subject must not be empty")
        return ResourceRef.of(subject)
    if isinstance(subject, type):
        return ResourceRef.of(subject.__name__)
    if isinstance(subject, Organization):
        return ResourceRef(
            resource_type="Organization",
            org_id=subject.id,
            id=subject.id,
            attributes={"active": subject.active, "subdomain": subject.subdomain},
        )
    if isinstance(subject, OrganizationMembership):
        return ResourceRef(
            resource_type="OrganizationMembership",
            org_id=subject.org_id,
            id=subject.id,
            attributes={
                "user_id": subject.user_id,
                "role": subject.role,
                "role_id": subject.role_id,
                "active": subject.active,
            },
        )
    if isinstance(subject, Role):
        return ResourceRef(
            resource_type="Role",
            org_id=subject.org_id,
            id=subject.id,
            attributes={"system_role": subject.system_role, "key": subject.key},
        )
    if isinstance(subject, PermissionDelegation):
        return ResourceRef(
            resource_type="PermissionDelegation",
            org_id=subject.org_id,
            id=subject.id,
            attributes={"user_id": subject.delegator_id},
        )
    if isinstance(subject, User):
        # Users are global; tenant isolation does not apply to profiles
        return ResourceRef(resource_type="User", id=subject.id, attributes={"id": subject.id})

    resource_type = getattr(subject, "resource_type", None) or type(subject).__name__
    org_id = getattr(subject, "org_id", None)
    attributes = {
        name: getattr(subject, name) for name in _OWNERSHIP_ATTRS if hasattr(subject, name)
    }
    subject_id = getattr(subject, "id", None)
    return ResourceRef(
        resource_type=resource_type,
        org_id=org_id,
        id=str(subject_id) if subject_id is not None else None,
        attributes=attributes,
    )

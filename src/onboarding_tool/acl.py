"""
Access control entry model.

An ACE binds a subject (connection type, device or role) to an ordered list
of resource matches and a permission set. ACEs are built interactively and
may be incomplete while under construction; `validate()` is what stands
between a half-built ACE and the network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Any, Iterable, Optional, Union

from ._types import (
    DeviceId,
    MAX_AUTHORITY_LENGTH,
    MAX_HREF_LENGTH,
    MAX_ROLE_LENGTH,
    truncate,
)
from .errors import AceValidationError


class ConnectionType(str, Enum):
    """Connection-type ACE subjects."""
    ANON_CLEAR = "anon-clear"
    AUTH_CRYPT = "auth-crypt"


class WildcardKind(str, Enum):
    """Wildcard resource matches."""
    ALL = "*"            # all non-configuration resources
    ALL_SECURED = "+"    # ... with at least one secured endpoint
    ALL_PUBLIC = "-"     # ... with at least one unsecured endpoint


class Permission(Flag):
    """ACE permission bits, same values as the device's acl2 resource."""
    NONE = 0
    CREATE = 1
    RETRIEVE = 2
    UPDATE = 4
    DELETE = 8
    NOTIFY = 16

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "Permission":
        """Build a permission set from names like ["RETRIEVE", "update"]."""
        perms = cls.NONE
        for name in names:
            try:
                perms |= cls[name.strip().upper()]
            except KeyError:
                raise AceValidationError(f"Unknown permission: {name}") from None
        return perms

    def names(self) -> list[str]:
        return [p.name for p in Permission if p.value and p in self]


@dataclass(frozen=True)
class ConnectionSubject:
    connection: ConnectionType

    def describe(self) -> str:
        return self.connection.value


@dataclass(frozen=True)
class DeviceSubject:
    device_id: DeviceId

    def describe(self) -> str:
        return str(self.device_id)


@dataclass(frozen=True)
class RoleSubject:
    """Role subject. Role and authority are clipped to 64 characters."""
    role: str
    authority: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "role", truncate(self.role, MAX_ROLE_LENGTH))
        if self.authority:
            object.__setattr__(
                self, "authority", truncate(self.authority, MAX_AUTHORITY_LENGTH)
            )

    def describe(self) -> str:
        if self.authority:
            return f"role:{self.role}@{self.authority}"
        return f"role:{self.role}"


AceSubject = Union[ConnectionSubject, DeviceSubject, RoleSubject]


@dataclass(frozen=True)
class AceResource:
    """
    One resource match of an ACE.

    A submitted entry carries exactly one of `href` or `wildcard`. An entry
    with neither is allowed while the ACE is being built.
    """
    href: Optional[str] = None
    wildcard: Optional[WildcardKind] = None

    def __post_init__(self):
        if self.href is not None:
            object.__setattr__(self, "href", truncate(self.href, MAX_HREF_LENGTH))

    @property
    def is_complete(self) -> bool:
        return bool(self.href) != (self.wildcard is not None)

    def describe(self) -> str:
        if self.href:
            return self.href
        if self.wildcard is not None:
            return self.wildcard.value
        return "<unset>"


@dataclass
class AccessControlEntry:
    """Mutable ACE under construction."""
    subject: AceSubject
    resources: list[AceResource] = field(default_factory=list)
    permissions: Permission = Permission.NONE

    def add_resource(self, resource: AceResource) -> AceResource:
        self.resources.append(resource)
        return resource

    def add_href(self, href: str) -> AceResource:
        return self.add_resource(AceResource(href=href))

    def add_wildcard(self, kind: WildcardKind) -> AceResource:
        return self.add_resource(AceResource(wildcard=kind))

    def add_permission(self, permission: Permission) -> None:
        self.permissions |= permission

    def set_permissions(self, permissions: Permission) -> None:
        self.permissions = permissions

    def validate(self) -> None:
        """Raise AceValidationError unless the ACE may be submitted."""
        if not self.resources:
            raise AceValidationError(
                f"ACE for {self.subject.describe()} has no resources"
            )
        for index, resource in enumerate(self.resources):
            if not resource.is_complete:
                raise AceValidationError(
                    f"ACE resource {index} needs exactly one of href or wildcard"
                )
        if not self.permissions:
            raise AceValidationError(
                f"ACE for {self.subject.describe()} grants no permissions"
            )
        if isinstance(self.subject, RoleSubject) and not self.subject.role:
            raise AceValidationError("Role subject requires a role name")

    def to_dict(self) -> dict[str, Any]:
        subject = self.subject
        if isinstance(subject, ConnectionSubject):
            subject_data = {"conntype": subject.connection.value}
        elif isinstance(subject, DeviceSubject):
            subject_data = {"uuid": str(subject.device_id)}
        else:
            subject_data = {"role": subject.role}
            if subject.authority:
                subject_data["authority"] = subject.authority

        resources = []
        for resource in self.resources:
            if resource.href:
                resources.append({"href": resource.href})
            elif resource.wildcard is not None:
                resources.append({"wc": resource.wildcard.value})

        return {
            "subject": subject_data,
            "resources": resources,
            "permission": self.permissions.value,
        }


@dataclass(frozen=True)
class AclEntry:
    """An ACE as stored on a device, with its device-assigned id."""
    ace_id: int
    ace: AccessControlEntry


def build_ace(subject: AceSubject) -> AccessControlEntry:
    """Start a new, empty ACE for a subject."""
    return AccessControlEntry(subject=subject)


def wildcard_ace(subject: AceSubject, permissions: Permission) -> AccessControlEntry:
    """ACE granting `permissions` on every non-configuration resource."""
    ace = build_ace(subject)
    ace.add_wildcard(WildcardKind.ALL)
    ace.set_permissions(permissions)
    return ace

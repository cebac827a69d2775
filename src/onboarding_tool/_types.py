"""
Type definitions for the onboarding tool.

These dataclasses define the device, credential and role model shared by
the registry, the OTM orchestrator and the provisioning engine. ACE types
live in acl.py.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .errors import RoleChainError, SelectionError

# Field limits imposed by the device-side security resources
MAX_ROLE_LENGTH = 64
MAX_AUTHORITY_LENGTH = 64
MAX_PIN_LENGTH = 24
MAX_HREF_LENGTH = 63  # 64 bytes on the device, including the terminator

DeviceId = uuid.UUID


def truncate(value: str, limit: int) -> str:
    """Clip operator input to a field limit. Longer input is never rejected."""
    return value[:limit]


def parse_device_id(value: Union[str, uuid.UUID]) -> DeviceId:
    """Accept a UUID or its string form, raising SelectionError otherwise."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise SelectionError(f"Not a device id: {value!r}") from None


class DiscoveryScope(str, Enum):
    """Multicast scope of a discovery request."""
    GENERAL = "general"          # link-local
    REALM_LOCAL = "realm_local"  # IPv6 realm-local
    SITE_LOCAL = "site_local"    # IPv6 site-local


class OtmMethod(str, Enum):
    """Ownership transfer strategy."""
    JUST_WORKS = "just_works"
    RANDOM_PIN = "random_pin"
    CERTIFICATE = "certificate"


class TransferState(str, Enum):
    """Per-device ownership transfer state."""
    DISCOVERED = "discovered"
    TRANSFER_REQUESTED = "transfer_requested"
    OWNED = "owned"
    TRANSFER_FAILED = "transfer_failed"


class OtmFailurePolicy(str, Enum):
    """What happens to a device whose ownership transfer failed."""
    LEAVE_REMOVED = "leave_removed"  # lost until rediscovered
    ROLLBACK = "rollback"            # re-offered as unowned


@dataclass(frozen=True)
class DeviceDescriptor:
    """
    A device reported by discovery.

    Only `name` may change over a device's lifetime; the registry swaps in
    the newer descriptor when a later discovery event refreshes it.
    """
    id: DeviceId
    name: str = ""
    endpoints: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.id} - {self.name}"


@dataclass(frozen=True)
class DiscoveredResource:
    """A resource hosted by a device, reported by resource discovery."""
    device_id: DeviceId
    href: str
    types: tuple[str, ...] = ()
    interfaces: tuple[str, ...] = ()
    endpoints: tuple[str, ...] = ()


@dataclass(frozen=True)
class Credential:
    """An entry of a /oic/sec/cred resource. Never built by this package."""
    credential_id: int
    subject_id: Optional[DeviceId]
    cred_type: str
    usage: str = ""
    public_data_encoding: Optional[str] = None
    private_data_encoding: Optional[str] = None
    role: Optional[str] = None
    authority: Optional[str] = None


@dataclass(frozen=True)
class RoleIdentity:
    """One role/authority pair of a role certificate request."""
    role: str
    authority: Optional[str] = None


@dataclass
class RoleChain:
    """Ordered role identities, built one element at a time."""
    roles: list[RoleIdentity] = field(default_factory=list)

    def add(self, role: str, authority: Optional[str] = None) -> RoleIdentity:
        """Append a role, truncating role and authority to their limits."""
        identity = RoleIdentity(
            role=truncate(role, MAX_ROLE_LENGTH),
            authority=truncate(authority, MAX_AUTHORITY_LENGTH) if authority else None,
        )
        self.roles.append(identity)
        return identity

    def validate(self) -> None:
        if not self.roles:
            raise RoleChainError("Role chain must hold at least one role")
        for identity in self.roles:
            if not identity.role:
                raise RoleChainError("Role chain contains an empty role")

    def __len__(self) -> int:
        return len(self.roles)

    def __iter__(self):
        return iter(self.roles)

"""
Provisioning SDK boundary.

The onboarding core never touches the wire. Every network operation goes
through a ProvisioningSDK implementation, which:

- returns a request handle >= 0 when the request was sent, or a negative
  error code when it was not;
- later invokes the supplied handler from one of its own threads.

Status handlers receive `(status, payload)` where status >= 0 means
success. Discovery handlers receive one object per observed response and
are never told that discovery has finished.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from ._types import DeviceDescriptor, DeviceId, DiscoveredResource, DiscoveryScope, RoleIdentity
from .acl import AccessControlEntry

DeviceObservedHandler = Callable[[DeviceDescriptor], None]
ResourceObservedHandler = Callable[[DiscoveredResource], None]
StatusHandler = Callable[[int, Any], None]

# Generic rejection code for implementations without a more specific one
SDK_ERROR = -1


class TrustAnchorKind(str, Enum):
    """Kinds of trust anchor the SDK can install."""
    MANUFACTURER = "mfg"
    ROOT_CA = "root_ca"


class ProvisioningSDK(ABC):
    """Abstract provisioning SDK."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    def init(self, storage_dir: Path, device_info: dict[str, str]) -> int:
        """Configure credential storage and start the stack. < 0 on failure."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release all SDK resources."""

    @abstractmethod
    def reset(self) -> int:
        """Factory-reset the tool's own security state."""

    # ------------------------------------------------------------------
    # Discovery (streaming)
    # ------------------------------------------------------------------

    @abstractmethod
    def discover_unowned(self, scope: DiscoveryScope, handler: DeviceObservedHandler) -> int:
        ...

    @abstractmethod
    def discover_owned(self, scope: DiscoveryScope, handler: DeviceObservedHandler) -> int:
        ...

    @abstractmethod
    def discover_resources(self, device_id: DeviceId, handler: ResourceObservedHandler) -> int:
        ...

    # ------------------------------------------------------------------
    # Ownership transfer
    # ------------------------------------------------------------------

    @abstractmethod
    def perform_just_works_otm(self, device_id: DeviceId, handler: StatusHandler) -> int:
        ...

    @abstractmethod
    def request_random_pin(self, device_id: DeviceId, handler: StatusHandler) -> int:
        ...

    @abstractmethod
    def perform_random_pin_otm(self, device_id: DeviceId, pin: str, handler: StatusHandler) -> int:
        ...

    @abstractmethod
    def perform_cert_otm(self, device_id: DeviceId, handler: StatusHandler) -> int:
        ...

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    @abstractmethod
    def provision_pairwise_credentials(
        self, device_a: DeviceId, device_b: DeviceId, handler: StatusHandler
    ) -> int:
        ...

    @abstractmethod
    def provision_ace(
        self, device_id: DeviceId, ace: AccessControlEntry, handler: StatusHandler
    ) -> int:
        ...

    @abstractmethod
    def provision_identity_certificate(self, device_id: DeviceId, handler: StatusHandler) -> int:
        ...

    @abstractmethod
    def provision_role_certificate(
        self, roles: list[RoleIdentity], device_id: DeviceId, handler: StatusHandler
    ) -> int:
        ...

    @abstractmethod
    def device_hard_reset(self, device_id: DeviceId, handler: StatusHandler) -> int:
        ...

    # ------------------------------------------------------------------
    # Retrieval and deletion
    # ------------------------------------------------------------------

    @abstractmethod
    def retrieve_creds(self, device_id: DeviceId, handler: StatusHandler) -> int:
        """Payload on success: iterable of Credential."""

    @abstractmethod
    def delete_cred_by_id(self, device_id: DeviceId, credential_id: int, handler: StatusHandler) -> int:
        ...

    @abstractmethod
    def retrieve_acl(self, device_id: DeviceId, handler: StatusHandler) -> int:
        """Payload on success: iterable of AclEntry."""

    @abstractmethod
    def delete_ace_by_id(self, device_id: DeviceId, ace_id: int, handler: StatusHandler) -> int:
        ...

    # ------------------------------------------------------------------
    # Local identity (synchronous)
    # ------------------------------------------------------------------

    @abstractmethod
    def retrieve_own_creds(self) -> Optional[Iterable[Any]]:
        """The tool's own credentials, or None if unavailable."""

    @abstractmethod
    def delete_own_cred_by_id(self, credential_id: int) -> int:
        ...

    @abstractmethod
    def add_trust_anchor(self, kind: TrustAnchorKind, data: bytes) -> int:
        """Install a trust anchor. Returns the new credential id or < 0."""

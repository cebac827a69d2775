"""
Provisioning engine.

Builds and submits authorization state on devices this tool owns: ACEs,
pairwise credentials, identity and role certificates. Also retrieves and
deletes existing /oic/sec/cred and /oic/sec/acl2 entries, manages the
tool's own credentials and installs manufacturer trust anchors.

Everything is checked locally first. A SelectionError, AceValidationError,
RoleChainError or TrustAnchorError means nothing was sent; a
RequestRejectedError means the SDK refused to send. Once a request is
accepted its PendingRequest is the only place the outcome shows up. There
are no timeouts or retries here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from ._types import Credential, DeviceDescriptor, DeviceId, RoleChain
from .acl import (
    AccessControlEntry,
    AceSubject,
    ConnectionSubject,
    ConnectionType,
    Permission,
    RoleSubject,
    build_ace,
    wildcard_ace,
)
from .errors import RequestRejectedError, SelectionError, TrustAnchorError
from .registry import DeviceRegistry
from .results import (
    Completion,
    OperationResult,
    PendingRequest,
    ResultHandler,
    log_result,
    status_handler,
)
from .sdk import ProvisioningSDK, StatusHandler, TrustAnchorKind

logger = logging.getLogger(__name__)

# Default grant of the wildcard ACEs
READ_WRITE = Permission.RETRIEVE | Permission.UPDATE


class ProvisioningEngine:
    """Provisioning verbs for owned devices."""

    def __init__(self, sdk: ProvisioningSDK, registry: DeviceRegistry):
        self.sdk = sdk
        self.registry = registry

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def provision_pairwise_credentials(self, device_a: DeviceId, device_b: DeviceId) -> PendingRequest:
        """Have the two devices share a symmetric credential."""
        first = self.registry.require_owned(device_a)
        second = self.registry.require_owned(device_b)
        if first.id == second.id:
            raise SelectionError("Pairwise credentials need two different devices")

        return self._issue(
            "pairwise credential provisioning",
            first.id,
            lambda handler: self.sdk.provision_pairwise_credentials(first.id, second.id, handler),
        )

    def retrieve_credentials(self, device_id: DeviceId) -> PendingRequest:
        """RETRIEVE /oic/sec/cred. Payload: list[Credential]."""
        device = self.registry.require_owned(device_id)
        return self._issue(
            "credential retrieval",
            device.id,
            lambda handler: self.sdk.retrieve_creds(device.id, handler),
            transform=_materialize,
        )

    def delete_credential(self, device_id: DeviceId, credential_id: int) -> PendingRequest:
        """DELETE one /oic/sec/cred entry by credid."""
        device = self.registry.require_owned(device_id)
        return self._issue(
            f"credential {credential_id} deletion",
            device.id,
            lambda handler: self.sdk.delete_cred_by_id(device.id, credential_id, handler),
        )

    def retrieve_own_credentials(self) -> list[Credential]:
        """The tool's own credentials. Local and synchronous."""
        creds = self.sdk.retrieve_own_creds()
        result = _materialize(creds)
        logger.info(f"Retrieved {len(result)} own credential(s)")
        return result

    def delete_own_credential(self, credential_id: int) -> None:
        ret = self.sdk.delete_own_cred_by_id(credential_id)
        if ret < 0:
            logger.error(f"ERROR deleting own credential {credential_id}")
            raise RequestRejectedError(f"own credential {credential_id} deletion", ret)
        logger.info(f"Deleted own credential {credential_id}")

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def build_ace(self, subject: AceSubject) -> AccessControlEntry:
        """Start an ACE. It may stay incomplete until `submit_ace`."""
        return build_ace(subject)

    def submit_ace(self, device_id: DeviceId, ace: AccessControlEntry) -> PendingRequest:
        """Validate `ace` and provision it onto an owned device."""
        device = self.registry.require_owned(device_id)
        ace.validate()
        logger.debug(f"Submitting ACE {ace.to_dict()} to {device}")
        return self._issue(
            "ACE provisioning",
            device.id,
            lambda handler: self.sdk.provision_ace(device.id, ace, handler),
        )

    def provision_auth_crypt_wildcard_ace(
        self, device_id: DeviceId, permissions: Permission
    ) -> PendingRequest:
        """Grant `permissions` on all resources to auth-crypt connections."""
        ace = wildcard_ace(ConnectionSubject(ConnectionType.AUTH_CRYPT), permissions)
        return self.submit_ace(device_id, ace)

    def provision_role_wildcard_ace(
        self,
        device_id: DeviceId,
        role: str,
        authority: Optional[str] = None,
        permissions: Permission = READ_WRITE,
    ) -> PendingRequest:
        """Grant `permissions` on all resources to holders of a role."""
        ace = wildcard_ace(RoleSubject(role, authority), permissions)
        return self.submit_ace(device_id, ace)

    def retrieve_acl(self, device_id: DeviceId) -> PendingRequest:
        """RETRIEVE /oic/sec/acl2. Payload: list[AclEntry]."""
        device = self.registry.require_owned(device_id)
        return self._issue(
            "ACL retrieval",
            device.id,
            lambda handler: self.sdk.retrieve_acl(device.id, handler),
            transform=_materialize,
        )

    def delete_ace(self, device_id: DeviceId, ace_id: int) -> PendingRequest:
        """DELETE one /oic/sec/acl2 entry by aceid."""
        device = self.registry.require_owned(device_id)
        return self._issue(
            f"ACE {ace_id} deletion",
            device.id,
            lambda handler: self.sdk.delete_ace_by_id(device.id, ace_id, handler),
        )

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def provision_identity_certificate(self, device_id: DeviceId) -> PendingRequest:
        device = self.registry.require_owned(device_id)
        return self._issue(
            "identity certificate provisioning",
            device.id,
            lambda handler: self.sdk.provision_identity_certificate(device.id, handler),
        )

    def provision_role_certificate(self, role_chain: RoleChain, device_id: DeviceId) -> PendingRequest:
        device = self.registry.require_owned(device_id)
        role_chain.validate()
        roles = list(role_chain)
        return self._issue(
            f"role certificate provisioning ({len(roles)} role(s))",
            device.id,
            lambda handler: self.sdk.provision_role_certificate(roles, device.id, handler),
        )

    def install_trust_anchor(
        self,
        certificate: bytes,
        kind: TrustAnchorKind = TrustAnchorKind.MANUFACTURER,
    ) -> int:
        """Install a trust anchor for certificate OTM. Returns its credid."""
        cert = load_certificate(certificate)
        fingerprint = cert.fingerprint(hashes.SHA256()).hex()

        credential_id = self.sdk.add_trust_anchor(kind, certificate)
        if credential_id < 0:
            logger.error(f"ERROR installing trust anchor {cert.subject.rfc4514_string()}")
            raise RequestRejectedError("trust anchor installation", credential_id)

        logger.info(
            f"Installed {kind.value} trust anchor {cert.subject.rfc4514_string()} "
            f"(sha256 {fingerprint[:16]}...) as credid {credential_id}"
        )
        return credential_id

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_device(self, device_id: DeviceId) -> PendingRequest:
        """Hard-reset an owned device back to its unowned state."""
        device = self.registry.require_owned(device_id)
        return self._issue(
            "hard reset",
            device.id,
            lambda handler: self.sdk.device_hard_reset(device.id, handler),
            transition=lambda result: self._forget_on_success(device, result),
        )

    def _forget_on_success(self, device: DeviceDescriptor, result: OperationResult) -> None:
        if result.success:
            self.registry.remove(device.id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue(
        self,
        operation: str,
        device_id: Optional[DeviceId],
        issue: Callable[[StatusHandler], int],
        transform: Optional[Callable[[Any], Any]] = None,
        transition: Optional[ResultHandler] = None,
    ) -> PendingRequest:
        completion = Completion(operation, device_id, transition=transition)
        completion.add_handler(log_result)

        handle = issue(status_handler(completion, transform))
        if handle < 0:
            logger.error(f"ERROR issuing request for {operation} on {device_id}")
            raise RequestRejectedError(operation, handle)

        logger.info(f"Issued request for {operation} on {device_id}")
        return PendingRequest(handle, completion)


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse PEM or DER certificate bytes, raising TrustAnchorError."""
    if not data:
        raise TrustAnchorError("No certificate data")
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError:
        raise TrustAnchorError("Data is neither a PEM nor a DER certificate") from None


def _materialize(items: Optional[Iterable[Any]]) -> list:
    """Flatten SDK collections (possibly linked lists) into plain lists."""
    if items is None:
        return []
    return list(items)

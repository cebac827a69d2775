"""
Simulated provisioning SDK.

An in-memory network of virtual devices behind the ProvisioningSDK
interface. Requests are accepted synchronously and answered from a thread
pool, so callers see the same issue-now, complete-later behaviour (and the
same cross-thread callbacks) as with a real stack. Used by the test suite
and by `--simulate` runs of the CLI and HTTP API.
"""

from __future__ import annotations

import itertools
import logging
import secrets
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from ._types import (
    Credential,
    DeviceDescriptor,
    DeviceId,
    DiscoveredResource,
    DiscoveryScope,
    RoleIdentity,
)
from .acl import AccessControlEntry, AclEntry
from .sdk import (
    SDK_ERROR,
    DeviceObservedHandler,
    ProvisioningSDK,
    ResourceObservedHandler,
    StatusHandler,
    TrustAnchorKind,
)

logger = logging.getLogger(__name__)

OWNER_NONE = None
OWNER_SELF = "self"
OWNER_OTHER = "other"

CRED_PSK = "symmetric pair-wise key"
CRED_CERT = "asymmetric signing key with certificate"


@dataclass
class VirtualDevice:
    """A device living on the simulated network."""
    descriptor: DeviceDescriptor
    owner: Optional[str] = OWNER_NONE
    scopes: set[DiscoveryScope] = field(default_factory=lambda: set(DiscoveryScope))
    resources: list[str] = field(default_factory=lambda: ["/oic/d", "/oic/p", "/a/light"])
    has_mfg_certificate: bool = False
    fail_otm: bool = False
    reachable: bool = True
    rebroadcasts: int = 1

    # Security state, populated by provisioning
    pin: Optional[str] = None
    credentials: list[Credential] = field(default_factory=list)
    acl: list[AclEntry] = field(default_factory=list)

    @property
    def id(self) -> DeviceId:
        return self.descriptor.id

    def clear_security_state(self) -> None:
        self.pin = None
        self.credentials.clear()
        self.acl.clear()


class SimulatedSDK(ProvisioningSDK):
    """ProvisioningSDK backed by virtual devices."""

    def __init__(self, max_workers: int = 4, fail_init: bool = False):
        self.devices: dict[DeviceId, VirtualDevice] = {}
        self.own_credentials: list[Credential] = []
        self.rejected_operations: set[str] = set()
        self.fail_init = fail_init
        self.initialized = False
        self.shutdown_calls = 0

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sim-sdk")
        self._lock = threading.RLock()
        self._handles = itertools.count()
        self._cred_ids = itertools.count(1)
        self._ace_ids = itertools.count(1)
        self._inflight: set[Future] = set()

    # ------------------------------------------------------------------
    # Network setup
    # ------------------------------------------------------------------

    def add_device(
        self,
        name: str,
        device_id: Optional[DeviceId] = None,
        endpoints: Iterable[str] = (),
        owner: Optional[str] = OWNER_NONE,
        **kwargs: Any,
    ) -> VirtualDevice:
        """Put a device on the simulated network."""
        descriptor = DeviceDescriptor(
            id=device_id or uuid.uuid4(),
            name=name,
            endpoints=tuple(endpoints) or (f"coaps://[fe80::{len(self.devices) + 1}]:5684",),
        )
        device = VirtualDevice(descriptor=descriptor, owner=owner, **kwargs)
        with self._lock:
            self.devices[device.id] = device
        return device

    def reject(self, *operations: str) -> None:
        """Make the named SDK methods refuse to issue requests."""
        self.rejected_operations.update(operations)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, storage_dir: Path, device_info: dict[str, str]) -> int:
        if self.fail_init:
            return SDK_ERROR
        self.initialized = True
        logger.info(f"Simulated SDK up as {device_info.get('name', 'OBT')} ({storage_dir})")
        return 0

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.initialized = False
        self._executor.shutdown(wait=True)

    def reset(self) -> int:
        with self._lock:
            self.own_credentials.clear()
            for device in self.devices.values():
                if device.owner == OWNER_SELF:
                    device.owner = OWNER_OTHER
        return 0

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_unowned(self, scope: DiscoveryScope, handler: DeviceObservedHandler) -> int:
        return self._discover("discover_unowned", scope, OWNER_NONE, handler)

    def discover_owned(self, scope: DiscoveryScope, handler: DeviceObservedHandler) -> int:
        return self._discover("discover_owned", scope, OWNER_SELF, handler)

    def _discover(self, operation: str, scope: DiscoveryScope, owner: Optional[str], handler) -> int:
        if not self._accepts(operation):
            return SDK_ERROR
        with self._lock:
            found = [
                d.descriptor
                for d in self.devices.values()
                if d.reachable and d.owner == owner and scope in d.scopes
                for _ in range(d.rebroadcasts)
            ]
        for descriptor in found:
            self._submit(handler, descriptor)
        return next(self._handles)

    def discover_resources(self, device_id: DeviceId, handler: ResourceObservedHandler) -> int:
        if not self._accepts("discover_resources"):
            return SDK_ERROR
        device = self.devices.get(device_id)
        if device is not None and device.reachable:
            for href in list(device.resources):
                self._submit(handler, DiscoveredResource(
                    device_id=device.id,
                    href=href,
                    types=(f"oic.r{href.replace('/', '.')}",),
                    interfaces=("oic.if.baseline",),
                    endpoints=device.descriptor.endpoints,
                ))
        return next(self._handles)

    # ------------------------------------------------------------------
    # Ownership transfer
    # ------------------------------------------------------------------

    def perform_just_works_otm(self, device_id: DeviceId, handler: StatusHandler) -> int:
        return self._request("perform_just_works_otm", handler, lambda: self._take_ownership(device_id))

    def request_random_pin(self, device_id: DeviceId, handler: StatusHandler) -> int:
        def _generate():
            device = self._unowned(device_id)
            device.pin = "".join(secrets.choice("0123456789") for _ in range(8))
            logger.info(f"[{device.descriptor.name}] displays PIN {device.pin}")
            return None

        return self._request("request_random_pin", handler, _generate)

    def perform_random_pin_otm(self, device_id: DeviceId, pin: str, handler: StatusHandler) -> int:
        def _transfer():
            device = self._unowned(device_id)
            if device.pin is None or device.pin != pin:
                raise _DeviceError("PIN mismatch")
            return self._take_ownership(device_id)

        return self._request("perform_random_pin_otm", handler, _transfer)

    def perform_cert_otm(self, device_id: DeviceId, handler: StatusHandler) -> int:
        def _transfer():
            device = self._unowned(device_id)
            if not device.has_mfg_certificate or not self._has_trust_anchor():
                raise _DeviceError("manufacturer certificate not trusted")
            return self._take_ownership(device_id)

        return self._request("perform_cert_otm", handler, _transfer)

    def _take_ownership(self, device_id: DeviceId) -> DeviceDescriptor:
        device = self._unowned(device_id)
        if device.fail_otm:
            raise _DeviceError("ownership transfer aborted by device")
        device.owner = OWNER_SELF
        return device.descriptor

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision_pairwise_credentials(self, device_a: DeviceId, device_b: DeviceId, handler: StatusHandler) -> int:
        def _provision():
            first, second = self._owned(device_a), self._owned(device_b)
            first.credentials.append(Credential(next(self._cred_ids), second.id, CRED_PSK))
            second.credentials.append(Credential(next(self._cred_ids), first.id, CRED_PSK))

        return self._request("provision_pairwise_credentials", handler, _provision)

    def provision_ace(self, device_id: DeviceId, ace: AccessControlEntry, handler: StatusHandler) -> int:
        def _provision():
            entry = AclEntry(ace_id=next(self._ace_ids), ace=ace)
            self._owned(device_id).acl.append(entry)
            return entry.ace_id

        return self._request("provision_ace", handler, _provision)

    def provision_identity_certificate(self, device_id: DeviceId, handler: StatusHandler) -> int:
        def _provision():
            device = self._owned(device_id)
            device.credentials.append(Credential(
                next(self._cred_ids), device.id, CRED_CERT,
                usage="oic.sec.cred.cert",
                public_data_encoding="oic.sec.encoding.pem",
                private_data_encoding="oic.sec.encoding.raw",
            ))

        return self._request("provision_identity_certificate", handler, _provision)

    def provision_role_certificate(self, roles: list[RoleIdentity], device_id: DeviceId, handler: StatusHandler) -> int:
        def _provision():
            device = self._owned(device_id)
            for identity in roles:
                device.credentials.append(Credential(
                    next(self._cred_ids), device.id, CRED_CERT,
                    usage="oic.sec.cred.rolecert",
                    public_data_encoding="oic.sec.encoding.pem",
                    private_data_encoding="oic.sec.encoding.raw",
                    role=identity.role,
                    authority=identity.authority,
                ))

        return self._request("provision_role_certificate", handler, _provision)

    def device_hard_reset(self, device_id: DeviceId, handler: StatusHandler) -> int:
        def _reset():
            device = self._owned(device_id)
            device.owner = OWNER_NONE
            device.clear_security_state()

        return self._request("device_hard_reset", handler, _reset)

    # ------------------------------------------------------------------
    # Retrieval and deletion
    # ------------------------------------------------------------------

    def retrieve_creds(self, device_id: DeviceId, handler: StatusHandler) -> int:
        return self._request(
            "retrieve_creds", handler, lambda: iter(list(self._owned(device_id).credentials))
        )

    def delete_cred_by_id(self, device_id: DeviceId, credential_id: int, handler: StatusHandler) -> int:
        def _delete():
            device = self._owned(device_id)
            _remove_where(device.credentials, lambda c: c.credential_id == credential_id)

        return self._request("delete_cred_by_id", handler, _delete)

    def retrieve_acl(self, device_id: DeviceId, handler: StatusHandler) -> int:
        return self._request("retrieve_acl", handler, lambda: iter(list(self._owned(device_id).acl)))

    def delete_ace_by_id(self, device_id: DeviceId, ace_id: int, handler: StatusHandler) -> int:
        def _delete():
            device = self._owned(device_id)
            _remove_where(device.acl, lambda e: e.ace_id == ace_id)

        return self._request("delete_ace_by_id", handler, _delete)

    # ------------------------------------------------------------------
    # Local identity
    # ------------------------------------------------------------------

    def retrieve_own_creds(self) -> Optional[Iterable[Credential]]:
        if not self._accepts("retrieve_own_creds"):
            return None
        with self._lock:
            return list(self.own_credentials)

    def delete_own_cred_by_id(self, credential_id: int) -> int:
        if not self._accepts("delete_own_cred_by_id"):
            return SDK_ERROR
        with self._lock:
            try:
                _remove_where(self.own_credentials, lambda c: c.credential_id == credential_id)
            except _DeviceError:
                return SDK_ERROR
        return 0

    def add_trust_anchor(self, kind: TrustAnchorKind, data: bytes) -> int:
        if not self._accepts("add_trust_anchor"):
            return SDK_ERROR
        usage = "oic.sec.cred.mfgtrustca" if kind is TrustAnchorKind.MANUFACTURER else "oic.sec.cred.trustca"
        credential = Credential(
            next(self._cred_ids), None, CRED_CERT,
            usage=usage,
            public_data_encoding="oic.sec.encoding.pem",
        )
        with self._lock:
            self.own_credentials.append(credential)
        return credential.credential_id

    def _has_trust_anchor(self) -> bool:
        return any(c.usage == "oic.sec.cred.mfgtrustca" for c in self.own_credentials)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def flush(self, timeout: float = 5.0) -> None:
        """Block until every callback delivered so far has run."""
        while True:
            with self._lock:
                pending = set(self._inflight)
            if not pending:
                return
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                raise TimeoutError(f"{len(not_done)} simulated callback(s) still running")

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        future = self._executor.submit(fn, *args)
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._retire)

    def _retire(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def _accepts(self, operation: str) -> bool:
        return self.initialized and operation not in self.rejected_operations

    def _request(self, operation: str, handler: StatusHandler, action: Callable[[], Any]) -> int:
        if not self._accepts(operation):
            return SDK_ERROR
        self._submit(self._complete, operation, handler, action)
        return next(self._handles)

    def _complete(self, operation: str, handler: StatusHandler, action: Callable[[], Any]) -> None:
        try:
            with self._lock:
                payload = action()
        except _DeviceError as e:
            logger.debug(f"Simulated {operation} failed: {e}")
            handler(SDK_ERROR, None)
            return
        except Exception:
            logger.exception(f"Simulated {operation} raised")
            handler(SDK_ERROR, None)
            return
        handler(0, payload)

    def _unowned(self, device_id: DeviceId) -> VirtualDevice:
        device = self._reachable(device_id)
        if device.owner is not OWNER_NONE:
            raise _DeviceError(f"{device_id} is already owned")
        return device

    def _owned(self, device_id: DeviceId) -> VirtualDevice:
        device = self._reachable(device_id)
        if device.owner != OWNER_SELF:
            raise _DeviceError(f"{device_id} is not owned by this tool")
        return device

    def _reachable(self, device_id: DeviceId) -> VirtualDevice:
        device = self.devices.get(device_id)
        if device is None or not device.reachable:
            raise _DeviceError(f"{device_id} did not respond")
        return device


class _DeviceError(Exception):
    """A simulated device answered with an error."""


def _remove_where(items: list, predicate: Callable[[Any], bool]) -> None:
    for index, item in enumerate(items):
        if predicate(item):
            del items[index]
            return
    raise _DeviceError("no such entry")


def seed_demo_network(sdk: SimulatedSDK) -> list[VirtualDevice]:
    """A few unowned devices to onboard when running with --simulate."""
    return [
        sdk.add_device("Smart Light", resources=["/oic/d", "/oic/p", "/a/light"]),
        sdk.add_device("Smart Switch", resources=["/oic/d", "/oic/p", "/a/switch"]),
        sdk.add_device(
            "Thermostat",
            resources=["/oic/d", "/oic/p", "/a/temperature"],
            has_mfg_certificate=True,
        ),
    ]

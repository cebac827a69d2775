"""
Discovery dispatcher.

Turns one discovery call into an open-ended stream of "observed" events.
The returned handle only says the request went out: responses keep arriving
on SDK threads for as long as devices answer, and a search that finds
nothing looks exactly like one that has not finished yet.

Observed devices are written to the registry, which owns deduplication and
the owned-over-unowned precedence. Listeners see every raw event.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from ._types import DeviceDescriptor, DeviceId, DiscoveredResource, DiscoveryScope
from .errors import RequestRejectedError, SelectionError
from .registry import DeviceRegistry
from .sdk import ProvisioningSDK

logger = logging.getLogger(__name__)

DeviceListener = Callable[[DeviceDescriptor, bool], None]   # (device, owned)
ResourceListener = Callable[[DiscoveredResource], None]


class DiscoveryDispatcher:
    """Issues discovery requests and feeds responses into the registry."""

    def __init__(self, sdk: ProvisioningSDK, registry: DeviceRegistry):
        self.sdk = sdk
        self.registry = registry
        self._device_listeners: list[DeviceListener] = []
        self._resource_listeners: list[ResourceListener] = []
        self._listener_lock = threading.Lock()

    def add_listener(self, listener: DeviceListener) -> None:
        """Call `listener(device, owned)` for every observed-device event."""
        with self._listener_lock:
            self._device_listeners.append(listener)

    def add_resource_listener(self, listener: ResourceListener) -> None:
        with self._listener_lock:
            self._resource_listeners.append(listener)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def discover_unowned(self, scope: DiscoveryScope = DiscoveryScope.GENERAL) -> int:
        """Search for unowned devices. Returns the request handle."""
        logger.info(f"Discovering unowned devices ({scope.value})")
        handle = self.sdk.discover_unowned(scope, self._on_unowned)
        return self._check(handle, f"unowned discovery ({scope.value})")

    def discover_owned(self, scope: DiscoveryScope = DiscoveryScope.GENERAL) -> int:
        """Search for devices owned by this tool. Returns the request handle."""
        logger.info(f"Discovering owned devices ({scope.value})")
        handle = self.sdk.discover_owned(scope, self._on_owned)
        return self._check(handle, f"owned discovery ({scope.value})")

    def discover_resources(self, device_id: DeviceId) -> int:
        """List the resources hosted by any known device."""
        if device_id not in self.registry:
            raise SelectionError(f"Unknown device {device_id}, re-discover devices")
        logger.info(f"Discovering resources on {device_id}")
        handle = self.sdk.discover_resources(device_id, self._on_resource)
        return self._check(handle, "resource discovery")

    @staticmethod
    def _check(handle: int, operation: str) -> int:
        if handle < 0:
            logger.error(f"ERROR issuing {operation} (code {handle})")
            raise RequestRejectedError(operation, handle)
        logger.info(f"Issued {operation}, handle {handle}")
        return handle

    # ------------------------------------------------------------------
    # SDK callbacks (SDK threads)
    # ------------------------------------------------------------------

    def _on_unowned(self, device: DeviceDescriptor) -> None:
        self.registry.observe_unowned(device)
        self._notify(device, owned=False)

    def _on_owned(self, device: DeviceDescriptor) -> None:
        self.registry.observe_owned(device)
        self._notify(device, owned=True)

    def _on_resource(self, resource: DiscoveredResource) -> None:
        logger.info(f"Resource {resource.href} on {resource.device_id}")
        with self._listener_lock:
            listeners = list(self._resource_listeners)
        for listener in listeners:
            try:
                listener(resource)
            except Exception as e:
                logger.error(f"Resource listener failed: {e}")

    def _notify(self, device: DeviceDescriptor, owned: bool) -> None:
        with self._listener_lock:
            listeners = list(self._device_listeners)
        for listener in listeners:
            try:
                listener(device, owned)
            except Exception as e:
                logger.error(f"Discovery listener failed: {e}")


def scope_from_name(name: Optional[str]) -> DiscoveryScope:
    """Map driver input ("general", "realm-local", "site_local") to a scope."""
    if not name:
        return DiscoveryScope.GENERAL
    try:
        return DiscoveryScope(name.strip().lower().replace("-", "_"))
    except ValueError:
        raise SelectionError(f"Unknown discovery scope: {name}") from None

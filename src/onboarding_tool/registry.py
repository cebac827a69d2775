"""
Device registry.

Holds the two disjoint device collections, unowned and owned, keyed by
device id. Discovery callbacks and OTM/provisioning completions write here
from SDK threads while the foreground reads, so every operation holds the
registry lock and every read returns a copy.

Precedence: owned wins. An owned observation evicts the id from the unowned
collection; an unowned observation of an owned id is dropped.

Ids taken for an ownership transfer stay out of the unowned collection until
the transfer ends, so a late discovery answer cannot re-offer them.

Only `name` is refreshed when a known device answers again; its endpoints
are the ones it was first discovered with.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Optional

from ._types import DeviceDescriptor, DeviceId
from .errors import SelectionError

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Concurrency-safe store of unowned and owned devices."""

    def __init__(self):
        # dicts keep discovery order, which is the order devices are offered in
        self._unowned: dict[DeviceId, DeviceDescriptor] = {}
        self._owned: dict[DeviceId, DeviceDescriptor] = {}
        self._in_transfer: set[DeviceId] = set()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    def observe_unowned(self, device: DeviceDescriptor) -> bool:
        """
        Record an unowned-discovery response.

        Returns True if the device was not already known as unowned.
        """
        with self._lock:
            if device.id in self._owned:
                logger.debug(f"Ignoring unowned report for owned device {device.id}")
                return False
            if device.id in self._in_transfer:
                logger.debug(f"Ignoring unowned report for device {device.id} in transfer")
                return False
            is_new = device.id not in self._unowned
            self._unowned[device.id] = _refreshed(self._unowned.get(device.id), device)

        if is_new:
            logger.info(f"Discovered unowned device {device}")
        return is_new

    def observe_owned(self, device: DeviceDescriptor) -> bool:
        """
        Record an owned-discovery response.

        Returns True if the device was not already known as owned.
        """
        with self._lock:
            evicted = self._unowned.pop(device.id, None)
            is_new = device.id not in self._owned
            self._owned[device.id] = _refreshed(self._owned.get(device.id), device)

        if evicted is not None:
            logger.info(f"Device {device.id} is owned, dropped from unowned devices")
        if is_new:
            logger.info(f"Discovered owned device {device}")
        return is_new

    def move_to_owned(self, device: DeviceDescriptor) -> None:
        """Record a completed ownership transfer."""
        with self._lock:
            self._unowned.pop(device.id, None)
            self._owned[device.id] = device
        logger.info(f"Device {device} moved to owned devices")

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def take_unowned(self, device_id: DeviceId) -> DeviceDescriptor:
        """
        Remove and return an unowned device, for an OTM about to start.

        The id is held as in transfer until `end_transfer()`.
        """
        with self._lock:
            device = self._unowned.pop(device_id, None)
            if device is not None:
                self._in_transfer.add(device.id)
        if device is None:
            raise SelectionError(f"No unowned device {device_id}")
        return device

    def end_transfer(self, device_id: DeviceId) -> None:
        """Let discovery offer the device again."""
        with self._lock:
            self._in_transfer.discard(device_id)

    def in_transfer(self, device_id: DeviceId) -> bool:
        with self._lock:
            return device_id in self._in_transfer

    def remove(self, device_id: DeviceId) -> Optional[DeviceDescriptor]:
        """Remove a device from whichever collection holds it."""
        with self._lock:
            device = self._unowned.pop(device_id, None)
            if device is None:
                device = self._owned.pop(device_id, None)
        if device is not None:
            logger.info(f"Removed device {device}")
        return device

    def reset_all(self) -> None:
        """Forget every device."""
        with self._lock:
            dropped = len(self._unowned) + len(self._owned)
            self._unowned.clear()
            self._owned.clear()
            self._in_transfer.clear()
        logger.info(f"Registry reset, {dropped} device(s) dropped")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_unowned(self) -> list[DeviceDescriptor]:
        with self._lock:
            return list(self._unowned.values())

    def list_owned(self) -> list[DeviceDescriptor]:
        with self._lock:
            return list(self._owned.values())

    def get_unowned(self, device_id: DeviceId) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._unowned.get(device_id)

    def get_owned(self, device_id: DeviceId) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._owned.get(device_id)

    def get(self, device_id: DeviceId) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._owned.get(device_id) or self._unowned.get(device_id)

    def require_owned(self, device_id: DeviceId) -> DeviceDescriptor:
        device = self.get_owned(device_id)
        if device is None:
            raise SelectionError(f"No owned device {device_id}")
        return device

    def unowned_at(self, index: int) -> DeviceDescriptor:
        """Select an unowned device by its position in `list_unowned()`."""
        return _select(self.list_unowned(), index, "unowned")

    def owned_at(self, index: int) -> DeviceDescriptor:
        """Select an owned device by its position in `list_owned()`."""
        return _select(self.list_owned(), index, "owned")

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "unowned": len(self._unowned),
                "owned": len(self._owned),
                "total": len(self._unowned) + len(self._owned),
            }

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._unowned or device_id in self._owned


def _refreshed(known: Optional[DeviceDescriptor], device: DeviceDescriptor) -> DeviceDescriptor:
    if known is None:
        return device
    return replace(known, name=device.name)


def _select(devices: list[DeviceDescriptor], index: int, kind: str) -> DeviceDescriptor:
    if not devices:
        raise SelectionError(f"No {kind} devices, re-discover {kind} devices")
    if index < 0 or index >= len(devices):
        raise SelectionError(f"Invalid selection {index}, expected 0-{len(devices) - 1}")
    return devices[index]

"""
Ownership transfer orchestrator.

Drives a selected unowned device through

    DISCOVERED -> TRANSFER_REQUESTED -> OWNED | TRANSFER_FAILED

The device leaves the unowned collection when the request is issued, before
any outcome is known, and the registry ignores late unowned-discovery
answers for it until the transfer ends, so it cannot be offered for a second
transfer while one is in flight. On success the orchestrator files it under
owned devices. On failure the configured OtmFailurePolicy decides: LEAVE_REMOVED keeps it
out of the registry until it is rediscovered, ROLLBACK offers it again as
unowned (unless an owned report for it arrived in the meantime).

A request the SDK refuses to send never started, so the device is restored
immediately regardless of policy.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from ._types import (
    DeviceDescriptor,
    DeviceId,
    MAX_PIN_LENGTH,
    OtmFailurePolicy,
    OtmMethod,
    TransferState,
    truncate,
)
from .errors import RequestRejectedError, SelectionError
from .registry import DeviceRegistry
from .results import Completion, OperationResult, PendingRequest, log_result, status_handler
from .sdk import ProvisioningSDK, StatusHandler

logger = logging.getLogger(__name__)

# Failed outcomes remembered for transfer_state(); oldest are dropped first
MAX_FAILED_STATES = 256


class OwnershipTransferOrchestrator:
    """Runs Just-Works, Random-PIN and certificate ownership transfers."""

    def __init__(
        self,
        sdk: ProvisioningSDK,
        registry: DeviceRegistry,
        failure_policy: OtmFailurePolicy = OtmFailurePolicy.LEAVE_REMOVED,
    ):
        self.sdk = sdk
        self.registry = registry
        self.failure_policy = failure_policy
        self._states: dict[DeviceId, TransferState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def perform_just_works(self, device_id: DeviceId) -> PendingRequest:
        """Take ownership with no out-of-band input."""
        return self._transfer(
            OtmMethod.JUST_WORKS,
            device_id,
            lambda handler: self.sdk.perform_just_works_otm(device_id, handler),
        )

    def request_random_pin(self, device_id: DeviceId) -> PendingRequest:
        """
        Ask a device to generate and display a PIN.

        First half of a Random-PIN transfer. The device stays unowned and
        selectable; nothing about its ownership changes.
        """
        device = self.registry.get_unowned(device_id)
        if device is None:
            raise SelectionError(f"No unowned device {device_id}")

        completion = Completion("random PIN request", device.id)
        completion.add_handler(log_result)
        handle = self.sdk.request_random_pin(device.id, status_handler(completion))
        if handle < 0:
            logger.error(f"ERROR issuing request to generate a random PIN on {device}")
            raise RequestRejectedError("random PIN request", handle)

        logger.info(f"Requested random PIN from {device}")
        return PendingRequest(handle, completion)

    def perform_random_pin(self, device_id: DeviceId, pin: str) -> PendingRequest:
        """Take ownership with the PIN the device displayed."""
        pin = truncate(pin, MAX_PIN_LENGTH)
        return self._transfer(
            OtmMethod.RANDOM_PIN,
            device_id,
            lambda handler: self.sdk.perform_random_pin_otm(device_id, pin, handler),
        )

    def perform_certificate(self, device_id: DeviceId) -> PendingRequest:
        """Take ownership using the installed manufacturer trust anchor."""
        return self._transfer(
            OtmMethod.CERTIFICATE,
            device_id,
            lambda handler: self.sdk.perform_cert_otm(device_id, handler),
        )

    def perform(self, method: OtmMethod, device_id: DeviceId, pin: Optional[str] = None) -> PendingRequest:
        """Dispatch on `method`; Random-PIN needs `pin`."""
        if method is OtmMethod.JUST_WORKS:
            return self.perform_just_works(device_id)
        if method is OtmMethod.RANDOM_PIN:
            if pin is None:
                raise SelectionError("Random PIN ownership transfer needs a PIN")
            return self.perform_random_pin(device_id, pin)
        return self.perform_certificate(device_id)

    def transfer_state(self, device_id: DeviceId) -> Optional[TransferState]:
        """
        Latest transfer state of a device.

        In-flight and failed transfers are tracked here; otherwise the
        registry answers, OWNED for owned devices and DISCOVERED for unowned
        ones. None for devices the tool does not know.
        """
        with self._lock:
            state = self._states.get(device_id)
        if state is not None:
            return state
        if self.registry.get_owned(device_id) is not None:
            return TransferState.OWNED
        if self.registry.get_unowned(device_id) is not None:
            return TransferState.DISCOVERED
        return None

    def reset(self) -> None:
        """Forget every tracked transfer."""
        with self._lock:
            self._states.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transfer(
        self,
        method: OtmMethod,
        device_id: DeviceId,
        issue: Callable[[StatusHandler], int],
    ) -> PendingRequest:
        device = self.registry.take_unowned(device_id)
        self._set_state(device.id, TransferState.TRANSFER_REQUESTED)

        operation = f"{method.value} ownership transfer"
        completion = Completion(
            operation,
            device.id,
            transition=lambda result: self._finish(device, result),
        )
        completion.add_handler(log_result)

        try:
            handle = issue(status_handler(completion, _owned_descriptor(device)))
        except Exception:
            self._restore(device)
            raise

        if handle < 0:
            logger.error(f"ERROR issuing request to perform {operation} on {device}")
            self._restore(device)
            raise RequestRejectedError(operation, handle)

        logger.info(f"Issued request to perform {operation} on {device}")
        return PendingRequest(handle, completion)

    def _finish(self, device: DeviceDescriptor, result: OperationResult) -> None:
        self.registry.end_transfer(device.id)
        if result.success:
            owned = result.payload if isinstance(result.payload, DeviceDescriptor) else device
            self.registry.move_to_owned(owned)
            with self._lock:
                self._states.pop(device.id, None)
            return

        self._set_state(device.id, TransferState.TRANSFER_FAILED)
        if self.failure_policy is OtmFailurePolicy.ROLLBACK:
            logger.warning(f"Ownership transfer of {device} failed, re-offering it")
            self.registry.observe_unowned(device)
        else:
            logger.warning(
                f"Ownership transfer of {device} failed, rediscover to retry"
            )

    def _restore(self, device: DeviceDescriptor) -> None:
        with self._lock:
            self._states.pop(device.id, None)
        self.registry.end_transfer(device.id)
        self.registry.observe_unowned(device)

    def _set_state(self, device_id: DeviceId, state: TransferState) -> None:
        with self._lock:
            # re-insert so the dict stays ordered by last change
            self._states.pop(device_id, None)
            self._states[device_id] = state
            failed = [
                key for key, value in self._states.items()
                if value is TransferState.TRANSFER_FAILED
            ]
            for key in failed[:max(0, len(failed) - MAX_FAILED_STATES)]:
                del self._states[key]


def _owned_descriptor(device: DeviceDescriptor) -> Callable[[Any], DeviceDescriptor]:
    """OTM callbacks may carry the device id or a refreshed descriptor."""
    def _transform(payload: Any) -> DeviceDescriptor:
        if isinstance(payload, DeviceDescriptor) and payload.id == device.id:
            return payload
        return device

    return _transform

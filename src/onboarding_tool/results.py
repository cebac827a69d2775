"""
Completion handling for provisioning SDK requests.

Every accepted request resolves exactly once, on whatever thread the SDK
delivers its callback, with either a success payload or the SDK's failure
code. Callers hold a PendingRequest and may block on it, poll it, or attach
handlers; nothing in the core waits on a completion.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ._types import DeviceId

logger = logging.getLogger(__name__)

# Reason code used when the SDK reports failure without one
UNSPECIFIED_FAILURE = -1


@dataclass(frozen=True)
class OperationResult:
    """Terminal outcome of one SDK request."""
    operation: str
    device_id: Optional[DeviceId]
    success: bool
    payload: Any = None
    error_code: Optional[int] = None

    @property
    def failed(self) -> bool:
        return not self.success


ResultHandler = Callable[[OperationResult], None]


class Completion:
    """
    Single-fire completion of an SDK request.

    The first call to `succeed` or `fail` wins; later calls are logged and
    dropped. `transition` is the issuing component's own state update; it
    runs before the outcome becomes visible to `result()` or to handlers, so
    anyone observing the outcome also observes its registry effects.
    Handlers attached after resolution run immediately on the attaching
    thread.
    """

    def __init__(
        self,
        operation: str,
        device_id: Optional[DeviceId] = None,
        transition: Optional[ResultHandler] = None,
    ):
        self.operation = operation
        self.device_id = device_id
        self._transition = transition
        self._future: Future[OperationResult] = Future()
        self._lock = threading.Lock()
        self._resolved = False

    def succeed(self, payload: Any = None) -> bool:
        return self._resolve(OperationResult(
            operation=self.operation,
            device_id=self.device_id,
            success=True,
            payload=payload,
        ))

    def fail(self, error_code: int = UNSPECIFIED_FAILURE, payload: Any = None) -> bool:
        return self._resolve(OperationResult(
            operation=self.operation,
            device_id=self.device_id,
            success=False,
            payload=payload,
            error_code=error_code,
        ))

    def _resolve(self, result: OperationResult) -> bool:
        with self._lock:
            if self._resolved:
                logger.warning(
                    f"Ignoring duplicate completion for {self.operation} "
                    f"({self.device_id})"
                )
                return False
            self._resolved = True
        if self._transition is not None:
            try:
                self._transition(result)
            except Exception:
                logger.exception(f"State transition for {self.operation} raised")
        self._future.set_result(result)
        return True

    def add_handler(self, handler: ResultHandler) -> None:
        """Run `handler(result)` once the request resolves."""
        def _call(future: Future) -> None:
            try:
                handler(future.result())
            except Exception:
                logger.exception(f"Result handler for {self.operation} raised")

        self._future.add_done_callback(_call)

    @property
    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> OperationResult:
        """Block for the outcome. Drivers and tests only."""
        return self._future.result(timeout=timeout)


@dataclass(frozen=True)
class PendingRequest:
    """An accepted SDK request: its handle plus its completion."""
    handle: int
    completion: Completion

    @property
    def operation(self) -> str:
        return self.completion.operation

    def add_handler(self, handler: ResultHandler) -> None:
        self.completion.add_handler(handler)

    def result(self, timeout: Optional[float] = None) -> OperationResult:
        return self.completion.result(timeout=timeout)


def log_result(result: OperationResult) -> None:
    """Default handler: every outcome reaches the log."""
    target = f" on {result.device_id}" if result.device_id else ""
    if result.success:
        logger.info(f"{result.operation}{target} succeeded")
    else:
        logger.error(f"{result.operation}{target} failed (code {result.error_code})")


def status_handler(
    completion: Completion,
    transform: Optional[Callable[[Any], Any]] = None,
) -> Callable[[int, Any], None]:
    """Adapt an SDK `(status, payload)` callback onto a completion."""
    def _handler(status: int, payload: Any = None) -> None:
        if status < 0:
            completion.fail(status, payload)
            return
        try:
            value = transform(payload) if transform else payload
        except Exception as e:
            logger.error(f"Malformed {completion.operation} response: {e}")
            completion.fail(UNSPECIFIED_FAILURE, payload)
            return
        completion.succeed(value)

    return _handler

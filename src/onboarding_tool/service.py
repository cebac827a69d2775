"""
Onboarding tool service.

Wires the registry, discovery dispatcher, OTM orchestrator and provisioning
engine around one provisioning SDK, and owns the SDK's lifecycle: storage is
configured and the stack started in `start()`, which releases it again if
the stack fails to come up, and `stop()` releases it, whichever way the
driver exits.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import OnboardingConfig
from .discovery import DiscoveryDispatcher
from .errors import InitializationError
from .otm import OwnershipTransferOrchestrator
from .provisioning import ProvisioningEngine
from .registry import DeviceRegistry
from .sdk import ProvisioningSDK

logger = logging.getLogger(__name__)


class OnboardingTool:
    """
    The onboarding core behind any front end.

    Drivers (CLI, HTTP API, tests) call the verbs on `discovery`, `otm` and
    `provisioning` and read devices from `registry`.
    """

    def __init__(self, config: OnboardingConfig, sdk: ProvisioningSDK):
        self.config = config
        self.sdk = sdk
        self.registry = DeviceRegistry()
        self.discovery = DiscoveryDispatcher(sdk, self.registry)
        self.otm = OwnershipTransferOrchestrator(
            sdk, self.registry, failure_policy=config.otm_failure_policy
        )
        self.provisioning = ProvisioningEngine(sdk, self.registry)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Prepare credential storage and start the SDK."""
        storage_dir = self.config.storage_dir
        try:
            storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InitializationError(f"Cannot create storage directory {storage_dir}: {e}") from e
        logger.info(f"Storage config path: {storage_dir}")

        ret = self.sdk.init(storage_dir, self.config.device_info())
        if ret < 0:
            self.sdk.shutdown()
            raise InitializationError(f"Provisioning SDK failed to initialize (code {ret})")

        self._running = True
        logger.info(f"Onboarding tool started as {self.config.device_name}")

    def stop(self) -> None:
        """Release the SDK. Safe to call more than once."""
        if not self._running:
            return
        self._running = False
        logger.info("Shutting down provisioning SDK")
        self.sdk.shutdown()

    def reset(self) -> None:
        """Reset the tool's own security state and forget every device."""
        ret = self.sdk.reset()
        if ret < 0:
            logger.error(f"SDK reset returned {ret}")
        self.registry.reset_all()
        self.otm.reset()
        logger.info("Onboarding tool reset")

    def __enter__(self) -> "OnboardingTool":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.stop()
        return None


def create_tool(config: OnboardingConfig, sdk: Optional[ProvisioningSDK] = None) -> OnboardingTool:
    """
    Build a tool for `config`.

    Without an explicit SDK only the simulated network is available; a real
    stack is supplied by the embedding application.
    """
    if sdk is None:
        if not config.simulate:
            raise InitializationError(
                "No provisioning SDK configured; pass one in or enable simulate"
            )
        from .simulator import SimulatedSDK, seed_demo_network
        sdk = SimulatedSDK()
        seed_demo_network(sdk)
    return OnboardingTool(config, sdk)

"""Tests for the onboarding tool service."""

import pytest

from onboarding_tool._types import OtmFailurePolicy
from onboarding_tool.config import OnboardingConfig
from onboarding_tool.errors import InitializationError
from onboarding_tool.service import OnboardingTool, create_tool
from onboarding_tool.simulator import SimulatedSDK


class TestLifecycle:
    """Tests for start and stop."""

    def test_start_creates_storage(self, config):
        """Should create the storage directory and init the SDK."""
        sdk = SimulatedSDK()
        tool = OnboardingTool(config, sdk)

        tool.start()

        assert config.storage_dir.is_dir()
        assert sdk.initialized
        assert tool.running
        tool.stop()

    def test_init_failure(self, config):
        """Should raise InitializationError and release the SDK when it does not start."""
        sdk = SimulatedSDK(fail_init=True)
        tool = OnboardingTool(config, sdk)

        with pytest.raises(InitializationError):
            tool.start()

        assert not tool.running
        assert sdk.shutdown_calls == 1

        tool.stop()
        assert sdk.shutdown_calls == 1

    def test_storage_failure(self, tmp_path):
        """Should raise InitializationError when storage cannot be created."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        config = OnboardingConfig(storage_dir=blocker / "creds")

        with pytest.raises(InitializationError, match="storage"):
            OnboardingTool(config, SimulatedSDK()).start()

    def test_stop_once(self, config):
        """Should shut the SDK down exactly once."""
        sdk = SimulatedSDK()
        tool = OnboardingTool(config, sdk)
        tool.start()

        tool.stop()
        tool.stop()

        assert sdk.shutdown_calls == 1

    def test_context_manager(self, config):
        """Should stop the SDK on exit, even after an error."""
        sdk = SimulatedSDK()

        with pytest.raises(RuntimeError):
            with OnboardingTool(config, sdk) as tool:
                assert tool.running
                raise RuntimeError("driver crashed")

        assert sdk.shutdown_calls == 1

    def test_failure_policy_from_config(self, tmp_path):
        """Should configure the orchestrator's failure policy."""
        config = OnboardingConfig(storage_dir=tmp_path, otm_failure_policy="rollback")

        tool = OnboardingTool(config, SimulatedSDK())

        assert tool.otm.failure_policy is OtmFailurePolicy.ROLLBACK


class TestReset:
    """Tests for resetting the tool."""

    def test_reset_forgets_everything(self, tool, onboard, certificate_pem):
        """Should clear the registry and the tool's own credentials."""
        onboard("light")
        tool.sdk.add_device("switch")
        tool.discovery.discover_unowned()
        tool.sdk.flush()
        tool.provisioning.install_trust_anchor(certificate_pem)

        tool.reset()

        assert tool.registry.counts()["total"] == 0
        assert tool.provisioning.retrieve_own_credentials() == []

    def test_previously_owned_devices_no_longer_owned(self, tool, onboard):
        """Should not rediscover formerly owned devices as owned."""
        onboard("light")
        tool.reset()

        tool.discovery.discover_owned()
        tool.sdk.flush()

        assert tool.registry.list_owned() == []


class TestCreateTool:
    """Tests for the tool factory."""

    def test_requires_sdk_or_simulation(self, tmp_path):
        """Should refuse to run without an SDK outside simulation."""
        with pytest.raises(InitializationError):
            create_tool(OnboardingConfig(storage_dir=tmp_path))

    def test_simulation_seeds_network(self, config):
        """Should start with a few unowned demo devices."""
        tool = create_tool(config)
        tool.start()
        try:
            tool.discovery.discover_unowned()
            tool.sdk.flush()
            assert len(tool.registry.list_unowned()) == 3
        finally:
            tool.stop()

    def test_explicit_sdk(self, config, mock_sdk):
        """Should use a supplied SDK."""
        tool = create_tool(config, mock_sdk)

        assert tool.sdk is mock_sdk

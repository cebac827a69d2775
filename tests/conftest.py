"""Shared fixtures for onboarding tool tests."""

import datetime
import uuid
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from onboarding_tool._types import DeviceDescriptor
from onboarding_tool.config import OnboardingConfig
from onboarding_tool.registry import DeviceRegistry
from onboarding_tool.sdk import ProvisioningSDK
from onboarding_tool.service import OnboardingTool
from onboarding_tool.simulator import SimulatedSDK


@pytest.fixture
def make_device():
    """Factory for device descriptors with fresh ids."""
    def _make(name: str = "device") -> DeviceDescriptor:
        return DeviceDescriptor(id=uuid.uuid4(), name=name, endpoints=("coap://[fe80::1]:5683",))
    return _make


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def mock_sdk():
    """SDK double whose requests are all accepted with handle 1."""
    sdk = MagicMock(spec=ProvisioningSDK)
    for name in (
        "discover_unowned", "discover_owned", "discover_resources",
        "perform_just_works_otm", "request_random_pin", "perform_random_pin_otm",
        "perform_cert_otm", "provision_pairwise_credentials", "provision_ace",
        "provision_identity_certificate", "provision_role_certificate",
        "device_hard_reset", "retrieve_creds", "delete_cred_by_id",
        "retrieve_acl", "delete_ace_by_id", "delete_own_cred_by_id",
    ):
        getattr(sdk, name).return_value = 1
    sdk.init.return_value = 0
    sdk.reset.return_value = 0
    sdk.add_trust_anchor.return_value = 5
    sdk.retrieve_own_creds.return_value = []
    return sdk


@pytest.fixture
def sim_sdk():
    """Initialized simulated SDK, shut down after the test."""
    sdk = SimulatedSDK()
    sdk.init(Path("unused"), {"name": "OBT-test"})
    yield sdk
    sdk.shutdown()


@pytest.fixture
def config(tmp_path):
    return OnboardingConfig(storage_dir=tmp_path / "creds", simulate=True)


@pytest.fixture
def tool(config):
    """Started tool over an empty simulated network."""
    tool = OnboardingTool(config, SimulatedSDK())
    tool.start()
    yield tool
    tool.stop()


@pytest.fixture
def onboard(tool):
    """Put a device on the simulated network and take ownership of it."""
    def _onboard(name: str = "device", **kwargs) -> DeviceDescriptor:
        virtual = tool.sdk.add_device(name, **kwargs)
        tool.discovery.discover_unowned()
        tool.sdk.flush()
        result = tool.otm.perform_just_works(virtual.id).result(timeout=5)
        assert result.success
        return tool.registry.require_owned(virtual.id)
    return _onboard


@pytest.fixture
def certificate():
    """Self-signed manufacturer CA certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Manufacturer CA")])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def certificate_pem(certificate):
    return certificate.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def certificate_der(certificate):
    return certificate.public_bytes(serialization.Encoding.DER)

"""
Device Onboarding Tool - ownership transfer and provisioning for IoT devices.

The tool discovers devices on the local network, takes ownership of unowned
ones through one of three ownership transfer methods, and provisions the
devices it owns with credentials, access control entries and certificates.

Layout:
    registry      - owned/unowned device collections, shared by everything
    discovery     - discovery requests and their registry updates
    otm           - ownership transfer orchestration
    provisioning  - credentials, ACEs, certificates, trust anchors, reset
    sdk           - the provisioning stack boundary (simulator.py implements it)
    cli / api     - interactive menu and JSON API drivers
"""

__version__ = "0.1.0"

from ._types import (
    Credential,
    DeviceDescriptor,
    DiscoveredResource,
    DiscoveryScope,
    OtmFailurePolicy,
    OtmMethod,
    RoleChain,
    RoleIdentity,
    TransferState,
)
from .acl import (
    AccessControlEntry,
    AceResource,
    AclEntry,
    ConnectionSubject,
    ConnectionType,
    DeviceSubject,
    Permission,
    RoleSubject,
    WildcardKind,
)
from .errors import (
    AceValidationError,
    InitializationError,
    OnboardingError,
    RequestRejectedError,
    RoleChainError,
    SelectionError,
    TrustAnchorError,
)
from .results import OperationResult, PendingRequest
from .service import OnboardingTool, create_tool

__all__ = [
    "__version__",
    "Credential",
    "DeviceDescriptor",
    "DiscoveredResource",
    "DiscoveryScope",
    "OtmFailurePolicy",
    "OtmMethod",
    "RoleChain",
    "RoleIdentity",
    "TransferState",
    "AccessControlEntry",
    "AceResource",
    "AclEntry",
    "ConnectionSubject",
    "ConnectionType",
    "DeviceSubject",
    "Permission",
    "RoleSubject",
    "WildcardKind",
    "AceValidationError",
    "InitializationError",
    "OnboardingError",
    "RequestRejectedError",
    "RoleChainError",
    "SelectionError",
    "TrustAnchorError",
    "OperationResult",
    "PendingRequest",
    "OnboardingTool",
    "create_tool",
]

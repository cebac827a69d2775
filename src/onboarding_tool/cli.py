"""
Interactive onboarding menu.

A thin driver over OnboardingTool: it prompts for selections, calls one
verb, and prints whatever comes back. Outcomes of accepted requests are
printed when their completions fire, which may be while the next menu is
already on screen.

Usage:
    onboarding-tool --simulate
    onboarding-tool --config onboarding.yaml
    onboarding-tool --simulate --api --port 8090
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

from ._types import Credential, DeviceDescriptor, DiscoveryScope, RoleChain
from .acl import (
    AceResource,
    AclEntry,
    ConnectionSubject,
    ConnectionType,
    DeviceSubject,
    Permission,
    RoleSubject,
    WildcardKind,
)
from .api import serve
from .config import load_config
from .errors import InitializationError, OnboardingError
from .provisioning import READ_WRITE
from .results import OperationResult, PendingRequest
from .service import OnboardingTool, create_tool

logger = logging.getLogger(__name__)

MAX_NUM_RESOURCES = 100

MENU = """
################################################
OCF 2.x Onboarding Tool
################################################
[0] Display this menu
------------------------------------------------
[1] Discover un-owned devices
[2] Discover un-owned devices in the realm-local IPv6 scope
[3] Discover un-owned devices in the site-local IPv6 scope
[4] Discover owned devices
[5] Discover owned devices in the realm-local IPv6 scope
[6] Discover owned devices in the site-local IPv6 scope
[7] Discover all resources on the device
------------------------------------------------
[8] Just-Works Ownership Transfer Method
[9] Request Random PIN from device for OTM
[10] Random PIN Ownership Transfer Method
[11] Manufacturer Certificate based Ownership Transfer Method
------------------------------------------------
[12] Provision pair-wise credentials
[13] Provision ACE2
[14] Provision auth-crypt RW access to NCRs
[15] RETRIEVE /oic/sec/cred
[16] DELETE cred by credid
[17] RETRIEVE /oic/sec/acl2
[18] DELETE ace by aceid
[19] RETRIEVE own creds
[20] DELETE own cred by credid
[21] Provision role RW access to NCRs
[22] Provision identity certificate
[23] Provision role certificate
------------------------------------------------
[96] Install new manufacturer trust anchor
[97] RESET device
[98] RESET OBT
------------------------------------------------
[99] Exit
################################################
"""

EXIT_CHOICE = 99


class OnboardingShell:
    """Menu loop over an OnboardingTool."""

    def __init__(
        self,
        tool: OnboardingTool,
        read: Callable[[str], str] = input,
        write: Callable[[str], None] = print,
    ):
        self.tool = tool
        self._read = read
        self._write = write
        self._actions: dict[int, Callable[[], None]] = {
            1: lambda: self.discover_unowned(DiscoveryScope.GENERAL),
            2: lambda: self.discover_unowned(DiscoveryScope.REALM_LOCAL),
            3: lambda: self.discover_unowned(DiscoveryScope.SITE_LOCAL),
            4: lambda: self.discover_owned(DiscoveryScope.GENERAL),
            5: lambda: self.discover_owned(DiscoveryScope.REALM_LOCAL),
            6: lambda: self.discover_owned(DiscoveryScope.SITE_LOCAL),
            7: self.discover_resources,
            8: self.otm_just_works,
            9: self.request_random_pin,
            10: self.otm_random_pin,
            11: self.otm_certificate,
            12: self.provision_credentials,
            13: self.provision_ace,
            14: self.provision_auth_wildcard_ace,
            15: self.retrieve_credentials,
            16: self.delete_credential,
            17: self.retrieve_acl,
            18: self.delete_ace,
            19: self.retrieve_own_credentials,
            20: self.delete_own_credential,
            21: self.provision_role_wildcard_ace,
            22: self.provision_identity_certificate,
            23: self.provision_role_certificate,
            96: self.install_trust_anchor,
            97: self.reset_device,
            98: self.reset_tool,
        }
        tool.discovery.add_listener(self._on_device)
        tool.discovery.add_resource_listener(
            lambda r: self._write(f"  {r.href} [{', '.join(r.types)}] on {r.device_id}")
        )

    def run(self) -> None:
        """Loop until the operator picks Exit or input ends."""
        self._write(MENU)
        try:
            while True:
                choice = self._read_int("\nSelect option: ")
                if choice == EXIT_CHOICE:
                    return
                if choice == 0:
                    self._write(MENU)
                    continue
                self.dispatch(choice)
        except EOFError:
            return

    def dispatch(self, choice: int) -> None:
        action = self._actions.get(choice)
        if action is None:
            self._write("ERROR: Invalid selection")
            return
        try:
            action()
        except OnboardingError as e:
            self._write(f"ERROR: {e}")

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_unowned(self, scope: DiscoveryScope) -> None:
        self.tool.discovery.discover_unowned(scope)
        self._write(f"Discovering un-owned devices ({scope.value})")

    def discover_owned(self, scope: DiscoveryScope) -> None:
        self.tool.discovery.discover_owned(scope)
        self._write(f"Discovering owned devices ({scope.value})")

    def discover_resources(self) -> None:
        registry = self.tool.registry
        devices = registry.list_owned() + registry.list_unowned()
        device = self._choose(devices, "Select device: ")
        self.tool.discovery.discover_resources(device.id)
        self._write("Successfully issued resource discovery request")

    # ------------------------------------------------------------------
    # Ownership transfer
    # ------------------------------------------------------------------

    def otm_just_works(self) -> None:
        device = self._choose_unowned()
        self._track(self.tool.otm.perform_just_works(device.id))

    def request_random_pin(self) -> None:
        device = self._choose_unowned()
        self._track(self.tool.otm.request_random_pin(device.id))

    def otm_random_pin(self) -> None:
        device = self._choose_unowned()
        pin = self._read("Enter Random PIN: ").strip()
        self._track(self.tool.otm.perform_random_pin(device.id, pin))

    def otm_certificate(self) -> None:
        device = self._choose_unowned()
        self._track(self.tool.otm.perform_certificate(device.id))

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision_credentials(self) -> None:
        owned = self._owned_devices()
        first = self._choose(owned, "Select device 1: ")
        second = self._choose(owned, "Select device 2: ", show=False)
        self._track(self.tool.provisioning.provision_pairwise_credentials(first.id, second.id))

    def provision_ace(self) -> None:
        owned = self._owned_devices()
        target = self._choose(owned, "Select device for provisioning: ")

        self._write("\nSubjects:")
        self._write(f"[0]: {ConnectionType.ANON_CLEAR.value}")
        self._write(f"[1]: {ConnectionType.AUTH_CRYPT.value}")
        self._write("[2]: Role")
        for i, device in enumerate(owned):
            self._write(f"[{i + 3}]: {device}")
        sub = self._read_int("Select subject: ")
        if sub < 0 or sub >= len(owned) + 3:
            self._write("ERROR: Invalid selection")
            return

        if sub == 0:
            subject = ConnectionSubject(ConnectionType.ANON_CLEAR)
        elif sub == 1:
            subject = ConnectionSubject(ConnectionType.AUTH_CRYPT)
        elif sub == 2:
            role, authority = self._read_role()
            subject = RoleSubject(role, authority)
        else:
            subject = DeviceSubject(owned[sub - 3].id)

        ace = self.tool.provisioning.build_ace(subject)

        num_resources = 0
        while num_resources <= 0 or num_resources > MAX_NUM_RESOURCES:
            num_resources = self._read_int("Enter number of resources in this ACE: ")

        self._write("\nResource properties")
        for _ in range(num_resources):
            if self._yes("Have resource href?"):
                ace.add_href(self._read("Enter resource href (eg. /a/light): ").strip())
            elif self._yes("Set wildcard resource?"):
                self._write("[1]: All NCRs '*'")
                self._write("[2]: All NCRs with >=1   secured endpoint '+'")
                self._write("[3]: All NCRs with >=1 unsecured endpoint '-'")
                kinds = {1: WildcardKind.ALL, 2: WildcardKind.ALL_SECURED, 3: WildcardKind.ALL_PUBLIC}
                kind = kinds.get(self._read_int("Select wildcard resource: "))
                if kind is None:
                    # left incomplete; submit_ace rejects it
                    ace.add_resource(AceResource())
                else:
                    ace.add_wildcard(kind)
            else:
                ace.add_resource(AceResource())

        self._write("\nSet ACE2 permissions")
        for permission in (Permission.CREATE, Permission.RETRIEVE, Permission.UPDATE,
                           Permission.DELETE, Permission.NOTIFY):
            if self._yes(permission.name):
                ace.add_permission(permission)

        self._track(self.tool.provisioning.submit_ace(target.id, ace))

    def provision_auth_wildcard_ace(self) -> None:
        device = self._choose(self._owned_devices(), "Select device for provisioning: ")
        self._track(self.tool.provisioning.provision_auth_crypt_wildcard_ace(device.id, READ_WRITE))

    def provision_role_wildcard_ace(self) -> None:
        device = self._choose(self._owned_devices(), "Select device for provisioning: ")
        role, authority = self._read_role()
        self._track(self.tool.provisioning.provision_role_wildcard_ace(device.id, role, authority))

    def retrieve_credentials(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        request = self.tool.provisioning.retrieve_credentials(device.id)
        request.add_handler(self._print_credentials)

    def delete_credential(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        credential_id = self._read_int("Enter credid: ")
        self._track(self.tool.provisioning.delete_credential(device.id, credential_id))

    def retrieve_acl(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        request = self.tool.provisioning.retrieve_acl(device.id)
        request.add_handler(self._print_acl)

    def delete_ace(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        ace_id = self._read_int("Enter aceid: ")
        self._track(self.tool.provisioning.delete_ace(device.id, ace_id))

    def retrieve_own_credentials(self) -> None:
        self._write(format_credentials(self.tool.provisioning.retrieve_own_credentials()))

    def delete_own_credential(self) -> None:
        credential_id = self._read_int("Enter credid: ")
        self.tool.provisioning.delete_own_credential(credential_id)
        self._write("Successfully DELETED cred")

    def provision_identity_certificate(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        self._track(self.tool.provisioning.provision_identity_certificate(device.id))

    def provision_role_certificate(self) -> None:
        device = self._choose(self._owned_devices(), "Select device for provisioning: ")
        chain = RoleChain()
        while True:
            role, authority = self._read_role()
            chain.add(role, authority)
            if not self._yes("More Roles?"):
                break
        self._track(self.tool.provisioning.provision_role_certificate(chain, device.id))

    def install_trust_anchor(self) -> None:
        self._write('Paste certificate here, then hit <ENTER> and type "done":')
        lines = []
        while True:
            line = self._read("")
            if line.strip() == "done":
                break
            lines.append(line)
        certificate = ("\n".join(lines) + "\n").encode()
        credential_id = self.tool.provisioning.install_trust_anchor(certificate)
        self._write(f"Installed trust anchor as credid {credential_id}")

    def reset_device(self) -> None:
        device = self._choose(self._owned_devices(), "Select device: ")
        self._track(self.tool.provisioning.reset_device(device.id))

    def reset_tool(self) -> None:
        self.tool.reset()
        self._write("Onboarding tool reset")

    # ------------------------------------------------------------------
    # Prompt helpers
    # ------------------------------------------------------------------

    def _read_int(self, prompt: str) -> int:
        while True:
            value = self._read(prompt).strip()
            try:
                return int(value)
            except ValueError:
                self._write("Invalid input. Integer expected.")

    def _yes(self, question: str) -> bool:
        return self._read_int(f"{question} [0-No, 1-Yes]: ") == 1

    def _read_role(self) -> tuple[str, Optional[str]]:
        role = self._read("Enter role: ").strip()
        authority = None
        if self._yes("Authority?"):
            authority = self._read("Enter authority: ").strip()
        return role, authority

    def _owned_devices(self) -> list[DeviceDescriptor]:
        owned = self.tool.registry.list_owned()
        if not owned:
            raise OnboardingError("Please Re-Discover Owned devices")
        return owned

    def _choose_unowned(self) -> DeviceDescriptor:
        unowned = self.tool.registry.list_unowned()
        if not unowned:
            raise OnboardingError("Please Re-discover Unowned devices")
        return self._choose(unowned, "Select device: ")

    def _choose(self, devices: list[DeviceDescriptor], prompt: str, show: bool = True) -> DeviceDescriptor:
        if not devices:
            raise OnboardingError("Please Re-discover devices")
        if show:
            for i, device in enumerate(devices):
                self._write(f"[{i}]: {device}")
        index = self._read_int(prompt)
        if index < 0 or index >= len(devices):
            raise OnboardingError("Invalid selection")
        return devices[index]

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _track(self, request: PendingRequest) -> None:
        self._write(f"Successfully issued request for {request.operation}")
        request.add_handler(self._print_outcome)

    def _print_outcome(self, result: OperationResult) -> None:
        if result.success:
            self._write(f"\n{result.operation} on {result.device_id}: SUCCESS")
        else:
            self._write(f"\n{result.operation} on {result.device_id}: FAILED (code {result.error_code})")

    def _print_credentials(self, result: OperationResult) -> None:
        if result.failed:
            self._print_outcome(result)
            return
        self._write(format_credentials(result.payload))

    def _print_acl(self, result: OperationResult) -> None:
        if result.failed:
            self._print_outcome(result)
            return
        self._write(format_acl(result.payload))

    def _on_device(self, device: DeviceDescriptor, owned: bool) -> None:
        kind = "Owned" if owned else "Unowned"
        self._write(f"\nDiscovered {kind} Device: {device}")
        for endpoint in device.endpoints:
            self._write(f"  {endpoint}")


def format_credentials(creds: list[Credential]) -> str:
    lines = ["/oic/sec/cred:", "################################################"]
    for cred in creds:
        lines.append(f"credid: {cred.credential_id}")
        lines.append(f"subjectuuid: {cred.subject_id if cred.subject_id else '*'}")
        lines.append(f"credtype: {cred.cred_type}")
        if cred.usage:
            lines.append(f"credusage: {cred.usage}")
        if cred.public_data_encoding:
            lines.append(f"publicdata_encoding: {cred.public_data_encoding}")
        if cred.private_data_encoding:
            lines.append(f"privatedata_encoding: {cred.private_data_encoding}")
        if cred.role:
            lines.append(f"roleid_role: {cred.role}")
        if cred.authority:
            lines.append(f"roleid_authority: {cred.authority}")
        lines.append("-----")
    lines.append("################################################")
    return "\n".join(lines)


def format_acl(entries: list[AclEntry]) -> str:
    lines = ["/oic/sec/acl2:", "################################################"]
    for entry in entries:
        ace = entry.ace
        lines.append(f"aceid: {entry.ace_id}")
        lines.append(f"subject: {ace.subject.describe()}")
        lines.append(f"resources: {', '.join(r.describe() for r in ace.resources)}")
        lines.append(f"permissions: {' '.join(ace.permissions.names())}")
        lines.append("-----")
    lines.append("################################################")
    return "\n".join(lines)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the interactive onboarding tool."""
    parser = argparse.ArgumentParser(description="Device Onboarding Tool")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--storage-dir", type=str, help="Credential storage directory")
    parser.add_argument("--simulate", action="store_true", help="Use the simulated network")
    parser.add_argument("--otm-failure-policy", choices=["leave_removed", "rollback"])
    parser.add_argument("--log-level", type=str, help="Log level")
    parser.add_argument("--api", action="store_true", help="Serve the JSON API instead of the menu")
    parser.add_argument("--host", type=str, help="API host")
    parser.add_argument("--port", type=int, help="API port")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    updates = {}
    if args.storage_dir:
        updates["storage_dir"] = Path(args.storage_dir)
    if args.simulate:
        updates["simulate"] = True
    if args.otm_failure_policy:
        updates["otm_failure_policy"] = args.otm_failure_policy
    if args.log_level:
        updates["log_level"] = args.log_level.upper()
    if args.host:
        updates["api_host"] = args.host
    if args.port:
        updates["api_port"] = args.port
    if updates:
        config = config.model_validate({**config.model_dump(), **updates})

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    tool = None
    try:
        tool = create_tool(config)
        tool.start()
        if args.api:
            asyncio.run(serve(tool, config.api_host, config.api_port))
        else:
            OnboardingShell(tool).run()
    except InitializationError as e:
        logger.error(f"Initialization failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        if tool is not None:
            tool.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())

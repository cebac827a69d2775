"""
JSON API over the onboarding tool, for RPC drivers.

Every verb of the interactive menu is reachable here. Requests accepted by
the SDK answer 202 with their handle; the outcome can be polled at
/api/requests/{handle}. Local validation errors answer 400 (404 for an
unknown or wrongly-owned device) and SDK issuance rejections answer 502.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from aiohttp import web
from aiohttp.web import middleware

from ._types import Credential, DeviceDescriptor, RoleChain, parse_device_id
from .acl import (
    AccessControlEntry,
    AceResource,
    AceSubject,
    AclEntry,
    ConnectionSubject,
    ConnectionType,
    DeviceSubject,
    Permission,
    RoleSubject,
    WildcardKind,
)
from .discovery import scope_from_name
from .errors import AceValidationError, OnboardingError, RequestRejectedError, SelectionError
from .provisioning import READ_WRITE
from .results import OperationResult, PendingRequest
from .sdk import TrustAnchorKind
from .service import OnboardingTool

logger = logging.getLogger(__name__)

# Seconds a GET on device credentials or ACL waits for the device to answer
RETRIEVE_TIMEOUT = 30.0

# Requests kept for polling; the oldest resolved ones are dropped beyond this
MAX_TRACKED_REQUESTS = 1024


class OnboardingApi:
    """aiohttp front end for an OnboardingTool."""

    def __init__(
        self,
        tool: OnboardingTool,
        retrieve_timeout: float = RETRIEVE_TIMEOUT,
        max_tracked_requests: int = MAX_TRACKED_REQUESTS,
    ):
        self.tool = tool
        self.retrieve_timeout = retrieve_timeout
        self.max_tracked_requests = max_tracked_requests
        self._requests: dict[int, PendingRequest] = {}
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._error_middleware])
        router = app.router

        router.add_get("/api/health", self._handle_health)
        router.add_get("/api/devices", self._handle_list_devices)
        router.add_get("/api/requests/{handle}", self._handle_request_status)

        # Discovery
        router.add_post("/api/discovery/{kind}", self._handle_discovery)
        router.add_post("/api/devices/{device_id}/resources", self._handle_discover_resources)

        # Ownership transfer
        router.add_post("/api/otm/pin-request", self._handle_pin_request)
        router.add_post("/api/otm/{method}", self._handle_otm)

        # Credentials and ACL
        router.add_post("/api/credentials/pairwise", self._handle_pairwise)
        router.add_post("/api/acl/ace", self._handle_ace)
        router.add_post("/api/acl/auth-wildcard", self._handle_auth_wildcard)
        router.add_post("/api/acl/role-wildcard", self._handle_role_wildcard)
        router.add_get("/api/devices/{device_id}/credentials", self._handle_get_credentials)
        router.add_delete("/api/devices/{device_id}/credentials/{credid}", self._handle_delete_credential)
        router.add_get("/api/devices/{device_id}/acl", self._handle_get_acl)
        router.add_delete("/api/devices/{device_id}/acl/{aceid}", self._handle_delete_ace)
        router.add_get("/api/own/credentials", self._handle_own_credentials)
        router.add_delete("/api/own/credentials/{credid}", self._handle_delete_own_credential)

        # Certificates
        router.add_post("/api/devices/{device_id}/identity-cert", self._handle_identity_cert)
        router.add_post("/api/devices/{device_id}/role-cert", self._handle_role_cert)
        router.add_post("/api/trust-anchors", self._handle_trust_anchor)

        # Reset
        router.add_post("/api/devices/{device_id}/reset", self._handle_reset_device)
        router.add_post("/api/reset", self._handle_reset_tool)
        return app

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(f"API server started on {host}:{port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    @middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except RequestRejectedError as e:
            return _error(str(e), 502, code=e.code)
        except SelectionError as e:
            return _error(str(e), 404)
        except OnboardingError as e:
            return _error(str(e), 400)
        except (ValueError, KeyError, TypeError) as e:
            return _error(f"Bad request: {e}", 400)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        return web.json_response({
            "status": "ok" if self.tool.running else "stopped",
            "service": "onboarding-tool",
            "devices": self.tool.registry.counts(),
            "pending_requests": sum(1 for r in self._requests.values() if not r.completion.done),
        })

    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices."""
        registry = self.tool.registry
        return web.json_response({
            "unowned": [device_to_dict(d, owned=False) for d in registry.list_unowned()],
            "owned": [device_to_dict(d, owned=True) for d in registry.list_owned()],
            "counts": registry.counts(),
        })

    async def _handle_request_status(self, request: web.Request) -> web.Response:
        """Handle GET /api/requests/{handle}."""
        handle = int(request.match_info["handle"])
        pending = self._requests.get(handle)
        if pending is None:
            return _error(f"Unknown request handle {handle}", 404)
        body: dict[str, Any] = {"handle": handle, "operation": pending.operation}
        if not pending.completion.done:
            body["status"] = "pending"
        else:
            body.update(result_to_dict(pending.result()))
        return web.json_response(body)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _handle_discovery(self, request: web.Request) -> web.Response:
        """Handle POST /api/discovery/{owned|unowned}."""
        kind = request.match_info["kind"]
        data = await _json_body(request)
        scope = scope_from_name(data.get("scope"))
        if kind == "unowned":
            handle = self.tool.discovery.discover_unowned(scope)
        elif kind == "owned":
            handle = self.tool.discovery.discover_owned(scope)
        else:
            return _error(f"Unknown discovery kind: {kind}", 404)
        return web.json_response(
            {"status": "accepted", "handle": handle, "scope": scope.value}, status=202
        )

    async def _handle_discover_resources(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices/{device_id}/resources."""
        device_id = parse_device_id(request.match_info["device_id"])
        handle = self.tool.discovery.discover_resources(device_id)
        return web.json_response({"status": "accepted", "handle": handle}, status=202)

    # ------------------------------------------------------------------
    # Ownership transfer
    # ------------------------------------------------------------------

    async def _handle_otm(self, request: web.Request) -> web.Response:
        """Handle POST /api/otm/{just-works|random-pin|cert}."""
        method = request.match_info["method"]
        data = await _json_body(request)
        device_id = parse_device_id(data["device_id"])
        otm = self.tool.otm

        if method == "just-works":
            pending = otm.perform_just_works(device_id)
        elif method == "random-pin":
            pin = data.get("pin")
            if not pin:
                raise ValueError("pin is required")
            pending = otm.perform_random_pin(device_id, str(pin))
        elif method == "cert":
            pending = otm.perform_certificate(device_id)
        else:
            return _error(f"Unknown OTM method: {method}", 404)
        return self._accepted(pending)

    async def _handle_pin_request(self, request: web.Request) -> web.Response:
        """Handle POST /api/otm/pin-request."""
        data = await _json_body(request)
        pending = self.tool.otm.request_random_pin(parse_device_id(data["device_id"]))
        return self._accepted(pending)

    # ------------------------------------------------------------------
    # Credentials and ACL
    # ------------------------------------------------------------------

    async def _handle_pairwise(self, request: web.Request) -> web.Response:
        """Handle POST /api/credentials/pairwise."""
        data = await _json_body(request)
        pending = self.tool.provisioning.provision_pairwise_credentials(
            parse_device_id(data["device_a"]),
            parse_device_id(data["device_b"]),
        )
        return self._accepted(pending)

    async def _handle_ace(self, request: web.Request) -> web.Response:
        """Handle POST /api/acl/ace."""
        data = await _json_body(request)
        device_id = parse_device_id(data["device_id"])
        ace = ace_from_dict(data)
        pending = self.tool.provisioning.submit_ace(device_id, ace)
        return self._accepted(pending)

    async def _handle_auth_wildcard(self, request: web.Request) -> web.Response:
        """Handle POST /api/acl/auth-wildcard."""
        data = await _json_body(request)
        permissions = READ_WRITE
        if "permissions" in data:
            permissions = _permissions(data["permissions"])
        pending = self.tool.provisioning.provision_auth_crypt_wildcard_ace(
            parse_device_id(data["device_id"]), permissions
        )
        return self._accepted(pending)

    async def _handle_role_wildcard(self, request: web.Request) -> web.Response:
        """Handle POST /api/acl/role-wildcard."""
        data = await _json_body(request)
        permissions = READ_WRITE
        if "permissions" in data:
            permissions = _permissions(data["permissions"])
        pending = self.tool.provisioning.provision_role_wildcard_ace(
            parse_device_id(data["device_id"]),
            data["role"],
            data.get("authority"),
            permissions,
        )
        return self._accepted(pending)

    async def _handle_get_credentials(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}/credentials."""
        device_id = parse_device_id(request.match_info["device_id"])
        pending = self.tool.provisioning.retrieve_credentials(device_id)
        return await self._await_listing(pending, "credentials", credential_to_dict)

    async def _handle_delete_credential(self, request: web.Request) -> web.Response:
        """Handle DELETE /api/devices/{device_id}/credentials/{credid}."""
        device_id = parse_device_id(request.match_info["device_id"])
        credid = int(request.match_info["credid"])
        return self._accepted(self.tool.provisioning.delete_credential(device_id, credid))

    async def _handle_get_acl(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}/acl."""
        device_id = parse_device_id(request.match_info["device_id"])
        pending = self.tool.provisioning.retrieve_acl(device_id)
        return await self._await_listing(pending, "aces", acl_entry_to_dict)

    async def _handle_delete_ace(self, request: web.Request) -> web.Response:
        """Handle DELETE /api/devices/{device_id}/acl/{aceid}."""
        device_id = parse_device_id(request.match_info["device_id"])
        aceid = int(request.match_info["aceid"])
        return self._accepted(self.tool.provisioning.delete_ace(device_id, aceid))

    async def _handle_own_credentials(self, request: web.Request) -> web.Response:
        """Handle GET /api/own/credentials."""
        creds = self.tool.provisioning.retrieve_own_credentials()
        return web.json_response({"credentials": [credential_to_dict(c) for c in creds]})

    async def _handle_delete_own_credential(self, request: web.Request) -> web.Response:
        """Handle DELETE /api/own/credentials/{credid}."""
        credid = int(request.match_info["credid"])
        self.tool.provisioning.delete_own_credential(credid)
        return web.json_response({"status": "ok", "credid": credid})

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    async def _handle_identity_cert(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices/{device_id}/identity-cert."""
        device_id = parse_device_id(request.match_info["device_id"])
        return self._accepted(self.tool.provisioning.provision_identity_certificate(device_id))

    async def _handle_role_cert(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices/{device_id}/role-cert."""
        device_id = parse_device_id(request.match_info["device_id"])
        data = await _json_body(request)
        chain = RoleChain()
        for entry in data.get("roles", []):
            chain.add(entry["role"], entry.get("authority"))
        return self._accepted(self.tool.provisioning.provision_role_certificate(chain, device_id))

    async def _handle_trust_anchor(self, request: web.Request) -> web.Response:
        """Handle POST /api/trust-anchors."""
        data = await _json_body(request)
        kind = TrustAnchorKind(data.get("kind", TrustAnchorKind.MANUFACTURER.value))
        certificate = data["certificate"].encode()
        credid = self.tool.provisioning.install_trust_anchor(certificate, kind)
        return web.json_response({"status": "ok", "credid": credid}, status=201)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    async def _handle_reset_device(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices/{device_id}/reset."""
        device_id = parse_device_id(request.match_info["device_id"])
        return self._accepted(self.tool.provisioning.reset_device(device_id))

    async def _handle_reset_tool(self, request: web.Request) -> web.Response:
        """Handle POST /api/reset."""
        self.tool.reset()
        self._requests.clear()
        return web.json_response({"status": "ok"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _track(self, pending: PendingRequest) -> None:
        self._requests.pop(pending.handle, None)
        self._requests[pending.handle] = pending
        excess = len(self._requests) - self.max_tracked_requests
        if excess <= 0:
            return
        resolved = [h for h, r in self._requests.items() if r.completion.done]
        for handle in resolved[:excess]:
            del self._requests[handle]

    def _accepted(self, pending: PendingRequest) -> web.Response:
        self._track(pending)
        return web.json_response({
            "status": "accepted",
            "handle": pending.handle,
            "operation": pending.operation,
        }, status=202)

    async def _await_listing(self, pending: PendingRequest, key: str, convert) -> web.Response:
        self._track(pending)
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, pending.result, self.retrieve_timeout)
        except TimeoutError:
            return _error(f"{pending.operation} did not complete in time", 504)
        if result.failed:
            return _error(f"{result.operation} failed", 502, code=result.error_code)
        return web.json_response({key: [convert(item) for item in result.payload]})


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.body_exists:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("JSON object expected")
    return data


def _error(message: str, status: int, code: Optional[int] = None) -> web.Response:
    body: dict[str, Any] = {"status": "error", "message": message}
    if code is not None:
        body["code"] = code
    return web.json_response(body, status=status)


def _permissions(value: Any) -> Permission:
    if isinstance(value, int):
        return Permission(value)
    return Permission.from_names(value)


def ace_from_dict(data: dict[str, Any]) -> AccessControlEntry:
    """
    Build an ACE from its JSON form.

    {"subject": {"conntype": "auth-crypt"} | {"uuid": ...} |
                {"role": ..., "authority": ...},
     "resources": [{"href": "/a/light"}, {"wc": "*"}],
     "permissions": ["RETRIEVE", "UPDATE"] or 6}
    """
    subject_data = data.get("subject") or {}
    subject: AceSubject
    if "conntype" in subject_data:
        try:
            subject = ConnectionSubject(ConnectionType(subject_data["conntype"]))
        except ValueError:
            raise AceValidationError(f"Unknown connection type: {subject_data['conntype']}") from None
    elif "uuid" in subject_data:
        subject = DeviceSubject(parse_device_id(subject_data["uuid"]))
    elif "role" in subject_data:
        subject = RoleSubject(subject_data["role"], subject_data.get("authority"))
    else:
        raise AceValidationError("ACE subject needs conntype, uuid or role")

    ace = AccessControlEntry(subject=subject)
    for entry in data.get("resources", []):
        wildcard = None
        if entry.get("wc") is not None:
            try:
                wildcard = WildcardKind(entry["wc"])
            except ValueError:
                raise AceValidationError(f"Unknown wildcard: {entry['wc']}") from None
        ace.add_resource(AceResource(href=entry.get("href"), wildcard=wildcard))
    ace.set_permissions(_permissions(data.get("permissions", [])))
    return ace


def device_to_dict(device: DeviceDescriptor, owned: bool) -> dict[str, Any]:
    return {
        "id": str(device.id),
        "name": device.name,
        "endpoints": list(device.endpoints),
        "owned": owned,
    }


def credential_to_dict(cred: Credential) -> dict[str, Any]:
    return {
        "credid": cred.credential_id,
        "subjectuuid": str(cred.subject_id) if cred.subject_id else "*",
        "credtype": cred.cred_type,
        "credusage": cred.usage,
        "publicdata_encoding": cred.public_data_encoding,
        "privatedata_encoding": cred.private_data_encoding,
        "role": cred.role,
        "authority": cred.authority,
    }


def acl_entry_to_dict(entry: AclEntry) -> dict[str, Any]:
    body = entry.ace.to_dict()
    body["aceid"] = entry.ace_id
    return body


def result_to_dict(result: OperationResult) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "succeeded" if result.success else "failed"}
    if result.device_id is not None:
        body["device_id"] = str(result.device_id)
    if result.failed:
        body["code"] = result.error_code
    elif isinstance(result.payload, DeviceDescriptor):
        body["device"] = device_to_dict(result.payload, owned=True)
    elif isinstance(result.payload, (str, int)):
        body["payload"] = result.payload
    return body


async def serve(tool: OnboardingTool, host: str, port: int) -> None:
    """Run the API until cancelled."""
    api = OnboardingApi(tool)
    await api.start(host, port)
    try:
        await asyncio.Event().wait()
    finally:
        await api.stop()

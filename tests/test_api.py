"""Tests for the JSON API."""

import uuid

import pytest
from aiohttp import test_utils

from onboarding_tool.api import OnboardingApi, ace_from_dict
from onboarding_tool.acl import Permission, RoleSubject, WildcardKind
from onboarding_tool.errors import AceValidationError
from onboarding_tool.results import Completion, PendingRequest


def _client(tool):
    return test_utils.TestClient(test_utils.TestServer(OnboardingApi(tool).build_app()))


def _discover(tool):
    tool.discovery.discover_unowned()
    tool.discovery.discover_owned()
    tool.sdk.flush()


class TestStatusEndpoints:
    """Tests for health and device listing."""

    @pytest.mark.asyncio
    async def test_health(self, tool):
        """Should report the service as up."""
        async with _client(tool) as client:
            resp = await client.get("/api/health")
            data = await resp.json()

        assert resp.status == 200
        assert data["status"] == "ok"
        assert data["devices"]["total"] == 0

    @pytest.mark.asyncio
    async def test_list_devices(self, tool, onboard):
        """Should list owned and unowned devices."""
        onboard("light")
        tool.sdk.add_device("switch")
        _discover(tool)

        async with _client(tool) as client:
            resp = await client.get("/api/devices")
            data = await resp.json()

        assert [d["name"] for d in data["owned"]] == ["light"]
        assert [d["name"] for d in data["unowned"]] == ["switch"]
        assert data["counts"]["total"] == 2


class TestDiscoveryEndpoints:
    """Tests for discovery routes."""

    @pytest.mark.asyncio
    async def test_discover_unowned(self, tool):
        """Should accept a discovery request with a scope."""
        tool.sdk.add_device("light")

        async with _client(tool) as client:
            resp = await client.post("/api/discovery/unowned", json={"scope": "site-local"})
            data = await resp.json()

        assert resp.status == 202
        assert data["scope"] == "site_local"
        tool.sdk.flush()
        assert len(tool.registry.list_unowned()) == 1

    @pytest.mark.asyncio
    async def test_unknown_kind(self, tool):
        """Should 404 an unknown discovery kind."""
        async with _client(tool) as client:
            resp = await client.post("/api/discovery/everything")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_resources_of_unknown_device(self, tool):
        """Should 404 resource discovery on an unknown device."""
        async with _client(tool) as client:
            resp = await client.post(f"/api/devices/{uuid.uuid4()}/resources")

        assert resp.status == 404


class TestOtmEndpoints:
    """Tests for ownership transfer routes."""

    @pytest.mark.asyncio
    async def test_just_works_then_poll(self, tool):
        """Should accept the transfer and report its outcome by handle."""
        virtual = tool.sdk.add_device("light")
        _discover(tool)

        async with _client(tool) as client:
            resp = await client.post("/api/otm/just-works", json={"device_id": str(virtual.id)})
            accepted = await resp.json()
            tool.sdk.flush()
            status = await client.get(f"/api/requests/{accepted['handle']}")
            outcome = await status.json()

        assert resp.status == 202
        assert outcome["status"] == "succeeded"
        assert outcome["device"]["id"] == str(virtual.id)
        assert tool.registry.get_owned(virtual.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_device(self, tool):
        """Should 404 a transfer of a device that is not unowned."""
        async with _client(tool) as client:
            resp = await client.post("/api/otm/cert", json={"device_id": str(uuid.uuid4())})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_random_pin_requires_pin(self, tool):
        """Should 400 a Random-PIN transfer without a PIN."""
        virtual = tool.sdk.add_device("lock")
        _discover(tool)

        async with _client(tool) as client:
            resp = await client.post("/api/otm/random-pin", json={"device_id": str(virtual.id)})

        assert resp.status == 400
        assert tool.registry.get_unowned(virtual.id) is not None

    @pytest.mark.asyncio
    async def test_rejected_issuance(self, tool):
        """Should answer 502 when the SDK refuses the request."""
        virtual = tool.sdk.add_device("light")
        _discover(tool)
        tool.sdk.reject("perform_just_works_otm")

        async with _client(tool) as client:
            resp = await client.post("/api/otm/just-works", json={"device_id": str(virtual.id)})
            data = await resp.json()

        assert resp.status == 502
        assert data["code"] == -1
        assert tool.registry.get_unowned(virtual.id) is not None


class TestProvisioningEndpoints:
    """Tests for credential, ACL and certificate routes."""

    @pytest.mark.asyncio
    async def test_provision_and_list_ace(self, tool, onboard):
        """Should provision an ACE and list it back."""
        light = onboard("light")
        body = {
            "device_id": str(light.id),
            "subject": {"role": "admin", "authority": "org1"},
            "resources": [{"href": "/a/light"}],
            "permissions": ["RETRIEVE", "UPDATE"],
        }

        async with _client(tool) as client:
            resp = await client.post("/api/acl/ace", json=body)
            tool.sdk.flush()
            listing = await client.get(f"/api/devices/{light.id}/acl")
            aces = (await listing.json())["aces"]

        assert resp.status == 202
        assert aces[0]["subject"] == {"role": "admin", "authority": "org1"}
        assert aces[0]["resources"] == [{"href": "/a/light"}]
        assert aces[0]["permission"] == 6

    @pytest.mark.asyncio
    async def test_invalid_ace(self, tool, onboard):
        """Should 400 an ACE without resources."""
        light = onboard("light")
        body = {"device_id": str(light.id), "subject": {"conntype": "anon-clear"}, "permissions": 2}

        async with _client(tool) as client:
            resp = await client.post("/api/acl/ace", json=body)

        assert resp.status == 400
        assert light.id in tool.registry

    @pytest.mark.asyncio
    async def test_pairwise_and_credentials(self, tool, onboard):
        """Should provision pairwise credentials and list them."""
        light, switch = onboard("light"), onboard("switch")

        async with _client(tool) as client:
            resp = await client.post(
                "/api/credentials/pairwise",
                json={"device_a": str(light.id), "device_b": str(switch.id)},
            )
            tool.sdk.flush()
            listing = await client.get(f"/api/devices/{light.id}/credentials")
            creds = (await listing.json())["credentials"]

        assert resp.status == 202
        assert creds[0]["subjectuuid"] == str(switch.id)

    @pytest.mark.asyncio
    async def test_trust_anchor(self, tool, certificate_pem):
        """Should install a trust anchor and list it under own credentials."""
        async with _client(tool) as client:
            resp = await client.post("/api/trust-anchors", json={"certificate": certificate_pem.decode()})
            installed = await resp.json()
            listing = await client.get("/api/own/credentials")
            creds = (await listing.json())["credentials"]

        assert resp.status == 201
        assert [c["credid"] for c in creds] == [installed["credid"]]
        assert creds[0]["credusage"] == "oic.sec.cred.mfgtrustca"

    @pytest.mark.asyncio
    async def test_bad_trust_anchor(self, tool):
        """Should 400 a certificate that does not parse."""
        async with _client(tool) as client:
            resp = await client.post("/api/trust-anchors", json={"certificate": "garbage"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_reset_device(self, tool, onboard):
        """Should hard-reset a device and forget it."""
        light = onboard("light")

        async with _client(tool) as client:
            resp = await client.post(f"/api/devices/{light.id}/reset")
            tool.sdk.flush()

        assert resp.status == 202
        assert light.id not in tool.registry

    @pytest.mark.asyncio
    async def test_reset_tool(self, tool, onboard):
        """Should reset the tool and empty the registry."""
        onboard("light")

        async with _client(tool) as client:
            resp = await client.post("/api/reset")

        assert resp.status == 200
        assert tool.registry.counts()["total"] == 0



class TestRequestTracking:
    """Tests for the table of pollable requests."""

    def test_resolved_requests_evicted_beyond_limit(self, tool):
        """Should drop the oldest resolved requests and keep pending ones."""
        api = OnboardingApi(tool, max_tracked_requests=2)
        pending = PendingRequest(1, Completion("retrieve credentials"))
        first, second = (PendingRequest(h, Completion("delete ACE")) for h in (2, 3))
        first.completion.succeed()
        second.completion.succeed()

        for request in (pending, first, second):
            api._track(request)

        assert api._requests == {1: pending, 3: second}

    @pytest.mark.asyncio
    async def test_evicted_handle_unknown(self, tool, onboard):
        """Should 404 a poll for a request no longer tracked."""
        light, switch = onboard("light"), onboard("switch")
        api = OnboardingApi(tool, max_tracked_requests=1)

        async with test_utils.TestClient(test_utils.TestServer(api.build_app())) as client:
            first = await (await client.post(f"/api/devices/{light.id}/reset")).json()
            tool.sdk.flush()
            second = await (await client.post(f"/api/devices/{switch.id}/reset")).json()
            tool.sdk.flush()
            evicted = await client.get(f"/api/requests/{first['handle']}")
            kept = await client.get(f"/api/requests/{second['handle']}")

        assert evicted.status == 404
        assert kept.status == 200


class TestAceFromDict:
    """Tests for ACE parsing."""

    def test_wildcard_and_int_permissions(self):
        """Should accept wildcard markers and numeric permissions."""
        ace = ace_from_dict({
            "subject": {"role": "operator"},
            "resources": [{"wc": "+"}],
            "permissions": 6,
        })

        assert ace.subject == RoleSubject("operator")
        assert ace.resources[0].wildcard is WildcardKind.ALL_SECURED
        assert ace.permissions == Permission.RETRIEVE | Permission.UPDATE

    def test_unknown_subject(self):
        """Should reject a subject of no known kind."""
        with pytest.raises(AceValidationError):
            ace_from_dict({"subject": {"group": "x"}})

    def test_unknown_wildcard(self):
        """Should reject unknown wildcard markers."""
        with pytest.raises(AceValidationError):
            ace_from_dict({"subject": {"conntype": "auth-crypt"}, "resources": [{"wc": "?"}]})

"""Tests for the device registry."""

import threading
import uuid

import pytest

from onboarding_tool._types import DeviceDescriptor
from onboarding_tool.errors import SelectionError
from onboarding_tool.registry import DeviceRegistry


class TestObservation:
    """Tests for discovery upserts."""

    def test_observe_unowned_adds_device(self, registry, make_device):
        """Should add a newly seen unowned device."""
        device = make_device("light")

        assert registry.observe_unowned(device) is True
        assert registry.list_unowned() == [device]
        assert registry.list_owned() == []

    def test_reobserve_is_idempotent(self, registry, make_device):
        """Should keep one entry per id however often a device answers."""
        device = make_device("light")

        registry.observe_unowned(device)
        assert registry.observe_unowned(device) is False
        registry.observe_unowned(device)

        assert len(registry.list_unowned()) == 1

    def test_reobserve_refreshes_name(self, registry, make_device):
        """Should take the latest name and keep the first endpoints."""
        device = make_device("old name")
        renamed = DeviceDescriptor(id=device.id, name="new name", endpoints=("coap://[fe80::2]:5683",))

        registry.observe_unowned(device)
        registry.observe_unowned(renamed)

        refreshed = registry.get_unowned(device.id)
        assert refreshed.name == "new name"
        assert refreshed.endpoints == device.endpoints

    def test_owned_reobserve_keeps_endpoints(self, registry, make_device):
        """Should only refresh the name of a known owned device."""
        device = make_device("switch")
        registry.observe_owned(device)

        registry.observe_owned(DeviceDescriptor(id=device.id, name="hall switch"))

        assert registry.get_owned(device.id) == DeviceDescriptor(
            id=device.id, name="hall switch", endpoints=device.endpoints
        )

    def test_owned_observation_evicts_unowned(self, registry, make_device):
        """Should move a device reported as owned out of the unowned list."""
        device = make_device("switch")
        registry.observe_unowned(device)

        registry.observe_owned(device)

        assert registry.list_unowned() == []
        assert registry.list_owned() == [device]

    def test_unowned_observation_of_owned_device_ignored(self, registry, make_device):
        """Should drop a late unowned report for an owned device."""
        device = make_device("switch")
        registry.observe_owned(device)

        assert registry.observe_unowned(device) is False
        assert registry.list_unowned() == []
        assert registry.list_owned() == [device]

    def test_move_to_owned(self, registry, make_device):
        """Should file a transferred device under owned."""
        device = make_device()
        registry.observe_unowned(device)

        registry.move_to_owned(device)

        assert registry.get_owned(device.id) == device
        assert registry.get_unowned(device.id) is None


class TestSelection:
    """Tests for index and id based selection."""

    def test_take_by_index_keeps_order(self, registry, make_device):
        """Should leave [A, C] after taking index 1 of [A, B, C]."""
        a, b, c = make_device("A"), make_device("B"), make_device("C")
        for device in (a, b, c):
            registry.observe_unowned(device)

        selected = registry.unowned_at(1)
        registry.take_unowned(selected.id)

        assert selected == b
        assert registry.list_unowned() == [a, c]

    def test_index_out_of_range(self, registry, make_device):
        """Should raise SelectionError for an index past the end."""
        registry.observe_unowned(make_device())

        with pytest.raises(SelectionError):
            registry.unowned_at(1)
        with pytest.raises(SelectionError):
            registry.unowned_at(-1)

    def test_index_into_empty_collection(self, registry):
        """Should ask for rediscovery when nothing is known."""
        with pytest.raises(SelectionError, match="re-discover"):
            registry.owned_at(0)

    def test_taken_device_held_until_transfer_ends(self, registry, make_device):
        """Should drop unowned reports for a taken device until released."""
        device = make_device()
        registry.observe_unowned(device)
        registry.take_unowned(device.id)

        assert registry.in_transfer(device.id)
        assert registry.observe_unowned(device) is False
        assert registry.list_unowned() == []

        registry.end_transfer(device.id)

        assert registry.observe_unowned(device) is True
        assert registry.list_unowned() == [device]

    def test_owned_report_accepted_during_transfer(self, registry, make_device):
        """Should still file an owned report for a device in transfer."""
        device = make_device()
        registry.observe_unowned(device)
        registry.take_unowned(device.id)

        assert registry.observe_owned(device) is True
        assert registry.list_owned() == [device]

    def test_take_unknown_device(self, registry):
        """Should raise SelectionError for an id that is not unowned."""
        with pytest.raises(SelectionError):
            registry.take_unowned(uuid.uuid4())

    def test_require_owned(self, registry, make_device):
        """Should only accept owned devices."""
        device = make_device()
        registry.observe_unowned(device)

        with pytest.raises(SelectionError):
            registry.require_owned(device.id)

        registry.observe_owned(device)
        assert registry.require_owned(device.id) == device


class TestRemovalAndReset:
    """Tests for removal and reset."""

    def test_remove_from_either_collection(self, registry, make_device):
        """Should remove owned and unowned devices alike."""
        unowned, owned = make_device(), make_device()
        registry.observe_unowned(unowned)
        registry.observe_owned(owned)

        assert registry.remove(unowned.id) == unowned
        assert registry.remove(owned.id) == owned
        assert registry.remove(owned.id) is None
        assert registry.counts()["total"] == 0

    def test_reset_all_empties_both(self, registry, make_device):
        """Should forget every device, including ones in transfer."""
        taken = make_device()
        registry.observe_unowned(taken)
        registry.take_unowned(taken.id)
        registry.observe_unowned(make_device())
        registry.observe_owned(make_device())

        registry.reset_all()

        assert registry.list_unowned() == []
        assert registry.list_owned() == []
        assert not registry.in_transfer(taken.id)

    def test_counts_and_membership(self, registry, make_device):
        """Should report sizes and membership."""
        a, b = make_device(), make_device()
        registry.observe_unowned(a)
        registry.observe_owned(b)

        assert registry.counts() == {"unowned": 1, "owned": 1, "total": 2}
        assert a.id in registry
        assert uuid.uuid4() not in registry


class TestConcurrency:
    """Tests for concurrent writers."""

    def test_collections_stay_disjoint(self, make_device):
        """Should never list a device in both collections."""
        registry = DeviceRegistry()
        devices = [make_device(f"dev{i}") for i in range(50)]

        def report_unowned():
            for device in devices:
                registry.observe_unowned(device)

        def report_owned():
            for device in devices[::2]:
                registry.observe_owned(device)

        threads = [threading.Thread(target=fn) for fn in (report_unowned, report_owned) * 4]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        unowned = {d.id for d in registry.list_unowned()}
        owned = {d.id for d in registry.list_owned()}
        assert unowned.isdisjoint(owned)
        assert owned == {d.id for d in devices[::2]}
        assert unowned == {d.id for d in devices[1::2]}

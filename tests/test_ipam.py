"""Tests for fleet.ipam module."""

from __future__ import annotations

import pytest

from fleet.constants import AUTO_RESERVED_COMMENT
from fleet.exceptions import ConsistencyError, StateConflictError, ValidationError
from fleet.ipam import AddressSpace, contains, network_span


@pytest.fixture
def space(seeded_store, ipam):
    ipam.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
    return ipam


class TestSpan:
    def test_span_and_contains(self, seeded_store):
        network = seeded_store.networks.by_name("loc1-core-a")
        start, end = network_span(network)
        assert end - start == 255
        assert contains(network, "10.1.2.200")
        assert not contains(network, "10.1.3.0")


class TestAddRange:
    def test_creates_free_records(self, seeded_store, ipam):
        created, skipped = ipam.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
        assert len(created) == 11
        assert skipped == []
        assert all(ipam.show(ip).free for ip in created)

    def test_rejects_first_outside_network(self, seeded_store, ipam):
        with pytest.raises(ValidationError, match="outside of network"):
            ipam.add_range("loc1-core-a", "10.1.1.255", "10.1.2.20")

    def test_rejects_last_outside_network(self, seeded_store, ipam):
        with pytest.raises(ValidationError, match="outside of network"):
            ipam.add_range("loc1-core-a", "10.1.2.10", "10.1.3.0")

    def test_existing_records_are_skipped(self, space):
        space.assign("10.1.2.12", "web01")
        created, skipped = space.add_range("loc1-core-a", "10.1.2.5", "10.1.2.25")
        assert len(created) == 10
        assert len(skipped) == 11
        assert space.show("10.1.2.12").hostname == "web01"

    def test_cidr_form_excludes_network_and_broadcast(self, seeded_store, ipam):
        created, _ = ipam.add_range("loc1-core-a", "10.1.2.0/24")
        assert len(created) == 254
        assert created[0] == "10.1.2.1"
        assert created[-1] == "10.1.2.254"

    def test_cidr_must_start_subnet(self, seeded_store, ipam):
        with pytest.raises(ValidationError):
            ipam.add_range("loc1-core-a", "10.1.2.5/24")

    def test_reversed_range(self, seeded_store, ipam):
        with pytest.raises(ValidationError, match="reversed"):
            ipam.add_range("loc1-core-a", "10.1.2.20", "10.1.2.10")

    def test_unknown_network(self, seeded_store, ipam):
        with pytest.raises(ConsistencyError):
            ipam.add_range("loc1-core-zz", "10.1.2.10", "10.1.2.20")


class TestAssign:
    def test_assign_then_conflict(self, space):
        record = space.assign("10.1.2.15", "web01")
        assert record.hostname == "web01"
        with pytest.raises(StateConflictError):
            space.assign("10.1.2.15", "web02")
        assert space.show("10.1.2.15").hostname == "web01"

    def test_force_overwrites(self, space):
        space.assign("10.1.2.15", "web01")
        space.assign("10.1.2.15", "web02", force=True)
        assert space.show("10.1.2.15").hostname == "web02"

    def test_force_drops_previous_annotations(self, space):
        space.assign("10.1.2.15", "web01", comment="old box", owner="ops", interface="eth1")
        record = space.assign("10.1.2.15", "web02", force=True)
        assert (record.comment, record.owner, record.interface) == ("", "", "")
        record = space.assign("10.1.2.15", "web03", force=True, comment="new box")
        assert record.comment == "new box"
        assert record.owner == ""

    def test_force_clears_reservation_comment(self, seeded_store):
        space = AddressSpace(seeded_store, lambda ip: ip == "10.1.2.13")
        space.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
        with pytest.raises(StateConflictError):
            space.assign("10.1.2.13", "web01")
        record = space.assign("10.1.2.13", "web01", force=True)
        assert record.comment == ""
        assert not record.reserved

    def test_reassign_to_same_host(self, space):
        space.assign("10.1.2.15", "web01")
        space.assign("10.1.2.15", "web01", comment="again")
        assert space.show("10.1.2.15").comment == "again"

    def test_unknown_record(self, space):
        with pytest.raises(ConsistencyError, match="not available"):
            space.assign("10.1.2.50", "web01")

    def test_reserved_needs_force(self, space):
        record = space.show("10.1.2.11")
        record.reserved = True
        space._save(record)
        with pytest.raises(StateConflictError, match="reserved"):
            space.assign("10.1.2.11", "web01")
        assert space.assign("10.1.2.11", "web01", force=True).reserved is False

    def test_live_address_is_reserved(self, seeded_store):
        space = AddressSpace(seeded_store, lambda ip: ip == "10.1.2.13")
        space.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
        with pytest.raises(StateConflictError, match="in use"):
            space.assign("10.1.2.13", "web01")
        record = space.show("10.1.2.13")
        assert record.reserved
        assert record.comment == AUTO_RESERVED_COMMENT
        assert not record.assigned

    def test_force_skips_liveness_check(self, seeded_store):
        probed = []
        space = AddressSpace(seeded_store, lambda ip: probed.append(ip) or True)
        space.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
        space.assign("10.1.2.13", "web01", force=True)
        assert probed == []

    def test_invalid_ip(self, space):
        with pytest.raises(ValidationError):
            space.assign("10.1.2", "web01")


class TestUnassign:
    def test_record_kept_and_cleared(self, space):
        space.assign("10.1.2.15", "h", comment="temp", owner="ops")
        space.unassign("10.1.2.15")
        record = space.show("10.1.2.15")
        assert record.hostname == ""
        assert record.comment == ""
        assert record.owner == ""
        assert not record.reserved

    def test_unknown(self, space):
        with pytest.raises(ConsistencyError):
            space.unassign("10.1.2.99")


class TestQueries:
    def test_scan_reserves_live_addresses(self, seeded_store):
        live = {"10.1.2.11", "10.1.2.19"}
        space = AddressSpace(seeded_store, lambda ip: ip in live)
        space.add_range("loc1-core-a", "10.1.2.10", "10.1.2.20")
        assert sorted(space.scan("loc1-core-a")) == sorted(live)
        assert all(space.show(ip).reserved for ip in live)
        assert space.scan("loc1-core-a") == []

    def test_list_available(self, space):
        space.assign("10.1.2.15", "web01")
        available = space.list_available("loc1-core-a")
        assert len(available) == 10
        assert "10.1.2.15" not in available
        assert len(space.list_available("loc1-core-a", limit=3)) == 3

    def test_next_available_exhausted(self, seeded_store, ipam):
        with pytest.raises(StateConflictError):
            ipam.next_available("loc1-build-b")

    def test_locate(self, space):
        assert space.locate_one("10.1.2.77").name == "loc1-core-a"
        assert space.locate("172.16.0.1") == []
        with pytest.raises(ConsistencyError):
            space.locate_one("172.16.0.1")

    def test_remove_range(self, space):
        space.assign("10.1.2.15", "web01")
        removed = space.remove_range("loc1-core-a", "10.1.2.14", "10.1.2.16", assume_yes=True)
        assert removed == ["10.1.2.14", "10.1.2.15", "10.1.2.16"]
        with pytest.raises(ConsistencyError):
            space.show("10.1.2.15")
        assert len(space.list_available("loc1-core-a")) == 8

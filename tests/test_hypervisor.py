"""Tests for fleet.hypervisor module."""

from __future__ import annotations

import pytest

from fleet.exceptions import ConnectivityError, StateConflictError
from fleet.hypervisor import avoid_pattern_for, parse_status, percent_change
from fleet.models import Hypervisor

POLL_OUTPUT = """              total        used        free      shared  buff/cache   available
Mem:          64000       20000       30000         100       14000       42000
Swap:          2047           0        2047
---
Filesystem     1048576-blocks    Used Available Capacity Mounted on
/dev/sdb1            900000  400000    500000      45% /vm
---
0.52 0.61 0.70 2/345 12345
"""


class TestParseStatus:
    def test_parse(self):
        status = parse_status("hv1", POLL_OUTPUT, min_disk=100000, min_mem=2048)
        assert status.free_mem == 42000
        assert status.free_disk == 500000
        assert status.mem_headroom == 39952
        assert status.disk_headroom == 400000
        assert status.load == (0.52, 0.61, 0.70)

    def test_headroom_floored_at_zero(self):
        status = parse_status("hv1", POLL_OUTPUT, min_disk=900000, min_mem=50000)
        assert status.mem_headroom == 0
        assert status.disk_headroom == 0

    def test_garbage(self):
        with pytest.raises(ConnectivityError):
            parse_status("hv1", "connection reset", 0, 0)


class TestAvoidPattern:
    @pytest.mark.parametrize("name", ["web01", "web-02", "web_3", "web03b", "web"])
    def test_matches_siblings(self, name):
        assert avoid_pattern_for("web01").match(name)

    @pytest.mark.parametrize("name", ["webapp01", "db01", "myweb01", "webs", "weba", "web-"])
    def test_ignores_others(self, name):
        assert not avoid_pattern_for("web01").match(name)


class TestPercentChange:
    def test_values(self):
        assert percent_change(1200, 1000) == 19
        assert percent_change(1020, 1000) == 1
        assert percent_change(0, 0) == 0
        assert percent_change(1000, 0) == 100000


class TestRank:
    def _patch_poll(self, monkeypatch, registry, headroom, make_status):
        def fake_poll(hv):
            value = headroom[hv.name]
            if isinstance(value, Exception):
                raise value
            return make_status(hv.name, value)

        monkeypatch.setattr(registry, "poll", fake_poll)

    def test_clearly_larger_headroom_wins(self, seeded_store, registry, monkeypatch, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": 1000, "hv2": 1200}, make_status)
        for _ in range(3):
            assert registry.rank(seeded_store.hypervisors.list()).name == "hv2"

    def test_small_difference_keeps_first(self, seeded_store, registry, monkeypatch, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": 1000, "hv2": 1020}, make_status)
        assert registry.rank(seeded_store.hypervisors.list()).name == "hv1"

    def test_zero_headroom_never_selected(self, seeded_store, registry, monkeypatch, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": 0, "hv2": 0}, make_status)
        with pytest.raises(ConnectivityError, match="no available hypervisors"):
            registry.rank(seeded_store.hypervisors.list())

    def test_unreachable_skipped(self, seeded_store, registry, monkeypatch, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": ConnectivityError("down"), "hv2": 500}, make_status)
        assert registry.rank(seeded_store.hypervisors.list()).name == "hv2"

    def test_siblings_avoided(self, seeded_store, registry, monkeypatch, hv_domains, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": 1000, "hv2": 5000}, make_status)
        hv_domains["hv2"] = {"web02": {"active": True}}
        chosen = registry.rank(seeded_store.hypervisors.list(), avoid_pattern_for("web01"))
        assert chosen.name == "hv1"

    def test_falls_back_when_all_run_siblings(self, seeded_store, registry, monkeypatch, hv_domains, make_status):
        self._patch_poll(monkeypatch, registry, {"hv1": 1000, "hv2": 5000}, make_status)
        hv_domains["hv1"] = {"web03": {"active": True}}
        hv_domains["hv2"] = {"web02": {"active": True}}
        chosen = registry.rank(seeded_store.hypervisors.list(), avoid_pattern_for("web01"))
        assert chosen.name == "hv2"


class TestList:
    def test_filters(self, seeded_store, registry):
        seeded_store.hypervisors.save(
            Hypervisor(name="hv3", ip="10.2.0.13", location="loc2", vm_path="/vm", min_disk=0, min_mem=0)
        )
        assert [hv.name for hv in registry.list(location="loc1")] == ["hv1", "hv2"]
        assert [hv.name for hv in registry.list(environment="dev")] == []
        registry.remove_network("hv2", "loc1-core-a")
        names = [hv.name for hv in registry.list(networks=("loc1-core-a", "loc1-build-b"))]
        assert names == ["hv1"]

    def test_available_excludes_disabled_and_full(self, seeded_store, registry, monkeypatch, make_status):
        hv1 = seeded_store.hypervisors.require("hv1")
        hv1.enabled = False
        seeded_store.hypervisors.save(hv1)
        monkeypatch.setattr(registry, "poll", lambda hv: make_status(hv.name, 100))
        assert [hv.name for hv in registry.list(available=True)] == ["hv2"]

    def test_backing_filter(self, seeded_store, registry, remote):
        remote.file_exists.side_effect = lambda host, path: host == "10.1.0.12"
        assert [hv.name for hv in registry.list(backing="web-base-1")] == ["hv2"]
        remote.file_exists.assert_any_call("10.1.0.12", "/vm/backing/web-base-1.img")


class TestPoll:
    def test_poll_uses_single_read_only_command(self, seeded_store, registry, remote):
        remote.ssh.return_value = POLL_OUTPUT
        status = registry.poll(seeded_store.hypervisors.require("hv1"))
        assert status.free_mem == 42000
        command = remote.ssh.call_args.args[1]
        assert "free -m" in command and "df -P -m /vm" in command and "/proc/loadavg" in command
        assert remote.ssh.call_args.kwargs["mutating"] is False

    def test_closed_ssh_port(self, seeded_store, registry, remote):
        remote.port_open.return_value = False
        with pytest.raises(ConnectivityError):
            registry.poll(seeded_store.hypervisors.require("hv1"))
        remote.ssh.assert_not_called()


class TestMappings:
    def test_interface_for(self, seeded_store, registry):
        assert registry.interface_for("loc1-build-b", "hv1") == "br-build"
        registry.remove_network("hv1", "loc1-build-b")
        with pytest.raises(StateConflictError):
            registry.interface_for("loc1-build-b", "hv1")

    def test_environment_mapping(self, seeded_store, registry):
        registry.add_environment("hv1", "dev")
        assert [hv.name for hv in registry.list(environment="dev")] == ["hv1"]
        assert registry.remove_environment("hv1", "dev") is True
        assert registry.remove_environment("hv1", "dev") is False


class TestLocateSystem:
    def test_running_host_first_and_cached(self, seeded_store, registry, hv_domains):
        hv_domains["hv1"] = {"web01": {"active": False}}
        hv_domains["hv2"] = {"web01": {"active": True}}
        assert registry.locate_system("web01") == ["hv2", "hv1"]
        hv_domains.clear()
        assert registry.locate_system("web01", refresh=False) == ["hv2", "hv1"]
        assert registry.locate_system("web01") == []
        assert registry.locate_system("web01", refresh=False) == []

    def test_record_and_forget(self, seeded_store, registry):
        registry.record_system("web01", "hv1")
        registry.record_system("web01", "hv2")
        entries = {e.hypervisor: e.preferred for e in seeded_store.hv_systems.filter(system="web01")}
        assert entries == {"hv1": False, "hv2": True}
        registry.forget_system("web01")
        assert seeded_store.hv_systems.list() == []

"""Shared test fixtures: a temporary record store and fake remote collaborators."""

from __future__ import annotations

from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from fleet.builds import BuildCatalog
from fleet.config import Settings
from fleet.hypervisor import HypervisorRegistry
from fleet.ipam import AddressSpace
from fleet.models import (
    Application,
    Build,
    Hypervisor,
    HypervisorEnvironment,
    HypervisorNetwork,
    HypervisorStatus,
    Network,
    System,
)
from fleet.remote import Remote
from fleet.store import RecordStore
from fleet.systems import SystemConverter


class FakeDomainManager:
    """In-memory stand-in for one hypervisor's libvirt connection.

    domains maps a domain name to {"active": bool, "disks": [...], "macs": [...]}.
    """

    def __init__(self, hv_name: str, domains: Dict[str, dict], calls: List[tuple]) -> None:
        self.hv_name = hv_name
        self.domains = domains
        self.calls = calls

    def __enter__(self) -> "FakeDomainManager":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def exists(self, name: str) -> bool:
        return name in self.domains

    def is_active(self, name: str) -> bool:
        return bool(self.domains.get(name, {}).get("active"))

    def start(self, name: str) -> None:
        self.calls.append(("start", self.hv_name, name))
        self.domains.setdefault(name, {})["active"] = True

    def shutdown(self, name: str) -> None:
        self.calls.append(("shutdown", self.hv_name, name))
        if name in self.domains:
            self.domains[name]["active"] = False

    def destroy(self, name: str) -> None:
        self.calls.append(("destroy", self.hv_name, name))
        if name in self.domains:
            self.domains[name]["active"] = False

    def undefine(self, name: str) -> None:
        self.calls.append(("undefine", self.hv_name, name))
        self.domains.pop(name, None)

    def disk_paths(self, name: str) -> List[str]:
        return list(self.domains[name].get("disks", []))

    def macs(self, name: str) -> List[str]:
        return list(self.domains[name].get("macs", []))

    def running_domains(self) -> List[str]:
        return [name for name, info in self.domains.items() if info.get("active")]

    def all_macs(self) -> List[str]:
        return [mac for info in self.domains.values() for mac in info.get("macs", [])]

    def swap_bridge(self, name: str, mac: str, bridge: str) -> None:
        self.calls.append(("swap_bridge", self.hv_name, name, bridge))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        conf_dir=tmp_path / "conf",
        state_dir=tmp_path / "state",
        abort_file=tmp_path / "abort",
        kickstart_dir=tmp_path / "ks",
        release_dir=tmp_path / "releases",
        poll_interval=1,
        assume_yes=True,
    )


@pytest.fixture
def store(settings) -> RecordStore:
    return RecordStore(settings)


@pytest.fixture
def remote(settings) -> MagicMock:
    """A Remote whose commands all succeed with empty output and whose hosts all look dead."""
    mock = MagicMock(spec=Remote)
    mock.settings = settings
    mock.dry_run = False
    mock.ssh.return_value = ""
    mock.is_alive.return_value = False
    mock.file_exists.return_value = False
    mock.port_open.return_value = True
    mock.remote_path.side_effect = lambda host, path: f"root@{host}:{path}"
    return mock


@pytest.fixture
def hv_domains() -> Dict[str, Dict[str, dict]]:
    return {}


@pytest.fixture
def domain_calls() -> List[tuple]:
    return []


@pytest.fixture
def registry(store, settings, remote, hv_domains, domain_calls) -> HypervisorRegistry:
    def factory(hv):
        return FakeDomainManager(hv.name, hv_domains.setdefault(hv.name, {}), domain_calls)

    return HypervisorRegistry(store, settings, remote, domains=factory)


@pytest.fixture
def ipam(store) -> AddressSpace:
    return AddressSpace(store, lambda ip: False)


@pytest.fixture
def builds(store, settings) -> BuildCatalog:
    return BuildCatalog(store, settings)


@pytest.fixture
def converter(store, settings, registry, ipam, remote, builds) -> SystemConverter:
    return SystemConverter(store, settings, registry, ipam, remote, builds)


@pytest.fixture
def make_status():
    """Factory for poll results with the given memory headroom."""

    def _make(name: str, mem_headroom: int, disk_headroom: int = 50000) -> HypervisorStatus:
        return HypervisorStatus(
            name=name,
            free_disk=disk_headroom + 1000,
            free_mem=mem_headroom + 512,
            disk_headroom=disk_headroom,
            mem_headroom=mem_headroom,
            load=(0.1, 0.2, 0.3),
        )

    return _make


@pytest.fixture
def seeded_store(store) -> RecordStore:
    """loc1 with a target network, a default build network, two hypervisors and one web build."""
    store.networks.save(
        Network(
            location="loc1",
            zone="core",
            alias="a",
            network="10.1.2.0",
            mask="255.255.255.0",
            cidr=24,
            gateway="10.1.2.1",
            dns="10.1.2.2",
        )
    )
    store.networks.save(
        Network(
            location="loc1",
            zone="build",
            alias="b",
            network="10.1.9.0",
            mask="255.255.255.0",
            cidr=24,
            gateway="10.1.9.1",
            dns="10.1.9.2",
            repo_address="10.1.9.5",
            repo_path="/var/www/html/ks",
            repo_url="ks",
            build=True,
            default_build=True,
            dhcp="10.1.9.3",
        )
    )
    for name, ip in (("hv1", "10.1.0.11"), ("hv2", "10.1.0.12")):
        store.hypervisors.save(
            Hypervisor(name=name, ip=ip, location="loc1", vm_path="/vm", min_disk=10000, min_mem=2048)
        )
        store.hv_environments.save(HypervisorEnvironment(environment="prod", hypervisor=name))
        store.hv_networks.save(HypervisorNetwork(network="loc1-core-a", hypervisor=name, interface="br-core"))
        store.hv_networks.save(HypervisorNetwork(network="loc1-build-b", hypervisor=name, interface="br-build"))
    store.builds.save(Build(name="web", role="web", os="centos7", arch="x86_64", disk=20, ram=2048))
    store.applications.save(Application(name="httpd", build="web"))
    store.systems.save(System(name="web01", build="web", ip="10.1.2.15", location="loc1", environment="prod"))
    return store

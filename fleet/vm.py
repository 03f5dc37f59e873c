"""Libvirt domain access on one hypervisor."""

from __future__ import annotations

import shlex
from typing import Any, List, Optional

from fleet.config import Settings
from fleet.exceptions import ConnectivityError, ManagerError
from fleet.models import Hypervisor
from fleet.network import domain_disk_paths, domain_interface_model, domain_macs, render_bridge_interface
from fleet.utils import log

_STATES = {
    0: "nostate",
    1: "running",
    2: "blocked",
    3: "paused",
    4: "shutdown",
    5: "shutoff",
    6: "crashed",
    7: "pmsuspended",
}


def _libvirt() -> Any:
    try:
        import libvirt  # type: ignore
    except ImportError as exc:
        raise ManagerError(f"libvirt python bindings not available: {exc}")
    return libvirt


class DomainManager:
    """One libvirt connection to one hypervisor.

    Mutating calls only log the equivalent virsh command in dry-run mode.
    """

    def __init__(self, settings: Settings, hypervisor: Hypervisor) -> None:
        self.settings = settings
        self.hypervisor = hypervisor
        self.uri = settings.libvirt_uri_for(hypervisor.ip)
        self.dry_run = settings.dry_run
        self.conn: Optional[Any] = None

    def __enter__(self) -> "DomainManager":
        self.connect()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def connect(self) -> None:
        libvirt = _libvirt()
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ConnectivityError(f"Failed to open libvirt connection to {self.uri}: {exc}") from exc
        if self.conn is None:
            raise ConnectivityError(f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except _libvirt().libvirtError:
                log("DEBUG", f"Error closing libvirt connection to {self.uri}")
            self.conn = None

    def _connection(self) -> Any:
        if self.conn is None:
            self.connect()
        return self.conn

    def _virsh(self, *args: str) -> None:
        log("INFO", f"[dry-run] virsh -c {self.uri} {shlex.join(args)}")

    def lookup(self, name: str) -> Optional[Any]:
        libvirt = _libvirt()
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError:
            return None

    def _require(self, name: str) -> Any:
        domain = self.lookup(name)
        if domain is None:
            raise ManagerError(f"Domain {name} is not defined on {self.hypervisor.name}")
        return domain

    def exists(self, name: str) -> bool:
        return self.lookup(name) is not None

    def is_active(self, name: str) -> bool:
        domain = self.lookup(name)
        return bool(domain is not None and domain.isActive())

    def state(self, name: str) -> str:
        domain = self.lookup(name)
        if domain is None:
            return "undefined"
        code = domain.state()[0]
        return _STATES.get(code, str(code))

    def start(self, name: str) -> None:
        if self.dry_run:
            self._virsh("start", name)
            return
        domain = self._require(name)
        if domain.isActive():
            log("INFO", f"Domain {name} already running on {self.hypervisor.name}")
            return
        try:
            domain.create()
        except _libvirt().libvirtError as exc:
            raise ManagerError(f"Failed to start {name} on {self.hypervisor.name}: {exc}") from exc
        log("SUCCESS", f"Domain {name} started on {self.hypervisor.name}")

    def shutdown(self, name: str) -> None:
        """Request a graceful power-off."""
        if self.dry_run:
            self._virsh("shutdown", name)
            return
        domain = self._require(name)
        if not domain.isActive():
            return
        try:
            domain.shutdown()
        except _libvirt().libvirtError as exc:
            raise ManagerError(f"Failed to shut down {name} on {self.hypervisor.name}: {exc}") from exc

    def destroy(self, name: str) -> None:
        if self.dry_run:
            self._virsh("destroy", name)
            return
        domain = self.lookup(name)
        if domain is None or not domain.isActive():
            return
        try:
            domain.destroy()
        except _libvirt().libvirtError as exc:
            raise ManagerError(f"Failed to power off {name} on {self.hypervisor.name}: {exc}") from exc
        log("INFO", f"Domain {name} powered off on {self.hypervisor.name}")

    def undefine(self, name: str) -> None:
        if self.dry_run:
            self._virsh("undefine", name)
            return
        domain = self.lookup(name)
        if domain is None:
            return
        try:
            domain.undefine()
        except _libvirt().libvirtError as exc:
            raise ManagerError(f"Failed to undefine {name} on {self.hypervisor.name}: {exc}") from exc
        log("INFO", f"Domain {name} undefined on {self.hypervisor.name}")

    def xml(self, name: str) -> str:
        return self._require(name).XMLDesc(0)

    def disk_paths(self, name: str) -> List[str]:
        return domain_disk_paths(self.xml(name))

    def macs(self, name: str) -> List[str]:
        return domain_macs(self.xml(name))

    def domain_names(self) -> List[str]:
        """Every defined domain, running or not."""
        return [domain.name() for domain in self._connection().listAllDomains(0)]

    def running_domains(self) -> List[str]:
        return [domain.name() for domain in self._connection().listAllDomains(0) if domain.isActive()]

    def all_macs(self) -> List[str]:
        macs: List[str] = []
        for domain in self._connection().listAllDomains(0):
            macs += domain_macs(domain.XMLDesc(0))
        return macs

    def swap_bridge(self, name: str, mac: str, bridge: str) -> None:
        """Move the NIC with the given MAC to another bridge in the persistent definition."""
        if self.dry_run:
            self._virsh("update-device", name, "/dev/stdin", "--config")
            log("INFO", f"[dry-run] {render_bridge_interface(mac, bridge)}")
            return
        libvirt = _libvirt()
        domain = self._require(name)
        model = domain_interface_model(domain.XMLDesc(0), mac)
        xml = render_bridge_interface(mac, bridge, model)
        try:
            domain.updateDeviceFlags(xml, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to move {name} to bridge {bridge}: {exc}") from exc
        log("INFO", f"Moved {name} interface {mac} to bridge {bridge}")

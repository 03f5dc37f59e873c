"""System type derivation and conversions between system types.

A system's type is never stored; it follows from the virtual, backing and
overlay fields:

    virtual=n                       physical
    virtual=y, backing=y            backing
    virtual=y, backing=n, overlay   overlay
    otherwise                       single
"""

from __future__ import annotations

import json
import posixpath
import shlex
from typing import Dict, List, Optional, Tuple

from fleet.addressing import valid_ip
from fleet.builds import BuildCatalog
from fleet.config import Settings
from fleet.constants import BACKING_SUBDIR, DISK_SUFFIX
from fleet.exceptions import (
    ConsistencyError,
    ManagerError,
    StateConflictError,
    UnsupportedConversion,
    ValidationError,
)
from fleet.hypervisor import HypervisorRegistry, avoid_pattern_for
from fleet.ipam import AddressSpace
from fleet.models import Hypervisor, Network, System, SystemType
from fleet.remote import Remote, helper_command
from fleet.store import RecordStore
from fleet.utils import confirm, log, new_uuid, random_mac


def system_type(system: System) -> SystemType:
    if not system.virtual:
        return SystemType.PHYSICAL
    if system.backing:
        return SystemType.BACKING
    if system.overlay:
        return SystemType.OVERLAY
    return SystemType.SINGLE


def new_identity(registry: HypervisorRegistry, attempts: int = 32) -> Tuple[str, str]:
    """A fresh UUID and a MAC address not used by any domain on any reachable hypervisor."""
    known = set()
    for hv in registry.store.hypervisors.list():
        try:
            with registry.domains(hv) as domains:
                known.update(domains.all_macs())
        except ManagerError as exc:
            log("WARN", f"Unable to read MAC addresses from {hv.name}: {exc}")
    for _ in range(attempts):
        mac = random_mac()
        if mac not in known:
            return new_uuid(), mac
    raise StateConflictError("Unable to generate a unique MAC address")


class SystemConverter:
    def __init__(
        self,
        store: RecordStore,
        settings: Settings,
        registry: HypervisorRegistry,
        ipam: AddressSpace,
        remote: Remote,
        builds: BuildCatalog,
    ) -> None:
        self.store = store
        self.settings = settings
        self.registry = registry
        self.ipam = ipam
        self.remote = remote
        self.builds = builds

    def get(self, name: str) -> System:
        return self.store.systems.require(name)

    def type_of(self, name: str) -> SystemType:
        return system_type(self.get(name))

    def _save(self, system: System) -> None:
        with self.store.edit_lock():
            self.store.systems.save(system)
            self.store.commit(self.store.systems.path, message=f"fleet: update system {system.name}")

    def resolve_network(self, system: System, network: Optional[str] = None) -> Network:
        """The named network, else the network owning the system's address."""
        if network:
            return self.store.networks.by_name(network)
        if not valid_ip(system.ip):
            raise ValidationError(f"System {system.name} has no static address; provide the network")
        return self.ipam.locate_one(system.ip)

    # -- backing image helpers -------------------------------------------

    def holders(self, name: str) -> List[Hypervisor]:
        """Hypervisors that hold a backing image for the system."""
        return [hv for hv in self.store.hypervisors.list() if self.registry.has_backing(hv, name)]

    def _dependents_on(self, hv: Hypervisor, name: str) -> List[str]:
        own = self.registry.backing_path(hv, name)
        vm_path = hv.vm_path.rstrip("/")
        script = (
            f"for f in {shlex.quote(vm_path)}/*{DISK_SUFFIX} {shlex.quote(vm_path)}/{BACKING_SUBDIR}/*{DISK_SUFFIX}; "
            "do [ -e \"$f\" ] || continue; printf '%s\\t' \"$f\"; "
            "qemu-img info -U --output=json \"$f\" | tr -d '\\n'; echo; done"
        )
        output = self.remote.ssh(hv.ip, script, mutating=False)
        found = []
        for line in output.splitlines():
            path, _, raw = line.partition("\t")
            if not raw or path == own:
                continue
            try:
                info = json.loads(raw)
            except ValueError:
                log("WARN", f"Unreadable qemu-img output for {path} on {hv.name}")
                continue
            backing = info.get("backing-filename") or ""
            if backing and posixpath.basename(backing) == f"{name}{DISK_SUFFIX}":
                found.append(path)
        return found

    def dependents(self, name: str, holders: Optional[List[Hypervisor]] = None) -> Dict[str, List[str]]:
        """Disks using the system's backing image as their backing file, per hypervisor."""
        result: Dict[str, List[str]] = {}
        for hv in holders if holders is not None else self.holders(name):
            paths = self._dependents_on(hv, name)
            if paths:
                result[hv.name] = paths
        return result

    def _require_no_dependents(self, name: str, holders: List[Hypervisor]) -> None:
        found = self.dependents(name, holders)
        if found:
            listing = "; ".join(f"{hv}: {', '.join(paths)}" for hv, paths in found.items())
            raise StateConflictError(f"Backing image {name} is in use by other disks ({listing})")

    # -- conversions -----------------------------------------------------

    def convert(
        self,
        name: str,
        target: SystemType,
        network: Optional[str] = None,
        base: Optional[str] = None,
        assume_yes: bool = False,
        distribute: bool = True,
    ) -> System:
        system = self.get(name)
        current = system_type(system)
        if current == target:
            raise ValidationError(f"{name} is already a {current.value} system")
        if SystemType.PHYSICAL in (current, target):
            raise UnsupportedConversion(f"Conversion from {current.value} to {target.value} is not implemented")
        if current == SystemType.SINGLE and target == SystemType.BACKING:
            return self.single_to_backing(system, network, assume_yes, distribute)
        if current == SystemType.BACKING and target in (SystemType.SINGLE, SystemType.OVERLAY):
            return self.backing_to_vm(system, target, network, base, assume_yes)
        raise UnsupportedConversion(f"Conversion from {current.value} to {target.value} is not implemented")

    def single_to_backing(
        self,
        system: System,
        network: Optional[str] = None,
        assume_yes: bool = False,
        distribute: bool = True,
    ) -> System:
        name = system.name
        net = self.resolve_network(system, network) if network or valid_ip(system.ip) else None
        log("INFO", f"Converting {name} on {net.name if net else 'a dhcp network'} to a backing image")
        hv_names = self.registry.locate_system(name, refresh=True)
        if not hv_names:
            raise StateConflictError(f"{name} is not defined on any hypervisor")
        confirm(
            f"Convert {name} to a backing image? It will be powered off and undefined on {', '.join(hv_names)}.",
            assume_yes,
        )
        hypervisors = [self.registry.get(hv) for hv in hv_names]
        disks: Dict[str, List[str]] = {}
        for hv in hypervisors:
            with self.registry.domains(hv) as domains:
                domains.destroy(name)
                disks[hv.name] = domains.disk_paths(name)
        for hv in hypervisors:
            target_dir = posixpath.join(hv.vm_path.rstrip("/"), BACKING_SUBDIR)
            self.remote.ssh(hv.ip, f"mkdir -p {shlex.quote(target_dir)}")
            for disk in disks[hv.name]:
                log("INFO", f"Moving {disk} into {target_dir} on {hv.name}")
                self.remote.ssh(hv.ip, f"mv {shlex.quote(disk)} {shlex.quote(target_dir)}/")
        for hv in hypervisors:
            with self.registry.domains(hv) as domains:
                domains.undefine(name)
        system.backing = True
        self._save(system)
        self.registry.forget_system(name)
        if distribute:
            self.distribute(system, hypervisors[0])
        log("SUCCESS", f"{name} is now a backing image")
        return system

    def distribute(self, system: System, source: Hypervisor) -> List[str]:
        """Copy a backing image to every other eligible hypervisor in its location."""
        copied = []
        for hv in self.registry.list(location=system.location, environment=system.environment):
            if hv.name == source.name or not hv.enabled:
                continue
            if self.registry.has_backing(hv, system.name):
                log("DEBUG", f"{hv.name} already holds {system.name}")
                continue
            self.copy_backing(system.name, source, hv)
            copied.append(hv.name)
        return copied

    def copy_backing(self, name: str, source: Hypervisor, target: Hypervisor) -> None:
        """Copy a backing image directly from one hypervisor to another."""
        image = self.registry.backing_path(source, name)
        target_dir = posixpath.join(target.vm_path.rstrip("/"), BACKING_SUBDIR)
        self.remote.ssh(target.ip, f"mkdir -p {shlex.quote(target_dir)}")
        destination = f"{self.settings.ssh_user}@{target.ip}:{target_dir}/"
        log("INFO", f"Copying backing image {name} from {source.name} to {target.name}")
        self.remote.ssh(source.ip, f"scp -B -p -o StrictHostKeyChecking=no {shlex.quote(image)} {shlex.quote(destination)}")

    def backing_to_vm(
        self,
        system: System,
        target: SystemType,
        network: Optional[str] = None,
        base: Optional[str] = None,
        assume_yes: bool = False,
    ) -> System:
        name = system.name
        if target == SystemType.OVERLAY:
            if not base:
                raise ValidationError("The backing system to overlay must be provided")
            base_system = self.get(base)
            if system_type(base_system) != SystemType.BACKING:
                raise ValidationError(f"{base} is not a backing system")
            if base == name:
                raise ValidationError(f"{name} can not overlay itself")
        holders = self.holders(name)
        if not holders:
            raise StateConflictError(f"No hypervisor holds the backing image for {name}")
        self._require_no_dependents(name, holders)
        net = self.resolve_network(system, network)
        candidates = [hv for hv in holders if hv.enabled] or holders
        hv = self.registry.rank(candidates, avoid_pattern_for(name)) if len(candidates) > 1 else candidates[0]
        interface = self.registry.interface_for(net.name, hv.name)
        others = [h for h in holders if h.name != hv.name]
        confirm(
            f"Convert backing image {name} to a {target.value} system on {hv.name}?"
            + (f" Copies on {', '.join(h.name for h in others)} will be deleted." if others else ""),
            assume_yes,
        )
        build = self.builds.get(system.build)
        disk_gb, ram = self.builds.effective_size(system.build)
        uuid, mac = new_identity(self.registry)
        source = self.registry.backing_path(hv, name)
        disk_path = self.registry.disk_path(hv, name)
        self.remote.ssh(hv.ip, f"mv {shlex.quote(source)} {shlex.quote(disk_path)}")
        for other in others:
            self.remote.ssh(other.ip, f"rm -f {shlex.quote(self.registry.backing_path(other, name))}")
        command = helper_command(
            self.settings,
            name,
            arch=build.arch,
            os_name=build.os,
            ram=ram,
            disk=disk_gb,
            mac=mac,
            uuid=uuid,
            interface=interface,
            ip=None if system.is_dhcp else system.ip,
            netmask=net.mask,
            gateway=net.gateway,
            dns=net.dns,
            disk_path=disk_path,
            no_install=True,
            use_existing=True,
        )
        self.remote.ssh(hv.ip, command)
        system.backing = False
        system.overlay = base if target == SystemType.OVERLAY else ""
        self._save(system)
        self.registry.record_system(name, hv.name, preferred=True)
        log("SUCCESS", f"{name} is now a {target.value} system on {hv.name}")
        return system

    # -- removal ---------------------------------------------------------

    def deprovision(self, name: str, assume_yes: bool = False) -> None:
        """Destroy a virtual system's VM and disks everywhere and release its address."""
        system = self.get(name)
        kind = system_type(system)
        if kind == SystemType.PHYSICAL:
            raise ValidationError(f"{name} is a physical system and can not be deprovisioned")
        if kind == SystemType.BACKING:
            holders = self.holders(name)
            self._require_no_dependents(name, holders)
            confirm(f"Permanently delete backing image {name} from {len(holders)} hypervisor(s)?", assume_yes)
            for hv in holders:
                self.remote.ssh(hv.ip, f"rm -f {shlex.quote(self.registry.backing_path(hv, name))}")
        else:
            hv_names = self.registry.locate_system(name, refresh=True)
            confirm(
                f"Permanently destroy {name} and its disks on {', '.join(hv_names) or 'no hypervisor'}?",
                assume_yes,
            )
            for hv in (self.registry.get(n) for n in hv_names):
                with self.registry.domains(hv) as domains:
                    domains.destroy(name)
                    disks = domains.disk_paths(name)
                    domains.undefine(name)
                for disk in disks:
                    self.remote.ssh(hv.ip, f"rm -f {shlex.quote(disk)}")
        self._release_address(system)
        self.registry.forget_system(name)
        log("SUCCESS", f"{name} has been deprovisioned")

    def _release_address(self, system: System) -> None:
        if not valid_ip(system.ip):
            return
        try:
            record = self.ipam.show(system.ip)
        except ConsistencyError:
            return
        if record.hostname == system.name:
            self.ipam.unassign(system.ip)

    def delete(self, name: str) -> None:
        """Remove a system record; a virtual system must be gone from every hypervisor first."""
        system = self.get(name)
        kind = system_type(system)
        if kind == SystemType.BACKING and self.holders(name):
            raise StateConflictError(f"Backing image {name} still exists; deprovision it first")
        if kind in (SystemType.SINGLE, SystemType.OVERLAY) and self.registry.locate_system(name, refresh=True):
            raise StateConflictError(f"{name} is still defined on a hypervisor; deprovision it first")
        self._release_address(system)
        with self.store.edit_lock():
            self.store.systems.delete(name)
            self.store.hv_systems.delete_where(lambda e: e.system == name)
            self.store.commit(self.store.systems.path, self.store.hv_systems.path, message=f"fleet: delete {name}")
        log("INFO", f"Deleted system {name}")

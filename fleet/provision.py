"""Two-phase provisioning of virtual systems.

Phase 1 runs in the operator's session: it validates the request, picks a
hypervisor and addresses, and starts the VM build. Phase 2 runs detached,
follows the build through to a reachable and configured system, and records
a checkpoint after each step so that an interrupted build can be resumed.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
import tempfile
import time
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from fleet.addressing import valid_ip
from fleet.config import Settings
from fleet.constants import DHCP, OVERLAY_AUTO, PHASE2_STEPS
from fleet.exceptions import (
    AbortedError,
    ConnectivityError,
    ConsistencyError,
    ManagerError,
    StateConflictError,
    ValidationError,
)
from fleet.hypervisor import avoid_pattern_for
from fleet.models import Build, Hypervisor, Network, Placement, System, SystemType
from fleet.network import lease_for_mac
from fleet.release import ReleaseBuilder
from fleet.remote import helper_command
from fleet.runtime import CancelToken, poll_until
from fleet.status import BuildJournal, BuildRecord
from fleet.systems import SystemConverter, new_identity, system_type
from fleet.templates import render_text
from fleet.utils import ensure_directory, errlog, hash_password, log, prompt

GUEST_INTERFACE_CONFIG = "/etc/sysconfig/network-scripts/ifcfg-eth0"

ANONYMIZE_SCRIPT = (
    "rm -f /etc/udev/rules.d/70-persistent-net.rules; "
    "sed -i -e '/^HWADDR=/d' -e '/^UUID=/d' -e '/^IPADDR=/d' -e '/^NETMASK=/d' -e '/^GATEWAY=/d' "
    "-e 's/^BOOTPROTO=.*/BOOTPROTO=dhcp/' /etc/sysconfig/network-scripts/ifcfg-eth*; "
    "rm -f /etc/ssh/ssh_host_*"
)


def guest_network_script(ip: Optional[str], network: Network) -> str:
    """Shell commands that write the guest's primary interface configuration.

    A None ip configures the interface for DHCP.
    """
    lines = ["DEVICE=eth0", "ONBOOT=yes"]
    if ip:
        lines += ["BOOTPROTO=static", f"IPADDR={ip}", f"NETMASK={network.mask}"]
        if network.gateway:
            lines.append(f"GATEWAY={network.gateway}")
    else:
        lines.append("BOOTPROTO=dhcp")
    body = "\\n".join(lines)
    script = f"printf '{body}\\n' > {GUEST_INTERFACE_CONFIG}"
    if ip and network.dns:
        script += f"; printf 'nameserver {network.dns}\\n' > /etc/resolv.conf"
    return script


class Provisioner:
    def __init__(
        self,
        converter: SystemConverter,
        releases: ReleaseBuilder,
        journal: BuildJournal,
        token: Optional[CancelToken] = None,
    ) -> None:
        self.converter = converter
        self.store = converter.store
        self.settings: Settings = converter.settings
        self.registry = converter.registry
        self.ipam = converter.ipam
        self.remote = converter.remote
        self.builds = converter.builds
        self.releases = releases
        self.journal = journal
        self.token = token or CancelToken(self.settings.abort_file)

    # -- phase 1 ----------------------------------------------------------

    def provision(
        self,
        name: str,
        network: Optional[str] = None,
        foreground: bool = False,
        nested: bool = False,
        chain: Iterable[str] = (),
    ) -> Placement:
        self.token.check()
        chain = list(chain)
        if name in chain:
            raise ConsistencyError(f"Backing chain of {chain[0]} loops back to {name}")
        system = self.store.systems.require(name)
        kind = system_type(system)
        layered = kind == SystemType.OVERLAY or (kind == SystemType.BACKING and bool(system.overlay))
        if kind == SystemType.PHYSICAL:
            raise ValidationError(f"{name} is a physical system and can not be provisioned")
        self._require_not_deployed(system, kind)

        target = self._target_network(system, network)
        build_net = self._build_network(system, target)
        build = self.builds.get(system.build)

        if layered:
            if not build_net.dhcp:
                raise ValidationError(f"Build network {build_net.name} has no DHCP server; overlays can not be built on it")
            if system.auto_overlay:
                system.overlay = self.resolve_overlay(system, chain)
                self._save_system(system)
            base = self.store.systems.require(system.overlay)
            if base.name == name or base.name in chain:
                raise ConsistencyError(f"{name} overlays {base.name}, which is already waiting on it")
            if system_type(base) != SystemType.BACKING:
                raise ValidationError(f"{name} overlays {base.name}, which is not a backing system")

        hv = self._select_hypervisor(system, layered, target, build_net)
        build_interface = self.registry.interface_for(build_net.name, hv.name)
        final_interface = self.registry.interface_for(target.name, hv.name)

        if not system.is_dhcp:
            self.ipam.assign(system.ip, name)
        if build_net.name != target.name or system.is_dhcp:
            build_ip = self.ipam.next_available(build_net.name)
            self.ipam.assign(build_ip, name, comment=f"build address for {name}")
        else:
            build_ip = system.ip

        uuid, mac = new_identity(self.registry)
        placement = Placement(
            hypervisor=hv.name,
            network=target.name,
            build_network=build_net.name,
            build_ip=build_ip,
            final_ip=system.ip,
            build_interface=build_interface,
            final_interface=final_interface,
            mac=mac,
            uuid=uuid,
            base=system.overlay if layered else "",
            chain=chain,
        )

        if not layered:
            ks_url = self._publish_kickstart(system, build, build_net, build_ip)
            disk, ram = self.builds.effective_size(build.name)
            log("INFO", f"Creating virtual machine {name} on {hv.name}...")
            command = helper_command(
                self.settings,
                name,
                arch=build.arch,
                os_name=build.os,
                ram=ram,
                disk=disk,
                mac=mac,
                uuid=uuid,
                interface=build_interface,
                ks_url=ks_url,
                ip=build_ip,
                netmask=build_net.mask,
                gateway=build_net.gateway,
                dns=build_net.dns,
            )
            self.remote.ssh(hv.ip, command)

        with self.store.edit_lock():
            self.registry.record_system(name, hv.name, preferred=True)
            system.build_date = time.strftime("%Y-%m-%d %H:%M:%S")
            self._save_system(system)

        self.journal.start(name, asdict(placement))
        if foreground or nested or self.settings.dry_run:
            self.run_phase2(name)
        else:
            self._spawn_phase2(name)
            log("SUCCESS", f"Build for {name} at {system.location} {system.environment} has been started and will continue in the background")
        return placement

    def _require_not_deployed(self, system: System, kind: SystemType) -> None:
        if kind == SystemType.BACKING and self.converter.holders(system.name):
            raise StateConflictError(f"Backing image {system.name} already exists; will not redeploy")
        located = self.registry.locate_system(system.name, refresh=True)
        if located:
            raise StateConflictError(f"{system.name} is already defined on {', '.join(located)}; will not redeploy")
        if valid_ip(system.ip) and self.remote.is_alive(system.ip):
            raise StateConflictError(f"{system.name} is alive at {system.ip}; will not redeploy")

    def _target_network(self, system: System, network: Optional[str]) -> Network:
        if network:
            return self.store.networks.by_name(network)
        if valid_ip(system.ip):
            return self.ipam.locate_one(system.ip)
        choices = [n.name for n in self.store.networks.list() if n.location == system.location]
        if not choices:
            raise ConsistencyError(f"No networks are defined at {system.location}")
        return self.store.networks.by_name(prompt(f"Network for {system.name}", choices))

    def _build_network(self, system: System, target: Network) -> Network:
        if target.build:
            build_net = target
        else:
            default = self.store.networks.default_build(system.location)
            if default is None:
                raise ConsistencyError(f"There is no default build network at {system.location}")
            build_net = default
        if not valid_ip(build_net.gateway):
            raise ValidationError(f"Build network {build_net.name} does not have a defined gateway address")
        if not valid_ip(build_net.dns):
            raise ValidationError(f"Build network {build_net.name} does not have a defined DNS server")
        return build_net

    def _save_system(self, system: System) -> None:
        with self.store.edit_lock():
            self.store.systems.save(system)
            self.store.commit(self.store.systems.path, message=f"fleet: update system {system.name}")

    def resolve_overlay(self, system: System, chain: Iterable[str] = ()) -> str:
        """Name of the backing system an automatic overlay builds on.

        An existing backing system of the backing build in the same location
        and environment is reused; otherwise <build>-base-<n> is defined, and
        when that build has a parent the new base is itself layered on the
        resolved base of the parent, down to the root of the lineage.
        """
        backing_build = self.builds.backing_build(system.build)
        excluded = set(chain) | {system.name}
        for candidate in self.store.systems.filter(
            build=backing_build,
            location=system.location,
            environment=system.environment,
        ):
            if candidate.name not in excluded and system_type(candidate) == SystemType.BACKING:
                log("INFO", f"{system.name} will overlay existing backing system {candidate.name}")
                return candidate.name
        index = 1
        while self.store.systems.exists(f"{backing_build}-base-{index}"):
            index += 1
        parent = self.builds.get(backing_build).parent
        base = System(
            name=f"{backing_build}-base-{index}",
            build=backing_build,
            ip=DHCP,
            location=system.location,
            environment=system.environment,
            virtual=True,
            backing=True,
        )
        self._save_system(base)
        log("INFO", f"Defined backing system {base.name} for {system.name}")
        if parent:
            base.overlay = self.resolve_overlay(base, [*excluded])
            self._save_system(base)
        return base.name

    def _select_hypervisor(self, system: System, layered: bool, target: Network, build_net: Network) -> Hypervisor:
        candidates = self.registry.list(
            location=system.location,
            environment=system.environment,
            networks=(target.name, build_net.name),
            available=True,
        )
        if not candidates:
            raise ConnectivityError(f"There are no available hypervisors capable of building {system.name}")
        if layered:
            holding = [hv for hv in candidates if self.registry.has_backing(hv, system.overlay)]
            if holding:
                candidates = holding
            else:
                log("INFO", f"No candidate hypervisor holds {system.overlay}; it will be copied")
        return self.registry.rank(candidates, avoid_pattern_for(system.name))

    def _publish_kickstart(self, system: System, build: Build, build_net: Network, build_ip: str) -> str:
        """Render the kickstart for the build address and copy it to the build network's repository."""
        if self.settings.kickstart_dir is None:
            raise ManagerError("kickstart_dir is not configured")
        template = self.settings.kickstart_dir / f"{build.os}.tpl"
        if not template.exists():
            raise ConsistencyError(f"No kickstart template for {build.os} at {template}")
        if not build_net.repo_address:
            raise ValidationError(f"Build network {build_net.name} has no repository address")
        variables = {
            "system.name": system.name,
            "system.ip": build_ip,
            "system.netmask": build_net.mask,
            "system.gateway": build_net.gateway,
            "system.dns": build_net.dns,
            "system.arch": build.arch,
            "resource.sm-web": build_net.repo_address,
        }
        if self.settings.root_password:
            variables["system.rootpw"] = hash_password(self.settings.root_password)
        rendered = render_text(template.read_text(), variables)
        with tempfile.TemporaryDirectory(prefix="fleet-ks-") as tmp:
            kickstart = Path(tmp) / f"{system.name}.cfg"
            kickstart.write_text(rendered)
            self.remote.ssh(build_net.repo_address, f"mkdir -p {shlex.quote(build_net.repo_path)}")
            self.remote.scp(kickstart, self.remote.remote_path(build_net.repo_address, f"{build_net.repo_path}/"))
        return f"http://{build_net.repo_address}/{build_net.repo_url.strip('/')}/{system.name}.cfg"

    def _spawn_phase2(self, name: str) -> None:
        cmd = [sys.executable, "-m", "fleet"]
        if self.settings.config_path is not None:
            cmd += ["--config", str(self.settings.config_path)]
        if self.settings.assume_yes:
            cmd.append("--yes")
        cmd += ["system", "resume", name]
        ensure_directory(self.settings.provision_log.parent)
        with open(self.settings.provision_log, "a") as out:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self.journal.mark_running(name, process.pid)
        log("DEBUG", f"Phase 2 for {name} running as pid {process.pid}")

    # -- phase 2 ----------------------------------------------------------

    def run_phase2(self, name: str) -> BuildRecord:
        record = self.journal.require(name)
        if record.status == "complete":
            log("INFO", f"Build of {name} is already complete")
            return record
        self.journal.mark_running(name, os.getpid())
        placement = Placement(**record.params)
        steps: Dict[str, Callable[[System, Placement], None]] = {
            "overlay": self._step_overlay,
            "install": self._step_install,
            "build-scripts": self._step_build_scripts,
            "release": self._step_release,
            "cutover": self._step_cutover,
            "backing": self._step_backing,
        }
        current = ""
        try:
            for current in PHASE2_STEPS:
                if record.done(current):
                    log("DEBUG", f"{name}: step '{current}' already complete")
                    continue
                self.token.check()
                system = self.store.systems.require(name)
                if self._applies(current, system, placement):
                    self.journal.progress(name, f"starting step '{current}'")
                    steps[current](system, placement)
                self.journal.complete_step(name, current)
                record = self.journal.require(name)
        except ManagerError as exc:
            errlog(f"Build phase 2 for {name} failed at step '{current}': {exc}", self.settings.error_log_path)
            self.journal.fail(name, str(exc), aborted=isinstance(exc, AbortedError))
            raise
        self.journal.finish(name)
        log("SUCCESS", f"Build of {name} is complete")
        return self.journal.require(name)

    @staticmethod
    def _applies(step: str, system: System, placement: Placement) -> bool:
        if step == "overlay":
            return bool(placement.base)
        if step == "cutover":
            return placement.build_ip != placement.final_ip and not system.backing
        if step == "backing":
            return system.backing
        return True

    def _wait_powered_off(self, hv: Hypervisor, name: str) -> None:
        if self.settings.dry_run:
            log("INFO", f"[dry-run] wait for {name} to power off on {hv.name}")
            return

        def _off() -> bool:
            try:
                with self.registry.domains(hv) as domains:
                    return not domains.is_active(name)
            except ConnectivityError as exc:
                log("DEBUG", f"Unable to query {name} on {hv.name}: {exc}")
                return False

        poll_until(_off, self.token, self.settings.poll_interval, f"{name} to power off on {hv.name}")

    def _power_off(self, hv: Hypervisor, name: str) -> None:
        with self.registry.domains(hv) as domains:
            domains.shutdown(name)
        self._wait_powered_off(hv, name)

    def _wait_for_lease(self, network: Network, mac: str) -> str:
        """Poll the network's DHCP server until it hands out a lease to the MAC."""
        if self.settings.dry_run:
            log("INFO", f"[dry-run] wait for a DHCP lease for {mac} from {network.dhcp}")
            return "0.0.0.0"
        command = f"cat {shlex.quote(self.settings.dhcp_lease_file)}"

        def _lookup() -> Optional[str]:
            try:
                return lease_for_mac(self.remote.ssh(network.dhcp, command, mutating=False), mac)
            except ConnectivityError as exc:
                log("DEBUG", f"Unable to read leases from {network.dhcp}: {exc}")
                return None

        return poll_until(_lookup, self.token, self.settings.poll_interval, f"a DHCP lease for {mac}")

    def _ensure_backing(self, base: System, hv: Hypervisor, build_network: str, chain: List[str]) -> None:
        """Make the backing image available on the hypervisor, building it first when it does not exist.

        A layered backing image is only usable where its own base is, so the
        lineage below it is made available on the hypervisor too.
        """
        if base.name in chain:
            raise ConsistencyError(f"Backing chain of {chain[0]} loops back to {base.name}")
        holders = self.converter.holders(base.name)
        if not holders:
            pending = self.journal.load(base.name)
            if pending is not None and pending.status == "running":
                log("INFO", f"Waiting for the build of backing system {base.name}")
                poll_until(
                    lambda: self.converter.holders(base.name),
                    self.token,
                    self.settings.poll_interval,
                    f"backing image {base.name}",
                )
            else:
                log("INFO", f"Backing system {base.name} does not exist; building it first")
                self.provision(base.name, network=build_network, nested=True, chain=chain)
            holders = self.converter.holders(base.name)
            if not holders and not self.settings.dry_run:
                raise StateConflictError(f"Backing image {base.name} was not created")
        if any(h.name == hv.name for h in holders):
            return
        base = self.store.systems.require(base.name)
        if base.overlay and not base.auto_overlay:
            parent = self.store.systems.require(base.overlay)
            self._ensure_backing(parent, hv, build_network, [*chain, base.name])
        if holders:
            self.converter.copy_backing(base.name, holders[0], hv)

    def _step_overlay(self, system: System, placement: Placement) -> None:
        hv = self.registry.get(placement.hypervisor)
        base = self.store.systems.require(placement.base)
        build_net = self.store.networks.by_name(placement.build_network)
        self._ensure_backing(base, hv, build_net.name, [*placement.chain, system.name])
        build = self.builds.get(system.build)
        _, ram = self.builds.effective_size(build.name)
        command = helper_command(
            self.settings,
            system.name,
            arch=build.arch,
            os_name=build.os,
            ram=ram,
            mac=placement.mac,
            uuid=placement.uuid,
            interface=placement.build_interface,
            base=self.registry.backing_path(hv, base.name),
            disk_path=self.registry.disk_path(hv, system.name),
            no_install=True,
        )
        self.remote.ssh(hv.ip, command)
        address = self._wait_for_lease(build_net, placement.mac)
        self.remote.wait_reachable(address, self.token)
        self.remote.ssh(address, guest_network_script(placement.build_ip, build_net))
        self._power_off(hv, system.name)

    def _step_install(self, system: System, placement: Placement) -> None:
        hv = self.registry.get(placement.hypervisor)
        self._wait_powered_off(hv, system.name)
        with self.registry.domains(hv) as domains:
            domains.start(system.name)
        self.remote.wait_reachable(placement.build_ip, self.token)
        log("SUCCESS", f"{system.name} is up at {placement.build_ip}")

    def _step_build_scripts(self, system: System, placement: Placement) -> None:
        source = self.settings.build_scripts_dir
        if source is None:
            log("WARN", "build_scripts_dir is not configured; skipping build scripts")
            return
        if not source.is_dir():
            raise ConsistencyError(f"Build scripts directory {source} does not exist")
        host = placement.build_ip
        remote_dir = self.settings.remote_build_dir
        role = self.builds.get(system.build).role
        self.remote.purge_known_host(host)
        self.remote.ssh(host, f"mkdir -p {shlex.quote(remote_dir)}")
        self.remote.scp(source, self.remote.remote_path(host, f"{remote_dir}/"), recursive=True)
        invocation = [f"{remote_dir}/{source.name}/role.sh"] + ([role] if role else [])
        self.remote.ssh(host, f"nohup {shlex.join(invocation)} >/dev/null 2>&1 </dev/null &")
        if not self.settings.dry_run:
            self.token.sleep(self.settings.poll_interval)
        self.remote.wait_reachable(host, self.token)

    def _step_release(self, system: System, placement: Placement) -> None:
        network = self.store.networks.by_name(placement.network)
        self.releases.build_and_deploy(system.name, placement.build_ip, network)

    def _step_cutover(self, system: System, placement: Placement) -> None:
        hv = self.registry.get(placement.hypervisor)
        network = self.store.networks.by_name(placement.network)
        final_ip = None if system.is_dhcp else system.ip
        if final_ip:
            self.ipam.assign(final_ip, system.name)
        self.remote.ssh(placement.build_ip, guest_network_script(final_ip, network))
        self._power_off(hv, system.name)
        self.ipam.unassign(placement.build_ip)
        with self.registry.domains(hv) as domains:
            domains.swap_bridge(system.name, placement.mac, placement.final_interface)
            domains.start(system.name)
        self.remote.purge_known_host(placement.build_ip)
        if final_ip:
            self.remote.purge_known_host(final_ip)
            address: Optional[str] = final_ip
        elif network.dhcp:
            address = self._wait_for_lease(network, placement.mac)
        else:
            log("WARN", f"{network.name} has no DHCP server to report the address of {system.name}")
            address = None
        if address:
            self.remote.wait_reachable(address, self.token)
            log("SUCCESS", f"{system.name} is up at {address}")

    def _step_backing(self, system: System, placement: Placement) -> None:
        hv = self.registry.get(placement.hypervisor)
        self.remote.ssh(placement.build_ip, ANONYMIZE_SCRIPT)
        self._power_off(hv, system.name)
        if self.settings.dry_run:
            log("INFO", f"[dry-run] convert {system.name} to a backing image")
            return
        self.converter.single_to_backing(system, assume_yes=True, distribute=True)
        if placement.build_ip != placement.final_ip:
            self.ipam.unassign(placement.build_ip)
        self.remote.purge_known_host(placement.build_ip)

    # -- reporting --------------------------------------------------------

    def status(self, name: Optional[str] = None) -> List[BuildRecord]:
        """Journal records, for one system or all of them."""
        if name:
            return [self.journal.require(name)]
        return self.journal.records()

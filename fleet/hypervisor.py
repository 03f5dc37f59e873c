"""Hypervisor inventory, eligibility maps, live polling and ranking."""

from __future__ import annotations

import re
import shlex
from typing import Callable, Iterable, List, Optional, Pattern, Sequence, Tuple

from fleet.config import Settings
from fleet.constants import BACKING_SUBDIR, DISK_SUFFIX, RANK_THRESHOLD_PCT
from fleet.exceptions import ConnectivityError, ManagerError, StateConflictError
from fleet.models import Hypervisor, HypervisorEnvironment, HypervisorNetwork, HypervisorStatus, HypervisorSystem
from fleet.remote import Remote
from fleet.store import RecordStore
from fleet.utils import log
from fleet.vm import DomainManager

DomainFactory = Callable[[Hypervisor], DomainManager]

_INSTANCE_SUFFIX_RE = re.compile(r"[-_]?\d+[a-z]?$")


def avoid_pattern_for(system_name: str) -> Pattern[str]:
    """Pattern matching sibling instances of a system: web01 -> web, web-02, web03b..."""
    base = _INSTANCE_SUFFIX_RE.sub("", system_name) or system_name
    return re.compile(rf"^{re.escape(base)}(?:[-_]?\d+[a-z]?)?$")


def percent_change(new: int, current: int) -> int:
    """Integer-truncated percentage change of (new+1) relative to (current+1)."""
    return int(((new + 1) - (current + 1)) * 100 / (current + 1))


def parse_status(name: str, output: str, min_disk: int, min_mem: int) -> HypervisorStatus:
    """Parse the combined output of free -m, df -P -m and /proc/loadavg."""
    sections = output.split("---")
    if len(sections) != 3:
        raise ConnectivityError(f"Unexpected poll output from {name}")
    free_out, df_out, load_out = sections
    free_mem = None
    for line in free_out.splitlines():
        if line.startswith("Mem:"):
            free_mem = int(line.split()[-1])
    df_lines = [line for line in df_out.splitlines() if line.strip()]
    try:
        free_disk = int(df_lines[-1].split()[3])
        load = tuple(float(value) for value in load_out.split()[:3])
    except (IndexError, ValueError):
        raise ConnectivityError(f"Unable to parse poll output from {name}")
    if free_mem is None or len(load) != 3:
        raise ConnectivityError(f"Unable to parse poll output from {name}")
    return HypervisorStatus(
        name=name,
        free_disk=free_disk,
        free_mem=free_mem,
        disk_headroom=max(0, free_disk - min_disk),
        mem_headroom=max(0, free_mem - min_mem),
        load=load,  # type: ignore[arg-type]
    )


class HypervisorRegistry:
    def __init__(
        self,
        store: RecordStore,
        settings: Settings,
        remote: Remote,
        domains: Optional[DomainFactory] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.remote = remote
        self.domains: DomainFactory = domains or (lambda hv: DomainManager(settings, hv))

    # -- paths ------------------------------------------------------------

    @staticmethod
    def disk_path(hv: Hypervisor, name: str) -> str:
        return f"{hv.vm_path.rstrip('/')}/{name}{DISK_SUFFIX}"

    @staticmethod
    def backing_path(hv: Hypervisor, name: str) -> str:
        return f"{hv.vm_path.rstrip('/')}/{BACKING_SUBDIR}/{name}{DISK_SUFFIX}"

    def has_backing(self, hv: Hypervisor, name: str) -> bool:
        return self.remote.file_exists(hv.ip, self.backing_path(hv, name))

    # -- inventory --------------------------------------------------------

    def get(self, name: str) -> Hypervisor:
        return self.store.hypervisors.require(name)

    def list(
        self,
        location: Optional[str] = None,
        environment: Optional[str] = None,
        networks: Sequence[str] = (),
        available: bool = False,
        backing: Optional[str] = None,
    ) -> List[Hypervisor]:
        """Hypervisors passing every given filter, in registry order."""
        candidates = self.store.hypervisors.list()
        if location:
            candidates = [hv for hv in candidates if hv.location == location]
        if environment:
            eligible = {m.hypervisor for m in self.store.hv_environments.filter(environment=environment)}
            candidates = [hv for hv in candidates if hv.name in eligible]
        for network in networks:
            if not network:
                continue
            mapped = {m.hypervisor for m in self.store.hv_networks.filter(network=network)}
            candidates = [hv for hv in candidates if hv.name in mapped]
        if available:
            candidates = [hv for hv in candidates if self._available(hv)]
        if backing:
            candidates = [hv for hv in candidates if self.has_backing(hv, backing)]
        return candidates

    def _available(self, hv: Hypervisor) -> bool:
        if not hv.enabled:
            return False
        try:
            status = self.poll(hv)
        except ConnectivityError as exc:
            log("WARN", f"Hypervisor {hv.name} is not available: {exc}")
            return False
        return status.mem_headroom > 0 and status.disk_headroom > 0

    def poll(self, hv: Hypervisor) -> HypervisorStatus:
        """Live free disk, free memory and load of a hypervisor."""
        if not self.remote.port_open(hv.ip, 22):
            raise ConnectivityError(f"Hypervisor {hv.name} is not accessible at this time")
        command = (
            f"free -m && echo --- && df -P -m {shlex.quote(hv.vm_path)} && echo --- && cat /proc/loadavg"
        )
        output = self.remote.ssh(hv.ip, command, mutating=False)
        return parse_status(hv.name, output, hv.min_disk, hv.min_mem)

    # -- ranking ----------------------------------------------------------

    def _runs_sibling(self, hv: Hypervisor, pattern: Pattern[str]) -> bool:
        try:
            with self.domains(hv) as domains:
                running = domains.running_domains()
        except ManagerError as exc:
            log("WARN", f"Could not list running domains on {hv.name}: {exc}")
            return False
        return any(pattern.match(name) for name in running)

    def rank(self, candidates: Iterable[Hypervisor], avoid_pattern: Optional[Pattern[str]] = None) -> Hypervisor:
        """Pick the candidate with clearly the most free memory.

        Walks the candidates in order and switches the selection only when a
        candidate's memory headroom is more than five percent above the current
        selection's. Disk and load are not considered beyond availability. This
        is a heuristic, not bin-packing, and nothing is reserved on the chosen
        host: concurrent runs may select the same hypervisor.
        """
        selected: Optional[Hypervisor] = None
        selected_mem = 0
        fallback: Optional[Hypervisor] = None
        fallback_mem = 0
        for hv in candidates:
            try:
                status = self.poll(hv)
            except ConnectivityError as exc:
                log("WARN", f"Skipping hypervisor {hv.name}: {exc}")
                continue
            log(
                "DEBUG",
                f"{hv.name}: mem headroom {status.mem_headroom}MB, disk headroom {status.disk_headroom}MB, "
                f"load {status.load[0]:.2f}",
            )
            if avoid_pattern is not None and self._runs_sibling(hv, avoid_pattern):
                if percent_change(status.mem_headroom, fallback_mem) > RANK_THRESHOLD_PCT:
                    fallback, fallback_mem = hv, status.mem_headroom
                continue
            if percent_change(status.mem_headroom, selected_mem) > RANK_THRESHOLD_PCT:
                selected, selected_mem = hv, status.mem_headroom
        if selected is None and fallback is not None:
            log("WARN", f"Every candidate already runs a matching system; using {fallback.name}")
            selected = fallback
        if selected is None:
            raise ConnectivityError("There are no available hypervisors at this time")
        log("INFO", f"Selected hypervisor {selected.name}")
        return selected

    # -- eligibility maps -------------------------------------------------

    def add_network(self, hv_name: str, network: str, interface: str) -> None:
        self.get(hv_name)
        self.store.networks.by_name(network)
        with self.store.edit_lock():
            self.store.hv_networks.save(HypervisorNetwork(network=network, hypervisor=hv_name, interface=interface))
            self.store.commit(self.store.hv_networks.path)

    def remove_network(self, hv_name: str, network: str) -> bool:
        with self.store.edit_lock():
            removed = self.store.hv_networks.delete((network, hv_name))
            if removed:
                self.store.commit(self.store.hv_networks.path)
        return removed

    def add_environment(self, hv_name: str, environment: str) -> None:
        self.get(hv_name)
        with self.store.edit_lock():
            self.store.hv_environments.save(HypervisorEnvironment(environment=environment, hypervisor=hv_name))
            self.store.commit(self.store.hv_environments.path)

    def remove_environment(self, hv_name: str, environment: str) -> bool:
        with self.store.edit_lock():
            removed = self.store.hv_environments.delete((environment, hv_name))
            if removed:
                self.store.commit(self.store.hv_environments.path)
        return removed

    def interface_for(self, network: str, hv_name: str) -> str:
        mapping = self.store.hv_networks.get((network, hv_name))
        if mapping is None or not mapping.interface:
            raise StateConflictError(f"Hypervisor '{hv_name}' has no interface mapping for network {network}")
        return mapping.interface

    # -- hv-system cache --------------------------------------------------

    def locate_system(self, name: str, refresh: bool = True) -> List[str]:
        """Hypervisors that define the system's VM, the one running it first.

        With refresh every hypervisor is probed and the cache rewritten;
        otherwise the cached entries are returned as they are.
        """
        if not refresh:
            entries = self.store.hv_systems.filter(system=name)
            return [e.hypervisor for e in sorted(entries, key=lambda e: not e.preferred)]
        found: List[Tuple[str, bool]] = []
        for hv in self.store.hypervisors.list():
            try:
                with self.domains(hv) as domains:
                    if domains.exists(name):
                        found.append((hv.name, domains.is_active(name)))
            except ManagerError as exc:
                log("WARN", f"Unable to probe hypervisor {hv.name}: {exc}")
        found.sort(key=lambda item: not item[1])
        with self.store.edit_lock():
            self.store.hv_systems.delete_where(lambda e: e.system == name)
            if found:
                self.store.hv_systems.save_many(
                    [HypervisorSystem(system=name, hypervisor=hv, preferred=active) for hv, active in found]
                )
            self.store.commit(self.store.hv_systems.path)
        return [hv for hv, _ in found]

    def record_system(self, name: str, hv_name: str, preferred: bool = True) -> None:
        with self.store.edit_lock():
            if preferred:
                for entry in self.store.hv_systems.filter(system=name, preferred=True):
                    entry.preferred = False
                    self.store.hv_systems.save(entry)
            self.store.hv_systems.save(HypervisorSystem(system=name, hypervisor=hv_name, preferred=preferred))
            self.store.commit(self.store.hv_systems.path)

    def forget_system(self, name: str) -> None:
        with self.store.edit_lock():
            if self.store.hv_systems.delete_where(lambda e: e.system == name):
                self.store.commit(self.store.hv_systems.path)

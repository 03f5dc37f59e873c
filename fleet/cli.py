"""CLI entry points for fleet."""

from __future__ import annotations

import argparse
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from fleet.builds import BuildCatalog
from fleet.config import Settings, load_settings
from fleet.exceptions import ManagerError
from fleet.hypervisor import HypervisorRegistry, avoid_pattern_for
from fleet.ipam import AddressSpace
from fleet.models import SystemType
from fleet.provision import Provisioner
from fleet.release import ReleaseBuilder
from fleet.remote import Remote
from fleet.runtime import CancelToken
from fleet.status import BuildJournal
from fleet.store import RecordStore
from fleet.systems import SystemConverter, system_type
from fleet.templates import system_variables
from fleet.utils import log


@dataclass
class Fleet:
    """Every component, wired to one set of settings."""

    settings: Settings
    store: RecordStore
    remote: Remote
    registry: HypervisorRegistry
    ipam: AddressSpace
    builds: BuildCatalog
    converter: SystemConverter
    releases: ReleaseBuilder
    journal: BuildJournal
    token: CancelToken
    provisioner: Provisioner


def open_fleet(settings: Settings) -> Fleet:
    store = RecordStore(settings)
    remote = Remote(settings)
    registry = HypervisorRegistry(store, settings, remote)
    ipam = AddressSpace(store, remote.is_alive)
    builds = BuildCatalog(store, settings)
    converter = SystemConverter(store, settings, registry, ipam, remote, builds)
    releases = ReleaseBuilder(store, settings, remote)
    journal = BuildJournal(settings)
    token = CancelToken(settings.abort_file)
    provisioner = Provisioner(converter, releases, journal, token)
    return Fleet(settings, store, remote, registry, ipam, builds, converter, releases, journal, token, provisioner)


def _print_table(rows: List[List[str]]) -> None:
    if not rows:
        return
    widths = [max(len(str(row[i])) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  " + "  ".join(f"{str(cell):<{widths[i]}}" for i, cell in enumerate(row)).rstrip())


# -- network ----------------------------------------------------------------


def cmd_ip_assign(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.ipam.assign(
        args.ip,
        args.hostname,
        force=args.force,
        comment=args.comment or "",
        owner=args.owner or "",
        interface=args.interface or "",
    )
    return 0


def cmd_ip_unassign(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.ipam.unassign(args.ip)
    return 0


def cmd_ip_scan(fleet: Fleet, args: argparse.Namespace) -> int:
    found = fleet.ipam.scan(args.network)
    log("INFO", f"Reserved {len(found)} address(es) found in use on {args.network}")
    return 0


def cmd_ip_available(fleet: Fleet, args: argparse.Namespace) -> int:
    for ip in fleet.ipam.list_available(args.network, limit=args.limit):
        print(ip)
    return 0


def cmd_ip_locate(fleet: Fleet, args: argparse.Namespace) -> int:
    matches = fleet.ipam.locate(args.ip)
    if not matches:
        log("WARN", f"No network was found matching {args.ip}")
        return 1
    for network in matches:
        print(network.name)
    return 0


def cmd_ip_show(fleet: Fleet, args: argparse.Namespace) -> int:
    record = fleet.ipam.show(args.ip)
    state = "reserved" if record.reserved else ("assigned" if record.assigned else "free")
    _print_table(
        [
            ["ip", record.ip],
            ["state", state],
            ["hostname", record.hostname],
            ["interface", record.interface],
            ["comment", record.comment],
            ["owner", record.owner],
        ]
    )
    return 0


def cmd_ipam_add_range(fleet: Fleet, args: argparse.Namespace) -> int:
    created, skipped = fleet.ipam.add_range(args.network, args.first, args.last)
    log("SUCCESS", f"Added {len(created)} address(es) to {args.network}; {len(skipped)} already registered")
    return 0


def cmd_ipam_remove_range(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.ipam.remove_range(args.network, args.first, args.last, assume_yes=fleet.settings.assume_yes)
    return 0


def cmd_default_build(fleet: Fleet, args: argparse.Namespace) -> int:
    network = fleet.store.networks.by_name(args.network)
    network.default_build = True
    with fleet.store.edit_lock():
        fleet.store.networks.save(network)
        fleet.store.commit(fleet.store.networks.path)
    log("SUCCESS", f"{network.name} is now the default build network at {network.location}")
    return 0


# -- hypervisor -------------------------------------------------------------


def cmd_hv_list(fleet: Fleet, args: argparse.Namespace) -> int:
    hypervisors = fleet.registry.list(
        location=args.location,
        environment=args.environment,
        networks=args.network or (),
        available=args.available,
        backing=args.backing,
    )
    for hv in hypervisors:
        print(hv.name)
    return 0


def cmd_hv_poll(fleet: Fleet, args: argparse.Namespace) -> int:
    rows = [["name", "free disk", "free mem", "disk headroom", "mem headroom", "load"]]
    for name in args.hypervisors:
        status = fleet.registry.poll(fleet.registry.get(name))
        rows.append(
            [
                status.name,
                f"{status.free_disk}M",
                f"{status.free_mem}M",
                f"{status.disk_headroom}M",
                f"{status.mem_headroom}M",
                " ".join(f"{value:.2f}" for value in status.load),
            ]
        )
    _print_table(rows)
    return 0


def cmd_hv_rank(fleet: Fleet, args: argparse.Namespace) -> int:
    candidates = [fleet.registry.get(name) for name in args.hypervisors]
    pattern = avoid_pattern_for(args.avoid) if args.avoid else None
    print(fleet.registry.rank(candidates, pattern).name)
    return 0


def cmd_hv_locate(fleet: Fleet, args: argparse.Namespace) -> int:
    found = fleet.registry.locate_system(args.system, refresh=not args.cached)
    if not found:
        log("WARN", f"{args.system} is not defined on any hypervisor")
        return 1
    for name in found:
        print(name)
    return 0


def cmd_hv_add_network(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.registry.add_network(args.hypervisor, args.network, args.interface)
    return 0


def cmd_hv_remove_network(fleet: Fleet, args: argparse.Namespace) -> int:
    if not fleet.registry.remove_network(args.hypervisor, args.network):
        log("WARN", f"{args.hypervisor} has no mapping for {args.network}")
    return 0


def cmd_hv_add_environment(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.registry.add_environment(args.hypervisor, args.environment)
    return 0


def cmd_hv_remove_environment(fleet: Fleet, args: argparse.Namespace) -> int:
    if not fleet.registry.remove_environment(args.hypervisor, args.environment):
        log("WARN", f"{args.hypervisor} is not eligible for {args.environment}")
    return 0


# -- build ------------------------------------------------------------------


def cmd_build_set_parent(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.builds.set_parent(args.build, args.parent)
    return 0


def cmd_build_lineage(fleet: Fleet, args: argparse.Namespace) -> int:
    print(" -> ".join(build.name for build in fleet.builds.lineage(args.build)))
    return 0


# -- system -----------------------------------------------------------------


def cmd_system_type(fleet: Fleet, args: argparse.Namespace) -> int:
    print(system_type(fleet.store.systems.require(args.system)).value)
    return 0


def cmd_system_convert(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.converter.convert(
        args.system,
        SystemType(args.target),
        network=args.network,
        base=args.base,
        assume_yes=fleet.settings.assume_yes,
        distribute=not args.no_distribute,
    )
    return 0


def cmd_system_provision(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.provisioner.provision(args.system, network=args.network, foreground=args.foreground)
    return 0


def cmd_system_resume(fleet: Fleet, args: argparse.Namespace) -> int:
    def _cancel(signum, frame):
        log("WARN", f"Received signal {signum}; stopping at the next checkpoint")
        fleet.token.cancel()

    previous = signal.signal(signal.SIGTERM, _cancel)
    try:
        fleet.provisioner.run_phase2(args.system)
    finally:
        signal.signal(signal.SIGTERM, previous)
    return 0


def cmd_system_status(fleet: Fleet, args: argparse.Namespace) -> int:
    records = fleet.provisioner.status(args.system)
    if not records:
        log("INFO", "No builds have been recorded")
        return 0
    rows = [["system", "status", "steps", "updated", "error"]]
    for record in records:
        rows.append([record.name, record.status, ",".join(record.completed) or "-", record.updated, record.error])
    _print_table(rows)
    return 0


def cmd_system_deprovision(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.converter.deprovision(args.system, assume_yes=fleet.settings.assume_yes)
    return 0


def cmd_system_delete(fleet: Fleet, args: argparse.Namespace) -> int:
    fleet.converter.delete(args.system)
    return 0


def cmd_system_vars(fleet: Fleet, args: argparse.Namespace) -> int:
    system = fleet.store.systems.require(args.system)
    variables = system_variables(fleet.store, system)
    _print_table([[key, value] for key, value in sorted(variables.items())])
    return 0


def cmd_system_release(fleet: Fleet, args: argparse.Namespace) -> int:
    archive = fleet.releases.build(args.system)
    if args.deploy:
        system = fleet.store.systems.require(args.system)
        fleet.releases.deploy(archive, args.host or system.ip)
    print(archive)
    return 0


Handler = Callable[[Fleet, argparse.Namespace], int]


def _verb(subparsers, name: str, handler: Handler, help_text: str) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=help_text)
    parser.set_defaults(func=handler)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet", description="Fleet provisioning orchestrator")
    parser.add_argument("--config", type=Path, default=None, help="Path to the YAML configuration file")
    parser.add_argument("--dry-run", action="store_true", help="Print remote commands instead of running them")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation of destructive actions")
    subjects = parser.add_subparsers(dest="subject", metavar="<subject>")
    subjects.required = True

    # network
    network = subjects.add_parser("network", help="Networks and address management").add_subparsers(
        dest="verb", metavar="<verb>"
    )
    network.required = True
    ip = network.add_parser("ip", help="Individual addresses").add_subparsers(dest="action", metavar="<action>")
    ip.required = True
    p = _verb(ip, "assign", cmd_ip_assign, "Assign an address to a host")
    p.add_argument("ip")
    p.add_argument("hostname")
    p.add_argument("--force", action="store_true", help="Skip the liveness probe and reservation checks")
    p.add_argument("--comment")
    p.add_argument("--owner")
    p.add_argument("--interface")
    p = _verb(ip, "unassign", cmd_ip_unassign, "Release an address")
    p.add_argument("ip")
    p = _verb(ip, "scan", cmd_ip_scan, "Reserve registered addresses that answer a probe")
    p.add_argument("network")
    p = _verb(ip, "available", cmd_ip_available, "List free addresses")
    p.add_argument("network")
    p.add_argument("--limit", type=int, default=None)
    p = _verb(ip, "locate", cmd_ip_locate, "Networks containing an address")
    p.add_argument("ip")
    p = _verb(ip, "show", cmd_ip_show, "Show an address record")
    p.add_argument("ip")

    ipam = network.add_parser("ipam", help="Address ranges").add_subparsers(dest="action", metavar="<action>")
    ipam.required = True
    for verb, handler, text in (
        ("add-range", cmd_ipam_add_range, "Register a range of addresses"),
        ("remove-range", cmd_ipam_remove_range, "Remove a range of addresses"),
    ):
        p = _verb(ipam, verb, handler, text)
        p.add_argument("network")
        p.add_argument("first", help="First address, or a subnet as a.b.c.d/cidr")
        p.add_argument("last", nargs="?", default=None)
    p = _verb(network, "default-build", cmd_default_build, "Make a build network the default of its location")
    p.add_argument("network")

    # hypervisor
    hv = subjects.add_parser("hypervisor", help="Hypervisors").add_subparsers(dest="verb", metavar="<verb>")
    hv.required = True
    p = _verb(hv, "list", cmd_hv_list, "List hypervisors")
    p.add_argument("--location")
    p.add_argument("--environment")
    p.add_argument("--network", action="append", help="Required network; may be given twice")
    p.add_argument("--available", action="store_true", help="Only hypervisors with headroom right now")
    p.add_argument("--backing", help="Only hypervisors holding this backing image")
    p = _verb(hv, "poll", cmd_hv_poll, "Show live capacity")
    p.add_argument("hypervisors", nargs="+")
    p = _verb(hv, "rank", cmd_hv_rank, "Pick the best hypervisor among candidates")
    p.add_argument("hypervisors", nargs="+")
    p.add_argument("--avoid", metavar="SYSTEM", help="Prefer hosts not running siblings of this system")
    p = _verb(hv, "locate", cmd_hv_locate, "Hypervisors defining a system's VM")
    p.add_argument("system")
    p.add_argument("--cached", action="store_true", help="Use the cached mapping instead of probing")
    p = _verb(hv, "add-network", cmd_hv_add_network, "Map a network to a hypervisor bridge")
    p.add_argument("hypervisor")
    p.add_argument("network")
    p.add_argument("interface")
    p = _verb(hv, "remove-network", cmd_hv_remove_network, "Remove a network mapping")
    p.add_argument("hypervisor")
    p.add_argument("network")
    p = _verb(hv, "add-environment", cmd_hv_add_environment, "Make a hypervisor eligible for an environment")
    p.add_argument("hypervisor")
    p.add_argument("environment")
    p = _verb(hv, "remove-environment", cmd_hv_remove_environment, "Remove environment eligibility")
    p.add_argument("hypervisor")
    p.add_argument("environment")

    # build
    build = subjects.add_parser("build", help="Builds").add_subparsers(dest="verb", metavar="<verb>")
    build.required = True
    p = _verb(build, "set-parent", cmd_build_set_parent, "Set or clear a build's parent")
    p.add_argument("build")
    p.add_argument("parent", nargs="?", default="")
    p = _verb(build, "lineage", cmd_build_lineage, "Show a build and its ancestors")
    p.add_argument("build")

    # system
    system = subjects.add_parser("system", help="Systems").add_subparsers(dest="verb", metavar="<verb>")
    system.required = True
    p = _verb(system, "type", cmd_system_type, "Show the system type")
    p.add_argument("system")
    p = _verb(system, "convert", cmd_system_convert, "Convert a system to another type")
    p.add_argument("system")
    p.add_argument("target", choices=[t.value for t in SystemType])
    p.add_argument("--network")
    p.add_argument("--base", help="Backing system for an overlay")
    p.add_argument("--no-distribute", action="store_true", help="Keep a new backing image on its current host only")
    p = _verb(system, "provision", cmd_system_provision, "Build a virtual system")
    p.add_argument("system")
    p.add_argument("--network")
    p.add_argument("--foreground", action="store_true", help="Run phase 2 in this process")
    p = _verb(system, "resume", cmd_system_resume, "Run or resume phase 2 of a build")
    p.add_argument("system")
    p = _verb(system, "status", cmd_system_status, "Show build progress")
    p.add_argument("system", nargs="?", default=None)
    p = _verb(system, "deprovision", cmd_system_deprovision, "Destroy a virtual system")
    p.add_argument("system")
    p = _verb(system, "delete", cmd_system_delete, "Remove a system record")
    p.add_argument("system")
    p = _verb(system, "vars", cmd_system_vars, "Show template variables")
    p.add_argument("system")
    p = _verb(system, "release", cmd_system_release, "Generate a release bundle")
    p.add_argument("system")
    p.add_argument("--deploy", action="store_true", help="Copy the release to the system and apply it")
    p.add_argument("--host", help="Address to deploy to instead of the system's IP")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args.config, dry_run=args.dry_run, assume_yes=args.yes)
        fleet = open_fleet(settings)
        return args.func(fleet, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130

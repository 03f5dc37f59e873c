"""Template placeholder substitution and per-system variable sets.

Placeholders look like {% system.ip %}, {% resource.name %} or
{% constant.name %}.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from fleet.addressing import broadcast, valid_ip
from fleet.constants import PLACEHOLDER_RE
from fleet.exceptions import ValidationError
from fleet.ipam import contains
from fleet.models import Network, System
from fleet.store import RecordStore

RESOURCE_FILE = "resource"
VALUE_DIR = "value"


def render_text(text: str, variables: Dict[str, str]) -> str:
    missing: List[str] = []

    def _substitute(match):  # type: ignore[no-untyped-def]
        name = match.group(1)
        if name not in variables:
            missing.append(name)
            return match.group(0)
        return variables[name]

    rendered = PLACEHOLDER_RE.sub(_substitute, text)
    if missing:
        raise ValidationError(f"Undefined template variable(s): {', '.join(sorted(set(missing)))}")
    return rendered


def render_variables(path: Path, variables: Dict[str, str]) -> None:
    """Substitute placeholders in a file in place."""
    path.write_text(render_text(path.read_text(), variables))


def network_variables(network: Network) -> Dict[str, str]:
    values = {
        "system.zone": f"{network.zone}-{network.alias}",
        "system.network": network.network,
        "system.netmask": network.mask,
        "system.gateway": network.gateway,
        "system.broadcast": broadcast(network.network, network.cidr),
    }
    for key, value in (("dns", network.dns), ("ntp", network.ntp), ("vlan", network.vlan)):
        if value:
            values[f"system.{key}"] = value
    return values


def build_applications(store: RecordStore, build: str) -> List[str]:
    if not build:
        return []
    return [app.name for app in store.applications.filter(build=build)]


def _resources(store: RecordStore, system: System, apps: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    scopes = {f"{system.location}:{system.environment}:{app}" for app in apps}
    for row in store.read_pairs(RESOURCE_FILE):
        row = row + [""] * (6 - len(row))
        rtype, value, assign_type, assign_to, name = row[:5]
        mine = (assign_type == "application" and assign_to in scopes) or (
            assign_type == "host" and assign_to == system.name
        )
        if not mine:
            continue
        name = name or rtype
        prefix = "resource" if rtype == "cluster_ip" else "system"
        values[f"{prefix}.{name}"] = value
    return values


def _constants(store: RecordStore, system: System, apps: List[str]) -> Dict[str, str]:
    """Constants resolved most specific scope first; the first definition wins."""
    scopes = [f"{VALUE_DIR}/{system.environment}/{app}" for app in apps]
    scopes += [
        f"{VALUE_DIR}/{system.location}/{system.environment}",
        f"{VALUE_DIR}/{system.environment}/constant",
        f"{VALUE_DIR}/constant",
    ]
    values: Dict[str, str] = {}
    for scope in scopes:
        for row in store.read_pairs(scope):
            if len(row) < 2:
                continue
            key = f"constant.{row[0].lower()}"
            values.setdefault(key, row[1])
    return values


def system_variables(store: RecordStore, system: System, network: Optional[Network] = None) -> Dict[str, str]:
    """Full variable set for a system: its fields, its network, resources and constants."""
    values = {
        "system.name": system.name,
        "system.build": system.build,
        "system.ip": system.ip,
        "system.location": system.location,
        "system.environment": system.environment,
    }
    if network is None and valid_ip(system.ip):
        matches = [n for n in store.networks.list() if contains(n, system.ip)]
        network = matches[0] if matches else None
    if network is not None:
        values.update(network_variables(network))
    apps = build_applications(store, system.build)
    values.update(_resources(store, system, apps))
    values.update(_constants(store, system, apps))
    return values


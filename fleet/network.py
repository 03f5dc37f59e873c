"""Libvirt interface XML and DHCP lease parsing for fleet."""

from __future__ import annotations

import re
from typing import Dict, List, Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from fleet.constants import MAC_ADDRESS_RE
from fleet.exceptions import ManagerError

_LEASE_RE = re.compile(r"lease\s+(\d{1,3}(?:\.\d{1,3}){3})\s*\{(.*?)\}", re.S)
_HARDWARE_RE = re.compile(r"hardware\s+ethernet\s+([0-9A-Fa-f:]{17})\s*;")
_BINDING_RE = re.compile(r"(?<!next )binding\s+state\s+(\w+)\s*;")


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _parse(xml: str) -> Element:
    try:
        return fromstring(xml)
    except ParseError as exc:
        raise ManagerError(f"Unable to parse domain XML: {exc}")


def render_bridge_interface(mac: str, bridge: str, model: str = "virtio") -> str:
    """Render a libvirt bridge interface definition."""
    mac = mac.lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise ManagerError(f"Invalid MAC address '{mac}'")
    if not bridge:
        raise ManagerError("A bridge interface is required")
    iface = Element("interface", type="bridge")
    SubElement(iface, "mac", address=mac)
    if model == "virtio":
        SubElement(iface, "driver", name="vhost")
    SubElement(iface, "model", type=model)
    SubElement(iface, "source", bridge=bridge)
    return _element_to_str(iface)


def domain_disk_paths(xml: str) -> List[str]:
    """File paths of the disks (not cdroms) attached to a domain."""
    root = _parse(xml)
    paths = []
    for disk in root.findall("./devices/disk"):
        if disk.get("device", "disk") != "disk":
            continue
        source = disk.find("source")
        if source is not None and source.get("file"):
            paths.append(source.get("file", ""))
    return paths


def domain_macs(xml: str) -> List[str]:
    root = _parse(xml)
    macs = []
    for iface in root.findall("./devices/interface"):
        mac = iface.find("mac")
        if mac is not None and mac.get("address"):
            macs.append(mac.get("address", "").lower())
    return macs


def domain_interface_model(xml: str, mac: str) -> str:
    """NIC model of the interface with the given MAC, virtio when unspecified."""
    root = _parse(xml)
    for iface in root.findall("./devices/interface"):
        found = iface.find("mac")
        if found is None or found.get("address", "").lower() != mac.lower():
            continue
        model = iface.find("model")
        return model.get("type", "virtio") if model is not None else "virtio"
    raise ManagerError(f"Domain has no interface with MAC {mac}")


def parse_dhcp_leases(text: str) -> Dict[str, str]:
    """Map MAC address to leased IP from an ISC dhcpd leases file.

    Later entries override earlier ones; leases that are no longer active are
    ignored.
    """
    leases: Dict[str, str] = {}
    for ip, body in _LEASE_RE.findall(text):
        hardware = _HARDWARE_RE.search(body)
        if not hardware:
            continue
        mac = hardware.group(1).lower()
        binding = _BINDING_RE.search(body)
        if binding and binding.group(1) != "active":
            leases.pop(mac, None)
            continue
        leases[mac] = ip
    return leases


def lease_for_mac(text: str, mac: str) -> Optional[str]:
    return parse_dhcp_leases(text).get(mac.lower())

"""Data models for fleet.

Each record type knows how to read and write its own delimited row; nothing
outside the store works with raw rows.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple

from fleet.constants import DHCP, OVERLAY_AUTO
from fleet.utils import format_flag, parse_flag


def _int_or_none(raw: str) -> Optional[int]:
    raw = raw.strip()
    return int(raw) if raw else None


def _str_or_empty(value: Optional[int]) -> str:
    return "" if value is None else str(value)


class SystemType(enum.Enum):
    PHYSICAL = "physical"
    SINGLE = "single"
    BACKING = "backing"
    OVERLAY = "overlay"


@dataclass
class Network:
    location: str
    zone: str
    alias: str
    network: str
    mask: str
    cidr: int
    gateway: str = ""
    dns: str = ""
    vlan: str = ""
    description: str = ""
    repo_address: str = ""
    repo_path: str = ""
    repo_url: str = ""
    build: bool = False
    default_build: bool = False
    ntp: str = ""
    dhcp: str = ""  # dhcp server address for the subnet, empty when static only
    static_routes: bool = False

    FIELDS = 18

    @property
    def name(self) -> str:
        return f"{self.location}-{self.zone}-{self.alias}"

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.location, self.zone, self.alias)

    @classmethod
    def from_row(cls, row: List[str]) -> "Network":
        row = row + [""] * (cls.FIELDS - len(row))
        return cls(
            location=row[0],
            zone=row[1],
            alias=row[2],
            network=row[3],
            mask=row[4],
            cidr=int(row[5]),
            gateway=row[6],
            dns=row[7],
            vlan=row[8],
            description=row[9],
            repo_address=row[10],
            repo_path=row[11],
            repo_url=row[12],
            build=parse_flag(row[13]),
            default_build=parse_flag(row[14]),
            ntp=row[15],
            dhcp=row[16],
            static_routes=parse_flag(row[17]),
        )

    def to_row(self) -> List[str]:
        return [
            self.location,
            self.zone,
            self.alias,
            self.network,
            self.mask,
            str(self.cidr),
            self.gateway,
            self.dns,
            self.vlan,
            self.description,
            self.repo_address,
            self.repo_path,
            self.repo_url,
            format_flag(self.build),
            format_flag(self.default_build),
            self.ntp,
            self.dhcp,
            format_flag(self.static_routes),
        ]


@dataclass
class AddressRecord:
    dec: int
    ip: str
    reserved: bool = False
    dhcp: bool = False
    hostname: str = ""
    interface: str = ""
    comment: str = ""
    interface_comment: str = ""
    owner: str = ""

    @property
    def key(self) -> int:
        return self.dec

    @property
    def assigned(self) -> bool:
        return bool(self.hostname)

    @property
    def free(self) -> bool:
        return not self.reserved and not self.assigned

    @classmethod
    def from_row(cls, row: List[str]) -> "AddressRecord":
        row = row + [""] * (9 - len(row))
        return cls(
            dec=int(row[0]),
            ip=row[1],
            reserved=parse_flag(row[2]),
            dhcp=parse_flag(row[3]),
            hostname=row[4],
            interface=row[5],
            comment=row[6],
            interface_comment=row[7],
            owner=row[8],
        )

    def to_row(self) -> List[str]:
        return [
            str(self.dec),
            self.ip,
            format_flag(self.reserved),
            format_flag(self.dhcp),
            self.hostname,
            self.interface,
            self.comment,
            self.interface_comment,
            self.owner,
        ]


@dataclass
class Hypervisor:
    name: str
    ip: str
    location: str
    vm_path: str
    min_disk: int  # MB
    min_mem: int  # MB
    enabled: bool = True

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_row(cls, row: List[str]) -> "Hypervisor":
        return cls(
            name=row[0],
            ip=row[1],
            location=row[2],
            vm_path=row[3],
            min_disk=int(row[4] or 0),
            min_mem=int(row[5] or 0),
            enabled=parse_flag(row[6]) if len(row) > 6 else True,
        )

    def to_row(self) -> List[str]:
        return [
            self.name,
            self.ip,
            self.location,
            self.vm_path,
            str(self.min_disk),
            str(self.min_mem),
            format_flag(self.enabled),
        ]


@dataclass
class HypervisorNetwork:
    network: str  # loc-zone-alias
    hypervisor: str
    interface: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.network, self.hypervisor)

    @classmethod
    def from_row(cls, row: List[str]) -> "HypervisorNetwork":
        return cls(network=row[0], hypervisor=row[1], interface=row[2])

    def to_row(self) -> List[str]:
        return [self.network, self.hypervisor, self.interface]


@dataclass
class HypervisorEnvironment:
    environment: str
    hypervisor: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.environment, self.hypervisor)

    @classmethod
    def from_row(cls, row: List[str]) -> "HypervisorEnvironment":
        return cls(environment=row[0], hypervisor=row[1])

    def to_row(self) -> List[str]:
        return [self.environment, self.hypervisor]


@dataclass
class HypervisorSystem:
    system: str
    hypervisor: str
    preferred: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.system, self.hypervisor)

    @classmethod
    def from_row(cls, row: List[str]) -> "HypervisorSystem":
        return cls(system=row[0], hypervisor=row[1], preferred=parse_flag(row[2]) if len(row) > 2 else False)

    def to_row(self) -> List[str]:
        return [self.system, self.hypervisor, format_flag(self.preferred)]


@dataclass
class Build:
    name: str
    role: str = ""
    description: str = ""
    os: str = ""
    arch: str = ""
    disk: Optional[int] = None  # GB
    ram: Optional[int] = None  # MB
    parent: str = ""

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_row(cls, row: List[str]) -> "Build":
        row = row + [""] * (8 - len(row))
        return cls(
            name=row[0],
            role=row[1],
            description=row[2],
            os=row[3],
            arch=row[4],
            disk=_int_or_none(row[5]),
            ram=_int_or_none(row[6]),
            parent=row[7],
        )

    def to_row(self) -> List[str]:
        return [
            self.name,
            self.role,
            self.description,
            self.os,
            self.arch,
            _str_or_empty(self.disk),
            _str_or_empty(self.ram),
            self.parent,
        ]


@dataclass
class System:
    name: str
    build: str
    ip: str
    location: str
    environment: str
    virtual: bool = True
    backing: bool = False
    overlay: str = ""
    build_date: str = ""

    @property
    def key(self) -> str:
        return self.name

    @property
    def is_dhcp(self) -> bool:
        return self.ip == DHCP

    @property
    def auto_overlay(self) -> bool:
        return self.overlay == OVERLAY_AUTO

    @classmethod
    def from_row(cls, row: List[str]) -> "System":
        row = row + [""] * (9 - len(row))
        return cls(
            name=row[0],
            build=row[1],
            ip=row[2],
            location=row[3],
            environment=row[4],
            virtual=parse_flag(row[5]) if row[5] else True,
            backing=parse_flag(row[6]),
            overlay=row[7],
            build_date=row[8],
        )

    def to_row(self) -> List[str]:
        return [
            self.name,
            self.build,
            self.ip,
            self.location,
            self.environment,
            format_flag(self.virtual),
            format_flag(self.backing),
            self.overlay,
            self.build_date,
        ]


@dataclass
class Application:
    name: str
    alias: str = ""
    build: str = ""
    cluster: bool = False

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_row(cls, row: List[str]) -> "Application":
        row = row + [""] * (4 - len(row))
        return cls(name=row[0], alias=row[1], build=row[2], cluster=parse_flag(row[3]))

    def to_row(self) -> List[str]:
        return [self.name, self.alias, self.build, format_flag(self.cluster)]


@dataclass
class FileEntry:
    name: str
    path: str
    type: str = "file"
    owner: str = "root"
    group: str = "root"
    octal: str = "0644"
    target: str = ""
    description: str = ""

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_row(cls, row: List[str]) -> "FileEntry":
        row = row + [""] * (8 - len(row))
        return cls(
            name=row[0],
            path=row[1],
            type=row[2] or "file",
            owner=row[3] or "root",
            group=row[4] or "root",
            octal=row[5] or "0644",
            target=row[6],
            description=row[7],
        )

    def to_row(self) -> List[str]:
        return [self.name, self.path, self.type, self.owner, self.group, self.octal, self.target, self.description]


@dataclass
class FileMap:
    file: str
    application: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.file, self.application)

    @classmethod
    def from_row(cls, row: List[str]) -> "FileMap":
        return cls(file=row[0], application=row[1])

    def to_row(self) -> List[str]:
        return [self.file, self.application]


class HypervisorStatus(NamedTuple):
    name: str
    free_disk: int  # MB
    free_mem: int  # MB
    disk_headroom: int
    mem_headroom: int
    load: Tuple[float, float, float]


@dataclass
class Placement:
    """Where and how a system is built, decided in phase 1."""

    hypervisor: str
    network: str
    build_network: str
    build_ip: str
    final_ip: str
    build_interface: str
    final_interface: str
    mac: str
    uuid: str
    base: str = ""  # backing system an overlay is built on
    chain: List[str] = field(default_factory=list)  # systems waiting on this build

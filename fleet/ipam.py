"""Per-subnet IPv4 address management.

Addresses are stored in one index file per /24, named by the /24's network
address. A network larger than /24 is covered by several shards.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from fleet.addressing import (
    broadcast,
    dec2ip,
    get_network,
    ip2dec,
    shard_name,
    shard_names,
    split_cidr,
    valid_ip,
)
from fleet.constants import AUTO_RESERVED_COMMENT
from fleet.exceptions import ConsistencyError, StateConflictError, ValidationError
from fleet.models import AddressRecord, Network
from fleet.store import RecordStore
from fleet.utils import confirm, log

Prober = Callable[[str], bool]


def network_span(network: Network) -> Tuple[int, int]:
    """Decimal (network address, broadcast address) of a network."""
    start = ip2dec(get_network(network.network, network.cidr))
    return start, ip2dec(broadcast(dec2ip(start), network.cidr))


def contains(network: Network, ip: str) -> bool:
    start, end = network_span(network)
    return start <= ip2dec(ip) <= end


class AddressSpace:
    """Address allocation over the record store.

    prober answers whether an address is in use on the wire; it is only
    consulted for assignments that are not forced and for scans.
    """

    def __init__(self, store: RecordStore, prober: Prober) -> None:
        self.store = store
        self.prober = prober

    def _require_ip(self, ip: str) -> str:
        if not valid_ip(ip):
            raise ValidationError(f"Invalid IP '{ip}'")
        return ip

    def _record(self, ip: str) -> Optional[AddressRecord]:
        return self.store.shard(shard_name(ip)).get(ip2dec(ip))

    def _save(self, record: AddressRecord) -> Path:
        table = self.store.shard(shard_name(record.ip))
        table.save(record)
        return table.path

    def _resolve_range(self, network: Network, first: str, last: Optional[str]) -> Tuple[int, int]:
        first_ip, bits = split_cidr(first)
        self._require_ip(first_ip)
        if bits is not None:
            if get_network(first_ip, bits) != first_ip:
                raise ValidationError(f"{first_ip} is not the first address of a /{bits} subnet")
            last = broadcast(first_ip, bits)
        if not last:
            raise ValidationError("The last address of the range is required")
        self._require_ip(last)
        start, end = network_span(network)
        low, high = ip2dec(first_ip), ip2dec(last)
        for value, label in ((low, "first"), (high, "last")):
            if not start <= value <= end:
                raise ValidationError(
                    f"The {label} address {dec2ip(value)} is outside of network {network.name} "
                    f"({network.network}/{network.cidr})"
                )
        if low > high:
            raise ValidationError(f"The range {first_ip} - {last} is reversed")
        # the network and broadcast addresses are never allocatable
        if low == start:
            low += 1
        if high == end:
            high -= 1
        if low > high:
            raise ValidationError(f"The range {first_ip} - {last} holds no usable addresses")
        return low, high

    def _group_by_shard(self, low: int, high: int) -> Dict[str, List[int]]:
        groups: Dict[str, List[int]] = {}
        for value in range(low, high + 1):
            groups.setdefault(shard_name(dec2ip(value)), []).append(value)
        return groups

    def add_range(self, network_name: str, first: str, last: Optional[str] = None) -> Tuple[List[str], List[str]]:
        """Create free records for a range; existing records are kept and reported as skipped."""
        network = self.store.networks.by_name(network_name)
        low, high = self._resolve_range(network, first, last)
        created: List[str] = []
        skipped: List[str] = []
        touched: List[Path] = []
        with self.store.edit_lock():
            for name, values in self._group_by_shard(low, high).items():
                table = self.store.shard(name)
                existing = {record.dec for record in table.list()}
                new_records = []
                for value in values:
                    ip = dec2ip(value)
                    if value in existing:
                        skipped.append(ip)
                        continue
                    new_records.append(AddressRecord(dec=value, ip=ip))
                    created.append(ip)
                if new_records:
                    table.save_many(new_records)
                    touched.append(table.path)
            self.store.commit(*touched, message=f"fleet: add range {dec2ip(low)}-{dec2ip(high)} to {network.name}")
        if skipped:
            log("WARN", f"Skipped {len(skipped)} address(es) that already have records")
        log("INFO", f"Added {len(created)} address(es) to {network.name}")
        return created, skipped

    def remove_range(
        self, network_name: str, first: str, last: Optional[str] = None, assume_yes: bool = False
    ) -> List[str]:
        """Forget every record in the range regardless of its state."""
        network = self.store.networks.by_name(network_name)
        low, high = self._resolve_range(network, first, last)
        confirm(
            f"Remove all address records from {dec2ip(low)} to {dec2ip(high)} in {network.name}, "
            "including assignments?",
            assume_yes,
        )
        removed: List[str] = []
        touched: List[Path] = []
        with self.store.edit_lock():
            for name in self._group_by_shard(low, high):
                table = self.store.shard(name)
                doomed = [r.ip for r in table.list() if low <= r.dec <= high]
                if doomed:
                    table.delete_where(lambda r: low <= r.dec <= high)
                    removed += doomed
                    touched.append(table.path)
            self.store.commit(*touched, message=f"fleet: remove range {dec2ip(low)}-{dec2ip(high)} from {network.name}")
        log("INFO", f"Removed {len(removed)} address record(s) from {network.name}")
        return removed

    def assign(
        self,
        ip: str,
        hostname: str,
        force: bool = False,
        comment: str = "",
        owner: str = "",
        interface: str = "",
    ) -> AddressRecord:
        self._require_ip(ip)
        if not hostname:
            raise ValidationError("A hostname is required to assign an address")
        with self.store.edit_lock():
            record = self._record(ip)
            if record is None:
                raise ConsistencyError(f"The requested IP {ip} is not available")
            if record.reserved and not force:
                raise StateConflictError(f"The requested IP {ip} is reserved")
            if record.assigned and record.hostname != hostname and not force:
                raise StateConflictError(f"The requested IP {ip} is already assigned to {record.hostname}")
            if not force and not record.assigned and self.prober(ip):
                record.reserved = True
                record.comment = AUTO_RESERVED_COMMENT
                path = self._save(record)
                self.store.commit(path, message=f"fleet: reserve {ip} (in use)")
                raise StateConflictError(f"The requested IP {ip} is in use")
            if record.hostname != hostname or record.reserved:
                # a new holder starts without the previous holder's annotations
                record.comment = ""
                record.owner = ""
                record.interface = ""
                record.interface_comment = ""
            record.hostname = hostname
            record.reserved = False
            if comment:
                record.comment = comment
            if owner:
                record.owner = owner
            if interface:
                record.interface = interface
            path = self._save(record)
            self.store.commit(path, message=f"fleet: assign {ip} to {hostname}")
        log("INFO", f"Assigned {ip} to {hostname}")
        return record

    def unassign(self, ip: str) -> AddressRecord:
        self._require_ip(ip)
        with self.store.edit_lock():
            record = self._record(ip)
            if record is None:
                raise ConsistencyError(f"The requested IP {ip} is not available")
            record.hostname = ""
            record.interface = ""
            record.comment = ""
            record.interface_comment = ""
            record.owner = ""
            record.reserved = False
            path = self._save(record)
            self.store.commit(path, message=f"fleet: unassign {ip}")
        log("INFO", f"Released {ip}")
        return record

    def scan(self, network_name: str) -> List[str]:
        """Reserve every registered, unreserved address that answers a liveness probe."""
        network = self.store.networks.by_name(network_name)
        start, end = network_span(network)
        found: List[str] = []
        touched: List[Path] = []
        with self.store.edit_lock():
            for name in shard_names(network.network, network.cidr):
                table = self.store.shard(name)
                records = table.list()
                changed = False
                for record in records:
                    if record.reserved or not start <= record.dec <= end:
                        continue
                    if self.prober(record.ip):
                        log("INFO", f"Found device at {record.ip}")
                        record.reserved = True
                        record.comment = AUTO_RESERVED_COMMENT
                        found.append(record.ip)
                        changed = True
                if changed:
                    table.replace_all(records)
                    touched.append(table.path)
            self.store.commit(*touched, message=f"fleet: scan {network.name}")
        return found

    def locate(self, ip: str) -> List[Network]:
        self._require_ip(ip)
        return [network for network in self.store.networks.list() if contains(network, ip)]

    def locate_one(self, ip: str) -> Network:
        matches = self.locate(ip)
        if not matches:
            raise ConsistencyError(f"No network was found matching {ip}")
        if len(matches) > 1:
            names = ", ".join(n.name for n in matches)
            raise ValidationError(f"{ip} matches more than one network: {names}")
        return matches[0]

    def list_available(self, network_name: str, limit: Optional[int] = None) -> List[str]:
        """Free addresses of a network; a random sample of them when limit is given."""
        network = self.store.networks.by_name(network_name)
        start, end = network_span(network)
        available = []
        for name in shard_names(network.network, network.cidr):
            for record in self.store.shard(name).list():
                if record.free and start <= record.dec <= end:
                    available.append(record.ip)
        if limit is not None:
            random.shuffle(available)
            return available[:limit]
        return available

    def show(self, ip: str) -> AddressRecord:
        self._require_ip(ip)
        record = self._record(ip)
        if record is None:
            raise ConsistencyError(f"No address record for {ip}")
        return record

    def next_available(self, network_name: str) -> str:
        choice = self.list_available(network_name, limit=1)
        if not choice:
            raise StateConflictError(f"No free addresses are available in {network_name}")
        return choice[0]

"""Flat-file record store for fleet.

Every entity lives in its own comma-delimited file under the configuration
directory, one record per line. Fields never contain commas; they are
stripped on write.
"""

from __future__ import annotations

import fcntl
import os
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from fleet.config import Settings
from fleet.constants import (
    APPLICATION_FILE,
    BUILD_FILE,
    FILE_FILE,
    FILE_MAP_FILE,
    HV_ENVIRONMENT_FILE,
    HV_NETWORK_FILE,
    HV_SYSTEM_FILE,
    HYPERVISOR_FILE,
    LOCK_FILE,
    NET_DIR,
    NETWORK_FILE,
    SYSTEM_FILE,
)
from fleet.exceptions import ConsistencyError, ManagerError, ValidationError
from fleet.models import (
    AddressRecord,
    Application,
    Build,
    FileEntry,
    FileMap,
    Hypervisor,
    HypervisorEnvironment,
    HypervisorNetwork,
    HypervisorSystem,
    Network,
    System,
)
from fleet.utils import log

T = TypeVar("T")


def read_rows(path: Path) -> List[List[str]]:
    if not path.exists():
        return []
    rows = []
    for line in path.read_text().splitlines():
        if not line.strip():
            continue
        rows.append(line.split(","))
    return rows


def write_rows(path: Path, rows: List[List[str]]) -> None:
    """Replace the file contents atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w") as f:
        for row in rows:
            f.write(",".join(str(value).replace(",", "") for value in row) + "\n")
    os.replace(tmp, path)


class Table(Generic[T]):
    """Typed view over one record file."""

    def __init__(self, path: Path, model: Type[T], label: str) -> None:
        self.path = path
        self.model = model
        self.label = label

    def list(self) -> List[T]:
        records = []
        for row in read_rows(self.path):
            try:
                records.append(self.model.from_row(row))  # type: ignore[attr-defined]
            except (IndexError, ValueError) as exc:
                raise ManagerError(f"Malformed {self.label} record in {self.path}: {','.join(row)} ({exc})")
        return records

    def get(self, key: Any) -> Optional[T]:
        for record in self.list():
            if record.key == key:  # type: ignore[attr-defined]
                return record
        return None

    def require(self, key: Any) -> T:
        record = self.get(key)
        if record is None:
            shown = "-".join(key) if isinstance(key, tuple) else key
            raise ConsistencyError(f"Unknown {self.label} '{shown}'")
        return record

    def exists(self, key: Any) -> bool:
        return self.get(key) is not None

    def filter(self, predicate: Optional[Callable[[T], bool]] = None, **attrs: Any) -> List[T]:
        result = []
        for record in self.list():
            if any(getattr(record, name) != value for name, value in attrs.items()):
                continue
            if predicate is not None and not predicate(record):
                continue
            result.append(record)
        return result

    def save(self, record: T) -> None:
        """Insert the record, or replace the record with the same key in place."""
        records = self.list()
        for index, existing in enumerate(records):
            if existing.key == record.key:  # type: ignore[attr-defined]
                records[index] = record
                break
        else:
            records.append(record)
        self.replace_all(records)

    def save_many(self, new_records: List[T]) -> None:
        records = self.list()
        index = {r.key: i for i, r in enumerate(records)}  # type: ignore[attr-defined]
        for record in new_records:
            key = record.key  # type: ignore[attr-defined]
            if key in index:
                records[index[key]] = record
            else:
                index[key] = len(records)
                records.append(record)
        self.replace_all(records)

    def delete(self, key: Any) -> bool:
        records = self.list()
        kept = [r for r in records if r.key != key]  # type: ignore[attr-defined]
        if len(kept) == len(records):
            return False
        self.replace_all(kept)
        return True

    def delete_where(self, predicate: Callable[[T], bool]) -> int:
        records = self.list()
        kept = [r for r in records if not predicate(r)]
        removed = len(records) - len(kept)
        if removed:
            self.replace_all(kept)
        return removed

    def replace_all(self, records: List[T]) -> None:
        write_rows(self.path, [r.to_row() for r in records])  # type: ignore[attr-defined]


class NetworkTable(Table[Network]):
    def save(self, record: Network) -> None:
        """Save a network; a new default build network clears the previous one in the same write."""
        if record.default_build and not record.build:
            raise ValidationError(f"Network {record.name} must be a build network to be the default build network")
        records = self.list()
        replaced = False
        for index, existing in enumerate(records):
            if existing.key == record.key:
                records[index] = record
                replaced = True
            elif record.default_build and existing.location == record.location and existing.default_build:
                log("INFO", f"Clearing previous default build network {existing.name}")
                existing.default_build = False
        if not replaced:
            records.append(record)
        self.replace_all(records)

    def by_name(self, name: str) -> Network:
        parts = name.split("-")
        if len(parts) != 3:
            raise ConsistencyError(f"Unknown network '{name}'")
        return self.require(tuple(parts))

    def default_build(self, location: str) -> Optional[Network]:
        for network in self.list():
            if network.location == location and network.default_build:
                return network
        return None


class RecordStore:
    """All record tables of one configuration directory."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.root = settings.conf_dir
        self.networks = NetworkTable(self.root / NETWORK_FILE, Network, "network")
        self.hypervisors: Table[Hypervisor] = Table(self.root / HYPERVISOR_FILE, Hypervisor, "hypervisor")
        self.hv_networks: Table[HypervisorNetwork] = Table(
            self.root / HV_NETWORK_FILE, HypervisorNetwork, "hypervisor network mapping"
        )
        self.hv_environments: Table[HypervisorEnvironment] = Table(
            self.root / HV_ENVIRONMENT_FILE, HypervisorEnvironment, "hypervisor environment mapping"
        )
        self.hv_systems: Table[HypervisorSystem] = Table(self.root / HV_SYSTEM_FILE, HypervisorSystem, "hv-system entry")
        self.builds: Table[Build] = Table(self.root / BUILD_FILE, Build, "build")
        self.systems: Table[System] = Table(self.root / SYSTEM_FILE, System, "system")
        self.applications: Table[Application] = Table(self.root / APPLICATION_FILE, Application, "application")
        self.files: Table[FileEntry] = Table(self.root / FILE_FILE, FileEntry, "file")
        self.file_maps: Table[FileMap] = Table(self.root / FILE_MAP_FILE, FileMap, "file map")
        self._shards: Dict[str, Table[AddressRecord]] = {}
        self._lock_depth = 0
        self._lock_handle: Optional[Any] = None

    def shard(self, name: str) -> Table[AddressRecord]:
        """Address index for one /24, named by its network address."""
        if name not in self._shards:
            self._shards[name] = Table(self.root / NET_DIR / name, AddressRecord, "address")
        return self._shards[name]

    def read_pairs(self, relative: str) -> List[List[str]]:
        """Raw rows of an auxiliary file (constants, resources)."""
        return read_rows(self.root / relative)

    def path(self, relative: str) -> Path:
        return self.root / relative

    @contextmanager
    def edit_lock(self) -> Iterator[None]:
        """Hold the store-wide exclusive edit lock; re-entrant within one process."""
        if self._lock_depth:
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
            return
        self.root.mkdir(parents=True, exist_ok=True)
        handle = open(self.root / LOCK_FILE, "w")
        try:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                log("INFO", "Waiting for the record store edit lock...")
                fcntl.flock(handle, fcntl.LOCK_EX)
            self._lock_depth = 1
            self._lock_handle = handle
            yield
        finally:
            self._lock_depth = 0
            self._lock_handle = None
            fcntl.flock(handle, fcntl.LOCK_UN)
            handle.close()

    def commit(self, *paths: Path, message: Optional[str] = None) -> None:
        """Record changes to the given files in the store's git history, when there is one."""
        if not paths:
            return
        if not (self.root / ".git").exists():
            log("DEBUG", f"Store is not a git repository; not committing {len(paths)} file(s)")
            return
        relative = [str(Path(p).relative_to(self.root)) if Path(p).is_absolute() else str(p) for p in paths]
        message = message or f"fleet: update {', '.join(relative)}"
        try:
            subprocess.run(["git", "add", "--all", "--", *relative], cwd=self.root, check=True, text=True)
            status = subprocess.run(
                ["git", "diff", "--cached", "--quiet"], cwd=self.root, check=False, text=True
            )
            if status.returncode == 0:
                log("DEBUG", "Nothing to commit")
                return
            subprocess.run(["git", "commit", "-q", "-m", message], cwd=self.root, check=True, text=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ManagerError(f"Failed to commit {', '.join(relative)}: {exc}")

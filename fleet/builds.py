"""Build lineage: parent chains, inherited sizing and cycle checks."""

from __future__ import annotations

from typing import List, Tuple

from fleet.config import Settings
from fleet.exceptions import ConsistencyError, StateConflictError
from fleet.models import Build
from fleet.store import RecordStore
from fleet.utils import log


class BuildCatalog:
    def __init__(self, store: RecordStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def get(self, name: str) -> Build:
        return self.store.builds.require(name)

    def lineage(self, name: str) -> List[Build]:
        """The build followed by its ancestors, root last."""
        chain: List[Build] = []
        seen = set()
        current = self.get(name)
        while True:
            if current.name in seen:
                raise StateConflictError(f"Build lineage of {name} contains a cycle at {current.name}")
            seen.add(current.name)
            chain.append(current)
            if not current.parent:
                return chain
            try:
                current = self.get(current.parent)
            except ConsistencyError:
                raise ConsistencyError(f"Build {current.name} has unknown parent '{current.parent}'")

    def root(self, name: str) -> Build:
        return self.lineage(name)[-1]

    def children(self, name: str) -> List[Build]:
        return self.store.builds.filter(parent=name)

    def effective_size(self, name: str) -> Tuple[int, int]:
        """Disk (GB) and RAM (MB): the build's own value, else the root's, else the defaults."""
        build = self.get(name)
        root = self.root(name)
        disk = build.disk or root.disk or self.settings.default_disk_gb
        ram = build.ram or root.ram or self.settings.default_ram_mb
        return disk, ram

    def set_parent(self, name: str, parent: str) -> Build:
        """Re-parent a build; an empty parent makes it a root."""
        build = self.get(name)
        if parent:
            if parent == name:
                raise StateConflictError(f"Build {name} can not be its own parent")
            if any(b.name == name for b in self.lineage(parent)):
                raise StateConflictError(f"Build {parent} descends from {name}; refusing to create a cycle")
        build.parent = parent
        with self.store.edit_lock():
            self.store.builds.save(build)
            self.store.commit(self.store.builds.path)
        log("INFO", f"Build {name} parent set to {parent or '(none)'}")
        return build

    def backing_build(self, name: str) -> str:
        """Build a backing image for an overlay of this build uses: the parent, or itself at a root."""
        build = self.get(name)
        return build.parent or build.name

"""Build journal: durable checkpoints and progress log for background builds."""

from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from fleet.config import Settings
from fleet.exceptions import ConsistencyError, ManagerError
from fleet.utils import ensure_directory, log


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


@dataclass
class BuildRecord:
    name: str
    params: Dict[str, str]
    completed: List[str] = field(default_factory=list)
    status: str = "pending"  # pending, running, failed, aborted, complete
    pid: Optional[int] = None
    error: str = ""
    started: str = field(default_factory=_now)
    updated: str = field(default_factory=_now)

    def done(self, step: str) -> bool:
        return step in self.completed


class BuildJournal:
    """One JSON document per system under <state_dir>/builds, plus the shared provisioning log."""

    def __init__(self, settings: Settings) -> None:
        self.directory = settings.builds_dir
        self.log_file = settings.provision_log

    def path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def load(self, name: str) -> Optional[BuildRecord]:
        path = self.path(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            raise ManagerError(f"Corrupt build journal {path}: {exc}")
        return BuildRecord(**data)

    def require(self, name: str) -> BuildRecord:
        record = self.load(name)
        if record is None:
            raise ConsistencyError(f"No build journal for {name}; provision it first")
        return record

    def save(self, record: BuildRecord) -> None:
        ensure_directory(self.directory)
        record.updated = _now()
        tmp = self.path(record.name).with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(record), indent=2, sort_keys=True))
        os.replace(tmp, self.path(record.name))

    def start(self, name: str, params: Dict[str, str]) -> BuildRecord:
        record = BuildRecord(name=name, params=params)
        self.save(record)
        self.progress(name, "phase 1 complete; build journal created")
        return record

    def mark_running(self, name: str, pid: int) -> BuildRecord:
        record = self.require(name)
        record.status = "running"
        record.pid = pid
        record.error = ""
        self.save(record)
        return record

    def complete_step(self, name: str, step: str) -> None:
        record = self.require(name)
        if step not in record.completed:
            record.completed.append(step)
        self.save(record)
        self.progress(name, f"step '{step}' complete")

    def fail(self, name: str, error: str, aborted: bool = False) -> None:
        record = self.require(name)
        record.status = "aborted" if aborted else "failed"
        record.error = error
        self.save(record)
        self.progress(name, f"{record.status}: {error}")

    def finish(self, name: str) -> None:
        record = self.require(name)
        record.status = "complete"
        self.save(record)
        self.progress(name, "build complete")

    def records(self) -> List[BuildRecord]:
        if not self.directory.exists():
            return []
        return [r for r in (self.load(p.stem) for p in sorted(self.directory.glob("*.json"))) if r is not None]

    def progress(self, name: str, message: str) -> None:
        """Append a progress line to the shared provisioning log."""
        line = f"{_now()} {name}[{os.getpid()}]: {message}"
        try:
            ensure_directory(self.log_file.parent)
            with open(self.log_file, "a") as f:
                f.write(line + "\n")
        except OSError as exc:
            log("WARN", f"Could not write {self.log_file}: {exc}")
        log("INFO", f"{name}: {message}")

"""Release bundles: rendered configuration files plus install and audit scripts."""

from __future__ import annotations

import os
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from fleet.config import Settings
from fleet.exceptions import ValidationError
from fleet.models import FileEntry, System
from fleet.remote import Remote
from fleet.store import RecordStore
from fleet.templates import build_applications, render_text, system_variables
from fleet.utils import ensure_directory, log

TEMPLATE_DIR = "template"
BINARY_DIR = "binary"


class ReleaseBuilder:
    def __init__(self, store: RecordStore, settings: Settings, remote: Remote) -> None:
        self.store = store
        self.settings = settings
        self.remote = remote

    @property
    def release_dir(self) -> Path:
        return self.settings.release_dir or self.settings.state_dir / "releases"

    def managed_files(self, system: System) -> List[FileEntry]:
        """Files mapped to the applications of the system's build, each once."""
        names: List[str] = []
        for app in build_applications(self.store, system.build):
            for mapping in self.store.file_maps.filter(application=app):
                if mapping.file not in names:
                    names.append(mapping.file)
        return [self.store.files.require(name) for name in names]

    def build(self, name: str, network_override=None) -> Path:
        system = self.store.systems.require(name)
        files = self.managed_files(system)
        if not files:
            raise ValidationError(f"No managed configuration files for {name}")
        variables = system_variables(self.store, system, network_override)
        generated = time.strftime("%a %b %d %H:%M:%S %Y")
        install = [
            "#!/bin/bash",
            f"# scs installation script for {name}, generated on {generated}",
            "",
            "# safety first",
            f'test "`hostname`" == "{name}" || exit 2',
            "",
            f'logger -t scs "starting installation for {system.location} {system.environment} {name}"',
            "",
        ]
        audit = [
            "#!/bin/bash",
            f"# scs audit script for {name}, generated on {generated}",
            "",
            f'test "`hostname`" == "{name}" || echo "WARNING - running on alternate system - can not reliably check ownership!"',
            "",
            "PASS=0",
        ]
        stat: List[str] = []

        with tempfile.TemporaryDirectory(prefix=f"fleet-release-{name}-") as tmp:
            staging = Path(tmp)
            for entry in files:
                self._stage(entry, staging, system, variables, install, audit, stat)
            audit += [
                "",
                'if [ $PASS -eq 0 ]; then echo "Audit PASSED"; else echo "Audit FAILED"; fi',
                "exit $PASS",
            ]
            install += ["", 'logger -t scs "installation complete"']
            for script, lines in (("scs-install.sh", install), ("scs-audit.sh", audit)):
                path = staging / script
                path.write_text("\n".join(lines) + "\n")
                path.chmod(0o755)
            (staging / "scs-stat").write_text("".join(line + "\n" for line in stat))

            ensure_directory(self.release_dir)
            archive = self.release_dir / f"{name}-release-{time.strftime('%Y%m%d-%H%M%S')}.tgz"
            with tarfile.open(archive, "w:gz") as tar:
                for child in sorted(staging.iterdir()):
                    tar.add(child, arcname=child.name)
        log("SUCCESS", f"Generated release {archive}")
        return archive

    def _stage(
        self,
        entry: FileEntry,
        staging: Path,
        system: System,
        variables,
        install: List[str],
        audit: List[str],
        stat: List[str],
    ) -> None:
        relative = entry.path.lstrip("/")
        if not relative:
            log("WARN", f"Skipping file {entry.name} with an empty path")
            return
        octal = entry.octal.lstrip("0") or "0"
        staged = staging / relative
        staged.parent.mkdir(parents=True, exist_ok=True)

        if entry.type == "file":
            template = self.store.path(f"{TEMPLATE_DIR}/{entry.name}")
            if not template.exists():
                raise ValidationError(f"Template for {entry.name} does not exist")
            try:
                staged.write_text(render_text(template.read_text(), variables))
            except ValidationError as exc:
                raise ValidationError(f"Error generating {system.environment} file for {entry.name}: {exc}")
        elif entry.type == "directory":
            staged.mkdir(parents=True, exist_ok=True)
        elif entry.type == "symlink":
            os.symlink(entry.target, staged)
        elif entry.type == "binary":
            source = self.store.path(f"{BINARY_DIR}/{system.environment}/{entry.name}")
            if not source.is_file():
                raise ValidationError(f"Binary file '{entry.name}' does not exist for {system.environment}")
            shutil.copyfile(source, staged)
        elif entry.type == "copy":
            self.remote.scp(entry.target, str(staged))
        elif entry.type == "download":
            install.append(f"# download '{entry.name}'")
            install.append(
                f'curl -f -k -L --retry 1 --retry-delay 10 -s --url "{entry.target}" -o "/{relative}" >/dev/null 2>&1'
                f" || logger -t scs \"error downloading '{entry.name}'\""
            )
        elif entry.type == "delete":
            guard = f'[[ ! -z "{relative}" && "{relative}" != "/" && -e "/{relative}" ]]'
            install.append(f"# delete '{entry.name}' if it exists")
            install.append(f"if {guard}; then /bin/rm -rf \"/{relative}\"; logger -t scs \"deleting path '/{relative}'\"; fi")
            audit.append(f"if {guard}; then PASS=1; echo \"File should not exist: '/{relative}'\"; fi")
            return
        else:
            raise ValidationError(f"Unknown file type '{entry.type}' for {entry.name}")

        expected = f"{octal} {entry.owner}:{entry.group}"
        audit += [
            f'if [ -e "/{relative}" ]; then',
            f"  if [ \"$( stat -c'%a %U:%G' \"/{relative}\" )\" != \"{expected}\" ]; then PASS=1; "
            f"echo \"'$( stat -c'%a %U:%G' \"/{relative}\" )' != '{expected}' on /{relative}\"; fi",
            "else",
            f'  echo "Error: /{relative} does not exist!"',
            "  PASS=1",
            "fi",
        ]
        install += [
            f"# set permissions on '{entry.name}'",
            f"chown {entry.owner}:{entry.group} /{relative}",
            f"chmod {entry.octal} /{relative}",
        ]
        kind = "file" if entry.type == "binary" else entry.type
        if entry.type == "symlink":
            stat.append(f"/{relative} -> {entry.target} root root 777 {kind}")
        else:
            stat.append(f"/{relative} {entry.owner} {entry.group} {octal} {kind}")

    def deploy(self, archive: Path, host: str) -> None:
        """Copy a release to a host and apply it."""
        self.remote.scp(archive, self.remote.remote_path(host, "/root/"))
        self.remote.ssh(host, f"tar xzf /root/{archive.name} -C /; cd /; ./scs-install.sh")
        log("INFO", f"Applied {archive.name} on {host}")

    def build_and_deploy(self, name: str, host: str, network_override=None) -> Optional[Path]:
        """Build and apply a release; systems without managed files get none."""
        system = self.store.systems.require(name)
        if not self.managed_files(system):
            log("INFO", f"No managed configuration files for {name}; skipping release")
            return None
        archive = self.build(name, network_override)
        self.deploy(archive, host)
        return archive

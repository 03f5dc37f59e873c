"""SSH/SCP access to hypervisors, repositories and guests."""

from __future__ import annotations

import shlex
import socket
from pathlib import Path
from typing import Iterable, List, Optional, Union

from fleet.config import Settings
from fleet.exceptions import ConnectivityError
from fleet.runtime import CancelToken, poll_until
from fleet.utils import log, run

SSH_OPTIONS = ["-o", "StrictHostKeyChecking=no", "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]


class Remote:
    """Command execution on remote hosts.

    Commands flagged as mutating are only printed in dry-run mode; read-only
    queries always run so that decisions are made on live data.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.dry_run = settings.dry_run

    def _target(self, host: str) -> str:
        return host if "@" in host else f"{self.settings.ssh_user}@{host}"

    def ssh_command(self, host: str, command: str) -> List[str]:
        return ["ssh", "-n", *SSH_OPTIONS, self._target(host), command]

    def ssh(self, host: str, command: str, check: bool = True, mutating: bool = True) -> str:
        cmd = self.ssh_command(host, command)
        if self.dry_run and mutating:
            log("INFO", f"[dry-run] {shlex.join(cmd)}")
            return ""
        try:
            result = run(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise ConnectivityError(f"Unable to run ssh to {host}: {exc}")
        if check and result.returncode != 0:
            detail = (result.stderr or "").strip()
            raise ConnectivityError(
                f"Remote command failed on {host} (exit {result.returncode}): {command}" + (f"\n  {detail}" if detail else "")
            )
        return result.stdout or ""

    def succeeds(self, host: str, command: str) -> bool:
        """Run a read-only remote check and report whether it exited zero."""
        try:
            result = run(self.ssh_command(host, command), check=False, capture_output=True)
        except OSError as exc:
            log("DEBUG", f"ssh to {host} failed: {exc}")
            return False
        return result.returncode == 0

    def file_exists(self, host: str, path: str) -> bool:
        return self.succeeds(host, f"test -e {shlex.quote(path)}")

    def scp(self, sources: Union[str, Path, Iterable[Union[str, Path]]], destination: str, recursive: bool = False) -> None:
        if isinstance(sources, (str, Path)):
            sources = [sources]
        cmd = ["scp", "-B", "-p", *SSH_OPTIONS]
        if recursive:
            cmd.append("-r")
        cmd += [str(s) for s in sources]
        cmd.append(destination)
        if self.dry_run:
            log("INFO", f"[dry-run] {shlex.join(cmd)}")
            return
        try:
            result = run(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise ConnectivityError(f"Unable to run scp: {exc}")
        if result.returncode != 0:
            raise ConnectivityError(f"File transfer to {destination} failed: {(result.stderr or '').strip()}")

    def remote_path(self, host: str, path: str) -> str:
        return f"{self._target(host)}:{path}"

    def port_open(self, host: str, port: int, timeout: float = 2.0) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    def ping(self, host: str) -> bool:
        try:
            result = run(["ping", "-c4", "-n", "-s8", "-w4", "-q", host], check=False, capture_output=True)
        except OSError as exc:
            log("WARN", f"ping unavailable: {exc}")
            return False
        return result.returncode == 0 and " 0 received" not in (result.stdout or "")

    def is_alive(self, host: str, ports: Optional[Iterable[int]] = None) -> bool:
        """TCP probe on common service ports, then ICMP."""
        for port in ports or self.settings.probe_ports:
            if self.port_open(host, port):
                log("DEBUG", f"{host} answers on tcp/{port}")
                return True
        return self.ping(host)

    def purge_known_host(self, host: str) -> None:
        cmd = ["ssh-keygen", "-R", host]
        if self.dry_run:
            log("INFO", f"[dry-run] {shlex.join(cmd)}")
            return
        try:
            run(cmd, check=False, capture_output=True)
        except OSError as exc:
            log("WARN", f"Could not purge known host entry for {host}: {exc}")

    def wait_for_port(self, host: str, port: int, token: CancelToken) -> None:
        if self.dry_run:
            log("INFO", f"[dry-run] wait for {host}:{port}")
            return
        poll_until(lambda: self.port_open(host, port), token, self.settings.poll_interval, f"{host}:{port}")

    def wait_for_command(self, host: str, command: str, token: CancelToken) -> None:
        if self.dry_run:
            log("INFO", f"[dry-run] wait for '{command}' to succeed on {host}")
            return
        poll_until(lambda: self.succeeds(host, command), token, self.settings.poll_interval, f"'{command}' on {host}")

    def wait_reachable(self, host: str, token: CancelToken) -> None:
        """Wait for ssh to accept connections and run a trivial command."""
        self.wait_for_port(host, 22, token)
        self.wait_for_command(host, "uptime", token)


def helper_command(
    settings: Settings,
    name: str,
    arch: str,
    os_name: str,
    ram: int,
    mac: str,
    uuid: str,
    interface: str,
    disk: Optional[int] = None,
    ks_url: Optional[str] = None,
    ip: Optional[str] = None,
    netmask: Optional[str] = None,
    gateway: Optional[str] = None,
    dns: Optional[str] = None,
    base: Optional[str] = None,
    disk_path: Optional[str] = None,
    no_install: bool = False,
    use_existing: bool = False,
) -> str:
    """Command line for the VM provisioning helper installed on every hypervisor.

    ip is either a static address (sent with its netmask, gateway and dns)
    or None for DHCP.
    """
    cmd = [settings.provision_helper, "--arch", arch]
    if disk is not None and not use_existing and not base:
        cmd += ["--disk", str(disk)]
    if ip:
        cmd += ["--ip", f"{ip}/{netmask}" if netmask else ip]
        if gateway:
            cmd += ["--gateway", gateway]
        if dns:
            cmd += ["--dns", dns]
    else:
        cmd += ["--ip", "dhcp"]
    cmd += [
        "--interface",
        interface,
        "--no-console",
        "--no-reboot",
        "--os",
        os_name,
        "--quiet",
        "--ram",
        str(ram),
        "--mac",
        mac,
        "--uuid",
        uuid,
    ]
    if base:
        cmd += ["--base", base]
    if disk_path:
        cmd += ["--disk-path", disk_path]
    if use_existing:
        cmd.append("--use-existing")
    if no_install:
        cmd.append("--no-install")
    elif ks_url:
        cmd += ["--ks", ks_url]
    cmd.append(name)
    return shlex.join(cmd)

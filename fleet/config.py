"""Configuration loading and environment variable overrides for fleet."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from fleet.constants import DEFAULT_CONFIG_PATH
from fleet.exceptions import ManagerError
from fleet.utils import get_env, get_env_bool, log, parse_int_env


@dataclass(frozen=True)
class Settings:
    conf_dir: Path = Path("/usr/local/etc/lpad/app-config")
    state_dir: Path = Path("/var/lib/fleet")
    abort_file: Path = Path("/tmp/scs-abort-all")
    build_scripts_dir: Optional[Path] = None
    kickstart_dir: Optional[Path] = None
    release_dir: Optional[Path] = None
    error_log: Optional[Path] = None
    provision_helper: str = "/usr/local/utils/kvm-install.sh"
    default_disk_gb: int = 40
    default_ram_mb: int = 1024
    poll_interval: int = 5
    ssh_user: str = "root"
    libvirt_uri: str = "qemu+ssh://{user}@{host}/system"
    probe_ports: Tuple[int, ...] = (22, 80, 443)
    dhcp_lease_file: str = "/var/lib/dhcpd/dhcpd.leases"
    root_password: str = ""
    remote_build_dir: str = "ESG"
    dry_run: bool = False
    assume_yes: bool = False
    config_path: Optional[Path] = field(default=None, compare=False)

    @property
    def builds_dir(self) -> Path:
        return self.state_dir / "builds"

    @property
    def provision_log(self) -> Path:
        return self.state_dir / "provision.log"

    @property
    def error_log_path(self) -> Path:
        return self.error_log or self.state_dir / "error.log"

    def libvirt_uri_for(self, host: str) -> str:
        return self.libvirt_uri.format(user=self.ssh_user, host=host)


_PATH_KEYS = {"conf_dir", "state_dir", "abort_file", "build_scripts_dir", "kickstart_dir", "release_dir", "error_log"}
_INT_KEYS = {"default_disk_gb", "default_ram_mb", "poll_interval"}

# Environment variable -> settings key
_ENV_OVERRIDES = {
    "FLEET_CONF_DIR": "conf_dir",
    "FLEET_STATE_DIR": "state_dir",
    "FLEET_ABORT_FILE": "abort_file",
    "FLEET_SSH_USER": "ssh_user",
}


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in _PATH_KEYS:
        return Path(str(value)).expanduser()
    if key in _INT_KEYS:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ManagerError(f"Config key '{key}' must be an integer (got '{value}')")
        if number < 1:
            raise ManagerError(f"Config key '{key}' must be >= 1 (got {number})")
        return number
    if key == "probe_ports":
        return _parse_ports(value)
    return str(value)


def _parse_ports(value: Any) -> Tuple[int, ...]:
    if isinstance(value, str):
        items: List[Any] = [item for item in value.replace(",", " ").split() if item]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ManagerError(f"probe_ports must be a list of ports (got '{value}')")
    ports = []
    for item in items:
        try:
            port = int(item)
        except (TypeError, ValueError):
            raise ManagerError(f"Invalid probe port '{item}'")
        if port < 1 or port > 65535:
            raise ManagerError(f"Probe port out of range: {port}")
        ports.append(port)
    if not ports:
        raise ManagerError("probe_ports must not be empty")
    return tuple(ports)


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        log("DEBUG", f"No config file at {config_path}; using defaults")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid YAML in {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(
    config_path: Optional[Path] = None,
    dry_run: bool = False,
    assume_yes: bool = False,
) -> Settings:
    """Build the immutable settings from the YAML file and environment overrides."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    data = load_config_file(config_path)

    known = {f.name for f in fields(Settings)} - {"dry_run", "assume_yes", "config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ManagerError(f"Unknown config key(s) in {config_path}: {', '.join(unknown)}")

    values: Dict[str, Any] = {key: _coerce(key, value) for key, value in data.items()}

    for env_name, key in _ENV_OVERRIDES.items():
        raw = get_env(env_name)
        if raw:
            values[key] = _coerce(key, raw)
    if get_env("FLEET_POLL_INTERVAL"):
        values["poll_interval"] = parse_int_env("FLEET_POLL_INTERVAL", "5", min_val=1, max_val=3600)

    settings = Settings(**values)
    return replace(
        settings,
        dry_run=dry_run or get_env_bool("FLEET_DRY_RUN", False),
        assume_yes=assume_yes,
        config_path=config_path,
    )

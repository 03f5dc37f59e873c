"""Utility functions for fleet."""

from __future__ import annotations

import os
import random
import subprocess
import sys
import time
import uuid
from pathlib import Path
from typing import Iterable, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from fleet.constants import _LOG_VERBOSE, TRUTHY
from fleet.exceptions import ManagerError, StateConflictError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def errlog(message: str, log_file: Optional[Path]) -> None:
    """Log an error and append it to the persistent error log.

    Used by background work where no terminal is attached to read the output.
    """
    log("ERROR", message)
    if log_file is None:
        return
    stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a") as f:
            f.write(f"{stamp} fleet[{os.getpid()}]: {message}\n")
    except OSError as exc:
        log("WARN", f"Could not write error log {log_file}: {exc}")


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_flag(raw: str) -> bool:
    """Parse a y/n record flag."""
    return raw.strip().lower() in TRUTHY


def format_flag(value: bool) -> str:
    return "y" if value else "n"


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def confirm(question: str, assume_yes: bool = False) -> None:
    """Ask for a y/n confirmation before a destructive action.

    Raises StateConflictError when the operator declines or no TTY is attached.
    """
    if assume_yes:
        return
    if not has_controlling_tty():
        raise StateConflictError(f"{question} Confirmation required; re-run with --yes to proceed.")
    answer = input(f"{question} (y/n)? ").strip().lower()
    if answer not in {"y", "yes"}:
        raise StateConflictError("...aborted by operator")


def prompt(question: str, options: Iterable[str] = ()) -> str:
    """Read a value from the operator, restricted to options when given."""
    choices = list(options)
    if not has_controlling_tty():
        raise ManagerError(f"{question}: no value provided and no TTY available to prompt")
    suffix = f" [{', '.join(choices)}]" if choices else ""
    while True:
        answer = input(f"{question}{suffix}: ").strip()
        if answer and (not choices or answer in choices):
            return answer
        log("WARN", "Invalid selection, try again")


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_mac() -> str:
    """Generate a locally-administered MAC address with the qemu prefix."""
    octets = [0x52, 0x54, 0x00]  # qemu prefix
    octets += [random.randint(0x00, 0x7F) for _ in range(3)]
    return ":".join(f"{octet:02x}" for octet in octets)


def new_uuid() -> str:
    return str(uuid.uuid4())


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for the kickstart root password."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result

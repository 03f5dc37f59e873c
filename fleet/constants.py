"""Global constants for fleet."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("FLEET_CONFIG", "/etc/fleet/fleet.yaml"))

TRUTHY = {"1", "true", "yes", "on", "y"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
IP_RE = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")
NETWORK_NAME_RE = re.compile(r"^[^-,\s]+-[^-,\s]+-[^-,\s]+$")
PLACEHOLDER_RE = re.compile(r"\{%\s*((?:system|resource|constant)\.[A-Za-z0-9_.-]+)\s*%\}")

# Valid octets of a contiguous network mask
MASK_OCTETS = (0, 128, 192, 224, 240, 248, 252, 254, 255)

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

# Record store file names, relative to the store root
NETWORK_FILE = "network"
HYPERVISOR_FILE = "hypervisor"
HV_NETWORK_FILE = "hv-network"
HV_ENVIRONMENT_FILE = "hv-environment"
HV_SYSTEM_FILE = "hv-system"
BUILD_FILE = "build"
SYSTEM_FILE = "system"
APPLICATION_FILE = "application"
FILE_FILE = "file"
FILE_MAP_FILE = "file-map"
NET_DIR = "net"
LOCK_FILE = ".fleet.lock"

# Subfolder of a hypervisor's vm_path that holds backing images
BACKING_SUBDIR = "backing"
DISK_SUFFIX = ".img"

# Ranking: switch selection only above this percentage of extra memory headroom
RANK_THRESHOLD_PCT = 5

OVERLAY_AUTO = "auto"
DHCP = "dhcp"
AUTO_RESERVED_COMMENT = "auto-reserved: address in use"

SUPPORTED_ARCHES = {"i386", "x86_64"}
FILE_TYPES = {"file", "directory", "symlink", "binary", "copy", "download", "delete"}

# Phase 2 checkpoints, in execution order
PHASE2_STEPS = ("overlay", "install", "build-scripts", "release", "cutover", "backing")

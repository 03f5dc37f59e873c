"""fleet: provisioning orchestrator for a fleet of KVM hypervisors."""

__version__ = "0.1.0"

__all__ = [
    "addressing",
    "builds",
    "cli",
    "config",
    "constants",
    "exceptions",
    "hypervisor",
    "ipam",
    "models",
    "network",
    "provision",
    "release",
    "remote",
    "runtime",
    "status",
    "store",
    "systems",
    "templates",
    "utils",
    "vm",
]

"""Custom exceptions for fleet."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Malformed input: addresses, masks, names, out-of-range values."""


class StateConflictError(ManagerError):
    """The requested change conflicts with current registry or host state."""


class ConnectivityError(ManagerError):
    """A host could not be reached or a remote command failed."""


class ConsistencyError(ManagerError):
    """A referenced record does not exist."""


class UnsupportedConversion(ManagerError):
    """The requested system type transition is not implemented."""


class AbortedError(ManagerError):
    """Raised when a cancellation request is observed at a suspension point."""

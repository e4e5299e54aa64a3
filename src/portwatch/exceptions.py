"""Exceptions raised by portwatch."""


class PortWatchError(Exception):
    """Base class for all portwatch errors."""


class ConfigError(PortWatchError):
    """Raised when monitor or guard configuration is invalid."""


class KillError(PortWatchError):
    """Raised when a single process could not be terminated."""

    def __init__(self, pid: int, message: str) -> None:
        super().__init__(f"Failed to kill process {pid}: {message}")
        self.pid = pid
        self.reason = message


class BulkKillError(PortWatchError):
    """Raised when one or more kills in a bulk operation failed.

    Attributes:
        failures: Mapping of pid to the error message for that pid.
        killed: Pids that were terminated successfully.
    """

    def __init__(self, failures: dict[int, str], killed: list[int] | None = None) -> None:
        details = "; ".join(f"PID {pid}: {reason}" for pid, reason in sorted(failures.items()))
        super().__init__(f"Some processes failed to kill: {details}")
        self.failures = failures
        self.killed = killed or []


class PortBusyError(PortWatchError):
    """Raised when a port stays occupied and a command must not proceed."""

    def __init__(self, port: int, message: str) -> None:
        super().__init__(message)
        self.port = port

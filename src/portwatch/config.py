"""Configuration for the process monitor and the port guard."""

from dataclasses import dataclass, field
from pathlib import Path

from portwatch.exceptions import ConfigError
from portwatch.filters import FilterConfig

DEFAULT_START_PORT = 2000
DEFAULT_END_PORT = 6000
DEFAULT_INTERVAL = 2.0
DEFAULT_GRACE_PERIOD = 0.5
DEFAULT_HISTORY_SIZE = 100
DEFAULT_HISTORY_FILE = Path.home() / ".port-kill-history.json"
DEFAULT_RESERVATION_FILE = Path.home() / ".port-kill" / "reservations.json"
DEFAULT_GUARD_PORTS = (3000, 3001, 3002, 8000, 8080, 9000)

# Common development ports used by "reset" style one-shot cleanups.
RESET_PORTS = (3000, 5000, 8000, 5432, 3306, 6379, 27017, 8080, 9000)


def parse_port_spec(spec: str) -> list[int]:
    """
    Parse a port specification into a sorted list of unique ports.

    Accepts comma separated single ports and inclusive ranges, e.g.
    ``"3000,8000-8002"``.

    Raises:
        ConfigError: If any item is malformed or out of range.
    """
    ports: set[int] = set()
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        if "-" in item:
            start_str, _, end_str = item.partition("-")
            try:
                start, end = int(start_str), int(end_str)
            except ValueError:
                raise ConfigError(f"Invalid port specification: '{item}'") from None
            if start > end:
                raise ConfigError(f"Invalid port range '{item}': start is greater than end")
            candidates = range(start, end + 1)
        else:
            try:
                candidates = [int(item)]
            except ValueError:
                raise ConfigError(f"Invalid port specification: '{item}'") from None
        for port in candidates:
            if not 1 <= port <= 65535:
                raise ConfigError(f"Port {port} is not valid")
            ports.add(port)
    if not ports:
        raise ConfigError("At least one port must be specified")
    return sorted(ports)


def describe_ports(ports: list[int]) -> str:
    """Human description of a port list for log lines."""
    if len(ports) <= 10:
        return "ports: " + ", ".join(str(p) for p in ports)
    return f"{len(ports)} ports: {ports[0]} to {ports[-1]}"


@dataclass(frozen=True)
class MonitorConfig:
    """Everything the process monitor needs, validated before start."""

    ports: tuple[int, ...] = tuple(range(DEFAULT_START_PORT, DEFAULT_END_PORT + 1))
    filters: FilterConfig = field(default_factory=FilterConfig)
    docker: bool = False
    verbose: bool = False
    performance: bool = False
    interval: float = DEFAULT_INTERVAL
    grace_period: float = DEFAULT_GRACE_PERIOD
    history_file: Path | None = DEFAULT_HISTORY_FILE
    history_size: int = DEFAULT_HISTORY_SIZE

    @classmethod
    def from_range(cls, start: int, end: int, **kwargs) -> "MonitorConfig":
        if start > end:
            raise ConfigError("Start port cannot be greater than end port")
        return cls(ports=tuple(range(start, end + 1)), **kwargs)

    @classmethod
    def from_spec(cls, spec: str, **kwargs) -> "MonitorConfig":
        return cls(ports=tuple(parse_port_spec(spec)), **kwargs)

    def validate(self) -> None:
        """
        Reject configurations that must not reach the monitor.

        Raises:
            ConfigError: On an empty port list, out of range ports, a bad
                interval or history size, or invalid filter rules.
        """
        if not self.ports:
            raise ConfigError("At least one port must be specified")
        for port in self.ports:
            if not 1 <= port <= 65535:
                raise ConfigError(f"Port {port} is not valid")
        if self.interval <= 0:
            raise ConfigError("Scan interval must be positive")
        if self.grace_period < 0:
            raise ConfigError("Grace period cannot be negative")
        if self.history_size < 1:
            raise ConfigError("History size must be at least 1")
        self.filters.validate()


@dataclass(frozen=True)
class GuardConfig:
    """Port guard settings."""

    watched_ports: tuple[int, ...] = DEFAULT_GUARD_PORTS
    auto_resolve: bool = False
    reservation_file: Path = DEFAULT_RESERVATION_FILE
    interval: float = DEFAULT_INTERVAL
    interception: bool = True

    def validate(self) -> None:
        if not self.watched_ports:
            raise ConfigError("Port guard needs at least one watched port")
        for port in self.watched_ports:
            if not 1 <= port <= 65535:
                raise ConfigError(f"Guard port {port} is not valid")
        if self.interval <= 0:
            raise ConfigError("Guard interval must be positive")

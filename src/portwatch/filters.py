"""Filter engine deciding which discovered processes are shown."""

import logging
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

from portwatch.exceptions import ConfigError
from portwatch.models import ProcessDescriptor, Snapshot

log = logging.getLogger(__name__)

SMART_IGNORE_PORTS = frozenset(
    {
        22,  # SSH
        25,  # SMTP
        53,  # DNS
        80,
        443,
        993,  # IMAPS
        995,  # POP3S
        1433,  # SQL Server
        3306,  # MySQL
        5432,  # PostgreSQL
        6379,  # Redis
        27017,  # MongoDB
        5353,  # mDNS/Bonjour
        5000,  # AirPlay receiver
        7000,  # AirPlay receiver
        8080,
        8443,
    }
)

SMART_IGNORE_PROCESSES = frozenset(
    {
        "Chrome", "Safari", "Firefox", "Edge",
        "ControlCe", "rapportd", "AirPlayXP",
        "systemd", "init", "kthreadd",
        "svchost", "explorer", "winlogon",
        "docker", "dockerd", "containerd",
        "nginx", "apache2", "httpd",
        "mysqld", "postgres", "redis-server",
        "ssh", "sshd",
    }
)

SMART_IGNORE_GROUPS = frozenset({"Web Server", "Database"})


@dataclass(frozen=True)
class FilterConfig:
    """User supplied ignore rules and the optional allow-list."""

    ignore_ports: frozenset[int] = frozenset()
    ignore_processes: frozenset[str] = frozenset()
    ignore_patterns: tuple[str, ...] = ()
    ignore_groups: frozenset[str] = frozenset()
    only_groups: frozenset[str] = frozenset()
    smart_filter: bool = False

    def validate(self) -> None:
        for port in self.ignore_ports:
            if not 1 <= port <= 65535:
                raise ConfigError(f"Ignore port {port} is not valid")
        for name in self.ignore_processes:
            if not name.strip():
                raise ConfigError("Ignore process names cannot be empty")
        for pattern in self.ignore_patterns:
            if not pattern.strip():
                raise ConfigError("Ignore patterns cannot be empty")

    def effective(self) -> "FilterConfig":
        """Return a copy with the smart-filter defaults merged in."""
        if not self.smart_filter:
            return self
        return FilterConfig(
            ignore_ports=self.ignore_ports | SMART_IGNORE_PORTS,
            ignore_processes=self.ignore_processes | SMART_IGNORE_PROCESSES,
            ignore_patterns=self.ignore_patterns,
            # smart defaults never knock out a group the user allow-listed
            ignore_groups=self.ignore_groups | (SMART_IGNORE_GROUPS - self.only_groups),
            only_groups=self.only_groups,
            smart_filter=False,
        )

    @property
    def is_active(self) -> bool:
        return bool(
            self.ignore_ports
            or self.ignore_processes
            or self.ignore_patterns
            or self.ignore_groups
            or self.only_groups
            or self.smart_filter
        )


@dataclass(slots=True, frozen=True)
class FilterStats:
    """Summary of the rules in effect."""

    ignored_ports: int
    ignored_processes: int
    ignored_patterns: int
    ignored_groups: int
    only_groups: tuple[str, ...] = field(default_factory=tuple)

    def describe(self) -> str:
        parts = []
        if self.ignored_ports:
            parts.append(f"{self.ignored_ports} ports")
        if self.ignored_processes:
            parts.append(f"{self.ignored_processes} process names")
        if self.ignored_patterns:
            parts.append(f"{self.ignored_patterns} patterns")
        if self.ignored_groups:
            parts.append(f"{self.ignored_groups} groups")
        text = "ignoring " + ", ".join(parts) if parts else "no ignore rules"
        if self.only_groups:
            text += f"; only showing {', '.join(self.only_groups)}"
        return text


def filter_stats(config: FilterConfig) -> FilterStats:
    effective = config.effective()
    return FilterStats(
        ignored_ports=len(effective.ignore_ports),
        ignored_processes=len(effective.ignore_processes),
        ignored_patterns=len(effective.ignore_patterns),
        ignored_groups=len(effective.ignore_groups),
        only_groups=tuple(sorted(effective.only_groups)),
    )


def exclusion_reason(process: ProcessDescriptor, config: FilterConfig) -> str | None:
    """
    Return why ``process`` is excluded, or None when it is kept.

    Ignore rules are checked first and always win; the allow-list is a final
    inclusion gate that only applies when non-empty.
    """
    config = config.effective()
    names = {process.name, process.display_name}

    if process.port in config.ignore_ports:
        return f"port {process.port} is ignored"
    if names & config.ignore_processes:
        return "process name is ignored"
    for pattern in config.ignore_patterns:
        if any(fnmatchcase(name, pattern) for name in names):
            return f"process name matches pattern '{pattern}'"
    if process.process_group is not None and process.process_group in config.ignore_groups:
        return f"group '{process.process_group}' is ignored"
    if config.only_groups and process.process_group not in config.only_groups:
        return "group is not in the allow-list"
    return None


def should_keep(process: ProcessDescriptor, config: FilterConfig) -> bool:
    return exclusion_reason(process, config) is None


def filter_processes(
    processes: list[ProcessDescriptor],
    config: FilterConfig,
    logger: logging.Logger | None = None,
) -> list[ProcessDescriptor]:
    """Drop excluded processes, logging each one."""
    logger = logger or log
    if not config.is_active:
        return list(processes)
    effective = config.effective()
    kept = []
    for process in processes:
        reason = exclusion_reason(process, effective)
        if reason is None:
            kept.append(process)
        else:
            logger.info(
                "Ignoring process %s (PID %d) on port %d: %s",
                process.name,
                process.pid,
                process.port,
                reason,
            )
    return kept


def filter_snapshot(
    snapshot: Snapshot, config: FilterConfig, logger: logging.Logger | None = None
) -> Snapshot:
    kept = filter_processes(list(snapshot.values()), config, logger)
    return {process.port: process for process in kept}

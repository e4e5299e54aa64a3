"""Data models for portwatch."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

HOST_PROCESS_ID = "host-process"
HOST_PROCESS_NAME = "Host Process"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_time(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO timestamp, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True, frozen=True)
class RawProcess:
    """A listener as reported by a port inspector, before classification."""

    pid: int
    port: int
    command: str
    name: str
    command_line: str | None = None
    working_directory: str | None = None
    container_id: str | None = None
    container_name: str | None = None


@dataclass(slots=True, frozen=True)
class ProcessDescriptor:
    """Immutable description of one process bound to one port."""

    pid: int
    port: int
    command: str
    name: str
    display_name: str
    container_id: str | None = None
    container_name: str | None = None
    command_line: str | None = None  # verbose mode only
    working_directory: str | None = None  # verbose mode only
    process_group: str | None = None
    project_name: str | None = None
    cpu_percent: float | None = None  # performance mode only
    memory_bytes: int | None = None
    memory_percent: float | None = None

    def __post_init__(self) -> None:
        if self.pid <= 0:
            raise ValueError(f"pid must be positive, got {self.pid}")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")

    def identity(self) -> tuple:
        """Fields that identify the listener, without volatile metrics."""
        return (
            self.pid,
            self.port,
            self.name,
            self.command,
            self.container_id,
            self.command_line,
            self.working_directory,
        )

    @property
    def short_name(self) -> str:
        """Executable name without directories or common binary extensions."""
        name = self.name.replace("\\", "/").rsplit("/", 1)[-1]
        for ext in (".exe", ".dll", ".so"):
            if name.endswith(ext):
                name = name[: -len(ext)]
        return name

    def description(self) -> str:
        """Detailed one-line description used by console output."""
        parts = [f"{self.short_name} on port {self.port}"]
        if self.command_line and self.command_line != self.name:
            parts.append(f"({self.command_line})")
        if self.working_directory:
            parts.append(f"in {self.working_directory}")
        if self.container_id and self.container_name and self.container_id != HOST_PROCESS_ID:
            parts.append(f"[Docker: {self.container_name}]")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Snapshot = dict[int, ProcessDescriptor]


@dataclass(slots=True)
class ProcessUpdate:
    """Change notification published when the snapshot changes."""

    processes: Snapshot
    count: int = 0

    def __post_init__(self) -> None:
        self.count = len(self.processes)


@dataclass(slots=True, frozen=True)
class KillHistoryEntry:
    """Record of a process that was terminated."""

    pid: int
    port: int
    process_name: str
    killed_at: datetime
    killed_by: str  # "user", "bulk" or "auto"
    process_group: str | None = None
    project_name: str | None = None
    command_line: str | None = None
    working_directory: str | None = None

    @classmethod
    def from_process(cls, process: ProcessDescriptor, killed_by: str) -> "KillHistoryEntry":
        return cls(
            pid=process.pid,
            port=process.port,
            process_name=process.name,
            killed_at=utcnow(),
            killed_by=killed_by,
            process_group=process.process_group,
            project_name=process.project_name,
            command_line=process.command_line,
            working_directory=process.working_directory,
        )

    def display_name(self) -> str:
        if self.process_group and self.project_name:
            return f"{self.process_group} ({self.project_name})"
        if self.process_group:
            return self.process_group
        if self.project_name:
            return f"{self.process_name} ({self.project_name})"
        return self.process_name

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["killed_at"] = self.killed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KillHistoryEntry":
        return cls(
            pid=int(data["pid"]),
            port=int(data["port"]),
            process_name=str(data["process_name"]),
            killed_at=_parse_time(data["killed_at"]) or utcnow(),
            killed_by=str(data.get("killed_by", "user")),
            process_group=data.get("process_group"),
            project_name=data.get("project_name"),
            command_line=data.get("command_line"),
            working_directory=data.get("working_directory"),
        )


@dataclass(slots=True, frozen=True)
class PortReservation:
    """A time-bounded claim of a port by a project."""

    port: int
    project_name: str
    process_name: str
    reserved_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    auto_renew: bool = True  # informational only

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "project_name": self.project_name,
            "process_name": self.process_name,
            "reserved_at": self.reserved_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "auto_renew": self.auto_renew,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortReservation":
        return cls(
            port=int(data["port"]),
            project_name=str(data["project_name"]),
            process_name=str(data.get("process_name", "")),
            reserved_at=_parse_time(data.get("reserved_at")) or utcnow(),
            expires_at=_parse_time(data.get("expires_at")),
            auto_renew=bool(data.get("auto_renew", True)),
        )


class ConflictKind(Enum):
    """Kinds of port conflict."""

    PORT_IN_USE = "port_in_use"


class ConflictState(Enum):
    """Per-port guard state within one cycle."""

    IDLE = "idle"
    CONFLICT = "conflict"
    RESOLVED = "resolved"
    FLAGGED = "flagged"


class PortResolution(Enum):
    """How a conflict was handled."""

    KILL_EXISTING = "kill_existing"
    NOTIFY_USER = "notify_user"


@dataclass(slots=True)
class PortConflict:
    """Two processes observed on the same watched port in one scan."""

    port: int
    existing_process: ProcessDescriptor
    new_process: ProcessDescriptor
    kind: ConflictKind = ConflictKind.PORT_IN_USE
    state: ConflictState = ConflictState.CONFLICT
    resolution: PortResolution | None = None
    killed_pid: int | None = None


@dataclass(slots=True)
class GuardStatus:
    """Point-in-time summary of the port guard."""

    is_active: bool
    watched_ports: list[int]
    active_reservations: list[PortReservation]
    conflicts_resolved: int
    intercepted_commands: int
    auto_resolve_enabled: bool
    last_activity: datetime | None = None


@dataclass(slots=True, frozen=True)
class StatusSummary:
    """Compact summary of a snapshot for status lines and headers."""

    count: int
    high_cpu: int
    high_memory: int
    containers: int
    groups: tuple[str, ...]

    @classmethod
    def from_snapshot(cls, processes: Snapshot) -> "StatusSummary":
        high_cpu = sum(1 for p in processes.values() if (p.cpu_percent or 0.0) > 50.0)
        high_memory = sum(1 for p in processes.values() if (p.memory_percent or 0.0) > 10.0)
        containers = sum(
            1
            for p in processes.values()
            if p.container_id is not None and p.container_id != HOST_PROCESS_ID
        )
        groups = tuple(sorted({p.process_group for p in processes.values() if p.process_group}))
        return cls(len(processes), high_cpu, high_memory, containers, groups)

    @property
    def text(self) -> str:
        parts = [str(self.count)]
        if self.high_cpu:
            parts.append(f"cpu:{self.high_cpu}")
        if self.high_memory:
            parts.append(f"mem:{self.high_memory}")
        if self.containers:
            parts.append(f"docker:{self.containers}")
        return " ".join(parts)

    @property
    def tooltip(self) -> str:
        if self.count == 0:
            return "No development processes running"
        parts = [f"{self.count} development process(es) running"]
        if self.groups:
            parts.append(f"Groups: {', '.join(self.groups)}")
        if self.high_cpu:
            parts.append(f"{self.high_cpu} high CPU processes")
        if self.high_memory:
            parts.append(f"{self.high_memory} high memory processes")
        if self.containers:
            parts.append(f"{self.containers} Docker containers")
        return " | ".join(parts)

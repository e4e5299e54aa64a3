"""Port guard daemon: conflict detection, auto-resolution and port reservations."""

import json
import logging
import os
import socket
import sys
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path

from portwatch.config import GuardConfig
from portwatch.exceptions import ConfigError, KillError, PortBusyError
from portwatch.models import (
    ConflictState,
    GuardStatus,
    PortConflict,
    PortReservation,
    PortResolution,
    ProcessDescriptor,
    utcnow,
)
from portwatch.monitor import ProcessMonitor
from portwatch.storage import write_json

log = logging.getLogger(__name__)

RESERVATION_TTL = timedelta(hours=24)
RESOLVE_SETTLE_SECONDS = 0.5

DEV_COMMANDS = frozenset(
    {
        "npm", "yarn", "pnpm", "npx", "node", "bun", "deno",
        "python", "python3", "uvicorn", "flask", "django-admin",
        "ruby", "rails", "cargo", "go", "java", "mvn", "gradle", "php",
    }
)
DEV_ARGS = ("start", "dev", "serve", "run", "server", "http.server", "runserver")


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Try a transient bind on ``host:port``; success means the port is free."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if sys.platform != "win32":
            # A port left in TIME_WAIT by a killed server is still bindable.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _check_port(port: int) -> None:
    if not 1 <= port <= 65535:
        raise ConfigError(f"Port {port} is not valid")


def find_available_port(start: int, max_attempts: int = 100, host: str = "127.0.0.1") -> int | None:
    """Return the first free port in ``start .. start + max_attempts - 1``."""
    for port in range(start, min(start + max_attempts, 65536)):
        if is_port_available(port, host):
            return port
    return None


def is_development_server_command(command: str, args: list[str]) -> bool:
    """Heuristic: a known dev tool invoked with a run/serve/start style argument."""
    name = os.path.basename(command.replace("\\", "/")).lower()
    if name.endswith(".exe"):
        name = name[:-4]
    is_dev_command = name in DEV_COMMANDS or name.startswith("python")
    is_dev_args = any(keyword in arg for arg in args for keyword in DEV_ARGS)
    return is_dev_command and is_dev_args


def extract_port(args: list[str]) -> int | None:
    """
    Find the port a command will bind.

    Recognizes ``--port=N``, ``-p=N``, ``--port N``, ``-p N`` and a bare
    number above 1024.
    """
    for i, arg in enumerate(args):
        value = None
        if arg.startswith(("--port=", "-p=")):
            value = arg.split("=", 1)[1]
        elif arg in ("--port", "-p") and i + 1 < len(args):
            value = args[i + 1]
        if value is not None:
            try:
                port = int(value)
            except ValueError:
                continue
            if 1 <= port <= 65535:
                return port
            continue
        if arg.isdigit():
            port = int(arg)
            if 1024 < port <= 65535:
                return port
    return None


class PortGuardDaemon:
    """
    Background guard over a set of watched ports.

    Each cycle it groups the current listeners by port; a watched port with
    more than one listener is a conflict. With auto-resolve on, the lower pid
    is killed as the presumed older process. Conflict state is never carried
    between cycles. Expired reservations are purged once per cycle.
    """

    def __init__(
        self,
        monitor: ProcessMonitor,
        config: GuardConfig,
        logger: logging.Logger | None = None,
        sleep=time.sleep,
    ) -> None:
        config.validate()
        self._monitor = monitor
        self._config = config
        self._log = logger or log
        self._sleep = sleep
        self.interception_enabled = config.interception

        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._reservations: dict[int, PortReservation] = {}
        self._conflicts_resolved = 0
        self._intercepted: set[str] = set()
        self._last_activity: datetime | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def watched_ports(self) -> list[int]:
        return list(self._config.watched_ports)

    @property
    def auto_resolve(self) -> bool:
        return self._config.auto_resolve

    @property
    def conflicts_resolved(self) -> int:
        with self._lock:
            return self._conflicts_resolved

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Load reservations and start the guard thread."""
        if self.is_running:
            return
        self.load_reservations()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._guard_loop, daemon=True, name="PortGuard")
        self._thread.start()
        self._log.info("Port guard started, watching ports: %s", self.watched_ports)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.save_reservations()
        self._log.info("Port guard stopped")

    def _guard_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_cycle()
            self._stop_event.wait(timeout=self._config.interval)

    def run_cycle(self) -> list[PortConflict]:
        """One guard pass: conflict check then reservation expiry."""
        conflicts: list[PortConflict] = []
        try:
            conflicts = self.check_conflicts()
        except Exception:
            self._log.exception("Error checking port conflicts")
        try:
            self.cleanup_expired()
        except Exception:
            self._log.exception("Error cleaning up expired reservations")
        with self._lock:
            self._last_activity = utcnow()
        return conflicts

    def check_conflicts(self) -> list[PortConflict]:
        """Detect (and, with auto-resolve, resolve) conflicts on watched ports."""
        by_port: dict[int, list[ProcessDescriptor]] = defaultdict(list)
        for process in self._monitor.scan_listeners(self._config.watched_ports):
            by_port[process.port].append(process)

        conflicts = []
        for port in sorted(by_port):
            processes = sorted(by_port[port], key=lambda p: p.pid)
            if len(processes) < 2:
                continue
            conflict = PortConflict(port, existing_process=processes[0], new_process=processes[1])
            self._log.warning(
                "Port conflict detected on port %d: %s (PID %d) vs %s (PID %d)",
                port,
                conflict.existing_process.name,
                conflict.existing_process.pid,
                conflict.new_process.name,
                conflict.new_process.pid,
            )
            self._resolve(conflict)
            conflicts.append(conflict)
        return conflicts

    def _resolve(self, conflict: PortConflict) -> None:
        if not self._config.auto_resolve:
            conflict.state = ConflictState.FLAGGED
            conflict.resolution = PortResolution.NOTIFY_USER
            self._log.info("Port conflict on %d - manual resolution required", conflict.port)
            return

        # Lower pid stands in for "bound first"; real start times are not compared.
        victim = min(conflict.existing_process, conflict.new_process, key=lambda p: p.pid)
        self._log.info(
            "Auto-resolving port conflict on %d by killing %s (PID: %d)",
            conflict.port,
            victim.name,
            victim.pid,
        )
        try:
            self._monitor.kill(victim.pid, context="auto", process=victim)
        except KillError as e:
            self._log.warning("Failed to resolve conflict on port %d: %s", conflict.port, e)
            return

        conflict.state = ConflictState.RESOLVED
        conflict.resolution = PortResolution.KILL_EXISTING
        conflict.killed_pid = victim.pid
        with self._lock:
            self._conflicts_resolved += 1
        self._log.info("Port conflict resolved on port %d", conflict.port)

    def reserve(self, port: int, project_name: str, process_name: str) -> PortReservation:
        """
        Create or overwrite a 24 hour reservation for ``port``.

        Raises:
            ConfigError: If ``port`` is outside 1..65535.
        """
        _check_port(port)
        now = utcnow()
        reservation = PortReservation(
            port=port,
            project_name=project_name,
            process_name=process_name,
            reserved_at=now,
            expires_at=now + RESERVATION_TTL,
            auto_renew=True,
        )
        with self._lock:
            self._reservations[port] = reservation
        self._log.info("Port %d reserved for project '%s'", port, project_name)
        self.save_reservations()
        return reservation

    def release(self, port: int) -> bool:
        _check_port(port)
        with self._lock:
            existed = self._reservations.pop(port, None) is not None
        self._log.info("Port %d reservation released", port)
        self.save_reservations()
        return existed

    def reservations(self) -> dict[int, PortReservation]:
        with self._lock:
            return dict(self._reservations)

    def cleanup_expired(self, now: datetime | None = None) -> list[int]:
        """Drop reservations past their expiry; persists only when something changed."""
        now = now or utcnow()
        with self._lock:
            expired = [port for port, r in self._reservations.items() if r.is_expired(now)]
            for port in expired:
                del self._reservations[port]
        for port in expired:
            self._log.info("Cleaned up expired reservation for port %d", port)
        if expired:
            self.save_reservations()
        return expired

    def load_reservations(self) -> None:
        """Load the reservation table; a missing or unreadable file means none."""
        path: Path = self._config.reservation_file
        loaded: dict[int, PortReservation] = {}
        if path.is_file():
            try:
                data = json.loads(path.read_text())
                for key, value in data.items():
                    value = dict(value)
                    value.setdefault("port", int(key))
                    reservation = PortReservation.from_dict(value)
                    loaded[reservation.port] = reservation
            except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
                self._log.warning("Ignoring unreadable reservation file %s: %s", path, e)
                loaded = {}
        with self._lock:
            self._reservations = loaded
        self._log.info("Loaded %d port reservations", len(loaded))

    def save_reservations(self) -> bool:
        path: Path = self._config.reservation_file
        with self._save_lock:
            with self._lock:
                data = {str(port): r.to_dict() for port, r in sorted(self._reservations.items())}
            try:
                write_json(path, data)
            except OSError as e:
                self._log.warning("Failed to save reservations to %s: %s", path, e)
                return False
        return True

    def intercept_command(self, command: str, args: list[str]) -> None:
        """
        Pre-flight check for a command that may bind a watched port.

        Commands that do not look like a dev server, or that target an
        unwatched or free port, pass through untouched.

        Raises:
            PortBusyError: If the port is busy and auto-resolve is off, or the
                port is still occupied after killing its listeners.
        """
        with self._lock:
            self._intercepted.add(" ".join([command, *args]))
        if not self.interception_enabled:
            return
        if not is_development_server_command(command, args):
            return
        port = extract_port(args)
        if port is None or port not in self._config.watched_ports:
            return

        self._log.info("Intercepting command: %s - checking port %d", command, port)
        if is_port_available(port):
            self._log.info("Port %d is available, command can proceed", port)
            return
        if not self._config.auto_resolve:
            raise PortBusyError(port, f"Port {port} is busy and auto-resolve is disabled")

        self._log.info("Port %d is busy, attempting to resolve conflict", port)
        self._free_port(port)
        self._log.info("Port %d conflict resolved, command can proceed", port)

    def _free_port(self, port: int) -> None:
        occupants = sorted(self._monitor.scan_listeners([port]), key=lambda p: p.pid)
        if not occupants:
            raise PortBusyError(port, f"No conflicting process found on port {port}")
        for process in occupants:
            self._log.info(
                "Killing conflicting process %s (PID: %d) on port %d", process.name, process.pid, port
            )
            try:
                self._monitor.kill(process.pid, context="auto", process=process)
            except KillError as e:
                raise PortBusyError(port, f"Could not free port {port}: {e}") from e

        self._sleep(RESOLVE_SETTLE_SECONDS)
        if not is_port_available(port):
            raise PortBusyError(port, f"Port {port} is still busy after killing process")

    def intercepted_commands_count(self) -> int:
        with self._lock:
            return len(self._intercepted)

    def status(self) -> GuardStatus:
        with self._lock:
            return GuardStatus(
                is_active=self.is_running,
                watched_ports=list(self._config.watched_ports),
                active_reservations=list(self._reservations.values()),
                conflicts_resolved=self._conflicts_resolved,
                intercepted_commands=len(self._intercepted),
                auto_resolve_enabled=self._config.auto_resolve,
                last_activity=self._last_activity,
            )

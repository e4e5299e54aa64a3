"""Port inspector adapters: find the processes listening on a set of ports.

Each inspector enumerates listeners with a single batched call per scan and
resolves per-pid details through psutil. Failures for one port, one line or
one pid are logged and treated as "nothing listening"; they never abort the
batch.
"""

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterable

import psutil

from portwatch.models import RawProcess

log = logging.getLogger(__name__)

# Above this many ports lsof lists every TCP listener instead of one -i per port.
LSOF_BATCH_LIMIT = 100


def truncate_command_line(cmd: str) -> str:
    """Reduce the executable to its basename and keep all arguments."""
    parts = cmd.split()
    if not parts:
        return cmd
    executable = parts[0].replace("\\", "/").rsplit("/", 1)[-1]
    return " ".join([executable, *parts[1:]])


def truncate_directory_path(path: str) -> str:
    """Keep the last two segments of a directory, e.g. ``user/project``."""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    if len(parts) >= 2:
        return "/".join(parts[-2:])
    if len(parts) == 1 and parts[0]:
        return parts[0]
    return path


def _port_from_address(address: str) -> int | None:
    port_str = address.rsplit(":", 1)[-1]
    try:
        port = int(port_str)
    except ValueError:
        return None
    return port if 1 <= port <= 65535 else None


def parse_lsof_output(output: str, ports: set[int]) -> list[tuple[int, int, str]]:
    """
    Parse ``lsof -P -n -i`` tabular output.

    Returns:
        (pid, port, command) triples for listeners on ``ports``.
    """
    found = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 9 or parts[0] == "COMMAND":
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            log.debug("Skipping unparseable lsof line: %r", line)
            continue
        port = _port_from_address(parts[8])
        if port is None or port not in ports or pid <= 0:
            continue
        found.append((pid, port, parts[0]))
    return found


def parse_netstat_output(output: str, ports: set[int]) -> list[tuple[int, int]]:
    """Parse Windows ``netstat -ano`` output into (pid, port) pairs."""
    found = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0].upper() != "TCP" or parts[3].upper() != "LISTENING":
            continue
        port = _port_from_address(parts[1])
        try:
            pid = int(parts[4])
        except ValueError:
            log.debug("Skipping unparseable netstat line: %r", line)
            continue
        if port is None or port not in ports or pid <= 0:
            continue
        found.append((pid, port))
    return found


class PortInspector(ABC):
    """Base class for platform port inspectors."""

    def __init__(self, verbose: bool = False, logger: logging.Logger | None = None) -> None:
        self.verbose = verbose
        self._log = logger or log

    @abstractmethod
    def _enumerate(self, ports: set[int]) -> list[tuple[int, int, str | None]]:
        """Return (pid, port, command-hint) for listeners on ``ports``."""

    @abstractmethod
    def ports_for_pid(self, pid: int) -> set[int]:
        """Reverse lookup: the TCP ports ``pid`` is listening on."""

    def listeners(self, ports: Iterable[int]) -> list[RawProcess]:
        """
        Return every listener on ``ports``, possibly several per port.

        Listeners whose details can no longer be read (the process exited) are
        dropped.
        """
        port_set = set(ports)
        if not port_set:
            return []
        try:
            found = self._enumerate(port_set)
        except Exception as e:
            self._log.error("Port enumeration failed: %s", e)
            return []

        seen: set[tuple[int, int]] = set()
        result = []
        for pid, port, hint in found:
            if (pid, port) in seen:
                continue
            seen.add((pid, port))
            raw = self.details(pid, port, hint)
            if raw is not None:
                result.append(raw)
        return sorted(result, key=lambda r: (r.port, r.pid))

    def scan(self, ports: Iterable[int]) -> dict[int, RawProcess]:
        """One listener per occupied port (the lowest pid when several)."""
        snapshot: dict[int, RawProcess] = {}
        for raw in self.listeners(ports):
            snapshot.setdefault(raw.port, raw)
        return snapshot

    def details(self, pid: int, port: int, hint: str | None = None) -> RawProcess | None:
        """Resolve command, name and (in verbose mode) command line and cwd."""
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                try:
                    name = proc.name()
                except psutil.AccessDenied:
                    name = hint or "unknown"
                try:
                    command = proc.exe() or name
                except (psutil.AccessDenied, OSError):
                    command = name
                command_line = working_directory = None
                if self.verbose:
                    command_line, working_directory = self._verbose_info(proc)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._log.debug("Process %d on port %d exited during lookup", pid, port)
            return None
        except psutil.AccessDenied:
            name = command = hint or "unknown"
            command_line = working_directory = None

        return RawProcess(
            pid=pid,
            port=port,
            command=command,
            name=name.replace("\\", "/").rsplit("/", 1)[-1],
            command_line=command_line,
            working_directory=working_directory,
        )

    def _verbose_info(self, proc: psutil.Process) -> tuple[str | None, str | None]:
        command_line = working_directory = None
        try:
            cmdline = " ".join(proc.cmdline())
            if cmdline:
                command_line = truncate_command_line(cmdline)
        except (psutil.AccessDenied, OSError):
            self._log.debug("Cannot read command line of PID %d", proc.pid)
        try:
            cwd = proc.cwd()
            if cwd and cwd != "/":
                working_directory = truncate_directory_path(cwd)
        except (psutil.AccessDenied, OSError):
            self._log.debug("Cannot read working directory of PID %d", proc.pid)
        return command_line, working_directory


class PsutilInspector(PortInspector):
    """Enumerate listeners with ``psutil.net_connections``."""

    def _connections(self):
        return [
            conn
            for conn in psutil.net_connections(kind="tcp")
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.pid
        ]

    def _enumerate(self, ports: set[int]) -> list[tuple[int, int, str | None]]:
        return [
            (conn.pid, conn.laddr.port, None)
            for conn in self._connections()
            if conn.laddr.port in ports
        ]

    def ports_for_pid(self, pid: int) -> set[int]:
        try:
            return {conn.laddr.port for conn in self._connections() if conn.pid == pid}
        except psutil.AccessDenied as e:
            self._log.warning("Cannot list connections: %s", e)
            return set()


class LsofInspector(PortInspector):
    """Enumerate listeners with one ``lsof`` invocation."""

    def _run(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["lsof", *args], capture_output=True, text=True, timeout=10
            )
        except FileNotFoundError:
            self._log.error("lsof not found; cannot inspect ports")
            return ""
        except subprocess.TimeoutExpired:
            self._log.error("lsof timed out")
            return ""
        # lsof exits 1 when nothing matches
        return result.stdout

    def _enumerate(self, ports: set[int]) -> list[tuple[int, int, str | None]]:
        args = ["-sTCP:LISTEN", "-P", "-n"]
        if len(ports) > LSOF_BATCH_LIMIT:
            args += ["-iTCP"]
        else:
            for port in sorted(ports):
                args += ["-i", f":{port}"]
        return list(parse_lsof_output(self._run(args), ports))

    def ports_for_pid(self, pid: int) -> set[int]:
        output = self._run(["-a", "-p", str(pid), "-iTCP", "-sTCP:LISTEN", "-P", "-n"])
        return {port for _, port, _ in parse_lsof_output(output, set(range(1, 65536)))}


class NetstatInspector(PortInspector):
    """Enumerate listeners with ``netstat -ano`` (Windows)."""

    def _run(self) -> str:
        try:
            result = subprocess.run(
                ["netstat", "-ano", "-p", "TCP"], capture_output=True, text=True, timeout=10
            )
        except FileNotFoundError:
            self._log.error("netstat not found; cannot inspect ports")
            return ""
        except subprocess.TimeoutExpired:
            self._log.error("netstat timed out")
            return ""
        return result.stdout

    def _enumerate(self, ports: set[int]) -> list[tuple[int, int, str | None]]:
        return [(pid, port, None) for pid, port in parse_netstat_output(self._run(), ports)]

    def ports_for_pid(self, pid: int) -> set[int]:
        pairs = parse_netstat_output(self._run(), set(range(1, 65536)))
        return {port for found_pid, port in pairs if found_pid == pid}


def default_inspector(verbose: bool = False, logger: logging.Logger | None = None) -> PortInspector:
    """Pick the inspector for the current platform."""
    if sys.platform.startswith("win"):
        return NetstatInspector(verbose, logger)
    if sys.platform.startswith("linux"):
        return PsutilInspector(verbose, logger)
    return LsofInspector(verbose, logger)

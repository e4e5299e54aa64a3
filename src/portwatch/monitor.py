"""Process monitoring engine for portwatch."""

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import replace
from queue import Queue

from portwatch.classifier import classify
from portwatch.config import MonitorConfig, describe_ports
from portwatch.containers import DockerInspector
from portwatch.exceptions import BulkKillError, KillError
from portwatch.filters import filter_processes
from portwatch.history import KillHistory
from portwatch.inspector import PortInspector, default_inspector
from portwatch.metrics import SystemMetrics
from portwatch.models import (
    HOST_PROCESS_ID,
    HOST_PROCESS_NAME,
    KillHistoryEntry,
    ProcessDescriptor,
    ProcessUpdate,
    Snapshot,
)
from portwatch.terminate import ProcessTerminator, PsutilTerminator, terminate

log = logging.getLogger(__name__)

UpdateListener = Callable[[ProcessUpdate], None]


def snapshots_equivalent(old: Snapshot, new: Snapshot, ignore_metrics: bool) -> bool:
    """Compare snapshots, optionally ignoring the volatile metric fields."""
    if not ignore_metrics:
        return old == new
    if old.keys() != new.keys():
        return False
    return all(old[port].identity() == new[port].identity() for port in old)


class ProcessMonitor:
    """
    Watches a port set and owns the current snapshot of listening processes.

    Runs in a separate daemon thread and pushes a ProcessUpdate to a
    thread-safe Queue (and any registered listeners) whenever the snapshot
    changes. Scan errors are logged and the loop carries on.
    """

    def __init__(
        self,
        config: MonitorConfig,
        update_queue: Queue[ProcessUpdate] | None = None,
        *,
        inspector: PortInspector | None = None,
        terminator: ProcessTerminator | None = None,
        containers: DockerInspector | None = None,
        metrics: SystemMetrics | None = None,
        history: KillHistory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the ProcessMonitor.

        Args:
            config: Validated monitor configuration.
            update_queue: Queue that receives a ProcessUpdate on each change.
            inspector: Port inspector; the platform default when omitted.
            terminator: Kill capability; psutil-backed when omitted.
            containers: Docker lookup, only used when ``config.docker`` is set.
            metrics: CPU/memory provider, only used when ``config.performance`` is set.
            history: Kill history; loaded from ``config.history_file`` when omitted.
            logger: Logger for this monitor.
        """
        config.validate()
        self._config = config
        self._log = logger or log
        self._queue = update_queue
        self._listeners: list[UpdateListener] = []
        self._inspector = inspector or default_inspector(config.verbose, self._log)
        self._terminator = terminator or PsutilTerminator()
        self._containers = (containers or DockerInspector(logger=self._log)) if config.docker else None
        self._metrics = (metrics or SystemMetrics()) if config.performance else None
        if history is None:
            history = KillHistory.load(config.history_file, config.history_size, self._log)
        self._history = history

        self._lock = threading.Lock()
        self._snapshot: Snapshot = {}
        self._poll_rate = config.interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def processes(self) -> Snapshot:
        """A copy of the current snapshot."""
        with self._lock:
            return dict(self._snapshot)

    @property
    def history(self) -> KillHistory:
        return self._history

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._log.info("Starting process monitoring on %s", describe_ports(list(self._config.ports)))
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="ProcessMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                self._log.exception("Failed to scan processes")

            # Wait for poll_rate seconds or until stop is requested
            self._stop_event.wait(timeout=self._poll_rate)

    def run_cycle(self) -> bool:
        """
        Scan once and store the result if it changed.

        Returns:
            True if a change notification was published.
        """
        new = self.scan_once()
        ignore_metrics = self._config.performance
        with self._lock:
            if new == self._snapshot:
                return False
            notify = not snapshots_equivalent(self._snapshot, new, ignore_metrics)
            self._snapshot = new
        if notify:
            self._publish(ProcessUpdate(dict(new)))
        return notify

    def _publish(self, update: ProcessUpdate) -> None:
        self._log.info("Process update: %d processes found", update.count)
        if self._queue is not None:
            self._queue.put(update)
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                self._log.exception("Process update listener failed")

    def scan_listeners(self, ports: Iterable[int] | None = None) -> list[ProcessDescriptor]:
        """
        Inspect, classify and filter every listener on the monitored ports.

        Several descriptors may share a port. Does not touch stored state.

        Args:
            ports: Ports to inspect instead of the configured set.
        """
        monitored = set(self._config.ports if ports is None else ports)
        raws = self._inspector.listeners(monitored)
        descriptors = []
        for raw in raws:
            if raw.port not in monitored or raw.pid <= 0:
                continue
            if self._containers is not None:
                info = self._containers.container_for_pid(raw.pid)
                if info is None:
                    raw = replace(raw, container_id=HOST_PROCESS_ID, container_name=HOST_PROCESS_NAME)
                else:
                    raw = replace(
                        raw, container_id=info.container_id, container_name=info.container_name
                    )
            descriptors.append(classify(raw, self._metrics))

        if self._metrics is not None and ports is None:
            self._metrics.prune({d.pid for d in descriptors})
        return filter_processes(descriptors, self._config.filters, self._log)

    def scan_once(self) -> Snapshot:
        """Return a fresh snapshot (lowest pid per port) without storing it."""
        snapshot: Snapshot = {}
        for process in sorted(self.scan_listeners(), key=lambda p: (p.port, p.pid)):
            snapshot.setdefault(process.port, process)
        return snapshot

    def find_process(self, pid: int) -> ProcessDescriptor | None:
        with self._lock:
            for process in self._snapshot.values():
                if process.pid == pid:
                    return process
        return None

    def kill(
        self,
        pid: int,
        context: str = "user",
        record_history: bool = True,
        process: ProcessDescriptor | None = None,
    ) -> None:
        """
        Terminate ``pid`` and optionally record it in the kill history.

        Container-confined processes have their container stopped instead.
        History metadata comes from ``process`` or the current snapshot; a pid
        with neither is killed but not recorded.

        Raises:
            KillError: If the process could not be terminated.
        """
        self._terminate(pid)
        if record_history:
            process = process or self.find_process(pid)
            if process is not None:
                self._history.add(KillHistoryEntry.from_process(process, context))
                self._log.info("Added process %d to history", pid)
                self._history.save(self._config.history_file)

    def _terminate(self, pid: int) -> None:
        self._log.info("Attempting to kill process %d", pid)
        if pid <= 0:
            raise KillError(pid, "invalid pid")
        if self._containers is not None:
            info = self._containers.container_for_pid(pid)
            if info is not None:
                self._log.info(
                    "Process %d is in Docker container %s, stopping container", pid, info.container_id
                )
                self._containers.stop_container(info.container_id, pid)
                return
        terminate(pid, self._terminator, self._config.grace_period, self._log)

    def _kill_many(self, processes: list[ProcessDescriptor]) -> list[int]:
        """Kill every process, recording successes as bulk kills; never short-circuits."""
        failures: dict[int, str] = {}
        killed: list[int] = []
        for process in processes:
            self._log.info("Killing process on port %d (PID: %d)", process.port, process.pid)
            try:
                self._terminate(process.pid)
            except KillError as e:
                failures[process.pid] = e.reason
                continue
            killed.append(process.pid)
            self._history.add(KillHistoryEntry.from_process(process, "bulk"))

        if killed:
            self._history.save(self._config.history_file)
        if failures:
            raise BulkKillError(failures, killed)
        return killed

    def kill_all(self) -> list[int]:
        """
        Scan once and kill every process found.

        Returns:
            The pids that were killed.

        Raises:
            BulkKillError: If any kill failed; every process is still attempted.
        """
        self._log.info("Killing all monitored processes")
        killed = self._kill_many(list(self.scan_once().values()))
        self._log.info("All processes killed successfully")
        return killed

    def kill_group(self, group: str) -> list[int]:
        targets = [p for p in self.scan_once().values() if p.process_group == group]
        self._log.info("Killing %d processes in group %s", len(targets), group)
        return self._kill_many(targets)

    def kill_project(self, project: str) -> list[int]:
        targets = [p for p in self.scan_once().values() if p.project_name == project]
        self._log.info("Killing %d processes in project %s", len(targets), project)
        return self._kill_many(targets)

    def recent_history(self, limit: int) -> list[KillHistoryEntry]:
        return self._history.recent(limit)

    def history_by_group(self, group: str) -> list[KillHistoryEntry]:
        return self._history.by_group(group)

    def history_by_project(self, project: str) -> list[KillHistoryEntry]:
        return self._history.by_project(project)

    def top_offenders(self, limit: int = 5) -> list[tuple[str, int]]:
        return self._history.top_offenders(limit)

    def history_stats(self) -> dict[str, Counter[str]]:
        return self._history.stats()

    def clear_history(self) -> None:
        """Clear the in-memory history and persist the empty state."""
        self._history.clear()
        self._history.save(self._config.history_file)


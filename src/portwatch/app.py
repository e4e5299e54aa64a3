"""portwatch - Textual console for watched ports."""

from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from portwatch.config import MonitorConfig, describe_ports
from portwatch.exceptions import BulkKillError, KillError
from portwatch.guard import PortGuardDaemon
from portwatch.models import GuardStatus, ProcessDescriptor, ProcessUpdate, Snapshot, StatusSummary
from portwatch.monitor import ProcessMonitor


class SortKey(Enum):
    """Sort keys for the process table."""

    PORT = "port"
    PID = "pid"
    NAME = "name"
    CPU = "cpu"


def format_bytes(size: int | None) -> str:
    """Format bytes as human-readable string."""
    if size is None:
        return "-"
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


class HeaderStats(Static):
    """Header widget summarizing the snapshot and the port guard."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, ports_description: str = "", **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._ports_description = ports_description
        self._summary = StatusSummary.from_snapshot({})
        self._guard: GuardStatus | None = None

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_process_info(), id="process-info"),
            Static(self._get_guard_info(), id="guard-info"),
        )

    def update_stats(self, processes: Snapshot, guard: GuardStatus | None = None) -> None:
        """Update the statistics from a snapshot and optional guard status."""
        self._summary = StatusSummary.from_snapshot(processes)
        self._guard = guard
        try:
            self.query_one("#process-info", Static).update(self._get_process_info())
            self.query_one("#guard-info", Static).update(self._get_guard_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_process_info(self) -> str:
        lines = [f"Watching {self._ports_description}", self._summary.tooltip]
        return "\n".join(lines)

    def _get_guard_info(self) -> str:
        if self._guard is None:
            return "Port guard: off"
        guard = self._guard
        state = "active" if guard.is_active else "stopped"
        mode = "auto-resolve" if guard.auto_resolve_enabled else "notify only"
        return (
            f"Port guard: {state} ({mode})\n"
            f"Watched: {', '.join(str(p) for p in guard.watched_ports)}\n"
            f"Reservations: {len(guard.active_reservations)}  "
            f"Resolved: {guard.conflicts_resolved}"
        )


class ProcessTable(Container):
    """Container for the port/process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._current_ports: set[int] = set()
        self._processes: Snapshot = {}
        self._sort_key: SortKey = SortKey.PORT
        self._sort_reverse: bool = False

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        current_index = keys.index(self._sort_key)
        self._sort_key = keys[(current_index + 1) % len(keys)]
        self._sort_reverse = self._sort_key is SortKey.CPU
        if self._processes:
            self.update_processes(self._processes, rebuild=True)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PORT", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("NAME", key="name", width=24)
        table.add_column("GROUP", key="group", width=12)
        table.add_column("PROJECT", key="project", width=18)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("MEM", key="mem", width=8)

    def update_processes(self, processes: Snapshot, rebuild: bool = False) -> None:
        """Update the table with a new snapshot, keyed by port."""
        table = self.query_one("#process-table", DataTable)
        self._processes = dict(processes)
        if rebuild:
            table.clear()
            self._current_ports = set()

        new_ports = set(processes)
        for port in self._current_ports - new_ports:
            try:
                table.remove_row(str(port))
            except Exception:
                pass  # Row may not exist

        for process in self._sort_processes(list(processes.values())):
            row_key = str(process.port)
            cells = self._cells(process)
            if process.port in self._current_ports:
                try:
                    for column, value in zip(
                        ("port", "pid", "name", "group", "project", "cpu", "mem"), cells
                    ):
                        table.update_cell(row_key, column, value)
                except Exception:
                    pass  # Row may have been removed
            else:
                table.add_row(*cells, key=row_key)

        self._current_ports = new_ports

    def selected_process(self) -> ProcessDescriptor | None:
        table = self.query_one("#process-table", DataTable)
        if table.row_count == 0:
            return None
        try:
            row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except Exception:
            return None
        return self._processes.get(int(row_key.value))

    def _sort_processes(self, processes: list[ProcessDescriptor]) -> list[ProcessDescriptor]:
        key_func = {
            SortKey.PORT: lambda p: p.port,
            SortKey.PID: lambda p: p.pid,
            SortKey.NAME: lambda p: p.display_name.lower(),
            SortKey.CPU: lambda p: p.cpu_percent or 0.0,
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)

    @staticmethod
    def _cells(process: ProcessDescriptor) -> tuple[str, ...]:
        cpu = f"{process.cpu_percent:5.1f}" if process.cpu_percent is not None else "-"
        return (
            str(process.port),
            str(process.pid),
            process.display_name[:24],
            process.process_group or "-",
            (process.project_name or "-")[:18],
            cpu,
            format_bytes(process.memory_bytes),
        )


class PortWatchApp(App):
    """Main portwatch application."""

    TITLE = "portwatch"
    SUB_TITLE = "Development Port Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 5;
    }

    Horizontal {
        height: auto;
    }

    #process-info {
        width: 2fr;
        padding-right: 2;
    }

    #guard-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("k", "kill", "Kill"),
        ("a", "kill_all", "Kill all"),
        ("f6", "sort", "Sort"),
        ("h", "history", "History"),
    ]

    def __init__(
        self,
        monitor: ProcessMonitor | None = None,
        guard: PortGuardDaemon | None = None,
    ) -> None:
        """Initialize the PortWatchApp."""
        super().__init__()
        self._update_queue: Queue[ProcessUpdate] = Queue()
        self._monitor = monitor or ProcessMonitor(MonitorConfig())
        self._monitor.add_listener(self._update_queue.put)
        self._guard = guard

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        ports = describe_ports(sorted(self._monitor.config.ports))
        yield HeaderStats(id="header-stats", ports_description=ports)
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor (and guard) when the app is mounted."""
        self._monitor.start()
        if self._guard is not None:
            self._guard.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the update queue and refresh the UI with the newest snapshot."""
        update = None
        while True:
            try:
                update = self._update_queue.get_nowait()
            except Empty:
                break
        guard_status = self._guard.status() if self._guard is not None else None
        if update is not None:
            self._update_ui(update.processes, guard_status)
        elif guard_status is not None:
            self.query_one(HeaderStats).update_stats(self._monitor.processes, guard_status)

    def _update_ui(self, processes: Snapshot, guard_status: GuardStatus | None = None) -> None:
        self.query_one(HeaderStats).update_stats(processes, guard_status)
        self.query_one(ProcessTable).update_processes(processes)

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_kill(self) -> None:
        """Kill the process on the selected row."""
        process = self.query_one(ProcessTable).selected_process()
        if process is None:
            self.notify("No process selected")
            return
        self.run_worker(lambda: self._kill(process), thread=True)

    def _kill(self, process: ProcessDescriptor) -> None:
        try:
            self._monitor.kill(process.pid, context="user", process=process)
        except KillError as e:
            self.call_from_thread(self.notify, str(e), severity="error")
            return
        self.call_from_thread(self.notify, f"Killed {process.display_name} on port {process.port}")

    def action_kill_all(self) -> None:
        """Kill every monitored process."""
        self.run_worker(self._kill_all, thread=True)

    def _kill_all(self) -> None:
        try:
            killed = self._monitor.kill_all()
        except BulkKillError as e:
            self.call_from_thread(self.notify, str(e), severity="error")
            return
        self.call_from_thread(self.notify, f"Killed {len(killed)} processes")

    def action_history(self) -> None:
        """Show the most recent kills."""
        entries = self._monitor.recent_history(5)
        if not entries:
            self.notify("No kill history")
            return
        lines = [
            f"{e.killed_at:%H:%M:%S} {e.display_name()} :{e.port} ({e.killed_by})"
            for e in reversed(entries)
        ]
        self.notify("\n".join(lines), title="Recent kills")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        if self._guard is not None:
            self._guard.stop()
        self._monitor.stop()
        self.exit()

"""Per-process CPU and memory metrics backed by psutil."""

import threading

import psutil


class SystemMetrics:
    """
    Looks up CPU and memory usage for pids.

    psutil reports CPU percent relative to the previous call on the same
    Process object, so handles are cached between scans. The first reading
    for a new pid is 0.0.
    """

    def __init__(self) -> None:
        self._procs: dict[int, psutil.Process] = {}
        self._lock = threading.Lock()
        self._total_memory = psutil.virtual_memory().total

    def _process(self, pid: int) -> psutil.Process | None:
        with self._lock:
            proc = self._procs.get(pid)
            if proc is None:
                try:
                    proc = psutil.Process(pid)
                    proc.cpu_percent(None)  # prime the counter
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    return None
                self._procs[pid] = proc
            return proc

    def cpu_percent(self, pid: int) -> float | None:
        proc = self._process(pid)
        if proc is None:
            return None
        try:
            return proc.cpu_percent(None)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            self._forget(pid)
            return None

    def memory(self, pid: int) -> tuple[int, float] | None:
        """Return (rss bytes, percent of physical memory) for ``pid``."""
        proc = self._process(pid)
        if proc is None:
            return None
        try:
            rss = proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            self._forget(pid)
            return None
        percent = (rss / self._total_memory * 100.0) if self._total_memory else 0.0
        return rss, percent

    def prune(self, live_pids: set[int]) -> None:
        """Drop cached handles for pids no longer being watched."""
        with self._lock:
            for pid in list(self._procs):
                if pid not in live_pids:
                    del self._procs[pid]

    def _forget(self, pid: int) -> None:
        with self._lock:
            self._procs.pop(pid, None)

"""In-memory stand-ins for the inspector and terminator capabilities."""

import psutil

from portwatch.inspector import PortInspector
from portwatch.models import RawProcess


class FakeInspector(PortInspector):
    """Inspector serving listeners from an in-memory list."""

    def __init__(self, entries: list[RawProcess] | None = None) -> None:
        super().__init__()
        self.entries = list(entries or [])
        self.calls = 0

    def _enumerate(self, ports):
        self.calls += 1
        return [(r.pid, r.port, r.name) for r in self.entries if r.port in ports]

    def details(self, pid, port, hint=None):
        for entry in self.entries:
            if entry.pid == pid and entry.port == port:
                return entry
        return None

    def ports_for_pid(self, pid):
        return {r.port for r in self.entries if r.pid == pid}


class FakeTerminator:
    """
    Terminator over a set of "alive" pids.

    ``stubborn`` pids ignore the graceful signal; ``unkillable`` pids also
    reject the forceful one.
    """

    def __init__(self, alive=(), stubborn=(), unkillable=()) -> None:
        self.alive = set(alive)
        self.stubborn = set(stubborn)
        self.unkillable = set(unkillable)
        self.signals: list[tuple[int, bool]] = []

    def signal(self, pid: int, graceful: bool) -> None:
        self.signals.append((pid, graceful))
        if pid not in self.alive:
            raise psutil.NoSuchProcess(pid)
        if graceful:
            if pid not in self.stubborn:
                self.alive.discard(pid)
            return
        if pid in self.unkillable:
            raise psutil.AccessDenied(pid)
        self.alive.discard(pid)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


def raw(pid: int, port: int, name: str, **kwargs) -> RawProcess:
    return RawProcess(pid=pid, port=port, command=kwargs.pop("command", name), name=name, **kwargs)

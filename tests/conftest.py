"""Shared fixtures for portwatch tests."""

import pytest
from fakes import FakeInspector, FakeTerminator

from portwatch.config import MonitorConfig
from portwatch.filters import FilterConfig
from portwatch.monitor import ProcessMonitor


@pytest.fixture
def make_monitor(tmp_path):
    """Factory for a ProcessMonitor wired to fakes and a temp history file."""

    def factory(
        entries,
        ports=None,
        filters=None,
        terminator=None,
        update_queue=None,
        containers=None,
        metrics=None,
        **config_kwargs,
    ):
        if ports is None:
            ports = sorted({e.port for e in entries}) or [3000]
        inspector = FakeInspector(entries)
        terminator = terminator or FakeTerminator(alive={e.pid for e in entries})
        config_kwargs.setdefault("history_file", tmp_path / "history.json")
        config = MonitorConfig(
            ports=tuple(ports),
            filters=filters or FilterConfig(),
            grace_period=0.0,
            **config_kwargs,
        )
        monitor = ProcessMonitor(
            config,
            update_queue,
            inspector=inspector,
            terminator=terminator,
            containers=containers,
            metrics=metrics,
        )
        return monitor, inspector, terminator

    return factory

"""Tests for psutil-backed process metrics."""

import os

from portwatch.metrics import SystemMetrics

MISSING_PID = 2**22 + 12345


def test_metrics_for_current_process():
    metrics = SystemMetrics()

    cpu = metrics.cpu_percent(os.getpid())
    memory = metrics.memory(os.getpid())

    assert cpu is not None and cpu >= 0.0
    assert memory is not None
    rss, percent = memory
    assert rss > 0
    assert 0.0 < percent < 100.0


def test_metrics_for_missing_process():
    metrics = SystemMetrics()

    assert metrics.cpu_percent(MISSING_PID) is None
    assert metrics.memory(MISSING_PID) is None


def test_prune_drops_cached_handles():
    metrics = SystemMetrics()
    metrics.cpu_percent(os.getpid())
    assert os.getpid() in metrics._procs

    metrics.prune(set())

    assert metrics._procs == {}

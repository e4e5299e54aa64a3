"""Tests for the ProcessMonitor class."""

import json
from queue import Empty, Queue

import pytest
from fakes import FakeTerminator, raw

from portwatch.config import MonitorConfig
from portwatch.containers import ContainerInfo
from portwatch.exceptions import BulkKillError, ConfigError, KillError
from portwatch.filters import FilterConfig
from portwatch.history import KillHistory
from portwatch.models import HOST_PROCESS_ID, ProcessUpdate
from portwatch.monitor import ProcessMonitor, snapshots_equivalent


class FakeMetrics:
    def __init__(self, cpu=1.0):
        self.cpu = cpu
        self.pruned = []

    def cpu_percent(self, pid):
        return self.cpu

    def memory(self, pid):
        return (1024, 0.1)

    def prune(self, live_pids):
        self.pruned.append(set(live_pids))


class FakeDocker:
    def __init__(self, containers=None):
        self.containers = containers or {}
        self.stopped = []

    def container_for_pid(self, pid):
        return self.containers.get(pid)

    def stop_container(self, container_id, pid=0):
        self.stopped.append(container_id)


class TestProcessMonitor:
    """Tests for ProcessMonitor lifecycle."""

    def test_monitor_creation(self, make_monitor):
        """Test ProcessMonitor can be instantiated."""
        monitor, _, _ = make_monitor([])

        assert monitor.poll_rate == 2.0
        assert not monitor.is_running
        assert monitor.processes == {}

    def test_monitor_rejects_invalid_config(self):
        """Test that a bad configuration never reaches the monitor loop."""
        with pytest.raises(ConfigError):
            ProcessMonitor(MonitorConfig(ports=(), history_file=None))

    def test_poll_rate_minimum(self, make_monitor):
        """Test poll rate has a minimum value."""
        monitor, _, _ = make_monitor([])

        monitor.poll_rate = 0.01  # Very small value
        assert monitor.poll_rate >= 0.1  # Should be clamped to minimum

    def test_monitor_start_stop(self, make_monitor):
        """Test ProcessMonitor can be started and stopped."""
        monitor, _, _ = make_monitor([], interval=0.1)

        assert not monitor.is_running

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self, make_monitor):
        """Test starting an already running monitor is safe."""
        monitor, _, _ = make_monitor([], interval=0.1)

        monitor.start()
        thread1 = monitor._thread

        monitor.start()  # Should not create a new thread
        thread2 = monitor._thread

        assert thread1 is thread2
        monitor.stop()

    def test_daemon_thread(self, make_monitor):
        """Test monitor thread is a daemon thread."""
        monitor, _, _ = make_monitor([], interval=0.1)

        monitor.start()

        try:
            assert monitor._thread is not None
            assert monitor._thread.daemon is True
            assert monitor._thread.name == "ProcessMonitor"
        finally:
            monitor.stop()

    def test_monitor_publishes_updates(self, make_monitor):
        """Test ProcessMonitor pushes a ProcessUpdate to the queue."""
        queue: Queue[ProcessUpdate] = Queue()
        monitor, _, _ = make_monitor(
            [raw(100, 3000, "node"), raw(200, 8000, "python")], update_queue=queue, interval=0.1
        )

        monitor.start()

        try:
            update = queue.get(timeout=2.0)
            assert isinstance(update, ProcessUpdate)
            assert update.count == 2
            assert set(update.processes) == {3000, 8000}
        finally:
            monitor.stop()

    def test_monitor_graceful_error_handling(self, make_monitor, monkeypatch):
        """Test the loop logs a failing scan and keeps running."""
        queue: Queue[ProcessUpdate] = Queue()
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], update_queue=queue, interval=0.1)
        real_scan = monitor.scan_once
        calls = []

        def flaky_scan():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("scan exploded")
            return real_scan()

        monkeypatch.setattr(monitor, "scan_once", flaky_scan)
        monitor.start()

        try:
            update = queue.get(timeout=2.0)
            assert update.count == 1
            assert len(calls) >= 2
        finally:
            monitor.stop()


class TestScanning:
    """Tests for scan_once and scan_listeners."""

    def test_scan_finds_listeners_on_monitored_ports(self, make_monitor):
        """Test a scan reports exactly the classified listeners on watched ports."""
        monitor, _, _ = make_monitor(
            [
                raw(100, 3000, "node", working_directory="me/shop"),
                raw(200, 3001, "python3"),
                raw(300, 9999, "java"),
            ],
            ports=[3000, 3001, 3002],
        )

        snapshot = monitor.scan_once()

        assert sorted(snapshot) == [3000, 3001]
        assert snapshot[3000].pid == 100
        assert snapshot[3000].process_group == "Node.js"
        assert snapshot[3000].project_name == "shop"
        assert snapshot[3001].process_group == "Python"

    def test_scan_is_idempotent_and_stateless(self, make_monitor):
        monitor, _, _ = make_monitor([raw(100, 3000, "node")])

        assert monitor.scan_once() == monitor.scan_once()
        assert monitor.processes == {}

    def test_scan_keeps_lowest_pid_per_port(self, make_monitor):
        monitor, _, _ = make_monitor([raw(200, 3000, "node"), raw(100, 3000, "node")])

        assert monitor.scan_once()[3000].pid == 100
        assert [p.pid for p in monitor.scan_listeners()] == [100, 200]

    def test_scan_applies_filters(self, make_monitor):
        monitor, _, _ = make_monitor(
            [raw(1234, 3000, "Chrome"), raw(200, 3001, "node")],
            filters=FilterConfig(ignore_processes=frozenset({"Chrome"})),
        )

        assert list(monitor.scan_once()) == [3001]

    def test_scan_listeners_for_port_subset(self, make_monitor):
        monitor, _, _ = make_monitor([raw(100, 3000, "node"), raw(200, 8000, "python")])

        assert [p.port for p in monitor.scan_listeners([8000])] == [8000]

    def test_docker_enrichment(self, make_monitor):
        docker = FakeDocker({100: ContainerInfo("abc123", "shop-web")})
        monitor, _, _ = make_monitor(
            [raw(100, 3000, "node"), raw(200, 3001, "node")], containers=docker, docker=True
        )

        snapshot = monitor.scan_once()

        assert snapshot[3000].container_id == "abc123"
        assert snapshot[3000].container_name == "shop-web"
        assert snapshot[3001].container_id == HOST_PROCESS_ID

    def test_performance_metrics(self, make_monitor):
        metrics = FakeMetrics(cpu=42.0)
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], metrics=metrics, performance=True)

        process = monitor.scan_once()[3000]

        assert process.cpu_percent == 42.0
        assert process.memory_bytes == 1024
        assert metrics.pruned == [{100}]


class TestChangeDetection:
    """Tests for run_cycle change notifications."""

    def test_first_cycle_publishes(self, make_monitor):
        queue: Queue[ProcessUpdate] = Queue()
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], update_queue=queue)

        assert monitor.run_cycle() is True
        assert queue.get_nowait().count == 1
        assert monitor.processes[3000].pid == 100

    def test_unchanged_cycle_is_silent(self, make_monitor):
        queue: Queue[ProcessUpdate] = Queue()
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], update_queue=queue)

        monitor.run_cycle()
        queue.get_nowait()

        assert monitor.run_cycle() is False
        with pytest.raises(Empty):
            queue.get_nowait()

    def test_exit_is_published(self, make_monitor):
        queue: Queue[ProcessUpdate] = Queue()
        monitor, inspector, _ = make_monitor(
            [raw(100, 3000, "node"), raw(200, 3001, "node")], update_queue=queue
        )
        monitor.run_cycle()
        queue.get_nowait()

        inspector.entries = [e for e in inspector.entries if e.pid != 200]

        assert monitor.run_cycle() is True
        assert set(queue.get_nowait().processes) == {3000}

    def test_metric_only_change_updates_silently(self, make_monitor):
        """Test that a CPU change replaces the snapshot without a notification."""
        queue: Queue[ProcessUpdate] = Queue()
        metrics = FakeMetrics(cpu=1.0)
        monitor, _, _ = make_monitor(
            [raw(100, 3000, "node")], update_queue=queue, metrics=metrics, performance=True
        )
        monitor.run_cycle()
        queue.get_nowait()

        metrics.cpu = 75.0

        assert monitor.run_cycle() is False
        assert monitor.processes[3000].cpu_percent == 75.0
        with pytest.raises(Empty):
            queue.get_nowait()

    def test_listeners_called_and_failures_contained(self, make_monitor):
        monitor, _, _ = make_monitor([raw(100, 3000, "node")])
        received = []

        def broken(update):
            raise ValueError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(received.append)

        assert monitor.run_cycle() is True
        assert received[0].count == 1

    def test_snapshots_equivalent(self, make_monitor):
        monitor, _, _ = make_monitor([raw(100, 3000, "node")])
        old = monitor.scan_once()
        assert snapshots_equivalent(old, dict(old), ignore_metrics=False)
        assert not snapshots_equivalent(old, {}, ignore_metrics=True)


class TestKilling:
    """Tests for kill operations and history recording."""

    def test_kill_records_history(self, make_monitor, tmp_path):
        monitor, _, terminator = make_monitor([raw(100, 3000, "node")])
        monitor.run_cycle()

        monitor.kill(100)

        assert not terminator.is_alive(100)
        entries = monitor.history.entries()
        assert [(e.pid, e.port, e.killed_by) for e in entries] == [(100, 3000, "user")]
        saved = json.loads((tmp_path / "history.json").read_text())
        assert saved[0]["pid"] == 100

    def test_kill_unknown_pid_not_recorded(self, make_monitor):
        terminator = FakeTerminator(alive={555})
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], terminator=terminator)

        monitor.kill(555)

        assert not terminator.is_alive(555)
        assert len(monitor.history) == 0

    def test_kill_without_history(self, make_monitor):
        monitor, _, _ = make_monitor([raw(100, 3000, "node")])
        monitor.run_cycle()

        monitor.kill(100, record_history=False)

        assert len(monitor.history) == 0

    @pytest.mark.parametrize("pid", [0, -1])
    def test_kill_invalid_pid(self, make_monitor, pid):
        monitor, _, terminator = make_monitor([])

        with pytest.raises(KillError):
            monitor.kill(pid)
        assert terminator.signals == []

    def test_kill_failure_not_recorded(self, make_monitor):
        terminator = FakeTerminator(alive={100}, stubborn={100}, unkillable={100})
        monitor, _, _ = make_monitor([raw(100, 3000, "node")], terminator=terminator)
        monitor.run_cycle()

        with pytest.raises(KillError):
            monitor.kill(100)
        assert len(monitor.history) == 0

    def test_kill_all_continues_past_failure(self, make_monitor):
        """Test kill_all attempts every process and reports the one that failed."""
        terminator = FakeTerminator(alive={1, 2, 3}, stubborn={2}, unkillable={2})
        monitor, _, _ = make_monitor(
            [raw(1, 3000, "node"), raw(2, 3001, "node"), raw(3, 3002, "node")],
            terminator=terminator,
        )

        with pytest.raises(BulkKillError) as exc_info:
            monitor.kill_all()

        assert set(exc_info.value.failures) == {2}
        assert exc_info.value.killed == [1, 3]
        assert "PID 2" in str(exc_info.value)
        entries = monitor.history.entries()
        assert [e.pid for e in entries] == [1, 3]
        assert {e.killed_by for e in entries} == {"bulk"}

    def test_kill_all_success(self, make_monitor):
        monitor, _, terminator = make_monitor([raw(1, 3000, "node"), raw(2, 3001, "python")])

        assert monitor.kill_all() == [1, 2]
        assert terminator.alive == set()

    def test_kill_group_and_project(self, make_monitor):
        monitor, _, terminator = make_monitor(
            [
                raw(1, 3000, "node", working_directory="me/shop"),
                raw(2, 3001, "python", working_directory="me/shop"),
                raw(3, 3002, "python", working_directory="me/blog"),
            ]
        )

        assert monitor.kill_project("blog") == [3]
        assert monitor.kill_group("Node.js") == [1]
        assert terminator.alive == {2}
        assert [e.pid for e in monitor.history_by_group("Python")] == [3]
        assert [e.pid for e in monitor.history_by_project("shop")] == [1]

    def test_container_process_stops_container(self, make_monitor):
        docker = FakeDocker({100: ContainerInfo("abc123", "shop-web")})
        monitor, _, terminator = make_monitor(
            [raw(100, 3000, "node")], containers=docker, docker=True
        )
        monitor.run_cycle()

        monitor.kill(100)

        assert docker.stopped == ["abc123"]
        assert terminator.signals == []
        assert len(monitor.history) == 1


class TestHistoryIntegration:
    """Tests for history loading and queries through the monitor."""

    def test_history_loaded_from_file(self, make_monitor, tmp_path):
        first, _, _ = make_monitor([raw(100, 3000, "node")])
        first.run_cycle()
        first.kill(100)

        second, _, _ = make_monitor([])

        assert [e.pid for e in second.recent_history(5)] == [100]
        assert second.top_offenders() == [("Node.js", 1)]

    def test_corrupt_history_file_starts_empty(self, make_monitor, tmp_path):
        (tmp_path / "history.json").write_text(
            json.dumps([{"pid": 1, "port": 3000, "process_name": "node", "killed_at": {"x": 1}}])
        )

        monitor, _, _ = make_monitor([raw(100, 3000, "node")])

        assert len(monitor.history) == 0
        assert monitor.run_cycle()

    def test_history_stats(self, make_monitor):
        monitor, inspector, _ = make_monitor([raw(100, 3000, "node"), raw(200, 8000, "python3")])
        monitor.run_cycle()
        monitor.kill(100)
        inspector.entries = [e for e in inspector.entries if e.pid != 100]
        monitor.kill_all()

        stats = monitor.history_stats()

        assert stats["group"] == {"Node.js": 1, "Python": 1}
        assert stats["killed_by"] == {"user": 1, "bulk": 1}

    def test_history_bounded_by_config(self, make_monitor):
        pids = list(range(1, 6))
        monitor, _, _ = make_monitor(
            [raw(pid, 3000 + pid, "node") for pid in pids], history_size=3
        )

        monitor.kill_all()

        assert [e.pid for e in monitor.history.entries()] == [3, 4, 5]

    def test_clear_history_persists(self, make_monitor, tmp_path):
        monitor, _, _ = make_monitor([raw(100, 3000, "node")])
        monitor.run_cycle()
        monitor.kill(100)

        monitor.clear_history()

        assert len(monitor.history) == 0
        assert json.loads((tmp_path / "history.json").read_text()) == []

    def test_injected_empty_history_is_used(self, make_monitor, tmp_path):
        history = KillHistory()
        monitor = ProcessMonitor(
            MonitorConfig(ports=(3000,), history_file=tmp_path / "h.json"),
            history=history,
        )
        assert monitor.history is history

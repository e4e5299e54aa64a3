"""Tests for the kill history."""

import json
import threading

import pytest

from portwatch.history import KillHistory
from portwatch.models import KillHistoryEntry, ProcessDescriptor


def entry(pid, port=3000, group="Node.js", project="shop", killed_by="user"):
    process = ProcessDescriptor(
        pid=pid,
        port=port,
        command="node",
        name="node",
        display_name="Node.js Process",
        process_group=group,
        project_name=project,
    )
    return KillHistoryEntry.from_process(process, killed_by)


class TestKillHistory:
    """Tests for KillHistory."""

    def test_add_and_entries_oldest_first(self):
        history = KillHistory()
        history.add(entry(1))
        history.add(entry(2))
        assert [e.pid for e in history.entries()] == [1, 2]
        assert len(history) == 2

    def test_bounded_evicts_oldest(self):
        """Test that the history never grows past max_entries."""
        history = KillHistory(max_entries=3)
        for pid in range(1, 6):
            history.add(entry(pid))
        assert len(history) == 3
        assert [e.pid for e in history.entries()] == [3, 4, 5]

    def test_recent(self):
        history = KillHistory()
        for pid in range(1, 6):
            history.add(entry(pid))
        assert [e.pid for e in history.recent(2)] == [4, 5]
        assert history.recent(0) == []

    def test_queries(self):
        history = KillHistory()
        history.add(entry(1, group="Node.js", project="shop"))
        history.add(entry(2, group="Python", project="api"))
        history.add(entry(3, group="Node.js", project="shop"))

        assert [e.pid for e in history.by_group("Node.js")] == [1, 3]
        assert [e.pid for e in history.by_project("api")] == [2]
        assert history.top_offenders(1) == [("Node.js (shop)", 2)]

    def test_stats(self):
        history = KillHistory()
        history.add(entry(1, group="Node.js", project="shop"))
        history.add(entry(2, group=None, project=None, killed_by="auto"))
        history.add(entry(3, group="Node.js", project="blog", killed_by="bulk"))

        stats = history.stats()

        assert stats["group"] == {"Node.js": 2, "Other": 1}
        assert stats["project"] == {"shop": 1, "blog": 1}
        assert stats["killed_by"] == {"user": 1, "auto": 1, "bulk": 1}

    def test_clear(self):
        history = KillHistory()
        history.add(entry(1))
        history.clear()
        assert len(history) == 0

    def test_empty_history_is_falsy_but_not_none(self):
        assert not KillHistory()
        assert KillHistory() is not None


class TestPersistence:
    """Tests for saving and loading the history file."""

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "history.json"
        history = KillHistory()
        history.add(entry(1, killed_by="bulk"))
        history.add(entry(2))

        assert history.save(path)
        loaded = KillHistory.load(path)

        assert loaded.entries() == history.entries()
        assert json.loads(path.read_text())[0]["killed_by"] == "bulk"

    def test_load_truncates_to_capacity(self, tmp_path):
        path = tmp_path / "history.json"
        history = KillHistory()
        for pid in range(1, 11):
            history.add(entry(pid))
        history.save(path)

        loaded = KillHistory.load(path, max_entries=4)
        assert [e.pid for e in loaded.entries()] == [7, 8, 9, 10]

    def test_load_missing_file(self, tmp_path):
        assert len(KillHistory.load(tmp_path / "nope.json")) == 0

    def test_load_corrupt_file(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{not json")
        assert len(KillHistory.load(path)) == 0

    def test_load_wrong_shape(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(json.dumps([{"pid": 1}]))
        assert len(KillHistory.load(path)) == 0

    def test_save_without_path(self):
        assert not KillHistory().save(None)

    def test_save_failure_is_logged(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        history = KillHistory()
        history.add(entry(1))
        assert not history.save(blocker / "history.json")

    @pytest.mark.parametrize("killed_at", [123, {"x": 1}, ["2024-01-01T00:00:00"], True])
    def test_load_non_string_timestamp(self, tmp_path, killed_at):
        """Test that a timestamp of the wrong JSON type loads as empty history."""
        path = tmp_path / "history.json"
        path.write_text(
            json.dumps([{"pid": 1, "port": 3000, "process_name": "node", "killed_at": killed_at}])
        )
        assert len(KillHistory.load(path)) == 0

    def test_load_non_list_document(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(json.dumps({"pid": 1}))
        assert len(KillHistory.load(path)) == 0

    def test_concurrent_saves_keep_every_entry(self, tmp_path):
        """Test that racing add-then-save threads leave the newest state on disk."""
        path = tmp_path / "history.json"
        history = KillHistory(max_entries=500)
        start = threading.Barrier(8)

        def worker(offset):
            start.wait()
            for i in range(25):
                history.add(entry(offset * 100 + i + 1))
                history.save(path)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        saved = json.loads(path.read_text())
        assert len(saved) == 200
        assert {item["pid"] for item in saved} == {e.pid for e in history.entries()}
        assert [p.name for p in tmp_path.iterdir()] == ["history.json"]

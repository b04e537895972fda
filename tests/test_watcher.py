"""Tests for the inbox handler and watcher loop (no observer thread started)."""

import json
from unittest.mock import Mock

from conftest import make_session
from reflectra.config import Config
from reflectra.watcher import InboxHandler, ReflectraWatcher

T0 = 1_700_000_000_000


def write_export(path, count=2):
    path.write_text("\n".join(
        json.dumps(make_session(url=f"https://site{i}.example", timestamp=T0 + i))
        for i in range(count)) + "\n")
    return path


class TestInboxHandler:

    def test_imports_only_settled_files(self, tmp_path, reconciler, db):
        inbox = tmp_path / "inbox"
        inbox.mkdir()
        export = write_export(inbox / "a.jsonl")
        handler = InboxHandler(reconciler, inbox / "done", settle_seconds=5)
        handler.track(str(export), when=100.0)

        assert handler.check_settled(now=103.0) == []
        assert handler.pending == [str(export)]

        results = handler.check_settled(now=105.0)
        assert len(results) == 1
        assert results[0]["inserted"] == 2
        assert db.get_stats()["sessions"] == 2
        assert not export.exists()
        assert (inbox / "done" / "a.jsonl").exists()
        assert handler.pending == []

    def test_archive_does_not_overwrite(self, tmp_path, reconciler):
        inbox = tmp_path / "inbox"
        (inbox / "done").mkdir(parents=True)
        (inbox / "done" / "a.jsonl").write_text("old\n")
        export = write_export(inbox / "a.jsonl")
        handler = InboxHandler(reconciler, inbox / "done", settle_seconds=0)
        handler.track(str(export), when=0)

        handler.check_settled(now=1.0)

        assert (inbox / "done" / "a.jsonl").read_text() == "old\n"
        assert len(list((inbox / "done").glob("a-*.jsonl"))) == 1

    def test_vanished_file_is_dropped(self, tmp_path, reconciler):
        handler = InboxHandler(reconciler, tmp_path / "done", settle_seconds=0)
        handler.track(str(tmp_path / "gone.jsonl"), when=0)
        assert handler.check_settled(now=1.0) == []
        assert handler.pending == []

    def test_events_filter_jsonl(self, tmp_path, reconciler):
        handler = InboxHandler(reconciler, tmp_path / "done")
        handler.on_created(Mock(is_directory=False, src_path=str(tmp_path / "a.jsonl")))
        handler.on_created(Mock(is_directory=False, src_path=str(tmp_path / "a.tmp")))
        handler.on_moved(Mock(is_directory=False, src_path=str(tmp_path / "b.tmp"),
                              dest_path=str(tmp_path / "b.jsonl")))
        handler.on_modified(Mock(is_directory=True, src_path=str(tmp_path / "dir.jsonl")))
        assert sorted(handler.pending) == [str(tmp_path / "a.jsonl"), str(tmp_path / "b.jsonl")]


class TestReflectraWatcher:

    def _watcher(self, tmp_path, reconciler, categorizer):
        config = Config(tmp_path / "config.json")
        config.set("inbox_dir", str(tmp_path / "inbox"))
        config.set("sweep_interval_minutes", 15)
        return ReflectraWatcher(config, reconciler, categorizer)

    def test_sweep_runs_on_interval(self, tmp_path, reconciler):
        categorizer = Mock()
        categorizer.categorize_unclassified.return_value = {"categorized": 0, "total": 0}
        watcher = self._watcher(tmp_path, reconciler, categorizer)

        assert watcher.tick(now=10_000.0) == {"categorized": 0, "total": 0}
        assert watcher.tick(now=10_000.0 + 60) is None
        assert watcher.tick(now=10_000.0 + 15 * 60) is not None
        assert categorizer.categorize_unclassified.call_count == 2

    def test_sweep_failure_is_logged_not_raised(self, tmp_path, reconciler):
        categorizer = Mock()
        categorizer.categorize_unclassified.side_effect = RuntimeError("db locked")
        watcher = self._watcher(tmp_path, reconciler, categorizer)
        assert watcher.tick(now=10_000.0) is None

    def test_existing_exports_imported_on_first_tick(self, tmp_path, reconciler, db):
        categorizer = Mock()
        categorizer.categorize_unclassified.return_value = {"categorized": 0, "total": 0}
        watcher = self._watcher(tmp_path, reconciler, categorizer)
        watcher.inbox_dir.mkdir(parents=True)
        write_export(watcher.inbox_dir / "backlog.jsonl", count=3)

        watcher.queue_existing()
        watcher.tick(now=10_000.0)

        assert db.get_stats()["sessions"] == 3
        assert (watcher.inbox_dir / "done" / "backlog.jsonl").exists()

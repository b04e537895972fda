"""Inbox watcher and scheduled categorization sweep.

Uses watchdog to monitor the inbox directory for session exports
(.jsonl) dropped by the capture agent. Once a file has not been modified
for inbox_settle_seconds it is imported and moved to inbox/done/.
Every sweep_interval_minutes the uncategorized backlog is classified.
"""

import logging
import shutil
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .categorizer import Categorizer
from .config import Config
from .importer import import_file
from .reconciler import SessionReconciler

logger = logging.getLogger(__name__)


class InboxHandler(FileSystemEventHandler):
    """Tracks new/modified .jsonl exports until they settle."""

    def __init__(self, reconciler: SessionReconciler, done_dir: Path,
                 settle_seconds: float = 5):
        self.reconciler = reconciler
        self.done_dir = Path(done_dir)
        self.settle_seconds = settle_seconds
        self._pending = {}  # path -> last_modified_time
        self._lock = threading.Lock()

    def on_created(self, event):
        if not event.is_directory and event.src_path.endswith(".jsonl"):
            self.track(event.src_path)

    def on_modified(self, event):
        if not event.is_directory and event.src_path.endswith(".jsonl"):
            self.track(event.src_path)

    def on_moved(self, event):
        if not event.is_directory and event.dest_path.endswith(".jsonl"):
            self.track(event.dest_path)

    def track(self, path: str, when: float | None = None):
        with self._lock:
            self._pending[str(path)] = time.time() if when is None else when

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def check_settled(self, now: float | None = None) -> list[dict]:
        """Import every tracked export that has been idle long enough."""
        now = time.time() if now is None else now
        ready = []
        with self._lock:
            for path, last_mod in list(self._pending.items()):
                if (now - last_mod) >= self.settle_seconds:
                    ready.append(path)
                    del self._pending[path]

        results = []
        for path in ready:
            source = Path(path)
            if not source.exists():
                continue
            try:
                counts = import_file(self.reconciler, source)
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Could not read export {source}: {e}")
                continue
            self._archive(source)
            results.append({"path": path, **counts})
        return results

    def _archive(self, source: Path):
        self.done_dir.mkdir(parents=True, exist_ok=True)
        target = self.done_dir / source.name
        if target.exists():
            target = self.done_dir / f"{source.stem}-{int(time.time())}{source.suffix}"
        try:
            shutil.move(str(source), str(target))
        except OSError as e:
            logger.warning(f"Could not archive {source}: {e}")


class ReflectraWatcher:
    """Watches the inbox and runs the periodic categorization sweep."""

    POLL_SECONDS = 1.0

    def __init__(self, config: Config, reconciler: SessionReconciler,
                 categorizer: Categorizer):
        self.config = config
        self.reconciler = reconciler
        self.categorizer = categorizer
        self.inbox_dir = Path(config["inbox_dir"])
        self.handler = InboxHandler(
            reconciler,
            done_dir=self.inbox_dir / "done",
            settle_seconds=config.get("inbox_settle_seconds", 5),
        )
        self.sweep_interval = config.get("sweep_interval_minutes", 15) * 60
        self._last_sweep = 0.0
        self._stop = threading.Event()
        self.observer = Observer()

    def queue_existing(self):
        """Track exports that were already waiting before the watcher started."""
        for path in sorted(self.inbox_dir.glob("*.jsonl")):
            self.handler.track(str(path), when=0)

    def tick(self, now: float | None = None) -> dict | None:
        """One loop iteration: import settled exports, sweep if due."""
        now = time.time() if now is None else now
        self.handler.check_settled(now)
        if now - self._last_sweep < self.sweep_interval:
            return None
        self._last_sweep = now
        logger.info("Running scheduled categorization...")
        try:
            return self.categorizer.categorize_unclassified()
        except Exception as e:
            logger.error(f"Scheduled categorization failed: {e}")
            return None

    def start(self):
        """Start watching. Blocks until stopped."""
        self.inbox_dir.mkdir(parents=True, exist_ok=True)
        self.observer.schedule(self.handler, str(self.inbox_dir), recursive=False)
        self.observer.start()
        self.queue_existing()

        try:
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(self.POLL_SECONDS)
        except KeyboardInterrupt:
            pass
        finally:
            self.observer.stop()
            self.observer.join()

    def stop(self):
        self._stop.set()

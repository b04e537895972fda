"""Session reconciliation.

The capture agent saves progress every ~30s and tab-switch/focus events
race each other, so one visit to a page often arrives as several
records. Two passes fold them back together:

- record_session(): merge-on-insert. Looks back 2 minutes for records on
  the same normalized URL and, if the oldest one ended no more than 35s
  before the candidate started, adds the candidate's duration to it and
  drops the other fragments.
- reconcile_all() / merge_for_display(): batch pass. Groups records by
  normalized URL, then walks each group in time order collecting runs of
  same-title records whose *starts* are within the merge window. Each
  run collapses into its earliest record with the summed duration.

The two thresholds measure different gaps (end-to-start vs.
start-to-start) and are kept separate on purpose.

Concurrent inserts for the same URL can both miss each other and create
two records; the batch cleanup folds those later. Set per_url_lock to
serialize the lookup-then-write sequence inside one process instead.
"""

import contextlib
import logging
import threading
import weakref
from collections.abc import Callable, Iterable

from .db import ReflectraDB
from .urls import end_to_start_gap, normalize_url, start_to_start_gap

logger = logging.getLogger(__name__)

DEFAULT_CONTINUATION_GAP_MS = 35000
DEFAULT_LOOKBACK_WINDOW_MS = 120000
DEFAULT_DISPLAY_MERGE_WINDOW_MS = 300000
DEFAULT_CLEANUP_MERGE_WINDOW_MS = 120000

_ALL_OWNERS = object()

# Carried over from a categorized member when the survivor has none
_CATEGORY_KEYS = ("category_id", "category_name", "category_color", "wellness_type")


class InvalidSessionError(ValueError):
    """A raw session record failed boundary validation."""


def _as_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidSessionError(f"{field} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidSessionError(f"{field} must be an integer, got {value!r}")


def validate_candidate(candidate: dict) -> dict:
    """Check and normalize a raw session record from the capture agent."""
    if not isinstance(candidate, dict):
        raise InvalidSessionError("Session record must be an object")

    url = candidate.get("url")
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidSessionError("Session record is missing a url")

    if candidate.get("duration") is None:
        raise InvalidSessionError("Session record is missing a duration")
    duration = _as_int(candidate["duration"], "duration")
    if duration < 0:
        raise InvalidSessionError(f"duration must be >= 0, got {duration}")

    if candidate.get("timestamp") is None:
        raise InvalidSessionError("Session record is missing a timestamp")
    timestamp = _as_int(candidate["timestamp"], "timestamp")
    if timestamp < 0:
        raise InvalidSessionError(f"timestamp must be >= 0, got {timestamp}")

    title = candidate.get("title")
    if title is not None and not isinstance(title, str):
        title = str(title)

    return {
        "url": url.strip(),
        "title": title or "",
        "duration": duration,
        "timestamp": timestamp,
        "owner_id": candidate.get("owner_id"),
    }


def group_runs(sessions: Iterable[dict], merge_window_ms: int) -> list[list[dict]]:
    """Split sessions into runs of one logical visit each.

    Sessions are sorted by start time and partitioned by owner and
    normalized URL. Inside a partition a record extends the current run
    when its title equals the run's last title and it started no more
    than merge_window_ms after the run's last record started. Runs come
    back ordered by their first record's start.
    """
    ordered = sorted(sessions, key=lambda s: s["timestamp"])

    partitions: dict[tuple, list[dict]] = {}
    for session in ordered:
        key = (session.get("owner_id"), normalize_url(session["url"]))
        partitions.setdefault(key, []).append(session)

    runs = []
    for members in partitions.values():
        current = [members[0]]
        for session in members[1:]:
            last = current[-1]
            same_title = (session.get("title") or "") == (last.get("title") or "")
            if same_title and start_to_start_gap(last, session) <= merge_window_ms:
                current.append(session)
            else:
                runs.append(current)
                current = [session]
        runs.append(current)

    runs.sort(key=lambda run: run[0]["timestamp"])
    return runs


def collapse_run(run: list[dict]) -> dict:
    """One record for a run: earliest member's identity, summed duration."""
    if len(run) == 1:
        return dict(run[0])
    merged = dict(run[0])
    merged["duration"] = sum(s["duration"] for s in run)
    merged["merged_count"] = sum(s.get("merged_count", 1) for s in run)
    if merged.get("category_id") is None:
        donor = next((s for s in run if s.get("category_id") is not None), None)
        if donor is not None:
            for key in _CATEGORY_KEYS:
                if key in donor:
                    merged[key] = donor[key]
    return merged


def merge_sessions(sessions: Iterable[dict],
                   merge_window_ms: int = DEFAULT_DISPLAY_MERGE_WINDOW_MS) -> list[dict]:
    """Pure batch merge. Input records are never mutated."""
    sessions = list(sessions)
    if not sessions:
        return []
    return [collapse_run(run) for run in group_runs(sessions, merge_window_ms)]


class SessionReconciler:
    def __init__(self, db: ReflectraDB, categorizer=None,
                 continuation_gap_ms: int = DEFAULT_CONTINUATION_GAP_MS,
                 lookback_window_ms: int = DEFAULT_LOOKBACK_WINDOW_MS,
                 display_merge_window_ms: int = DEFAULT_DISPLAY_MERGE_WINDOW_MS,
                 cleanup_merge_window_ms: int = DEFAULT_CLEANUP_MERGE_WINDOW_MS,
                 per_url_lock: bool = False):
        self.db = db
        self.categorizer = categorizer
        self.continuation_gap_ms = continuation_gap_ms
        self.lookback_window_ms = lookback_window_ms
        self.display_merge_window_ms = display_merge_window_ms
        self.cleanup_merge_window_ms = cleanup_merge_window_ms
        self.per_url_lock = per_url_lock
        self._hooks: list[Callable[[dict], object]] = []
        # Entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, db: ReflectraDB, config, categorizer=None) -> "SessionReconciler":
        return cls(
            db,
            categorizer=categorizer,
            continuation_gap_ms=config.get("continuation_gap_ms", DEFAULT_CONTINUATION_GAP_MS),
            lookback_window_ms=config.get("lookback_window_ms", DEFAULT_LOOKBACK_WINDOW_MS),
            display_merge_window_ms=config.get("display_merge_window_ms",
                                               DEFAULT_DISPLAY_MERGE_WINDOW_MS),
            cleanup_merge_window_ms=config.get("cleanup_merge_window_ms",
                                               DEFAULT_CLEANUP_MERGE_WINDOW_MS),
            per_url_lock=config.get("per_url_lock", False),
        )

    # ── Update hooks ──────────────────────────────────────────

    def add_update_hook(self, hook: Callable[[dict], object]):
        """Register a callable run with the stored session after every insert or merge."""
        self._hooks.append(hook)

    def _notify(self, session: dict):
        for hook in self._hooks:
            try:
                hook(session)
            except Exception as e:
                logger.warning(f"Update hook failed for session {session.get('id')}: {e}")

    def _lock_for(self, owner_id, normalized_url: str):
        if not self.per_url_lock:
            return contextlib.nullcontext()
        key = (owner_id, normalized_url)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
        return lock

    # ── Merge-on-insert ───────────────────────────────────────

    def record_session(self, candidate: dict) -> dict:
        """Store a new record, folding it into a live continuation when there is one.

        Returns {"session": ..., "merged": bool, "stored": bool}. Raises
        InvalidSessionError for bad input; store failures are logged and
        reported through "stored" instead.
        """
        session = validate_candidate(candidate)
        normalized = normalize_url(session["url"])
        with self._lock_for(session["owner_id"], normalized):
            return self._record(session, normalized)

    def _record(self, session: dict, normalized: str) -> dict:
        try:
            recent = self.db.find_sessions(
                normalized,
                since=session["timestamp"] - self.lookback_window_ms,
                until=session["timestamp"],
                owner_id=session["owner_id"],
            )
        except Exception as e:
            logger.warning(f"Continuation lookup failed for {session['url']}, inserting: {e}")
            recent = []

        if recent:
            original = recent[0]
            gap = end_to_start_gap(original, session)
            if gap <= self.continuation_gap_ms:
                merged = self._merge_continuation(original, recent[1:], session)
                if merged is not None:
                    return {"session": merged, "merged": True, "stored": True}
            else:
                logger.debug(f"Gap of {gap}ms after session {original['id']}, new visit")

        return self._insert(session)

    def _merge_continuation(self, original: dict, fragments: list[dict],
                            session: dict) -> dict | None:
        fields = {"duration": original["duration"] + session["duration"]}
        if original.get("category_id") is None:
            inherited = next((f["category_id"] for f in fragments
                              if f.get("category_id") is not None), None)
            if inherited is not None:
                fields["category_id"] = inherited

        try:
            updated = self.db.update_session(original["id"], fields)
        except Exception as e:
            logger.warning(f"Could not extend session {original['id']}, inserting instead: {e}")
            return None
        if updated is None:
            logger.warning(f"Session {original['id']} vanished before merge, inserting instead")
            return None

        if fragments:
            ids = [f["id"] for f in fragments]
            try:
                self.db.delete_sessions(ids)
            except Exception as e:
                # Survivor keeps its duration; leftover fragments go on the next cleanup
                logger.error(f"Could not delete fragments {ids} of session {original['id']}: {e}")

        logger.debug(f"Merged {session['duration']}ms into session {original['id']}")
        self._notify(updated)
        return updated

    def _insert(self, session: dict) -> dict:
        category_id = None
        if self.categorizer is not None:
            try:
                category_id = self.categorizer.categorize(session["url"], session["title"])
            except Exception as e:
                logger.warning(f"Categorization at insert failed for {session['url']}: {e}")

        try:
            stored = self.db.insert_session({**session, "category_id": category_id})
        except Exception as e:
            if category_id is None:
                logger.error(f"Could not store session for {session['url']}: {e}")
                return {"session": {**session, "id": None, "category_id": None},
                        "merged": False, "stored": False}
            # Category may have been deleted meanwhile; the sweep categorizes it later
            logger.warning(f"Insert with category {category_id} failed for {session['url']}, "
                           f"retrying uncategorized: {e}")
            return self._insert_uncategorized(session)

        self._notify(stored)
        return {"session": stored, "merged": False, "stored": True}

    def _insert_uncategorized(self, session: dict) -> dict:
        try:
            stored = self.db.insert_session({**session, "category_id": None})
        except Exception as e:
            logger.error(f"Could not store session for {session['url']}: {e}")
            return {"session": {**session, "id": None, "category_id": None},
                    "merged": False, "stored": False}

        self._notify(stored)
        return {"session": stored, "merged": False, "stored": True}

    # ── Batch reconciliation ──────────────────────────────────

    def merge_for_display(self, sessions: Iterable[dict],
                          merge_window_ms: int | None = None) -> list[dict]:
        """Read-only projection used before aggregation or rendering."""
        if merge_window_ms is None:
            merge_window_ms = self.display_merge_window_ms
        return merge_sessions(sessions, merge_window_ms)

    def reconcile_all(self, owner_id=_ALL_OWNERS,
                      merge_window_ms: int | None = None) -> dict:
        """Fold stored duplicates into their earliest record. Safe to re-run.

        Returns {"merged": runs collapsed, "deleted": rows removed}.
        """
        window = self.cleanup_merge_window_ms if merge_window_ms is None else merge_window_ms
        try:
            owners = self.db.get_owner_ids() if owner_id is _ALL_OWNERS else [owner_id]
        except Exception as e:
            logger.error(f"Reconciliation skipped, could not list owners: {e}")
            return {"merged": 0, "deleted": 0}

        merged = 0
        deleted = 0
        for owner in owners:
            try:
                sessions = self.db.get_all_sessions(owner)
            except Exception as e:
                logger.error(f"Reconciliation skipped for owner {owner!r}: {e}")
                continue

            for run in group_runs(sessions, window):
                if len(run) < 2:
                    continue
                result = self._apply_run(run)
                if result is None:
                    continue
                merged += 1
                deleted += result

        logger.info(f"Reconciliation merged {merged} runs, deleted {deleted} records")
        return {"merged": merged, "deleted": deleted}

    def _apply_run(self, run: list[dict]) -> int | None:
        """Persist one collapsed run. Returns rows deleted, None if the survivor update failed."""
        survivor = collapse_run(run)
        fields = {"duration": survivor["duration"]}
        if run[0].get("category_id") is None and survivor.get("category_id") is not None:
            fields["category_id"] = survivor["category_id"]

        try:
            updated = self.db.update_session(survivor["id"], fields)
        except Exception as e:
            logger.error(f"Could not update survivor {survivor['id']}: {e}")
            return None
        if updated is None:
            logger.warning(f"Survivor {survivor['id']} vanished, leaving its run alone")
            return None

        ids = [s["id"] for s in run[1:]]
        try:
            removed = self.db.delete_sessions(ids)
        except Exception as e:
            logger.error(f"Could not delete duplicates {ids} of session {survivor['id']}: {e}")
            removed = 0

        self._notify(updated)
        return removed

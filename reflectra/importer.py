"""Import session exports from the capture agent.

An export is a JSONL file, one session object per line:

    {"url": "...", "title": "...", "duration": 30000, "timestamp": 1718000000000}

Each record goes through SessionReconciler.record_session(), so fragments
are merged exactly as they would be when arriving live.
"""

import json
import logging
from pathlib import Path

from .constants import MIN_SESSION_MS
from .reconciler import InvalidSessionError, SessionReconciler

logger = logging.getLogger(__name__)


def parse_export(path: Path) -> list[dict]:
    """Read session records from a JSONL export, skipping unreadable lines."""
    records = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"{path.name}:{line_no}: not valid JSON, skipped")
                continue
            if not isinstance(entry, dict):
                logger.warning(f"{path.name}:{line_no}: not a session object, skipped")
                continue
            records.append(entry)
    return records


def _sort_key(record: dict):
    ts = record.get("timestamp")
    return ts if isinstance(ts, (int, float)) and not isinstance(ts, bool) else 0


def import_records(reconciler: SessionReconciler, records: list[dict],
                   owner_id=None, dry_run: bool = False) -> dict:
    counts = {"inserted": 0, "merged": 0, "rejected": 0, "failed": 0}

    # Replay in capture order so continuations find their originals
    ordered = sorted(records, key=_sort_key)
    for record in ordered:
        if owner_id is not None and record.get("owner_id") is None:
            record = {**record, "owner_id": owner_id}
        duration = record.get("duration")
        if isinstance(duration, (int, float)) and 0 <= duration < MIN_SESSION_MS:
            counts["rejected"] += 1
            continue
        if dry_run:
            counts["inserted"] += 1
            continue
        try:
            result = reconciler.record_session(record)
        except InvalidSessionError as e:
            logger.warning(f"Rejected session record: {e}")
            counts["rejected"] += 1
            continue
        if not result["stored"]:
            counts["failed"] += 1
        elif result["merged"]:
            counts["merged"] += 1
        else:
            counts["inserted"] += 1
    return counts


def import_file(reconciler: SessionReconciler, path: Path, owner_id=None,
                dry_run: bool = False) -> dict:
    """Import one export file. Returns counts of inserted/merged/rejected/failed."""
    path = Path(path)
    records = parse_export(path)
    counts = import_records(reconciler, records, owner_id=owner_id, dry_run=dry_run)
    logger.info(f"Imported {path.name}: {counts}")
    return counts

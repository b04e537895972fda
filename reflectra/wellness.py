"""Display-time wellness aggregation.

Sessions are re-merged with the display window before any totals are
computed, so auto-save fragments are counted once per visit.
"""

from .constants import FALLBACK_CATEGORY, SEED_CATEGORIES
from .db import ReflectraDB
from .reconciler import DEFAULT_DISPLAY_MERGE_WINDOW_MS, merge_sessions

_SEED_WELLNESS = {name: wellness_type for name, _, _, wellness_type in SEED_CATEGORIES}

# Target share of tracked time per wellness type
IDEAL_DISTRIBUTION = {
    "productive": 0.35,
    "growth": 0.25,
    "rest": 0.25,
    "social": 0.15,
}

DRAIN_PENALTY = 30


def wellness_type_for(category_name: str | None) -> str:
    return _SEED_WELLNESS.get(category_name or "", "unknown")


def category_breakdown(db: ReflectraDB, start: int | None = None, end: int | None = None,
                       owner_id=None, limit: int = 5000,
                       merge_window_ms: int = DEFAULT_DISPLAY_MERGE_WINDOW_MS) -> list[dict]:
    """Time per category over [start, end], largest first."""
    sessions = db.get_sessions(start=start, end=end, owner_id=owner_id, limit=limit)
    merged = merge_sessions(sessions, merge_window_ms)

    totals: dict[str, dict] = {}
    for session in merged:
        name = session.get("category_name") or FALLBACK_CATEGORY
        entry = totals.setdefault(name, {
            "name": name,
            "color": session.get("category_color"),
            "wellness_type": session.get("wellness_type") or wellness_type_for(name),
            "time": 0,
            "count": 0,
        })
        entry["time"] += session["duration"]
        entry["count"] += 1

    breakdown = sorted(totals.values(), key=lambda e: e["time"], reverse=True)
    for entry in breakdown:
        entry["avg_duration"] = entry["time"] / entry["count"]
    return breakdown


def _time_by_type(breakdown: list[dict]) -> tuple[dict, int]:
    by_type = {t: 0 for t in ("productive", "growth", "rest", "social", "drain", "unknown")}
    total = 0
    for entry in breakdown:
        spent = entry.get("time") or 0
        total += spent
        wellness_type = entry.get("wellness_type") or wellness_type_for(entry.get("name"))
        if wellness_type in by_type:
            by_type[wellness_type] += spent
    return by_type, total


def daily_score(breakdown: list[dict]) -> int | None:
    """Digital wellness score, 0-100, from a category breakdown.

    Starts at 100, loses a point per percentage point of deviation from
    IDEAL_DISTRIBUTION for each type, and loses up to DRAIN_PENALTY more
    in proportion to drain time.
    """
    if not breakdown:
        return None
    by_type, total = _time_by_type(breakdown)
    if total == 0:
        return 0

    score = 100.0
    for wellness_type, ideal in IDEAL_DISTRIBUTION.items():
        score -= abs(ideal - by_type[wellness_type] / total) * 100
    score -= (by_type["drain"] / total) * DRAIN_PENALTY
    return max(0, min(100, round(score)))


def focus_rest_ratio(breakdown: list[dict]) -> str:
    """Productive+growth time over rest time, as a display string."""
    by_type, _ = _time_by_type(breakdown)
    focus = by_type["productive"] + by_type["growth"]
    rest = by_type["rest"]
    if rest == 0:
        return "Infinity" if focus > 0 else "0:0"
    return f"{focus / rest:.2f}"

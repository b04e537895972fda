"""Reflections: questions about your own browsing, answered by the LLM.

Sessions in the requested time range are merged for display, summarized
per category (time, visit count, top sites) and sent along with the
question. Answers are stored so past reflections can be reread. When
the similarity index is enabled, the sessions closest to the question
are appended to the context.
"""

import logging
from datetime import datetime, timedelta

from .classifier import build_classifier
from .constants import FALLBACK_CATEGORY, REFLECTION_SYSTEM_PROMPT, WEEKLY_SUMMARY_PROMPT
from .db import ReflectraDB
from .reconciler import DEFAULT_DISPLAY_MERGE_WINDOW_MS, merge_sessions

logger = logging.getLogger(__name__)

TIME_RANGES = ("today", "day", "week", "month")

TOP_SITES_PER_CATEGORY = 5
RELATED_SESSIONS = 8

NO_ACTIVITY = "No browsing activity found for this time period."


class ReflectionError(RuntimeError):
    """No answer could be produced for a reflection."""


def range_start(time_range: str, now: datetime | None = None) -> int:
    """Start of a time range in epoch ms.

    "today" starts at local midnight, "week" and "month" reach back 7 and
    30 days, anything else means the last 24 hours.
    """
    now = datetime.now() if now is None else now
    if time_range == "today":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elif time_range == "week":
        start = now - timedelta(days=7)
    elif time_range == "month":
        start = now - timedelta(days=30)
    else:
        start = now - timedelta(days=1)
    return int(start.timestamp() * 1000)


def build_context(sessions: list[dict],
                  merge_window_ms: int = DEFAULT_DISPLAY_MERGE_WINDOW_MS) -> str:
    """Plain-text summary of sessions grouped by category, for the prompt."""
    if not sessions:
        return NO_ACTIVITY

    merged = merge_sessions(sessions, merge_window_ms)
    merged.sort(key=lambda s: s["timestamp"], reverse=True)

    stats: dict[str, dict] = {}
    for session in merged:
        entry = stats.setdefault(session.get("category_name") or FALLBACK_CATEGORY,
                                 {"count": 0, "time": 0, "sites": []})
        entry["count"] += 1
        entry["time"] += session["duration"]
        if len(entry["sites"]) < TOP_SITES_PER_CATEGORY:
            entry["sites"].append(session)

    lines = [f"Total sessions: {len(merged)}", "", "Time by category:"]
    for name, entry in stats.items():
        lines.append(f"- {name}: {round(entry['time'] / 60000)} minutes "
                     f"({entry['count']} sessions)")
        lines.append("  Top sites:")
        for site in entry["sites"]:
            label = site.get("title") or site["url"]
            lines.append(f"    • {label} ({round(site['duration'] / 60000)}m)")
    return "\n".join(lines)


class Reflector:
    def __init__(self, db: ReflectraDB, llm=None, index=None,
                 session_limit: int = 200, timeout: int = 60,
                 merge_window_ms: int = DEFAULT_DISPLAY_MERGE_WINDOW_MS):
        self.db = db
        self.llm = llm
        self.index = index
        self.session_limit = session_limit
        self.timeout = timeout
        self.merge_window_ms = merge_window_ms

    @classmethod
    def from_config(cls, db: ReflectraDB, config, index=None) -> "Reflector":
        return cls(
            db,
            llm=build_classifier(config),
            index=index,
            session_limit=config.get("reflection_session_limit", 200),
            timeout=config.get("reflection_timeout", 60),
            merge_window_ms=config.get("display_merge_window_ms",
                                       DEFAULT_DISPLAY_MERGE_WINDOW_MS),
        )

    def session_data(self, time_range: str = "today", owner_id=None,
                     now: datetime | None = None) -> list[dict]:
        return self.db.get_sessions(start=range_start(time_range, now),
                                    owner_id=owner_id, limit=self.session_limit)

    def _related(self, query: str, since: int) -> str:
        if self.index is None:
            return ""
        matches = self.index.query_similar(query, top_k=RELATED_SESSIONS, since=since)
        if not matches:
            return ""
        lines = ["", "", "Sessions most related to the question:"]
        for match in matches:
            minutes = round((match.get("duration") or 0) / 60000)
            lines.append(f"- {match.get('title')} ({match.get('url')}, {minutes}m, "
                         f"{match.get('category', FALLBACK_CATEGORY)})")
        return "\n".join(lines)

    def _complete(self, prompt: str, max_tokens: int) -> str:
        if self.llm is None:
            raise ReflectionError("No LLM backend configured (classifier is 'none')")
        answer = self.llm.complete(REFLECTION_SYSTEM_PROMPT, prompt,
                                   max_tokens=max_tokens, temperature=0.7,
                                   timeout=self.timeout)
        if not answer:
            raise ReflectionError("The LLM backend returned no answer")
        return answer

    def ask(self, query: str, time_range: str = "today", owner_id=None,
            now: datetime | None = None) -> dict:
        """Answer a question about the given time range and store it."""
        if not query or not query.strip():
            raise ValueError("A reflection question is required")
        now = datetime.now() if now is None else now
        since = range_start(time_range, now)

        sessions = self.session_data(time_range, owner_id=owner_id, now=now)
        context = build_context(sessions, self.merge_window_ms) + self._related(query, since)
        answer = self._complete(
            f"Based on this browsing data:\n\n{context}\n\nUser question: {query}", 500)

        timestamp = int(now.timestamp() * 1000)
        try:
            reflection_id = self.db.insert_reflection(query, answer, sessions,
                                                      timestamp, owner_id)
        except Exception as e:
            logger.warning(f"Could not save reflection: {e}")
            reflection_id = None
        return {"id": reflection_id, "answer": answer, "context": sessions,
                "timestamp": timestamp}

    def weekly_summary(self, owner_id=None, now: datetime | None = None) -> str:
        sessions = self.session_data("week", owner_id=owner_id, now=now)
        context = build_context(sessions, self.merge_window_ms)
        return self._complete(f"{WEEKLY_SUMMARY_PROMPT}\n\n{context}", 600)

    def history(self, limit: int = 20, owner_id=None) -> list[dict]:
        return self.db.get_reflections(limit=limit, owner_id=owner_id)

"""Shared pytest fixtures for Reflectra tests."""

import pytest

from reflectra.categorizer import Categorizer
from reflectra.db import ReflectraDB
from reflectra.reconciler import SessionReconciler


class FakeClassifier:
    """Scripted Tier-2 classifier that records every call.

    `replies` maps a URL to a category name or an exception instance;
    anything unlisted gets `default`.
    """

    def __init__(self, default: str = "Research", replies: dict | None = None):
        self.default = default
        self.replies = replies or {}
        self.calls = []

    def classify(self, url: str, title: str) -> str:
        self.calls.append((url, title))
        reply = self.replies.get(url, self.default)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def db(tmp_path):
    """Fresh store with seed categories."""
    return ReflectraDB(tmp_path / "reflectra.db")


@pytest.fixture
def fake_classifier():
    return FakeClassifier()


@pytest.fixture
def sleeps():
    """Collects the delays the sweep asked for instead of sleeping."""
    return []


@pytest.fixture
def categorizer(db, fake_classifier, sleeps):
    return Categorizer(db, classifier=fake_classifier, sleep=sleeps.append)


@pytest.fixture
def reconciler(db):
    """Reconciler without a categorizer, so inserts stay uncategorized."""
    return SessionReconciler(db)


@pytest.fixture
def doc_fragments():
    """Three auto-save fragments of one Google Doc visit."""
    url = "https://docs.google.com/document/d/abc?x=1"
    return [
        {"id": 1, "url": url, "title": "My Doc", "timestamp": 0, "duration": 30000},
        {"id": 2, "url": url, "title": "My Doc", "timestamp": 30000, "duration": 30000},
        {"id": 3, "url": url, "title": "My Doc", "timestamp": 60000, "duration": 20000},
    ]


def make_session(url="https://example.com/page", title="Example", timestamp=0,
                 duration=30000, **extra):
    return {"url": url, "title": title, "timestamp": timestamp,
            "duration": duration, **extra}

"""Similarity index for browsing sessions.

Embeds a short text summary of each session through an OpenAI-compatible
embeddings endpoint and keeps the vectors next to the sessions in SQLite,
packed as float32 BLOBs. Registered as a reconciler update hook so a
merged session's vector always reflects its accumulated duration.

Nothing here is allowed to break session capture: every failure is
logged and reported as False / [].
"""

import array
import logging
import struct
from datetime import datetime, timezone

import requests

from .constants import FALLBACK_CATEGORY
from .db import ReflectraDB

logger = logging.getLogger(__name__)


def build_session_summary(session: dict, category_name: str | None = None) -> str:
    """Multi-line text used as the embedding input for a session."""
    minutes = round((session.get("duration") or 0) / 60000)
    lines = ["Browsing session"]
    if session.get("title"):
        lines.append(f"Title: {session['title']}")
    if session.get("url"):
        lines.append(f"URL: {session['url']}")
    lines.append(f"DurationMinutes: {minutes}")
    if category_name:
        lines.append(f"Category: {category_name}")
    if session.get("timestamp"):
        started = datetime.fromtimestamp(session["timestamp"] / 1000, tz=timezone.utc)
        lines.append(f"Timestamp: {started.isoformat()}")
    return "\n".join(lines)


def pack_vector(values) -> bytes:
    return array.array('f', values).tobytes()


def cosine_distance_vectors(vec_a: bytes, vec_b: bytes) -> float:
    """Cosine distance between two packed float32 vectors. Lower = more similar."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 2.0
    n = len(vec_a) // 4  # float32 = 4 bytes
    a = struct.unpack(f'{n}f', vec_a)
    b = struct.unpack(f'{n}f', vec_b)

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5

    if norm_a == 0 or norm_b == 0:
        return 2.0
    return 1.0 - dot / (norm_a * norm_b)


class SimilarityIndex:
    def __init__(self, db: ReflectraDB, embedding_url: str,
                 model: str = "text-embedding-3-small", api_key: str = "",
                 timeout: int = 30):
        self.db = db
        self.embedding_url = embedding_url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def embed_text(self, text: str) -> bytes | None:
        """Embedding for `text` as a float32 BLOB, or None on failure."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                self.embedding_url,
                headers=headers,
                json={"model": self.model, "input": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
            values = response.json()["data"][0]["embedding"]
        except requests.RequestException as e:
            logger.warning(f"Embedding request failed: {e}")
            return None
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Malformed embedding response: {e}")
            return None
        return pack_vector(values)

    def upsert(self, session_id: int, text: str, metadata: dict | None = None) -> bool:
        embedding = self.embed_text(text)
        if embedding is None:
            return False
        try:
            self.db.upsert_vector(session_id, text, embedding, metadata)
        except Exception as e:
            logger.warning(f"Could not store vector for session {session_id}: {e}")
            return False
        return True

    def hook(self, session: dict) -> bool:
        """Reconciler update hook: re-embed a session after insert or merge."""
        if session.get("id") is None:
            return False
        category_name = None
        if session.get("category_id") is not None:
            category = self.db.get_category(session["category_id"])
            category_name = category["name"] if category else None
        metadata = {
            "title": session.get("title") or "Untitled session",
            "url": session.get("url"),
            "timestamp": session.get("timestamp"),
            "duration": session.get("duration") or 0,
            "category": category_name or FALLBACK_CATEGORY,
            "source": "browser_session",
        }
        text = build_session_summary(session, category_name)
        return self.upsert(session["id"], text, metadata)

    def query_similar(self, query: str, top_k: int = 8, since: int | None = None) -> list[dict]:
        """Sessions whose summaries are closest to `query`."""
        query_vec = self.embed_text(query)
        if query_vec is None:
            return []
        try:
            rows = self.db.get_vectors(since=since)
        except Exception as e:
            logger.warning(f"Could not read vectors: {e}")
            return []

        scored = []
        for row in rows:
            distance = cosine_distance_vectors(query_vec, row["embedding"])
            scored.append({
                "id": row["session_id"],
                "score": 1.0 - distance,
                **row["metadata"],
            })
        scored.sort(key=lambda r: r["score"], reverse=True)
        return scored[:top_k]

    def reindex(self) -> dict:
        """Re-embed every stored session, e.g. after changing the embedding model."""
        indexed = 0
        failed = 0
        for owner in self.db.get_owner_ids():
            for session in self.db.get_all_sessions(owner):
                try:
                    ok = self.hook(session)
                except Exception as e:
                    logger.warning(f"Could not index session {session['id']}: {e}")
                    ok = False
                if ok:
                    indexed += 1
                else:
                    failed += 1
        logger.info(f"Reindexed {indexed} sessions, {failed} failed")
        return {"indexed": indexed, "failed": failed}

"""SQLite store for Reflectra.

Uses libsql_experimental for embedded replica support when a sync_url is
configured — each machine keeps a local SQLite file that syncs with a
central sqld server. Otherwise a plain local SQLite database is used.

Stores: browsing sessions, wellness categories (seeded on open), the
embedding vectors of the similarity sidecar and the reflection history.
"""

import json
import logging
import time
from pathlib import Path

try:
    import libsql_experimental as libsql
    HAS_LIBSQL = True
except ImportError:
    HAS_LIBSQL = False

from .constants import SEED_CATEGORIES, SEED_CATEGORY_NAMES, WELLNESS_TYPES
from .urls import normalize_url

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".reflectra" / "reflectra.db"

SESSION_COLUMNS = ("id, url, normalized_url, title, duration, timestamp, "
                   "category_id, owner_id, claimed_at, created_at")

# Fields update_session() is allowed to touch
UPDATABLE_FIELDS = {"duration", "timestamp", "title", "category_id", "claimed_at"}


class CategoryError(ValueError):
    """Invalid administrative change to the category set."""


def _rows_to_dicts(cursor) -> list[dict]:
    """Convert cursor results to list of dicts using cursor.description."""
    if not cursor.description:
        return []
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, row)) for row in cursor.fetchall()]


def _row_to_dict(cursor) -> dict | None:
    """Fetch one row as a dict."""
    if not cursor.description:
        return None
    cols = [d[0] for d in cursor.description]
    row = cursor.fetchone()
    return dict(zip(cols, row)) if row else None


class ReflectraDB:
    def __init__(self, db_path: Path = DEFAULT_DB_PATH,
                 sync_url: str = "", auth_token: str = ""):
        self.db_path = Path(db_path)
        self.sync_url = sync_url
        self.auth_token = auth_token
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self):
        """Open a connection — embedded replica if sync_url is set, local otherwise."""
        if self.sync_url and HAS_LIBSQL:
            try:
                kwargs = {"sync_url": self.sync_url}
                if self.auth_token:
                    kwargs["auth_token"] = self.auth_token
                return libsql.connect(str(self.db_path), **kwargs)
            except Exception as e:
                logger.warning(f"Sync server unreachable, using local replica: {e}")
        if HAS_LIBSQL:
            conn = libsql.connect(str(self.db_path))
        else:
            import sqlite3
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _sync(self, conn):
        """Sync with server if this is an embedded replica."""
        if self.sync_url and hasattr(conn, "sync"):
            try:
                conn.sync()
            except Exception as e:
                logger.debug(f"Replica sync skipped: {e}")

    def _execute(self, callback):
        """Execute a callback with a connection, handling sync and cleanup."""
        conn = self._connect()
        try:
            self._sync(conn)
            result = callback(conn)
            conn.commit()
            self._sync(conn)
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _query(self, callback):
        """Execute a read-only callback — syncs before reading."""
        conn = self._connect()
        try:
            self._sync(conn)
            return callback(conn)
        finally:
            conn.close()

    def _init_schema(self):
        def init(conn):
            conn.executescript(SCHEMA)
            for name, description, color, wellness_type in SEED_CATEGORIES:
                conn.execute(
                    """INSERT OR IGNORE INTO categories
                       (name, description, color, wellness_type)
                       VALUES (?, ?, ?, ?)""",
                    (name, description, color, wellness_type)
                )
        self._execute(init)

    # ── Sessions ──────────────────────────────────────────────

    def insert_session(self, session: dict) -> dict:
        """Insert a session and return it with its new id."""
        row = {
            "url": session["url"],
            "normalized_url": normalize_url(session["url"]),
            "title": session.get("title") or "",
            "duration": int(session["duration"]),
            "timestamp": int(session["timestamp"]),
            "category_id": session.get("category_id"),
            "owner_id": session.get("owner_id"),
        }

        def do(conn):
            cur = conn.execute(
                """INSERT INTO sessions
                   (url, normalized_url, title, duration, timestamp,
                    category_id, owner_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (row["url"], row["normalized_url"], row["title"],
                 row["duration"], row["timestamp"], row["category_id"],
                 row["owner_id"])
            )
            return cur.lastrowid
        row["id"] = self._execute(do)
        return row

    def update_session(self, session_id: int, fields: dict) -> dict | None:
        """Apply a partial update and return the updated row (None if missing)."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)

            def do(conn):
                conn.execute(
                    f"UPDATE sessions SET {assignments} WHERE id = ?",
                    (*fields.values(), session_id)
                )
            self._execute(do)
        return self.get_session(session_id)

    def delete_sessions(self, ids: list[int]) -> int:
        """Delete sessions (and their vectors). Returns rows deleted."""
        ids = list(ids)
        if not ids:
            return 0

        def do(conn):
            placeholders = ",".join("?" * len(ids))
            conn.execute(
                f"DELETE FROM session_vectors WHERE session_id IN ({placeholders})", ids)
            cur = conn.execute(
                f"DELETE FROM sessions WHERE id IN ({placeholders})", ids)
            return cur.rowcount
        return self._execute(do)

    def get_session(self, session_id: int) -> dict | None:
        def do(conn):
            cur = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?",
                (session_id,)
            )
            return _row_to_dict(cur)
        return self._query(do)

    def find_sessions(self, normalized_url: str, since: int, until: int,
                      owner_id=None) -> list[dict]:
        """Sessions on one normalized URL starting within [since, until], oldest first."""
        def do(conn):
            cur = conn.execute(
                f"""SELECT {SESSION_COLUMNS}
                    FROM sessions
                    WHERE normalized_url = ?
                      AND timestamp >= ? AND timestamp <= ?
                      AND owner_id IS ?
                    ORDER BY timestamp ASC, id ASC""",
                (normalized_url, since, until, owner_id)
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def find_uncategorized(self, limit: int = 50) -> list[dict]:
        def do(conn):
            cur = conn.execute(
                f"""SELECT {SESSION_COLUMNS}
                    FROM sessions
                    WHERE category_id IS NULL
                    ORDER BY timestamp DESC
                    LIMIT ?""",
                (limit,)
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def claim_for_categorization(self, session_id: int,
                                 stale_after_ms: int = 300000) -> bool:
        """Optimistically claim an uncategorized session for one sweep worker.

        Succeeds when the row is still uncategorized and either unclaimed or
        holding a claim older than stale_after_ms.
        """
        now_ms = int(time.time() * 1000)

        def do(conn):
            cur = conn.execute(
                """UPDATE sessions SET claimed_at = ?
                   WHERE id = ? AND category_id IS NULL
                     AND (claimed_at IS NULL OR claimed_at < ?)""",
                (now_ms, session_id, now_ms - stale_after_ms)
            )
            return cur.rowcount == 1
        return self._execute(do)

    def release_claim(self, session_id: int):
        def do(conn):
            conn.execute("UPDATE sessions SET claimed_at = NULL WHERE id = ?",
                         (session_id,))
        self._execute(do)

    def set_session_category(self, session_id: int, category_id: int | None) -> bool:
        def do(conn):
            cur = conn.execute(
                "UPDATE sessions SET category_id = ?, claimed_at = NULL WHERE id = ?",
                (category_id, session_id)
            )
            return cur.rowcount > 0
        return self._execute(do)

    def get_sessions(self, start: int | None = None, end: int | None = None,
                     category_id: int | None = None, owner_id=None,
                     limit: int = 100) -> list[dict]:
        """Sessions joined with their category, newest first."""
        conditions = ["s.owner_id IS ?"]
        params: list = [owner_id]
        if start is not None:
            conditions.append("s.timestamp >= ?")
            params.append(start)
        if end is not None:
            conditions.append("s.timestamp <= ?")
            params.append(end)
        if category_id is not None:
            conditions.append("s.category_id = ?")
            params.append(category_id)
        params.append(limit)

        def do(conn):
            cur = conn.execute(
                f"""SELECT s.id, s.url, s.normalized_url, s.title, s.duration,
                           s.timestamp, s.category_id, s.owner_id,
                           c.name AS category_name, c.color AS category_color,
                           c.wellness_type AS wellness_type
                    FROM sessions s
                    LEFT JOIN categories c ON s.category_id = c.id
                    WHERE {' AND '.join(conditions)}
                    ORDER BY s.timestamp DESC
                    LIMIT ?""",
                params
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def get_all_sessions(self, owner_id=None) -> list[dict]:
        """Every session of one owner, oldest first (batch cleanup input)."""
        def do(conn):
            cur = conn.execute(
                f"""SELECT {SESSION_COLUMNS}
                    FROM sessions
                    WHERE owner_id IS ?
                    ORDER BY timestamp ASC, id ASC""",
                (owner_id,)
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def get_owner_ids(self) -> list:
        def do(conn):
            rows = conn.execute("SELECT DISTINCT owner_id FROM sessions").fetchall()
            return [r[0] for r in rows]
        return self._query(do)

    # ── Categories ────────────────────────────────────────────

    def find_category_by_name(self, name: str) -> dict | None:
        def do(conn):
            cur = conn.execute(
                """SELECT id, name, description, color, wellness_type
                   FROM categories WHERE name = ?""",
                (name,)
            )
            return _row_to_dict(cur)
        return self._query(do)

    def get_category(self, category_id: int) -> dict | None:
        def do(conn):
            cur = conn.execute(
                """SELECT id, name, description, color, wellness_type
                   FROM categories WHERE id = ?""",
                (category_id,)
            )
            return _row_to_dict(cur)
        return self._query(do)

    def list_categories(self) -> list[dict]:
        def do(conn):
            cur = conn.execute(
                """SELECT id, name, description, color, wellness_type
                   FROM categories ORDER BY name"""
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def add_category(self, name: str, description: str = "", color: str = "#9E9E9E",
                     wellness_type: str = "unknown") -> int:
        if not name:
            raise CategoryError("Category name is required")
        if wellness_type not in WELLNESS_TYPES:
            raise CategoryError(f"Unknown wellness type: {wellness_type}")
        if self.find_category_by_name(name):
            raise CategoryError(f"Category already exists: {name}")

        def do(conn):
            cur = conn.execute(
                """INSERT INTO categories (name, description, color, wellness_type)
                   VALUES (?, ?, ?, ?)""",
                (name, description, color, wellness_type)
            )
            return cur.lastrowid
        return self._execute(do)

    def update_category(self, category_id: int, **fields) -> dict | None:
        allowed = {"name", "description", "color", "wellness_type"}
        unknown = set(fields) - allowed
        if unknown:
            raise CategoryError(f"Cannot update category fields: {sorted(unknown)}")
        if "wellness_type" in fields and fields["wellness_type"] not in WELLNESS_TYPES:
            raise CategoryError(f"Unknown wellness type: {fields['wellness_type']}")
        current = self.get_category(category_id)
        if current is None:
            return None
        if "name" in fields and fields["name"] != current["name"]:
            if current["name"] in SEED_CATEGORY_NAMES:
                raise CategoryError(f"Seed category cannot be renamed: {current['name']}")
            if self.find_category_by_name(fields["name"]):
                raise CategoryError(f"Category already exists: {fields['name']}")
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)

            def do(conn):
                conn.execute(
                    f"UPDATE categories SET {assignments} WHERE id = ?",
                    (*fields.values(), category_id)
                )
            self._execute(do)
        return self.get_category(category_id)

    def delete_category(self, category_id: int) -> bool:
        """Delete a non-seed category; its sessions fall back to uncategorized."""
        category = self.get_category(category_id)
        if category is None:
            return False
        if category["name"] in SEED_CATEGORY_NAMES:
            raise CategoryError(f"Seed category cannot be deleted: {category['name']}")

        def do(conn):
            conn.execute(
                "UPDATE sessions SET category_id = NULL, claimed_at = NULL WHERE category_id = ?",
                (category_id,)
            )
            conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
        self._execute(do)
        return True

    # ── Similarity vectors ────────────────────────────────────

    def upsert_vector(self, session_id: int, text: str, embedding: bytes,
                      metadata: dict | None = None):
        def do(conn):
            conn.execute(
                """INSERT INTO session_vectors (session_id, text, embedding, metadata, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                     text = excluded.text,
                     embedding = excluded.embedding,
                     metadata = excluded.metadata,
                     updated_at = excluded.updated_at""",
                (session_id, text, embedding, json.dumps(metadata or {}), time.time())
            )
        self._execute(do)

    def get_vectors(self, since: int | None = None, limit: int = 5000) -> list[dict]:
        """Stored vectors joined with their session's timestamp."""
        def do(conn):
            cur = conn.execute(
                """SELECT v.session_id, v.text, v.embedding, v.metadata, s.timestamp
                   FROM session_vectors v
                   JOIN sessions s ON s.id = v.session_id
                   WHERE s.timestamp >= ?
                   ORDER BY s.timestamp DESC
                   LIMIT ?""",
                (since or 0, limit)
            )
            rows = _rows_to_dicts(cur)
            for row in rows:
                row["metadata"] = json.loads(row["metadata"] or "{}")
            return rows
        return self._query(do)

    # ── Reflections ───────────────────────────────────────────

    def insert_reflection(self, query: str, response: str, context: list | None = None,
                          timestamp: int | None = None, owner_id=None) -> int:
        def do(conn):
            cur = conn.execute(
                """INSERT INTO reflections (query, response, context, timestamp, owner_id)
                   VALUES (?, ?, ?, ?, ?)""",
                (query, response, json.dumps(context or []),
                 timestamp if timestamp is not None else int(time.time() * 1000),
                 owner_id)
            )
            return cur.lastrowid
        return self._execute(do)

    def get_reflections(self, limit: int = 20, owner_id=None) -> list[dict]:
        """Reflection history without the stored context, newest first."""
        def do(conn):
            cur = conn.execute(
                """SELECT id, query, response, timestamp
                   FROM reflections
                   WHERE owner_id IS ?
                   ORDER BY timestamp DESC, id DESC
                   LIMIT ?""",
                (owner_id, limit)
            )
            return _rows_to_dicts(cur)
        return self._query(do)

    def get_reflection(self, reflection_id: int) -> dict | None:
        def do(conn):
            cur = conn.execute(
                """SELECT id, query, response, context, timestamp, owner_id
                   FROM reflections WHERE id = ?""",
                (reflection_id,)
            )
            row = _row_to_dict(cur)
            if row:
                row["context"] = json.loads(row["context"] or "[]")
            return row
        return self._query(do)

    # ── Stats ─────────────────────────────────────────────────

    def get_stats(self) -> dict:
        def do(conn):
            def count(sql):
                return conn.execute(sql).fetchone()[0]
            return {
                "sessions": count("SELECT COUNT(*) FROM sessions"),
                "uncategorized": count("SELECT COUNT(*) FROM sessions WHERE category_id IS NULL"),
                "categories": count("SELECT COUNT(*) FROM categories"),
                "total_duration_ms": count("SELECT COALESCE(SUM(duration), 0) FROM sessions"),
                "vectors": count("SELECT COUNT(*) FROM session_vectors"),
                "reflections": count("SELECT COUNT(*) FROM reflections"),
            }
        return self._query(do)


# ── Schema ────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    description TEXT DEFAULT '',
    color TEXT DEFAULT '#9E9E9E',
    wellness_type TEXT NOT NULL DEFAULT 'unknown',
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL,
    title TEXT DEFAULT '',
    duration INTEGER NOT NULL CHECK(duration >= 0),
    timestamp INTEGER NOT NULL,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    owner_id TEXT,
    claimed_at INTEGER,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_sessions_timestamp ON sessions(timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_category ON sessions(category_id);
CREATE INDEX IF NOT EXISTS idx_sessions_normalized_url ON sessions(normalized_url, timestamp);

CREATE TABLE IF NOT EXISTS session_vectors (
    session_id INTEGER PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
    text TEXT NOT NULL,
    embedding BLOB NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS reflections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT NOT NULL,
    response TEXT NOT NULL,
    context TEXT,
    timestamp INTEGER NOT NULL,
    owner_id TEXT,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_reflections_timestamp ON reflections(timestamp);
"""

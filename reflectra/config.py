"""Configuration for Reflectra.

Reads from ~/.reflectra/config.json with sensible defaults.
"""

import json
from pathlib import Path


DEFAULT_CONFIG_PATH = Path.home() / ".reflectra" / "config.json"

DEFAULTS = {
    # Storage
    "db_path": str(Path.home() / ".reflectra" / "reflectra.db"),

    # libSQL sync — set sync_url to enable embedded replica mode
    # When unset, db_path is used as a plain local SQLite database
    "sync_url": "",
    "sync_auth_token": "",

    # Reconciliation windows (milliseconds)
    "continuation_gap_ms": 35000,       # end-to-start gap for live merge-on-insert
    "lookback_window_ms": 120000,       # how far back merge-on-insert looks
    "display_merge_window_ms": 300000,  # start-to-start, display-time merge
    "cleanup_merge_window_ms": 120000,  # start-to-start, storage cleanup
    "per_url_lock": False,

    # Categorization sweep
    "sweep_limit": 50,
    "sweep_delay_ms": 100,
    "sweep_interval_minutes": 15,
    "rules_path": "",  # JSON file replacing the built-in rule table

    # Tier-2 classifier: "cli", "api" or "none"
    "classifier": "cli",
    "classifier_model": "haiku",
    "classifier_timeout": 20,
    "api_url": "https://api.openai.com/v1/chat/completions",
    "api_key": "",  # falls back to OPENAI_API_KEY
    "api_model": "gpt-4o-mini",

    # Similarity index
    "index_enabled": False,
    "embedding_url": "https://api.openai.com/v1/embeddings",
    "embedding_model": "text-embedding-3-small",

    # Reflections
    "reflection_session_limit": 200,
    "reflection_timeout": 60,

    # Capture-agent inbox
    "inbox_dir": str(Path.home() / ".reflectra" / "inbox"),
    "inbox_settle_seconds": 5,
}


class Config:
    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        self.config_path = config_path
        self._data = dict(DEFAULTS)
        self._load()

    def _load(self):
        if self.config_path.exists():
            with open(self.config_path) as f:
                user_config = json.load(f)
            self._data.update(user_config)

    def save(self):
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        self._data[key] = value

    def __getitem__(self, key):
        return self._data[key]

    def as_dict(self) -> dict:
        return dict(self._data)

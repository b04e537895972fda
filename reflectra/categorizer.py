"""Two-tier session categorization.

Tier 1 matches the URL against the ordered rule table. Tier 2 asks the
configured classifier for a category name and looks it up by exact name.
Anything that goes wrong in Tier 2 lands in the fallback category, so a
caller always gets a usable category id.
"""

import logging
import time

from .constants import FALLBACK_CATEGORY
from .db import CategoryError, ReflectraDB
from .rules import RuleTable

logger = logging.getLogger(__name__)

TIER_PATTERN = "pattern"
TIER_CLASSIFIER = "classifier"
TIER_FALLBACK = "fallback"


class Categorizer:
    def __init__(self, db: ReflectraDB, rules: RuleTable | None = None,
                 classifier=None, sweep_limit: int = 50,
                 sweep_delay_ms: int = 100, sleep=time.sleep):
        self.db = db
        self.rules = rules or RuleTable()
        self.classifier = classifier
        self.sweep_limit = sweep_limit
        self.sweep_delay = sweep_delay_ms / 1000.0
        self._sleep = sleep
        self._category_ids: dict[str, int] = {}
        self.refresh_categories()
        self.rules.validate_against(self._category_ids)

    @classmethod
    def from_config(cls, db: ReflectraDB, config) -> "Categorizer":
        from .classifier import build_classifier

        rules_path = config.get("rules_path")
        rules = RuleTable.from_file(rules_path) if rules_path else RuleTable()
        return cls(
            db,
            rules=rules,
            classifier=build_classifier(config),
            sweep_limit=config.get("sweep_limit", 50),
            sweep_delay_ms=config.get("sweep_delay_ms", 100),
        )

    # ── Category lookup ───────────────────────────────────────

    def refresh_categories(self):
        """Reload the name → id cache from the store."""
        self._category_ids = {c["name"]: c["id"] for c in self.db.list_categories()}

    def _category_id(self, name: str) -> int | None:
        """Id of the category called `name`, or None if missing or unreadable.

        Cached ids are checked against the store before use, so a category
        deleted after the cache was filled is never handed out.
        """
        if not name:
            return None
        try:
            cached = self._category_ids.get(name)
            if cached is not None:
                category = self.db.get_category(cached)
                if category and category["name"] == name:
                    return cached
                del self._category_ids[name]
            category = self.db.find_category_by_name(name)
        except Exception as e:
            logger.warning(f"Category lookup failed for '{name}': {e}")
            return None
        if category:
            self._category_ids[name] = category["id"]
            return category["id"]
        return None

    @property
    def fallback_id(self) -> int | None:
        return self._category_id(FALLBACK_CATEGORY)

    # ── Single categorization ─────────────────────────────────

    def categorize(self, url: str, title: str = "") -> int | None:
        """Category id for a (url, title) pair."""
        category_id, _ = self.categorize_with_tier(url, title)
        return category_id

    def categorize_with_tier(self, url: str, title: str = "") -> tuple[int | None, str]:
        name = self.rules.match(url)
        if name:
            category_id = self._category_id(name)
            if category_id is not None:
                return category_id, TIER_PATTERN
            logger.warning(f"Rule matched unknown category '{name}' for {url}")

        if self.classifier is None:
            return self.fallback_id, TIER_FALLBACK

        try:
            label = self.classifier.classify(url, title or "")
        except Exception as e:
            logger.warning(f"Classifier failed for {url}: {e}")
            return self.fallback_id, TIER_FALLBACK

        category_id = self._category_id(label)
        if category_id is None:
            if label:
                logger.info(f"Classifier returned unknown category '{label}' for {url}")
            return self.fallback_id, TIER_FALLBACK
        return category_id, TIER_CLASSIFIER

    # ── Sweep ─────────────────────────────────────────────────

    def categorize_unclassified(self, limit: int | None = None) -> dict:
        """Categorize up to `limit` uncategorized sessions, newest first.

        Each row is claimed before classification so concurrent sweeps
        skip rows another sweep is working on. Classifier calls run one
        at a time with a short delay between them.
        """
        limit = limit or self.sweep_limit
        try:
            sessions = self.db.find_uncategorized(limit)
        except Exception as e:
            logger.error(f"Could not fetch uncategorized sessions: {e}")
            return {"categorized": 0, "total": 0}

        if not sessions:
            return {"categorized": 0, "total": 0}

        logger.info(f"Categorizing {len(sessions)} sessions...")
        categorized = 0
        for session in sessions:
            try:
                if not self.db.claim_for_categorization(session["id"]):
                    logger.debug(f"Session {session['id']} claimed elsewhere, skipping")
                    continue
            except Exception as e:
                logger.warning(f"Could not claim session {session['id']}: {e}")
                continue

            tier = TIER_FALLBACK
            try:
                category_id, tier = self.categorize_with_tier(session["url"], session["title"])
                if category_id is None:
                    logger.warning(f"No category available for session {session['id']}, "
                                   "leaving it for the next sweep")
                    self._release(session["id"])
                elif self.db.set_session_category(session["id"], category_id):
                    categorized += 1
            except Exception as e:
                logger.warning(f"Could not categorize session {session['id']}: {e}")
                self._release(session["id"])

            if tier != TIER_PATTERN and self.classifier is not None:
                self._sleep(self.sweep_delay)

        logger.info(f"Categorized {categorized} sessions")
        return {"categorized": categorized, "total": len(sessions)}

    def _release(self, session_id: int):
        try:
            self.db.release_claim(session_id)
        except Exception as e:
            logger.warning(f"Could not release claim on session {session_id}: {e}")

    # ── Manual override ───────────────────────────────────────

    def recategorize(self, session_id: int, category_id: int) -> bool:
        """Explicitly assign a category, replacing whatever was there."""
        if self.db.get_category(category_id) is None:
            raise CategoryError(f"Unknown category id: {category_id}")
        return self.db.set_session_category(session_id, category_id)

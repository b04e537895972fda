"""Tier-1 categorization: ordered URL pattern rules.

A rule table maps category names to regular expressions tested against
the raw URL. Categories are evaluated in declaration order and the first
category owning a matching rule wins; there is no specificity scoring.

The table is loaded once, validated, and then only read. `reload()` is
the single way to change it at runtime.
"""

import json
import logging
import re
import threading
from pathlib import Path

from .constants import DEFAULT_RULES

logger = logging.getLogger(__name__)


class RuleTableError(ValueError):
    """Rule table failed validation."""


class RuleTable:
    def __init__(self, rules: dict | list | None = None):
        self._lock = threading.Lock()
        self._compiled: list[tuple[str, list[re.Pattern]]] = []
        self.load(DEFAULT_RULES if rules is None else rules)

    @classmethod
    def from_file(cls, path: Path) -> "RuleTable":
        """Load a JSON rule table: {"Category": ["regex", ...], ...} in priority order."""
        with open(path) as f:
            data = json.load(f)
        return cls(data)

    def load(self, rules: dict | list):
        """Validate and install a rule table.

        Accepts a mapping (insertion order is priority order) or a list of
        [name, patterns] pairs. Nothing is installed if validation fails.
        """
        items = list(rules.items()) if isinstance(rules, dict) else list(rules)
        compiled = []
        seen = set()
        for entry in items:
            try:
                name, patterns = entry
            except (TypeError, ValueError):
                raise RuleTableError(f"Malformed rule entry: {entry!r}")
            if not isinstance(name, str) or not name:
                raise RuleTableError(f"Rule category name must be a non-empty string: {name!r}")
            if name in seen:
                raise RuleTableError(f"Duplicate category in rule table: {name}")
            seen.add(name)
            if isinstance(patterns, str):
                patterns = [patterns]
            regexes = []
            for pattern in patterns:
                try:
                    regexes.append(re.compile(pattern, re.IGNORECASE))
                except re.error as e:
                    raise RuleTableError(f"Bad pattern for {name}: {pattern!r} ({e})")
            compiled.append((name, regexes))

        with self._lock:
            self._compiled = compiled
        logger.info(f"Loaded rule table: {len(compiled)} categories, "
                    f"{sum(len(r) for _, r in compiled)} patterns")

    def reload(self, rules: dict | list):
        self.load(rules)

    @property
    def category_names(self) -> list[str]:
        return [name for name, _ in self._compiled]

    def validate_against(self, known_names) -> None:
        """Raise if any rule targets a category that does not exist."""
        missing = [n for n in self.category_names if n not in set(known_names)]
        if missing:
            raise RuleTableError(f"Rules reference unknown categories: {missing}")

    def match(self, url: str) -> str | None:
        """Return the first category whose rules match `url`, or None."""
        if not url:
            return None
        for name, regexes in self._compiled:
            for regex in regexes:
                if regex.search(url):
                    return name
        return None

    def __len__(self):
        return len(self._compiled)

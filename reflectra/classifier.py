"""Tier-2 categorization: pluggable text classifiers.

A classifier is anything with `classify(url, title) -> str` returning a
category name. Two backends are provided:

- CliClassifier: calls Claude through the `claude` CLI in --print mode
  (uses the existing subscription, no API key needed).
- ChatApiClassifier: calls any OpenAI-compatible chat completions API.

Both also expose `complete(system_prompt, prompt)`, which reflections use
for free-form answers. Both return "" on failure instead of raising; the
categorizer maps empty or unknown names to the fallback category.
"""

import logging
import os
import re
import shutil
import subprocess
from typing import Protocol

import requests

from .constants import CATEGORY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    def classify(self, url: str, title: str) -> str: ...


def build_prompt(url: str, title: str) -> str:
    return f"URL: {url}\nTitle: {title or 'No title'}"


def parse_category_name(raw: str) -> str:
    """Pull a bare category name out of a model reply.

    Handles the usual decoration: markdown bold, quotes, list numbering,
    a "Category:" prefix and a trailing period. Takes the last non-empty
    line when the model adds a preamble.
    """
    if not raw:
        return ""
    lines = [ln.strip() for ln in raw.strip().splitlines() if ln.strip()]
    if not lines:
        return ""
    text = lines[-1]
    text = re.sub(r'^\d+[.)]\s*', '', text)
    text = re.sub(r'^category\s*:\s*', '', text, flags=re.IGNORECASE)
    text = text.strip().strip('*"\'`').strip()
    return text.rstrip(".").strip()


class CliClassifier:
    """Classify through the `claude` CLI (one-shot, no persistent session)."""

    def __init__(self, model: str = "haiku", timeout: int = 20):
        self.model = model
        self.timeout = timeout

    def complete(self, system_prompt: str, prompt: str, max_tokens: int = 50,
                 temperature: float = 0.3, timeout: int | None = None) -> str:
        """Raw CLI reply for one prompt, or "" on failure.

        max_tokens and temperature are accepted for parity with the API
        backend; the CLI picks its own.
        """
        claude_path = shutil.which("claude")
        if not claude_path:
            logger.warning("claude CLI not found in PATH")
            return ""

        cmd = [
            claude_path,
            "-p",
            "--model", self.model,
            "--no-session-persistence",
            "--output-format", "text",
            "--system-prompt", system_prompt,
            prompt,
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                cwd="/tmp",  # avoid picking up CLAUDE.md from home dir
                env={**os.environ, "TOKENIZERS_PARALLELISM": "false"},
            )
        except subprocess.TimeoutExpired:
            logger.warning("claude CLI timed out")
            return ""
        except OSError as e:
            logger.error(f"claude CLI failed to start: {e}")
            return ""

        output = result.stdout.strip()
        if result.returncode != 0 or not output:
            logger.warning(f"claude CLI error: {result.stderr.strip()[:200]}")
            return ""
        return output

    def classify(self, url: str, title: str) -> str:
        return parse_category_name(self.complete(CATEGORY_SYSTEM_PROMPT, build_prompt(url, title)))


class ChatApiClassifier:
    """Classify through an OpenAI-compatible chat completions endpoint."""

    def __init__(self, api_url: str, api_key: str = "",
                 model: str = "gpt-4o-mini", timeout: int = 20):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def complete(self, system_prompt: str, prompt: str, max_tokens: int = 50,
                 temperature: float = 0.3, timeout: int | None = None) -> str:
        """Assistant message content for one prompt, or "" on failure."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                self.api_url,
                headers=headers,
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except requests.RequestException as e:
            logger.warning(f"Chat API error: {e}")
            return ""
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Malformed chat API response: {e}")
            return ""
        return (content or "").strip()

    def classify(self, url: str, title: str) -> str:
        return parse_category_name(self.complete(CATEGORY_SYSTEM_PROMPT, build_prompt(url, title)))


def resolve_api_key(config) -> str:
    """Configured api_key, else OPENAI_API_KEY from the environment."""
    return config.get("api_key") or os.environ.get("OPENAI_API_KEY", "")


def build_classifier(config) -> Classifier | None:
    """Build the configured Tier-2 backend, or None when disabled."""
    kind = config.get("classifier", "cli")
    timeout = config.get("classifier_timeout", 20)
    if kind == "cli":
        return CliClassifier(model=config.get("classifier_model", "haiku"),
                             timeout=timeout)
    if kind == "api":
        return ChatApiClassifier(
            api_url=config["api_url"],
            api_key=resolve_api_key(config),
            model=config.get("api_model", "gpt-4o-mini"),
            timeout=timeout,
        )
    if kind != "none":
        logger.warning(f"Unknown classifier backend '{kind}', Tier-2 disabled")
    return None

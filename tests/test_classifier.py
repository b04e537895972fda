"""Tests for Tier-2 classifier backends.

The CLI and HTTP calls are patched; nothing leaves the process.
"""

from unittest.mock import Mock, patch

import pytest
import requests
import subprocess

from reflectra.classifier import (
    ChatApiClassifier,
    CliClassifier,
    build_classifier,
    build_prompt,
    parse_category_name,
    resolve_api_key,
)
from reflectra.config import Config


class TestParseCategoryName:

    @pytest.mark.parametrize("raw,expected", [
        ("Focused Work", "Focused Work"),
        ("  Learning.\n", "Learning"),
        ("**Mindless Scroll**", "Mindless Scroll"),
        ('"Research"', "Research"),
        ("6. Mindless Scroll", "Mindless Scroll"),
        ("Category: Communication", "Communication"),
        ("Here is the category.\n\nRelaxation", "Relaxation"),
        ("", ""),
        ("\n\n", ""),
    ])
    def test_parses(self, raw, expected):
        assert parse_category_name(raw) == expected


def test_build_prompt():
    assert build_prompt("https://a.com", "") == "URL: https://a.com\nTitle: No title"
    assert build_prompt("https://a.com", "Home") == "URL: https://a.com\nTitle: Home"


class TestCliClassifier:

    def test_returns_parsed_name(self):
        with patch("shutil.which", return_value="/usr/bin/claude"), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=0, stdout="Learning\n", stderr="")
            assert CliClassifier().classify("https://a.com", "A") == "Learning"

            cmd = mock_run.call_args[0][0]
            assert cmd[0] == "/usr/bin/claude"
            assert "--model" in cmd and cmd[cmd.index("--model") + 1] == "haiku"
            assert cmd[-1] == "URL: https://a.com\nTitle: A"

    def test_complete_passes_prompts_and_timeout(self):
        with patch("shutil.which", return_value="/usr/bin/claude"), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=0, stdout="  A long answer.\n", stderr="")
            answer = CliClassifier().complete("be kind", "How was my week?", timeout=90)
            assert answer == "A long answer."

            cmd = mock_run.call_args[0][0]
            assert cmd[cmd.index("--system-prompt") + 1] == "be kind"
            assert cmd[-1] == "How was my week?"
            assert mock_run.call_args.kwargs["timeout"] == 90

    def test_missing_cli(self):
        with patch("shutil.which", return_value=None), patch("subprocess.run") as mock_run:
            assert CliClassifier().classify("https://a.com", "") == ""
            mock_run.assert_not_called()

    def test_timeout(self):
        with patch("shutil.which", return_value="/usr/bin/claude"), \
                patch("subprocess.run", side_effect=subprocess.TimeoutExpired("claude", 20)):
            assert CliClassifier().classify("https://a.com", "") == ""

    def test_nonzero_exit(self):
        with patch("shutil.which", return_value="/usr/bin/claude"), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=1, stdout="Learning", stderr="auth error")
            assert CliClassifier().classify("https://a.com", "") == ""


class TestChatApiClassifier:

    def _response(self, content):
        response = Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"choices": [{"message": {"content": content}}]}
        return response

    def test_returns_parsed_name(self):
        with patch("requests.post", return_value=self._response("Research.")) as mock_post:
            classifier = ChatApiClassifier("https://api.example/v1/chat", api_key="k")
            assert classifier.classify("https://a.com", "A") == "Research"

            kwargs = mock_post.call_args.kwargs
            assert kwargs["headers"]["Authorization"] == "Bearer k"
            assert kwargs["json"]["messages"][1]["content"] == "URL: https://a.com\nTitle: A"
            assert kwargs["json"]["max_tokens"] == 50

    def test_complete_uses_given_sampling(self):
        with patch("requests.post", return_value=self._response(" Answer \n")) as mock_post:
            classifier = ChatApiClassifier("https://api.example/v1/chat")
            answer = classifier.complete("system", "question", max_tokens=500,
                                         temperature=0.7, timeout=60)
            assert answer == "Answer"
            kwargs = mock_post.call_args.kwargs
            assert kwargs["json"]["max_tokens"] == 500
            assert kwargs["json"]["temperature"] == 0.7
            assert kwargs["json"]["messages"][0] == {"role": "system", "content": "system"}
            assert kwargs["timeout"] == 60

    def test_no_auth_header_without_key(self):
        with patch("requests.post", return_value=self._response("Research")) as mock_post:
            ChatApiClassifier("https://api.example/v1/chat").classify("https://a.com", "")
            assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    def test_request_error(self):
        with patch("requests.post", side_effect=requests.ConnectionError("refused")):
            assert ChatApiClassifier("https://api.example").classify("https://a.com", "") == ""

    def test_http_error(self):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("500")
        with patch("requests.post", return_value=response):
            assert ChatApiClassifier("https://api.example").classify("https://a.com", "") == ""

    def test_malformed_payload(self):
        response = Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"choices": []}
        with patch("requests.post", return_value=response):
            assert ChatApiClassifier("https://api.example").classify("https://a.com", "") == ""


class TestBuildClassifier:

    def test_cli_default(self, tmp_path):
        classifier = build_classifier(Config(tmp_path / "c.json"))
        assert isinstance(classifier, CliClassifier)
        assert classifier.timeout == 20

    def test_api_uses_env_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        config = Config(tmp_path / "c.json")
        config.set("classifier", "api")
        classifier = build_classifier(config)
        assert isinstance(classifier, ChatApiClassifier)
        assert classifier.api_key == "env-key"

    def test_configured_key_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        config = Config(tmp_path / "c.json")
        config.set("classifier", "api")
        config.set("api_key", "cfg-key")
        assert build_classifier(config).api_key == "cfg-key"

    @pytest.mark.parametrize("kind", ["none", "bogus"])
    def test_disabled(self, tmp_path, kind):
        config = Config(tmp_path / "c.json")
        config.set("classifier", kind)
        assert build_classifier(config) is None


def test_resolve_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = Config(tmp_path / "c.json")
    assert resolve_api_key(config) == ""
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    assert resolve_api_key(config) == "env-key"
    config.set("api_key", "cfg-key")
    assert resolve_api_key(config) == "cfg-key"

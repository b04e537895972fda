"""Tests for the JSON config layer."""

import json

from reflectra.config import DEFAULTS, Config


def test_defaults_when_missing(tmp_path):
    config = Config(tmp_path / "config.json")
    assert config.as_dict() == DEFAULTS
    assert config["continuation_gap_ms"] == 35000
    assert config["display_merge_window_ms"] == 300000
    assert config["cleanup_merge_window_ms"] == 120000


def test_user_values_override(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sweep_limit": 10, "classifier": "none"}))
    config = Config(path)
    assert config["sweep_limit"] == 10
    assert config.get("classifier") == "none"
    assert config["sweep_delay_ms"] == 100


def test_get_default_for_unknown_key(tmp_path):
    assert Config(tmp_path / "c.json").get("nope", 3) == 3


def test_save_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config(path)
    config.set("per_url_lock", True)
    config.save()
    assert json.loads(path.read_text())["per_url_lock"] is True
    assert Config(path)["per_url_lock"] is True


def test_as_dict_is_a_copy(tmp_path):
    config = Config(tmp_path / "c.json")
    config.as_dict()["sweep_limit"] = 1
    assert config["sweep_limit"] == 50

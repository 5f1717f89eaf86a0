"""Tests for configuration loading."""
import pytest
import yaml

from config import load_config, DEFAULT_RULES_PATH, _deep_merge


def test_defaults_load():
    config = load_config()
    assert config["retention"]["days"] == 30
    assert config["notifications"]["backoff"]["policy"] == "linear"
    assert config["alerts"]["rules_path"] == str(DEFAULT_RULES_PATH)


def test_override_file_is_merged(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"retention": {"days": 7},
                                    "notifications": {"backoff": {"policy": "exponential"}}}))
    config = load_config(str(path))
    assert config["retention"]["days"] == 7
    assert config["retention"]["sweep_time"] == "03:00"
    assert config["notifications"]["backoff"]["base_seconds"] == 1


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("OPS_MONITOR_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("OPS_MONITOR_RETENTION_DAYS", "14")
    config = load_config()
    assert config["database"]["path"] == str(tmp_path / "x.db")
    assert config["retention"]["days"] == 14


@pytest.mark.parametrize("override", [
    {"retention": {"days": 0}},
    {"notifications": {"workers": 0}},
    {"notifications": {"backoff": {"policy": "random"}}},
    {"sampler": {"interval_seconds": -1}},
])
def test_invalid_values_rejected(tmp_path, override):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(override))
    with pytest.raises(ValueError):
        load_config(str(path))


def test_deep_merge_does_not_mutate():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 5}})
    assert merged == {"a": {"b": 5, "c": 2}}
    assert base["a"]["b"] == 1

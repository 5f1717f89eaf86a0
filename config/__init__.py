"""Configuration management."""
import os
import yaml
from pathlib import Path

from models.enums import BackoffPolicy

_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"
DEFAULT_RULES_PATH = Path(__file__).parent / "alert_rules.yaml"

ENV_MAP = {
    "OPS_MONITOR_DB_PATH": ("database", "path"),
    "OPS_MONITOR_LOG_LEVEL": ("logging", "level"),
    "OPS_MONITOR_SAMPLE_INTERVAL": ("sampler", "interval_seconds"),
    "OPS_MONITOR_RETENTION_DAYS": ("retention", "days"),
    "OPS_MONITOR_RULES_PATH": ("alerts", "rules_path"),
    "OPS_MONITOR_SMTP_HOST": ("notifications", "channels", "email", "smtp_host"),
    "OPS_MONITOR_SMTP_PORT": ("notifications", "channels", "email", "smtp_port"),
}


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    # Environment variable overrides
    for env_key, config_path in ENV_MAP.items():
        val = os.environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                d = d.setdefault(k, {})
            try:
                d[config_path[-1]] = int(val)
            except ValueError:
                d[config_path[-1]] = val

    if not config.get("alerts", {}).get("rules_path"):
        config.setdefault("alerts", {})["rules_path"] = str(DEFAULT_RULES_PATH)

    _validate_config(config)
    return config


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    """Basic config validation."""
    required_sections = ["database", "sampler", "pipeline", "notifications", "retention", "alerts"]
    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    if config["sampler"]["interval_seconds"] <= 0:
        raise ValueError("sampler.interval_seconds must be positive")
    if config["retention"]["days"] <= 0:
        raise ValueError("retention.days must be positive")
    if config["pipeline"]["sample_queue_size"] <= 0:
        raise ValueError("pipeline.sample_queue_size must be positive")
    if config["pipeline"]["escalation_interval_seconds"] <= 0:
        raise ValueError("pipeline.escalation_interval_seconds must be positive")

    notifications = config["notifications"]
    for key in ("queue_size", "retry_queue_size", "workers", "max_retries"):
        if notifications[key] <= 0:
            raise ValueError(f"notifications.{key} must be positive")
    policy = notifications.get("backoff", {}).get("policy")
    if policy not in {p.value for p in BackoffPolicy}:
        raise ValueError(f"notifications.backoff.policy must be linear or exponential, got {policy!r}")

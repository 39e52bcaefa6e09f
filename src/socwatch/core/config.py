"""Configuration manager for socwatch.

Loads config from YAML, merges with defaults, provides dot-notation access.
The ``rules`` section is ordered: that order is the dispatch order.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from socwatch.core.errors import ConfigurationError

DEFAULT_CONFIG: dict[str, Any] = {
    "rules": {
        "brute_force": {
            "enabled": True,
            "window_seconds": 60,
            "medium_threshold": 5,
            "high_threshold": 10,
            "critical_threshold": 20,
            "dedup_ttl_seconds": 300,
            "mitre_id": "T1110",
        },
        "port_scan": {
            "enabled": True,
            "window_seconds": 120,
            "threshold": 20,
            "dedup_ttl_seconds": 300,
            "mitre_id": "T1046",
        },
        "sql_injection": {
            "enabled": True,
            "dedup_ttl_seconds": 300,
            "mitre_id": "T1190",
        },
        "xss": {
            "enabled": True,
            "dedup_ttl_seconds": 300,
            "mitre_id": "T1059.007",
        },
        "data_exfiltration": {
            "enabled": True,
            "window_seconds": 300,
            "medium_bytes": 50_000_000,
            "high_bytes": 200_000_000,
            "critical_bytes": 1_000_000_000,
            "dedup_ttl_seconds": 300,
            "mitre_id": "T1041",
        },
        "volume_anomaly": {
            "enabled": True,
            "window_seconds": 60,
            "per_ip_threshold": 100,
            "global_threshold": 1000,
            "dedup_ttl_seconds": 300,
        },
        "anomaly_spike": {
            "enabled": True,
            "spike_multiplier": 3.0,
            "min_absolute": 20,
            "min_samples": 3,
            "source_spike_multiplier": 2.5,
            "source_min_absolute": 15,
            "source_min_samples": 2,
            "dedup_ttl_seconds": 300,
        },
        "multistage_intrusion": {
            "enabled": True,
            "window_seconds": 900,
            "large_transfer_bytes": 20_000_000,
            "dedup_ttl_seconds": 3600,
            "mitre_id": "T1595,T1110,T1190,T1041",
        },
    },
    "escalation": {
        "enabled": True,
    },
    "state_store": {
        "backend": "memory",
        "url": "redis://localhost:6379/0",
        "key_prefix": "socwatch:",
    },
    "database": {
        "path": "~/.socwatch/socwatch.db",
    },
    "bus": {
        "log_pub_port": 15555,
        "log_sub_port": 15556,
        "notify_port": 15557,
    },
    "worker": {
        "threads": 4,
        "max_attempts": 3,
        "backoff_seconds": 2.0,
    },
    "logging": {
        "level": "INFO",
        "file": "~/.socwatch/logs/socwatch.log",
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 5,
    },
}

# Knobs that must be positive numbers when present
_NUMERIC_KNOB_SUFFIXES = ("_seconds", "_threshold", "_bytes", "threshold", "_multiplier",
                          "_absolute", "_samples")


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base. Override values win."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class SocConfig:
    """Configuration manager with dot-notation access and YAML persistence."""

    def __init__(self, data: dict[str, Any] | None = None):
        self._data = copy.deepcopy(data or DEFAULT_CONFIG)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Get a value using dot-notation (e.g., 'rules.port_scan.threshold')."""
        keys = dotted_key.split(".")
        current = self._data
        for k in keys:
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def set(self, dotted_key: str, value: Any) -> None:
        """Set a value using dot-notation."""
        keys = dotted_key.split(".")
        current = self._data
        for k in keys[:-1]:
            if k not in current:
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

    def rule_definitions(self) -> list[tuple[str, dict[str, Any]]]:
        """Rule entries in dispatch order, as (key, config) pairs."""
        rules = self._data.get("rules") or {}
        if not isinstance(rules, dict):
            raise ConfigurationError("'rules' must be a mapping of rule key to settings")
        return [(key, cfg) for key, cfg in rules.items()]

    def validate_rules(self, known_rules: set[str] | list[str]) -> None:
        """Fail fast on a malformed rule section.

        Raises ConfigurationError if a configured key has no implementation,
        an entry is not a mapping, ``enabled`` is not a bool, or a numeric
        knob is not a positive number.
        """
        known = set(known_rules)
        for key, cfg in self.rule_definitions():
            if key not in known:
                raise ConfigurationError(f"No rule implementation for configured key '{key}'")
            if not isinstance(cfg, dict):
                raise ConfigurationError(f"Rule '{key}' must be a mapping, got {type(cfg).__name__}")
            if not isinstance(cfg.get("enabled"), bool):
                raise ConfigurationError(f"Rule '{key}' needs a boolean 'enabled' flag")
            for knob, value in cfg.items():
                if not knob.endswith(_NUMERIC_KNOB_SUFFIXES):
                    continue
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    raise ConfigurationError(
                        f"Rule '{key}' knob '{knob}' must be a positive number, got {value!r}"
                    )

    def save(self, path: Path) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self._data, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, path: Path) -> SocConfig:
        """Load config from YAML, merging with defaults for missing keys."""
        path = Path(path)
        if not path.exists():
            return cls()
        with open(path) as f:
            try:
                user_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(user_data, dict):
            raise ConfigurationError(f"Top level of {path} must be a mapping")
        merged = _deep_merge(DEFAULT_CONFIG, user_data)
        return cls(data=merged)

"""
Configuration loading and validation for the telemetry core.

Centralises config parsing so it happens once at startup rather than
redundantly in every component constructor.  Values may reference the
environment with ``${ENV_VAR:-default}`` placeholders; a ``.env`` file in
the working directory is loaded first.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv

from .constants import DEFAULT_CONFIG_PATH, METRIC_FORMATS

load_dotenv()

# Required top-level sections and the sub-keys that must exist within them.
_REQUIRED_SCHEMA: Dict[str, List[str]] = {
    "metrics": ["source"],
    "logging": ["source"],
}


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a JSON file and resolve ``${ENV_VAR:-default}``
    placeholders in all string values.

    Args:
        config_path: Path to the config file (relative to project root,
            or absolute)

    Returns:
        Fully-resolved configuration dictionary.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    base_dir = Path(__file__).parent.parent
    full_path = base_dir / config_path

    if not full_path.exists():
        raise ConfigError(f"Configuration file not found: {full_path}")

    try:
        with open(full_path, "r") as f:
            config = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {full_path}: {exc}") from exc

    return _resolve(config)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a config dict against the required schema.

    Returns:
        A list of human-readable error strings.  Empty means valid.
    """
    errors: List[str] = []

    for section, sub_keys in _REQUIRED_SCHEMA.items():
        if section not in config:
            errors.append(f"Missing required config section: '{section}'")
            continue
        for sub in sub_keys:
            if sub not in config[section]:
                errors.append(f"Missing required key '{sub}' in config section '{section}'")

    metrics_conf = config.get("metrics", {})
    interval = metrics_conf.get("interval_seconds")
    if interval not in (None, ""):
        try:
            if float(interval) <= 0:
                errors.append(f"metrics.interval_seconds must be positive, got {interval!r}")
        except (TypeError, ValueError):
            errors.append(f"metrics.interval_seconds is not a number: {interval!r}")

    fmt = metrics_conf.get("format") or "otlp"
    if fmt not in METRIC_FORMATS:
        errors.append(
            f"metrics.format must be one of {sorted(METRIC_FORMATS)}, got '{fmt}'"
        )

    # Log credentials are "<user id>:<api key>"
    log_key = config.get("logging", {}).get("api_key") or ""
    if log_key and ":" not in log_key:
        errors.append("logging.api_key must have the form '<user id>:<api key>'")

    return errors


def export_interval(metrics_conf: Dict[str, Any], default: float) -> float:
    """Return ``interval_seconds`` as a float, falling back to *default*.

    Environment placeholders resolve to strings, so ``"30"`` is accepted.
    """
    raw = metrics_conf.get("interval_seconds")
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"metrics.interval_seconds is not a number: {raw!r}") from exc


# ── Private helpers ──────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _resolve(obj: Any) -> Any:
    """Recursively resolve ``${ENV_VAR:-default}`` in string values."""
    if isinstance(obj, str):
        return _PLACEHOLDER_RE.sub(_replace_match, obj)
    elif isinstance(obj, dict):
        return {k: _resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_resolve(v) for v in obj]
    return obj


def _replace_match(m: re.Match) -> str:
    var = m.group(1)
    default = m.group(2) if m.group(2) is not None else ""
    return os.environ.get(var, default)

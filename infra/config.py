"""
Caseflow — Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (lifecycle/config.yaml ships the defaults)
  2. Per-environment overlay files ({CF_CONFIG_DIR}/{CF_ENV}.yaml merged over base)
  3. Environment variable overrides (CF_ prefixed)

Usage:
    from infra.config import load_config, get_config_value

    cfg = load_config(base_path="lifecycle/config.yaml", env="prod")
    ttl = get_config_value("footprints.reservation_ttl_seconds", cfg, 300)

Environment variables:
    CF_ENV          — active profile (dev, staging, prod)
    CF_CONFIG_DIR   — directory for overlay files (default: config/)
    CF_*            — overrides; "__" separates nesting levels
                      (e.g. CF_FOOTPRINTS__RESERVATION_TTL_SECONDS=60)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("caseflow.config")

ENV_PREFIX = "CF_"

# Meta settings read directly by the loader or the db factory
_EXCLUDED_ENV = {
    "CF_ENV", "CF_CONFIG_DIR", "CF_VERSION",
    "CF_DB_BACKEND", "CF_DB_DSN", "CF_DB_PATH", "CF_REDIS_URL",
    "CF_MAX_WORKERS", "CF_JOB_TIMEOUT",
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load the per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml beside the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("CF_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("CF_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load CF_ prefixed environment variables as config overrides.

    Naming convention:
      CF_SECTION__KEY=value → {"section": {"key": value}}
      CF_HIGH_VALUE_THRESHOLD=5 → {"high_value_threshold": 5}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _EXCLUDED_ENV:
            continue

        path = [part for part in key[len(prefix):].lower().split("__") if part]
        if not path:
            continue

        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value

        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | os.PathLike = "lifecycle/config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (CF_*)
      2. Per-environment overlay file ({config_dir}/{env}.yaml)
      3. Base config file

    Args:
        base_path: Path to base YAML config
        env: Environment name (overrides CF_ENV)
        config_dir: Overlay directory (overrides CF_CONFIG_DIR)
        include_env_vars: Whether to check CF_* env vars

    Returns:
        Merged configuration dict
    """
    base_path = str(base_path)
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("CF_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any],
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("escalation.sweep_interval_minutes", cfg, 15)
    """
    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current

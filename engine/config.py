"""
Decision Core — Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (config/coordinator.yaml)
  2. Per-environment overlay files (config/{CC_ENV}.yaml merged over base)
  3. Environment variable overrides (CC_ prefixed, "__" separates sections)

Usage:
    from engine.config import load_config, get_config_value

    # Load full merged config
    cfg = load_config(base_path="config/coordinator.yaml", env="prod")

    # Get a specific value with fallback
    timeout = get_config_value("protocol.timeout_seconds", cfg, default=30)

Environment variables:
    CC_ENV                      — active profile (dev, staging, prod)
    CC_CONFIG_DIR               — directory for overlay files (default: config/)
    CC_<SECTION>__<KEY>         — nested overrides (e.g., CC_ORACLE__TIMEOUT_SECONDS=10)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("decision_core.config")

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "config", "coordinator.yaml",
)

# Meta settings and secrets that must never land in the merged config
_EXCLUDED_ENV = {
    "CC_ENV", "CC_CONFIG_DIR", "CC_CONFIG_PATH", "CC_WORKER_MODE",
    "CC_VERSION", "CC_SIGNING_KEY", "CC_SECRETS_CACHE_TTL", "CC_LOG_LEVEL",
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


def _set_nested(d: dict, keys: list[str], value: str):
    """Set a nested dict value from a list of keys, YAML-parsing the value."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    try:
        d[keys[-1]] = yaml.safe_load(value)
    except yaml.YAMLError:
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
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then next to the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("CC_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("CC_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / f"{env}.yaml",
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

def _load_env_overrides(prefix: str = "CC_", environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Load CC_ prefixed environment variables as config overrides.

    Naming convention:
      CC_SECTION__KEY=value → {"section": {"key": value}}
      CC_AGENT_ID=value     → {"agent_id": value}

    Values are YAML-parsed (numbers, booleans, lists).
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix) or key in _EXCLUDED_ENV:
            continue
        path = key[len(prefix):].lower().split("__")
        _set_nested(overrides, path, value)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (CC_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (config/coordinator.yaml)

    Returns:
        Merged configuration dict
    """
    base_path = base_path or os.environ.get("CC_CONFIG_PATH", DEFAULT_CONFIG_PATH)

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)
    else:
        logger.warning("Base config not found: %s (using built-in defaults)", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    # Stamp active profile into config for observability
    config["_active_env"] = env or os.environ.get("CC_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("oracle.timeout_seconds", cfg, 30)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current

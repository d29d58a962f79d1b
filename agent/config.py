"""
HyperCut Agent - Config Loader

Layered configuration loading:
  1. Built-in defaults (DEFAULT_CONFIG)
  2. Base file (agent_config.yaml)
  3. Per-environment overlay files (config/{HCA_ENV}.yaml merged over base)
  4. Environment variable overrides (HCA_ prefixed)

Usage:
    from agent.config import load_config, get_config_value

    # Load full merged config
    cfg = load_config(base_path="agent_config.yaml", env="prod")

    # Get a specific value with fallback
    timeout = get_config_value("orchestrator.tool_timeout_ms", cfg, 60000)

Environment variables:
    HCA_ENV                     - active profile (dev, staging, prod)
    HCA_CONFIG                  - base config path used by the API server
    HCA_CONFIG_DIR              - directory for overlay files (default: config/)
    HCA_<SECTION>__<KEY>        - nested overrides, "__" separates levels
                                  (e.g., HCA_ORCHESTRATOR__TOOL_TIMEOUT_MS=5000)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("hypercut_agent.config")

ENV_PREFIX = "HCA_"
ENV_SEPARATOR = "__"

DEFAULT_CONFIG: dict[str, Any] = {
    "orchestrator": {
        "system_prompt": (
            "You are the editing assistant of a media timeline editor. "
            "Use the available tools to carry out the user's request; "
            "prefer predefined workflows (list_workflows / run_workflow) "
            "for multi-step jobs."
        ),
        "max_history_messages": 30,
        "max_tool_iterations": 4,
        "tool_timeout_ms": 60000,
        "planning_enabled": False,
        "max_parallel_steps": 4,
        "quality_max_iterations": 2,
    },
    "provider": {
        "type": "lm-studio",
        "lm_studio": {},
        "gemini": {},
    },
    "recovery": {
        "provider_backoff": {"base_ms": 400, "max_ms": 2500},
    },
    "quality": {},
    "logging": {"level": "INFO"},
}


class ConfigError(Exception):
    """Raised when a config file exists but cannot be parsed into a mapping."""
    pass


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
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        current = d.get(key)
        if not isinstance(current, dict):
            current = d[key] = {}
        d = current
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    """Parse an env var as a YAML scalar (numbers, booleans); fall back to the raw string."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml next to the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("HCA_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("HCA_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            overlay = _read_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX, environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Load HCA_ prefixed environment variables as config overrides.

    Naming convention:
      HCA_SECTION__KEY=value → {"section": {"key": value}}
      HCA_PROVIDER__LM_STUDIO__MODEL=x → {"provider": {"lm_studio": {"model": "x"}}}

    Single underscores stay inside a key name. HCA_ENV, HCA_CONFIG, HCA_CONFIG_DIR
    and HCA_VERSION are meta config and excluded.
    """
    environ = os.environ if environ is None else environ
    excluded = {"HCA_ENV", "HCA_CONFIG", "HCA_CONFIG_DIR", "HCA_VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = [part.lower() for part in key[len(prefix):].split(ENV_SEPARATOR) if part]
        if not path:
            continue
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "agent_config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with layered merging.

    Priority (highest wins):
      1. Environment variable overrides (HCA_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (agent_config.yaml)
      4. DEFAULT_CONFIG

    Raises:
        ConfigError: If a config file exists but is not a YAML mapping.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if os.path.exists(base_path):
        config = deep_merge(config, _read_yaml(Path(base_path)))
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    # Stamp active profile into config for observability
    config["_active_env"] = env or os.environ.get("HCA_ENV", "default")
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
        get_config_value("orchestrator.max_history_messages", cfg, 30)
    """
    if config is None:
        config = load_config()

    keys = path.split(".")
    current = config
    for key in keys:
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


def positive_int(value: Any, default: int) -> int:
    """``value`` when it is a positive number, else ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return int(value)

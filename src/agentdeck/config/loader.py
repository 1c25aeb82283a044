"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Deep merging of the system -> user -> project cascade
- Environment variable overrides
- Config caching with reload callbacks
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from agentdeck.config.paths import get_config_paths
from agentdeck.config.schema import (
    DEFAULT_COMPRESS_THRESHOLD,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_QUEUE_DELAY,
    BatchingConfig,
    Config,
    ContextConfig,
    CoordinatorConfig,
    LoggingConfig,
    PermissionsConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("agentdeck.config")

_KNOWN_SECTIONS = {"coordinator", "context", "batching", "permissions", "logging"}

_cached_config: Config | None = None

_reload_callbacks: list[Callable[[Config], None]] = []


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Nested dicts merge recursively, lists and scalars are replaced, and
    ``None`` in the override leaves the base value alone.
    """
    result = base.copy()
    for key, value in override.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge config dicts in order (later overrides earlier)."""
    result: dict[str, Any] = {}
    for config in configs:
        if config:
            result = deep_merge(result, config)
    return result


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict if missing or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build a config dict from environment variables (highest priority)."""
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("AGENTDECK_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    mode = os.environ.get("AGENTDECK_PERMISSION_MODE")
    if mode:
        overrides.setdefault("permissions", {})["mode"] = mode

    threshold = os.environ.get("AGENTDECK_COMPRESS_THRESHOLD")
    if threshold:
        try:
            overrides.setdefault("context", {})["compress_threshold"] = float(threshold)
        except ValueError:
            _log.warning("Ignoring non-numeric AGENTDECK_COMPRESS_THRESHOLD=%r", threshold)

    return overrides


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a merged dict to the typed Config dataclass."""
    coord_data = _section(data, "coordinator")
    coordinator = CoordinatorConfig(
        queue_delay=float(coord_data.get("queue_delay", DEFAULT_QUEUE_DELAY)),
        max_turns=coord_data.get("max_turns"),
    )

    context_data = _section(data, "context")
    context = ContextConfig(
        compress_threshold=float(
            context_data.get("compress_threshold", DEFAULT_COMPRESS_THRESHOLD)
        ),
        default_max_tokens=int(
            context_data.get("default_max_tokens", DEFAULT_MAX_CONTEXT_TOKENS)
        ),
    )

    batching_data = _section(data, "batching")
    batching = BatchingConfig(
        enabled=bool(batching_data.get("enabled", True)),
        read_only_tools=[
            t for t in batching_data.get("read_only_tools", []) if isinstance(t, str)
        ],
    )

    perm_data = _section(data, "permissions")
    permissions = PermissionsConfig(mode=str(perm_data.get("mode", "default")))

    log_data = _section(data, "logging")
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    extra = {k: v for k, v in data.items() if k not in _KNOWN_SECTIONS}

    return Config(
        coordinator=coordinator,
        context=context,
        batching=batching,
        permissions=permissions,
        logging=logging_config,
        extra=extra,
    )


def load_config(project_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config ($project_root/.agentdeck/config.yaml)
    3. User config
    4. System config

    Args:
        project_root: Project directory for project-level config.
        reload: Force reload even if cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    configs: list[dict[str, Any]] = []
    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Cache only the global config (no project_root)
    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config (tests, forced reload)."""
    global _cached_config
    _cached_config = None


def reload_config(project_root: str | None = None) -> Config:
    """Reload config from files and notify callbacks."""
    config = load_config(project_root=project_root, reload=True)

    for callback in _reload_callbacks:
        try:
            callback(config)
        except Exception as e:
            _log.warning("Config reload callback error: %s", e)

    return config


def on_config_reload(callback: Callable[[Config], None]) -> Callable[[], None]:
    """Register a reload callback; returns a function that unregisters it."""
    _reload_callbacks.append(callback)

    def unregister() -> None:
        if callback in _reload_callbacks:
            _reload_callbacks.remove(callback)

    return unregister

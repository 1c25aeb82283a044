"""Configuration management for agentdeck.

Hierarchical YAML-based configuration:
- System-level config (/etc/agentdeck/ or %PROGRAMDATA%)
- User-level config (~/.config/agentdeck/, ~/.agentdeck/ or %APPDATA%)
- Project-level config ($project_root/.agentdeck/)
- Environment variable overrides (highest priority)

Example usage:
    from agentdeck.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.context.compress_threshold)
"""

from agentdeck.config.loader import (
    deep_merge,
    get_config,
    load_config,
    merge_configs,
    on_config_reload,
    reload_config,
    reset_config,
)
from agentdeck.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from agentdeck.config.schema import (
    BatchingConfig,
    Config,
    ContextConfig,
    CoordinatorConfig,
    LoggingConfig,
    PermissionsConfig,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "reset_config",
    "on_config_reload",
    "deep_merge",
    "merge_configs",
    # Schema types
    "BatchingConfig",
    "ContextConfig",
    "CoordinatorConfig",
    "LoggingConfig",
    "PermissionsConfig",
    # Paths
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]

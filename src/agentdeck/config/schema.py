"""Configuration schema dataclasses for agentdeck.

Defines the structure of configuration at all levels (system, user, project).
All fields have defaults so partial configs merge together cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_QUEUE_DELAY = 0.1
DEFAULT_COMPRESS_THRESHOLD = 0.92
DEFAULT_MAX_CONTEXT_TOKENS = 128_000


@dataclass
class CoordinatorConfig:
    """Task coordinator behaviour.

    Example config.yaml:
        coordinator:
          queue_delay: 0.1
          max_turns: 50
    """

    queue_delay: float = DEFAULT_QUEUE_DELAY  # Seconds before a dequeued command starts
    max_turns: int | None = None  # Turn limit handed to the executor (None = unlimited)


@dataclass
class ContextConfig:
    """Context window tracking configuration."""

    compress_threshold: float = DEFAULT_COMPRESS_THRESHOLD  # total/max ratio that compacts
    default_max_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS  # Used until the provider reports one


@dataclass
class BatchingConfig:
    """Tool-call batch aggregation.

    Example config.yaml:
        batching:
          enabled: true
          read_only_tools:
            - "mcp_jira_fetch_ticket"
    """

    enabled: bool = True
    read_only_tools: list[str] = field(default_factory=list)  # Extra names for the allow-list


@dataclass
class PermissionsConfig:
    """Permission broker configuration."""

    mode: str = "default"  # default, auto_edit, yolo, plan


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0..4, wins over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object."""

    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level sections are kept for extensions
    extra: dict[str, Any] = field(default_factory=dict)

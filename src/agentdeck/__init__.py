"""agentdeck: execution coordination and streaming state for coding-assistant clients."""

__version__ = "0.1.0"

# Public API
from agentdeck.config import Config, get_config, load_config
from agentdeck.core import ContextWindowTracker, TokenUsage
from agentdeck.session import (
    AgentExecutor,
    CancellationToken,
    Command,
    Compactor,
    ConfirmationBroker,
    EventKind,
    ExecutionContext,
    ExecutionEvent,
    PermissionMode,
    PermissionScope,
    Question,
    QuestionOption,
    Session,
    SessionManager,
    SessionNotFoundError,
    TaskCancelledError,
)

__all__ = [
    # Main entry point
    "SessionManager",
    "SessionNotFoundError",
    # Collaborator contracts
    "AgentExecutor",
    "Compactor",
    "Command",
    "ExecutionContext",
    "ExecutionEvent",
    "EventKind",
    # Cancellation
    "CancellationToken",
    "TaskCancelledError",
    # Confirmations
    "ConfirmationBroker",
    "PermissionMode",
    "PermissionScope",
    "Question",
    "QuestionOption",
    # State
    "Session",
    "ContextWindowTracker",
    "TokenUsage",
    # Config
    "Config",
    "load_config",
    "get_config",
]

"""Session layer: coordination, cancellation, event dispatch and projected state."""

from agentdeck.session.batching import ReadOnlyToolPolicy, ToolBatchAggregator
from agentdeck.session.broker import (
    ConfirmationBroker,
    ConfirmationRequest,
    PermissionMode,
    PermissionResponse,
    PermissionScope,
    Question,
    QuestionOption,
    QuestionRequest,
    RequestStatus,
)
from agentdeck.session.cancellation import (
    CancellationRegistry,
    CancellationToken,
    TaskCancelledError,
)
from agentdeck.session.command_queue import CommandQueue
from agentdeck.session.coordinator import CoordinatorInvariantError, Task, TaskCoordinator
from agentdeck.session.dispatcher import EventDispatcher
from agentdeck.session.manager import SessionManager, SessionNotFoundError
from agentdeck.session.protocols import (
    AgentExecutor,
    Command,
    Compactor,
    ContentPart,
    EventKind,
    ExecutionContext,
    ExecutionEvent,
)
from agentdeck.session.state import (
    AgentResponse,
    Message,
    MessageKind,
    Role,
    Session,
    SessionStore,
    ToolBatch,
    ToolCallRecord,
    ToolCallStatus,
)

__all__ = [
    "AgentExecutor",
    "AgentResponse",
    "CancellationRegistry",
    "CancellationToken",
    "Command",
    "CommandQueue",
    "Compactor",
    "ConfirmationBroker",
    "ConfirmationRequest",
    "ContentPart",
    "CoordinatorInvariantError",
    "EventDispatcher",
    "EventKind",
    "ExecutionContext",
    "ExecutionEvent",
    "Message",
    "MessageKind",
    "PermissionMode",
    "PermissionResponse",
    "PermissionScope",
    "Question",
    "QuestionOption",
    "QuestionRequest",
    "ReadOnlyToolPolicy",
    "RequestStatus",
    "Role",
    "Session",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStore",
    "Task",
    "TaskCancelledError",
    "TaskCoordinator",
    "ToolBatch",
    "ToolBatchAggregator",
    "ToolCallRecord",
    "ToolCallStatus",
]

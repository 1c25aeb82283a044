"""Core protocols for the session layer.

These define the contract between:
- The UI and the coordinator (Command)
- The agent execution collaborator and the dispatcher (ExecutionEvent)
- The coordinator and its collaborators (AgentExecutor, Compactor)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from agentdeck.session.broker import ConfirmationBroker, PermissionResponse, Question
    from agentdeck.session.cancellation import CancellationToken
    from agentdeck.session.state import Session

# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


class EventKind(Enum):
    """Tags of the execution event union."""

    MESSAGE_CREATED = "message.created"
    CONTENT_DELTA = "message.delta"
    MESSAGE_COMPLETE = "message.complete"
    THINKING_DELTA = "thinking.delta"
    THINKING_COMPLETE = "thinking.completed"
    TOOL_START = "tool.start"
    TOOL_RESULT = "tool.result"
    TOKEN_USAGE = "token.usage"
    TODO_UPDATE = "todo.update"
    SUBAGENT_START = "subagent.start"
    SUBAGENT_UPDATE = "subagent.update"
    SUBAGENT_COMPLETE = "subagent.complete"
    CONFIRMATION_REQUIRED = "permission.asked"
    QUESTION_REQUIRED = "question.required"
    TURN_LIMIT_REACHED = "turn.limit_reached"
    COMPACTING = "context.compacting"
    COMPLETED = "session.completed"
    ERROR = "session.error"


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    """One event emitted while an agent execution runs.

    Payload keys by kind:
        CONTENT_DELTA / THINKING_DELTA: delta
        MESSAGE_CREATED: role, content
        THINKING_COMPLETE: (none)
        TOOL_START: tool_name, arguments, tool_kind
        TOOL_RESULT: success, output, summary, metadata
        TOKEN_USAGE: input_tokens, output_tokens, total_tokens, max_context_tokens
        TODO_UPDATE: todos (list of dicts)
        SUBAGENT_START: subagent_id, type, description
        SUBAGENT_UPDATE: tool_name
        SUBAGENT_COMPLETE: success
        CONFIRMATION_REQUIRED: request_id, tool_name, description, diff, kind
        QUESTION_REQUIRED: request_id, questions
        TURN_LIMIT_REACHED: turns, request_id (absent when nobody can answer)
        COMPACTING: active
        ERROR: error

    TOOL_START and TOOL_RESULT must carry ``tool_call_id``; a TOOL_START
    without one is ignored.
    """

    kind: EventKind
    session_id: str
    message_id: str | None = None
    tool_call_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


EventSink = Callable[[ExecutionEvent], None]

# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContentPart:
    """A segment of a command: text, or an inline image attachment."""

    type: str  # "text" or "image"
    text: str = ""
    mime_type: str | None = None
    data: str | None = None  # base64 payload for images

    def to_content(self) -> dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text}
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{self.mime_type};base64,{self.data}"},
        }


@dataclass(frozen=True, slots=True)
class Command:
    """A user command as submitted from the UI.

    ``display_text`` is what the transcript shows, ``text`` is what the agent
    receives (they differ when placeholders or expansions are involved).
    """

    display_text: str
    text: str
    parts: tuple[ContentPart, ...] = ()
    enqueued_at: float = field(default_factory=time.time)

    @classmethod
    def from_text(cls, text: str, display_text: str | None = None) -> Command:
        return cls(
            display_text=text if display_text is None else display_text,
            text=text,
            parts=(ContentPart(type="text", text=text),),
        )

    @property
    def images(self) -> list[ContentPart]:
        return [p for p in self.parts if p.type == "image"]

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.images

    def content(self) -> str | list[dict[str, Any]]:
        """Resolved content for the agent.

        Plain text when there are no attachments, otherwise the parts in
        their original order.
        """
        if not self.images:
            return self.text
        return [part.to_content() for part in self.parts]


# -----------------------------------------------------------------------------
# Execution context handed to the agent
# -----------------------------------------------------------------------------


@dataclass
class ExecutionContext:
    """Everything an AgentExecutor needs to run one command.

    The executor must observe ``token`` (cancellation is cooperative) and
    report progress through ``emit``.
    """

    session_id: str
    task_id: str
    generation: int
    token: CancellationToken
    emit: EventSink
    history: list[dict[str, Any]] = field(default_factory=list)
    broker: ConfirmationBroker | None = None
    max_turns: int | None = None

    async def request_permission(
        self,
        tool_call_id: str,
        tool_name: str,
        description: str,
        diff: str | None = None,
        kind: str = "execute",
    ) -> PermissionResponse:
        """Ask the user to approve a tool call.

        Auto-denied without a broker or once the task is cancelled.
        """
        from agentdeck.session.broker import PermissionResponse, PermissionScope

        if self.broker is None:
            return PermissionResponse(
                approved=False,
                scope=PermissionScope.DENY,
                reason="No confirmation broker configured",
            )
        if self.token.cancelled:
            return PermissionResponse(
                approved=False, scope=PermissionScope.DENY, reason="Task was cancelled"
            )
        return await self.broker.request_permission(
            self.session_id,
            tool_call_id,
            tool_name,
            description,
            diff=diff,
            kind=kind,
            emit=self.emit,
            token=self.token,
        )

    async def ask(
        self, tool_call_id: str, questions: list[Question]
    ) -> dict[str, str | list[str]] | None:
        """Ask clarifying questions; None when unanswered, cancelled or no broker."""
        if self.broker is None or self.token.cancelled:
            return None
        return await self.broker.ask(
            self.session_id, tool_call_id, questions, emit=self.emit, token=self.token
        )

    async def request_continuation(self, turns: int) -> bool:
        """Turn limit reached: report it and ask whether to keep going."""
        if self.broker is None or self.token.cancelled:
            self.emit(
                ExecutionEvent(
                    kind=EventKind.TURN_LIMIT_REACHED,
                    session_id=self.session_id,
                    payload={"turns": turns},
                )
            )
            return False
        return await self.broker.request_continuation(
            self.session_id, turns, emit=self.emit, token=self.token
        )


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class AgentExecutor(Protocol):
    """The agent execution collaborator (LLM calls interleaved with tools)."""

    async def execute(self, command: Command, context: ExecutionContext) -> str | None:
        """Run one command to completion.

        Returns:
            The assembled textual result. Empty output means the agent
            produced nothing (for example the user declined a confirmation).

        Raises:
            TaskCancelledError: when it stops because the token was cancelled.
        """
        ...


@runtime_checkable
class Compactor(Protocol):
    """Shrinks a session's history once the context window is nearly full."""

    async def compact(self, session: Session, token: CancellationToken) -> None:
        """Replace older history with a summary; must honour ``token``."""
        ...

"""Session-scoped UI state projected from the execution event stream.

Everything here is plain mutable data owned jointly by the dispatcher and
the task coordinator. The UI reads it (via ``to_dict`` snapshots) and never
writes to it.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from agentdeck.core.context_window import ContextWindowTracker
from agentdeck.logging import get_logger

log = get_logger("state")


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageKind(Enum):
    """How the UI should present a message."""

    TEXT = "text"
    NOTICE = "notice"  # e.g. "task stopped"
    ERROR = "error"


class ToolCallStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SubagentStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


# -----------------------------------------------------------------------------
# Tool calls and batches
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCallRecord:
    """One tool invocation inside an agent response.

    Status moves from RUNNING to SUCCESS or ERROR exactly once.
    """

    tool_call_id: str
    tool_name: str
    arguments: str = ""
    tool_kind: str | None = None
    status: ToolCallStatus = ToolCallStatus.RUNNING
    summary: str | None = None
    output: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    batch_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ToolCallStatus.RUNNING

    def finish(
        self,
        success: bool,
        summary: str | None = None,
        output: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move to a terminal status; returns False if already terminal."""
        if self.is_terminal:
            return False
        self.status = ToolCallStatus.SUCCESS if success else ToolCallStatus.ERROR
        self.summary = summary
        self.output = output
        if metadata:
            self.metadata.update(metadata)
        self.end_time = time.time()
        return True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(slots=True)
class ToolBatch:
    """Consecutive read-only tool calls rendered as one group."""

    batch_id: str
    tools: list[ToolCallRecord] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    is_complete: bool = False

    def add(self, record: ToolCallRecord) -> bool:
        """Append a member; a completed batch accepts nothing."""
        if self.is_complete:
            return False
        record.batch_id = self.batch_id
        self.tools.append(record)
        return True

    def get(self, tool_call_id: str) -> ToolCallRecord | None:
        for record in self.tools:
            if record.tool_call_id == tool_call_id:
                return record
        return None

    def refresh(self) -> bool:
        """Recompute completion from every member's status."""
        self.is_complete = bool(self.tools) and all(t.is_terminal for t in self.tools)
        return self.is_complete

    @property
    def running_count(self) -> int:
        return sum(1 for t in self.tools if not t.is_terminal)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "tools": [t.to_dict() for t in self.tools],
            "start_time": self.start_time,
            "is_complete": self.is_complete,
        }


# -----------------------------------------------------------------------------
# Agent response content
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class SubagentProgress:
    id: str
    type: str
    description: str = ""
    status: SubagentStatus = SubagentStatus.RUNNING
    current_tool: str | None = None
    start_time: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(slots=True)
class TodoItem:
    id: str
    content: str
    status: str = "pending"  # pending, in_progress, completed
    priority: str = "medium"  # high, medium, low

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TodoItem:
        return cls(
            id=str(data.get("id") or _new_id("todo")),
            content=str(data.get("content", "")),
            status=str(data.get("status", "pending")),
            priority=str(data.get("priority", "medium")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class AgentResponse:
    """Structured content of an assistant message that is (or was) streaming.

    Text streamed before the first tool call goes to ``text_before``, text
    after it to ``text_after``, so the UI can render tools in between.
    """

    text_before: str = ""
    text_after: str = ""
    thinking: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    batches: list[ToolBatch] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    subagents: dict[str, SubagentProgress] = field(default_factory=dict)
    active_subagent_id: str | None = None
    confirmation_ids: list[str] = field(default_factory=list)
    question_ids: list[str] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def text(self) -> str:
        return self.text_before + self.text_after

    def append_text(self, delta: str) -> None:
        if self.has_tool_calls:
            self.text_after += delta
        else:
            self.text_before += delta

    def find_tool_call(self, tool_call_id: str) -> ToolCallRecord | None:
        for record in self.tool_calls:
            if record.tool_call_id == tool_call_id:
                return record
        return None

    @property
    def active_subagent(self) -> SubagentProgress | None:
        if self.active_subagent_id is None:
            return None
        return self.subagents.get(self.active_subagent_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text_before": self.text_before,
            "text_after": self.text_after,
            "thinking": self.thinking,
            "tool_calls": [t.to_dict() for t in self.tool_calls],
            "batches": [b.to_dict() for b in self.batches],
            "todos": [t.to_dict() for t in self.todos],
            "subagents": {k: v.to_dict() for k, v in self.subagents.items()},
            "confirmation_ids": list(self.confirmation_ids),
            "question_ids": list(self.question_ids),
        }


@dataclass(slots=True)
class Message:
    id: str
    role: Role
    content: str = ""
    kind: MessageKind = MessageKind.TEXT
    timestamp: float = field(default_factory=time.time)
    agent: AgentResponse | None = None

    @property
    def text(self) -> str:
        if self.agent is not None and not self.content:
            return self.agent.text
        return self.content

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.text,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "agent": self.agent.to_dict() if self.agent else None,
        }


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


class Session:
    """The projected state of one conversation."""

    def __init__(
        self,
        session_id: str | None = None,
        title: str = "",
        context_window: ContextWindowTracker | None = None,
    ) -> None:
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.title = title
        self.created_at = time.time()
        self.messages: list[Message] = []
        self._by_id: dict[str, Message] = {}
        self.context_window = context_window or ContextWindowTracker()

        self.error: str | None = None
        self.is_running = False
        self.current_message_id: str | None = None
        self.thinking: str | None = None
        self.todos: list[TodoItem] = []
        self.compacting = False

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def get_message(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def add_message(self, message: Message) -> Message:
        if message.id in self._by_id:
            log.debug("Session %s: duplicate message id %s ignored", self.session_id, message.id)
            return self._by_id[message.id]
        self.messages.append(message)
        self._by_id[message.id] = message
        return message

    def add_user_message(self, content: str) -> Message:
        return self.add_message(Message(id=_new_id("user"), role=Role.USER, content=content))

    def add_assistant_message(
        self, content: str, kind: MessageKind = MessageKind.TEXT
    ) -> Message:
        return self.add_message(
            Message(id=_new_id("assistant"), role=Role.ASSISTANT, content=content, kind=kind)
        )

    def add_notice(self, content: str) -> Message:
        return self.add_assistant_message(content, MessageKind.NOTICE)

    @property
    def current_message(self) -> Message | None:
        if self.current_message_id is None:
            return None
        return self._by_id.get(self.current_message_id)

    def start_agent_response(self, message_id: str | None = None) -> Message:
        """Make ``message_id`` the streaming assistant message, creating it if needed."""
        message_id = message_id or _new_id("assistant")
        message = self._by_id.get(message_id)
        if message is None:
            message = self.add_message(
                Message(id=message_id, role=Role.ASSISTANT, agent=AgentResponse())
            )
        elif message.agent is None:
            message.agent = AgentResponse()
        self.current_message_id = message.id
        return message

    def ensure_assistant_message(self, message_id: str | None = None) -> Message:
        """Resolve the message a streaming event belongs to.

        An explicit id wins (created on first sight, so deltas may precede a
        "message created" event). Otherwise the current streaming message,
        then a trailing assistant response, then a fresh one.
        """
        if message_id:
            return self.start_agent_response(message_id)

        current = self.current_message
        if current is not None and current.agent is not None:
            return current

        if self.messages:
            last = self.messages[-1]
            if last.role is Role.ASSISTANT and last.agent is not None:
                self.current_message_id = last.id
                return last

        return self.start_agent_response()

    def end_agent_response(self) -> Message | None:
        """Finish the streaming message and clear transient buffers."""
        message = self.current_message
        if message is not None and message.agent is not None and not message.content:
            message.content = message.agent.text
        self.current_message_id = None
        self.thinking = None
        return message

    def find_tool_call(self, tool_call_id: str) -> tuple[Message, ToolCallRecord] | None:
        """Locate a tool call record, newest message first."""
        for message in reversed(self.messages):
            if message.agent is None:
                continue
            record = message.agent.find_tool_call(tool_call_id)
            if record is not None:
                return message, record
        return None

    # -------------------------------------------------------------------------
    # Session-level state
    # -------------------------------------------------------------------------

    def set_error(self, error: str | None) -> None:
        self.error = error

    def reset(self) -> None:
        """Clear the transcript, error, todos and token usage."""
        self.messages.clear()
        self._by_id.clear()
        self.error = None
        self.current_message_id = None
        self.thinking = None
        self.todos = []
        self.context_window.reset()

    def history(self) -> list[dict[str, Any]]:
        """Role/content pairs for the agent, oldest first (notices excluded)."""
        return [
            {"role": m.role.value, "content": m.text}
            for m in self.messages
            if m.kind is MessageKind.TEXT
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "title": self.title,
            "created_at": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
            "error": self.error,
            "is_running": self.is_running,
            "current_message_id": self.current_message_id,
            "thinking": self.thinking,
            "todos": [t.to_dict() for t in self.todos],
            "compacting": self.compacting,
            "token_usage": self.context_window.to_dict(),
        }


class SessionStore:
    """All sessions of the application plus which one is current."""

    def __init__(
        self, tracker_factory: Callable[[], ContextWindowTracker] = ContextWindowTracker
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._tracker_factory = tracker_factory
        self.current_session_id: str | None = None

    def create(self, session_id: str | None = None, title: str = "") -> Session:
        session = Session(session_id, title=title, context_window=self._tracker_factory())
        if session.session_id in self._sessions:
            raise ValueError(f"Session already exists: {session.session_id}")
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> Session | None:
        session = self._sessions.pop(session_id, None)
        if session_id == self.current_session_id:
            self.current_session_id = None
        return session

    def select(self, session_id: str | None) -> None:
        if session_id is not None and session_id not in self._sessions:
            raise KeyError(session_id)
        self.current_session_id = session_id

    @property
    def current(self) -> Session | None:
        return self.get(self.current_session_id)

    def list_ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

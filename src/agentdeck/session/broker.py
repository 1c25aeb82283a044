"""Confirmation and question round trips between the agent and the user.

The agent side awaits ``request_permission()`` / ``ask()`` /
``request_continuation()``; the UI side resolves them with ``respond()`` /
``answer()``. Every request ends in exactly one terminal status, and
``cancel_session()`` resolves whatever is still pending when a task is
aborted.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agentdeck.config.schema import PermissionsConfig
from agentdeck.logging import get_logger
from agentdeck.session.protocols import EventKind, EventSink, ExecutionEvent

if TYPE_CHECKING:
    from agentdeck.session.cancellation import CancellationToken

log = get_logger("broker")

# ACP-style tool kinds grouped by what they can touch
READ_KINDS = frozenset({"read", "search", "fetch", "think"})
WRITE_KINDS = frozenset({"edit", "write", "delete", "move"})

CONTINUATION_KIND = "continuation"

# Resolved requests kept for late lookups and duplicate events
RESOLVED_HISTORY = 64

Answer = str | list[str]


class PermissionScope(Enum):
    ONCE = "once"
    SESSION = "session"  # Remember the approval for the rest of the session
    DENY = "deny"


class PermissionMode(Enum):
    """How much the broker decides on its own before asking."""

    DEFAULT = "default"  # Ask for everything
    AUTO_EDIT = "auto_edit"  # Approve read and write kinds, ask for execute
    YOLO = "yolo"  # Approve everything
    PLAN = "plan"  # Approve read kinds, deny write and execute

    @classmethod
    def parse(cls, value: str | PermissionMode | None) -> PermissionMode:
        if isinstance(value, PermissionMode):
            return value
        if not value:
            return cls.DEFAULT
        normalized = value.strip().lower().replace("-", "_")
        if normalized == "autoedit":
            normalized = "auto_edit"
        try:
            return cls(normalized)
        except ValueError:
            log.warning("Unknown permission mode %r, using default", value)
            return cls.DEFAULT


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    ANSWERED = "answered"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class PermissionResponse:
    approved: bool
    scope: PermissionScope = PermissionScope.ONCE
    reason: str | None = None


@dataclass(slots=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(slots=True)
class Question:
    """A multiple-choice clarification question.

    A question without options accepts free text.
    """

    header: str
    question: str
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        return cls(
            header=str(data.get("header", "")),
            question=str(data.get("question", "")),
            options=[
                QuestionOption(str(o.get("label", "")), str(o.get("description", "")))
                for o in data.get("options", [])
            ],
            multi_select=bool(data.get("multi_select", data.get("multiSelect", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "question": self.question,
            "options": [{"label": o.label, "description": o.description} for o in self.options],
            "multi_select": self.multi_select,
        }

    def accepts(self, answer: Answer) -> bool:
        labels = [answer] if isinstance(answer, str) else list(answer)
        if not labels or (len(labels) > 1 and not self.multi_select):
            return False
        if not self.options:
            return True
        valid = {o.label for o in self.options}
        return all(label in valid for label in labels)


@dataclass
class _Request:
    request_id: str
    session_id: str
    tool_call_id: str = ""
    status: RequestStatus = RequestStatus.PENDING
    created_at: float = field(default_factory=time.time)
    _future: asyncio.Future[None] | None = field(default=None, repr=False, compare=False)

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def _resolve(self, status: RequestStatus) -> bool:
        if not self.is_pending:
            return False
        self.status = status
        if self._future is not None and not self._future.done():
            self._future.set_result(None)
        return True

    async def wait(self) -> None:
        """Block until the request leaves PENDING."""
        if not self.is_pending:
            return
        if self._future is None or self._future.done():
            self._future = asyncio.get_running_loop().create_future()
        await self._future


@dataclass
class ConfirmationRequest(_Request):
    tool_name: str = ""
    description: str = ""
    diff: str | None = None
    kind: str = "execute"
    response: PermissionResponse | None = None

    @property
    def signature(self) -> str:
        return f"{self.kind}:{self.tool_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "description": self.description,
            "diff": self.diff,
            "kind": self.kind,
            "status": self.status.value,
        }


@dataclass
class QuestionRequest(_Request):
    questions: list[Question] = field(default_factory=list)
    answers: dict[str, Answer] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "tool_call_id": self.tool_call_id,
            "questions": [q.to_dict() for q in self.questions],
            "answers": self.answers,
            "status": self.status.value,
        }


def _new_request_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class ConfirmationBroker:
    """Confirmations and questions for every session.

    Only pending requests are held in full. A request that reaches its
    terminal status moves to a short history (``RESOLVED_HISTORY`` entries)
    so late lookups and duplicate events still find it.
    """

    def __init__(self, mode: PermissionMode | str = PermissionMode.DEFAULT) -> None:
        self.mode = PermissionMode.parse(mode)
        self._requests: dict[str, _Request] = {}
        self._resolved: OrderedDict[str, _Request] = OrderedDict()
        self._session_approvals: dict[str, set[str]] = {}

    @classmethod
    def from_config(cls, config: PermissionsConfig | None) -> ConfirmationBroker:
        return cls(config.mode if config else PermissionMode.DEFAULT)

    def reload(self, config: PermissionsConfig | None) -> None:
        self.mode = PermissionMode.parse(config.mode if config else None)
        log.debug("Permission mode reloaded: %s", self.mode.value)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, request_id: str) -> _Request | None:
        return self._requests.get(request_id) or self._resolved.get(request_id)

    def pending(self, session_id: str | None = None) -> list[_Request]:
        return [
            r
            for r in self._requests.values()
            if r.is_pending and (session_id is None or r.session_id == session_id)
        ]

    def is_session_approved(self, session_id: str, kind: str, tool_name: str) -> bool:
        return f"{kind}:{tool_name}" in self._session_approvals.get(session_id, ())

    async def wait(self, request_id: str) -> _Request | None:
        """Await the terminal status of any request; None if unknown."""
        request = self.get(request_id)
        if request is not None:
            await request.wait()
        return request

    # -------------------------------------------------------------------------
    # Record bookkeeping
    # -------------------------------------------------------------------------

    def _new_confirmation(
        self,
        session_id: str,
        request_id: str,
        tool_call_id: str = "",
        tool_name: str = "",
        description: str = "",
        diff: str | None = None,
        kind: str = "execute",
    ) -> ConfirmationRequest:
        request = ConfirmationRequest(
            request_id=request_id,
            session_id=session_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            description=description,
            diff=diff,
            kind=kind,
        )
        self._requests[request_id] = request
        return request

    def _new_question(
        self, session_id: str, request_id: str, tool_call_id: str, questions: list[Question]
    ) -> QuestionRequest:
        request = QuestionRequest(
            request_id=request_id,
            session_id=session_id,
            tool_call_id=tool_call_id,
            questions=list(questions),
        )
        self._requests[request_id] = request
        return request

    def _finish(self, request: _Request, status: RequestStatus) -> bool:
        """Resolve ``request`` and move it to the resolved history."""
        if not request._resolve(status):
            return False
        self._requests.pop(request.request_id, None)
        self._resolved[request.request_id] = request
        while len(self._resolved) > RESOLVED_HISTORY:
            self._resolved.popitem(last=False)
        return True

    async def _await(self, request: _Request, token: CancellationToken | None) -> None:
        """Wait for a terminal status; cancelling ``token`` cancels the request."""
        remove = None
        if token is not None:
            remove = token.add_listener(lambda _: self._finish(request, RequestStatus.CANCELLED))
        try:
            await request.wait()
        except asyncio.CancelledError:
            self._finish(request, RequestStatus.CANCELLED)
            raise
        finally:
            if remove is not None:
                remove()

    # -------------------------------------------------------------------------
    # Permissions
    # -------------------------------------------------------------------------

    def _mode_decision(self, kind: str) -> PermissionResponse | None:
        if self.mode is PermissionMode.YOLO:
            return PermissionResponse(approved=True, reason="yolo mode")
        if self.mode is PermissionMode.PLAN:
            if kind in READ_KINDS:
                return PermissionResponse(approved=True, reason="plan mode")
            return PermissionResponse(
                approved=False, scope=PermissionScope.DENY, reason="plan mode is read-only"
            )
        if self.mode is PermissionMode.AUTO_EDIT and (kind in READ_KINDS or kind in WRITE_KINDS):
            return PermissionResponse(approved=True, reason="auto-edit mode")
        return None

    def open_confirmation(
        self,
        session_id: str,
        request_id: str,
        tool_call_id: str = "",
        tool_name: str = "",
        description: str = "",
        diff: str | None = None,
        kind: str = "execute",
    ) -> ConfirmationRequest | None:
        """Register a confirmation; idempotent by ``request_id``.

        A request whose signature was approved for the session resolves
        immediately as approved.
        """
        existing = self.get(request_id)
        if existing is not None:
            return existing if isinstance(existing, ConfirmationRequest) else None

        request = self._new_confirmation(
            session_id, request_id, tool_call_id, tool_name, description, diff, kind
        )
        if kind != CONTINUATION_KIND and self.is_session_approved(session_id, kind, tool_name):
            request.response = PermissionResponse(approved=True, scope=PermissionScope.SESSION)
            self._finish(request, RequestStatus.APPROVED)
        return request

    async def request_permission(
        self,
        session_id: str,
        tool_call_id: str,
        tool_name: str,
        description: str,
        diff: str | None = None,
        kind: str = "execute",
        emit: EventSink | None = None,
        token: CancellationToken | None = None,
    ) -> PermissionResponse:
        """Decide a tool call, asking the user when the mode requires it.

        A cancelled ``token`` denies without opening a request, and
        cancelling it while the user decides resolves the request as
        cancelled.
        """
        if token is not None and token.cancelled:
            return PermissionResponse(
                approved=False, scope=PermissionScope.DENY, reason=RequestStatus.CANCELLED.value
            )
        decision = self._mode_decision(kind)
        if decision is not None:
            return decision
        if self.is_session_approved(session_id, kind, tool_name):
            log.debug("Session %s: %s:%s approved for session", session_id, kind, tool_name)
            return PermissionResponse(approved=True, scope=PermissionScope.SESSION)

        request_id = _new_request_id("perm")
        request = self._new_confirmation(
            session_id, request_id, tool_call_id, tool_name, description, diff, kind
        )
        if emit is not None:
            emit(
                ExecutionEvent(
                    kind=EventKind.CONFIRMATION_REQUIRED,
                    session_id=session_id,
                    tool_call_id=tool_call_id,
                    payload={
                        "request_id": request_id,
                        "tool_name": tool_name,
                        "description": description,
                        "diff": diff,
                        "kind": kind,
                    },
                )
            )
        await self._await(request, token)
        if request.response is None:
            return PermissionResponse(
                approved=False, scope=PermissionScope.DENY, reason=request.status.value
            )
        return request.response

    def respond(
        self,
        request_id: str,
        approved: bool,
        scope: PermissionScope = PermissionScope.ONCE,
    ) -> bool:
        """Resolve a pending confirmation; False if unknown or already resolved."""
        request = self._requests.get(request_id)
        if not isinstance(request, ConfirmationRequest) or not request.is_pending:
            log.debug("Ignoring response to %s (unknown or resolved)", request_id)
            return False

        if scope is PermissionScope.DENY:
            approved = False
        if approved and scope is PermissionScope.SESSION and request.kind != CONTINUATION_KIND:
            self._session_approvals.setdefault(request.session_id, set()).add(request.signature)
            log.debug("Session %s: remembering %s", request.session_id, request.signature)

        request.response = PermissionResponse(
            approved=approved, scope=scope if approved else PermissionScope.DENY
        )
        return self._finish(request, RequestStatus.APPROVED if approved else RequestStatus.DENIED)

    async def request_continuation(
        self,
        session_id: str,
        turns: int,
        emit: EventSink | None = None,
        token: CancellationToken | None = None,
    ) -> bool:
        """Ask whether to keep going after ``turns`` agent turns."""
        if token is not None and token.cancelled:
            return False
        request_id = _new_request_id("turns")
        request = self._new_confirmation(
            session_id,
            request_id,
            tool_name="turn_limit",
            description=f"Reached {turns} turns. Continue?",
            kind=CONTINUATION_KIND,
        )
        if emit is not None:
            emit(
                ExecutionEvent(
                    kind=EventKind.TURN_LIMIT_REACHED,
                    session_id=session_id,
                    payload={"turns": turns, "request_id": request_id},
                )
            )
        await self._await(request, token)
        return request.status is RequestStatus.APPROVED

    # -------------------------------------------------------------------------
    # Questions
    # -------------------------------------------------------------------------

    def open_question(
        self,
        session_id: str,
        request_id: str,
        tool_call_id: str = "",
        questions: list[Question] | None = None,
    ) -> QuestionRequest | None:
        """Register a question request; idempotent by ``request_id``."""
        existing = self.get(request_id)
        if existing is not None:
            return existing if isinstance(existing, QuestionRequest) else None
        return self._new_question(session_id, request_id, tool_call_id, questions or [])

    async def ask(
        self,
        session_id: str,
        tool_call_id: str,
        questions: list[Question],
        emit: EventSink | None = None,
        token: CancellationToken | None = None,
    ) -> dict[str, Answer] | None:
        """Ask questions and wait; None when the request was cancelled."""
        if token is not None and token.cancelled:
            return None
        request_id = _new_request_id("question")
        request = self._new_question(session_id, request_id, tool_call_id, questions)
        if emit is not None:
            emit(
                ExecutionEvent(
                    kind=EventKind.QUESTION_REQUIRED,
                    session_id=session_id,
                    tool_call_id=tool_call_id,
                    payload={
                        "request_id": request_id,
                        "questions": [q.to_dict() for q in questions],
                    },
                )
            )
        await self._await(request, token)
        return request.answers

    def answer(self, request_id: str, answers: dict[str, Answer]) -> bool:
        """Resolve a question request.

        Rejected (False) when the request is unknown or resolved, or when an
        answer names an unknown header or label.
        """
        request = self._requests.get(request_id)
        if not isinstance(request, QuestionRequest) or not request.is_pending:
            log.debug("Ignoring answer to %s (unknown or resolved)", request_id)
            return False
        if not answers:
            return False

        by_header = {q.header: q for q in request.questions}
        for header, value in answers.items():
            question = by_header.get(header)
            if question is None or not question.accepts(value):
                log.debug("Rejected answer %r=%r for %s", header, value, request_id)
                return False

        request.answers = dict(answers)
        return self._finish(request, RequestStatus.ANSWERED)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def cancel_session(self, session_id: str) -> int:
        """Resolve every pending request of a session as cancelled."""
        cancelled = 0
        for request in self.pending(session_id):
            if self._finish(request, RequestStatus.CANCELLED):
                cancelled += 1
        if cancelled:
            log.debug("Session %s: cancelled %d pending request(s)", session_id, cancelled)
        return cancelled

    def clear_session_approvals(self, session_id: str) -> None:
        self._session_approvals.pop(session_id, None)

    def forget_session(self, session_id: str) -> None:
        """Cancel and drop all records and approvals of a session."""
        self.cancel_session(session_id)
        for request_id in [k for k, r in self._resolved.items() if r.session_id == session_id]:
            del self._resolved[request_id]
        self.clear_session_approvals(session_id)

"""Projects execution events onto session state.

``dispatch()`` is a deterministic function of the event, the current session
id passed by the caller and the session store: the dispatcher keeps no idea
of its own about which session the user is looking at. One handler per
EventKind, looked up in a table.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, Callable
from typing import Any

from agentdeck.logging import get_logger
from agentdeck.session.batching import ToolBatchAggregator
from agentdeck.session.broker import CONTINUATION_KIND, ConfirmationBroker, Question
from agentdeck.session.protocols import EventKind, EventSink, ExecutionEvent
from agentdeck.session.state import (
    Message,
    Role,
    Session,
    SessionStore,
    SubagentProgress,
    SubagentStatus,
    TodoItem,
    ToolCallRecord,
    ToolCallStatus,
)

log = get_logger("dispatcher")

SUMMARY_MAX_CHARS = 120

# Tool that launches a sub-agent when its arguments carry a subagent type
SUBAGENT_TOOL = "Task"

Handler = Callable[[Session, ExecutionEvent], bool]


def summarize_output(output: str | None) -> str | None:
    """First non-empty line of a tool output, clipped for display."""
    if not output:
        return None
    for line in output.splitlines():
        line = line.strip()
        if line:
            return line[:SUMMARY_MAX_CHARS]
    return None


def _serialize_arguments(arguments: Any) -> str:
    if arguments is None:
        return ""
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments, ensure_ascii=False)


def _parse_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments:
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class EventDispatcher:
    """Applies events for the current session to its projected state."""

    def __init__(
        self,
        store: SessionStore,
        aggregator: ToolBatchAggregator | None = None,
        broker: ConfirmationBroker | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.broker = broker
        self._subscribers: list[EventSink] = []
        self._handlers: dict[EventKind, Handler] = {
            EventKind.MESSAGE_CREATED: self._on_message_created,
            EventKind.CONTENT_DELTA: self._on_content_delta,
            EventKind.MESSAGE_COMPLETE: self._on_message_complete,
            EventKind.THINKING_DELTA: self._on_thinking_delta,
            EventKind.THINKING_COMPLETE: self._on_thinking_complete,
            EventKind.TOOL_START: self._on_tool_start,
            EventKind.TOOL_RESULT: self._on_tool_result,
            EventKind.TOKEN_USAGE: self._on_token_usage,
            EventKind.TODO_UPDATE: self._on_todo_update,
            EventKind.SUBAGENT_START: self._on_subagent_start,
            EventKind.SUBAGENT_UPDATE: self._on_subagent_update,
            EventKind.SUBAGENT_COMPLETE: self._on_subagent_complete,
            EventKind.CONFIRMATION_REQUIRED: self._on_confirmation_required,
            EventKind.QUESTION_REQUIRED: self._on_question_required,
            EventKind.TURN_LIMIT_REACHED: self._on_turn_limit,
            EventKind.COMPACTING: self._on_compacting,
            EventKind.COMPLETED: self._on_completed,
            EventKind.ERROR: self._on_error,
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def subscribe(self, callback: EventSink) -> Callable[[], None]:
        """Receive every event (all sessions) before filtering.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def dispatch(self, event: ExecutionEvent, current_session_id: str | None) -> bool:
        """Apply one event.

        Returns:
            True if session state changed.
        """
        self.notify(event)

        if event.session_id != current_session_id:
            log.debug(
                "Dropping %s for non-current session %s", event.kind.value, event.session_id
            )
            return False

        session = self.store.get(event.session_id)
        if session is None:
            log.debug("Dropping %s for unknown session %s", event.kind.value, event.session_id)
            return False

        handler = self._handlers.get(event.kind)
        if handler is None:
            log.debug("No handler for %s", event.kind.value)
            return False
        return handler(session, event)

    def notify(self, event: ExecutionEvent) -> None:
        """Hand an event to subscribers only, without touching session state."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                log.exception("Event subscriber failed on %s", event.kind.value)

    async def consume(
        self,
        events: AsyncIterable[ExecutionEvent],
        current_session_id: str | None | Callable[[], str | None],
    ) -> int:
        """Dispatch a stream in arrival order; returns how many were applied.

        ``current_session_id`` may be a callable, read again for every event.
        """
        applied = 0
        async for event in events:
            current = current_session_id() if callable(current_session_id) else current_session_id
            if self.dispatch(event, current):
                applied += 1
        return applied

    def close_open_batch(self, session_id: str) -> None:
        if self.aggregator is not None:
            self.aggregator.close(session_id)

    def forget_session(self, session_id: str) -> None:
        if self.aggregator is not None:
            self.aggregator.forget_session(session_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _streaming_message(self, session: Session, event: ExecutionEvent) -> Message | None:
        if event.message_id:
            existing = session.get_message(event.message_id)
            if existing is not None and existing.role is not Role.ASSISTANT:
                log.debug("Message %s is not an assistant message", event.message_id)
                return None
        return session.ensure_assistant_message(event.message_id)

    def _end_response(self, session: Session) -> None:
        self.close_open_batch(session.session_id)
        session.end_agent_response()

    def _find_subagent(
        self, session: Session, subagent_id: str | None
    ) -> SubagentProgress | None:
        if subagent_id:
            for message in reversed(session.messages):
                if message.agent is not None and subagent_id in message.agent.subagents:
                    return message.agent.subagents[subagent_id]
            return None
        current = session.current_message
        if current is None or current.agent is None:
            return None
        return current.agent.active_subagent

    def _link(self, session: Session, event: ExecutionEvent, request_id: str, attr: str) -> None:
        message = self._streaming_message(session, event)
        if message is None or message.agent is None:
            return
        linked = getattr(message.agent, attr)
        if request_id not in linked:
            linked.append(request_id)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _on_message_created(self, session: Session, event: ExecutionEvent) -> bool:
        try:
            role = Role(event.get("role", Role.ASSISTANT.value))
        except ValueError:
            log.debug("Message with unknown role %r ignored", event.get("role"))
            return False
        content = event.get("content") or ""
        if role is Role.ASSISTANT:
            message = session.start_agent_response(event.message_id)
            if content and message.agent is not None:
                message.agent.append_text(content)
            return True
        if event.message_id and session.get_message(event.message_id) is not None:
            return False
        if event.message_id:
            session.add_message(Message(id=event.message_id, role=role, content=content))
        else:
            session.add_user_message(content)
        return True

    def _on_content_delta(self, session: Session, event: ExecutionEvent) -> bool:
        delta = event.get("delta") or ""
        message = self._streaming_message(session, event)
        if message is None or message.agent is None or not delta:
            return False
        message.agent.append_text(delta)
        return True

    def _on_thinking_delta(self, session: Session, event: ExecutionEvent) -> bool:
        delta = event.get("delta") or ""
        message = self._streaming_message(session, event)
        if message is None or message.agent is None or not delta:
            return False
        message.agent.thinking += delta
        session.thinking = (session.thinking or "") + delta
        return True

    def _on_thinking_complete(self, session: Session, event: ExecutionEvent) -> bool:
        if session.thinking is None:
            return False
        session.thinking = None
        return True

    def _on_message_complete(self, session: Session, event: ExecutionEvent) -> bool:
        message = session.get_message(event.message_id) if event.message_id else None
        message = message or session.current_message
        if message is None:
            return False
        self.close_open_batch(session.session_id)
        if message.id == session.current_message_id:
            session.end_agent_response()
        elif message.agent is not None and not message.content:
            message.content = message.agent.text
        return True

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def _on_tool_start(self, session: Session, event: ExecutionEvent) -> bool:
        call_id = event.tool_call_id
        if not call_id:
            log.debug("Tool start without a call id ignored")
            return False
        if session.find_tool_call(call_id) is not None:
            log.debug("Duplicate tool start for %s ignored", call_id)
            return False

        message = self._streaming_message(session, event)
        if message is None or message.agent is None:
            return False

        tool_name = event.get("tool_name") or ""
        raw_arguments = event.get("arguments")
        record = ToolCallRecord(
            tool_call_id=call_id,
            tool_name=tool_name,
            arguments=_serialize_arguments(raw_arguments),
            tool_kind=event.get("tool_kind"),
        )
        message.agent.tool_calls.append(record)

        if self.aggregator is not None:
            batch = self.aggregator.on_tool_start(session.session_id, record)
            if batch is not None and batch not in message.agent.batches:
                message.agent.batches.append(batch)

        if tool_name == SUBAGENT_TOOL:
            arguments = _parse_arguments(raw_arguments)
            if "subagent_type" in arguments:
                message.agent.subagents[call_id] = SubagentProgress(
                    id=call_id,
                    type=str(arguments["subagent_type"]),
                    description=str(arguments.get("description", "")),
                )
                message.agent.active_subagent_id = call_id
        return True

    def _on_tool_result(self, session: Session, event: ExecutionEvent) -> bool:
        call_id = event.tool_call_id
        if not call_id:
            return False

        batch = self.aggregator.batch_for(session.session_id, call_id) if self.aggregator else None
        found = session.find_tool_call(call_id)
        record = batch.get(call_id) if batch is not None else None
        if record is None and found is not None:
            record = found[1]
        if record is None:
            log.debug("Result for unknown tool call %s ignored", call_id)
            return False

        output = event.get("output")
        summary = event.get("summary") or summarize_output(output)
        if not record.finish(
            bool(event.get("success", True)), summary, output, event.get("metadata")
        ):
            log.debug("Duplicate result for %s ignored", call_id)
            return False

        if batch is not None and self.aggregator is not None:
            self.aggregator.on_tool_result(session.session_id, call_id)

        if found is not None and found[0].agent is not None:
            agent = found[0].agent
            subagent = agent.subagents.get(call_id)
            if subagent is not None and subagent.status is SubagentStatus.RUNNING:
                success = record.status is ToolCallStatus.SUCCESS
                subagent.status = SubagentStatus.COMPLETED if success else SubagentStatus.FAILED
                subagent.current_tool = None
                if agent.active_subagent_id == call_id:
                    agent.active_subagent_id = None
        return True

    # -------------------------------------------------------------------------
    # Session-level updates
    # -------------------------------------------------------------------------

    def _on_token_usage(self, session: Session, event: ExecutionEvent) -> bool:
        session.context_window.merge(
            input_tokens=event.get("input_tokens"),
            output_tokens=event.get("output_tokens"),
            total_tokens=event.get("total_tokens"),
            max_context_tokens=event.get("max_context_tokens"),
        )
        return True

    def _on_todo_update(self, session: Session, event: ExecutionEvent) -> bool:
        todos = [TodoItem.from_dict(t) for t in event.get("todos") or []]
        session.todos = todos
        current = session.current_message
        if current is not None and current.agent is not None:
            current.agent.todos = list(todos)
        return True

    def _on_subagent_start(self, session: Session, event: ExecutionEvent) -> bool:
        subagent_id = event.get("subagent_id") or event.tool_call_id
        if not subagent_id:
            return False
        message = self._streaming_message(session, event)
        if message is None or message.agent is None:
            return False
        agent = message.agent
        subagent = agent.subagents.get(subagent_id)
        if subagent is None:
            subagent = agent.subagents[subagent_id] = SubagentProgress(
                id=subagent_id,
                type=str(event.get("type", "")),
                description=str(event.get("description", "")),
            )
        agent.active_subagent_id = subagent_id
        return True

    def _on_subagent_update(self, session: Session, event: ExecutionEvent) -> bool:
        subagent = self._find_subagent(session, event.get("subagent_id"))
        if subagent is None or subagent.status is not SubagentStatus.RUNNING:
            return False
        subagent.current_tool = event.get("tool_name")
        return True

    def _on_subagent_complete(self, session: Session, event: ExecutionEvent) -> bool:
        subagent = self._find_subagent(session, event.get("subagent_id"))
        if subagent is None or subagent.status is not SubagentStatus.RUNNING:
            return False
        success = bool(event.get("success", True))
        subagent.status = SubagentStatus.COMPLETED if success else SubagentStatus.FAILED
        subagent.current_tool = None
        current = session.current_message
        if current is not None and current.agent is not None:
            if current.agent.active_subagent_id == subagent.id:
                current.agent.active_subagent_id = None
        return True

    # -------------------------------------------------------------------------
    # Round trips
    # -------------------------------------------------------------------------

    def _on_confirmation_required(self, session: Session, event: ExecutionEvent) -> bool:
        request_id = event.get("request_id")
        if not request_id:
            return False
        if self.broker is not None:
            self.broker.open_confirmation(
                session.session_id,
                request_id,
                tool_call_id=event.tool_call_id or "",
                tool_name=event.get("tool_name") or "",
                description=event.get("description") or "",
                diff=event.get("diff"),
                kind=event.get("kind") or "execute",
            )
        self._link(session, event, request_id, "confirmation_ids")
        return True

    def _on_question_required(self, session: Session, event: ExecutionEvent) -> bool:
        request_id = event.get("request_id")
        if not request_id:
            return False
        if self.broker is not None:
            questions = [
                q if isinstance(q, Question) else Question.from_dict(q)
                for q in event.get("questions") or []
            ]
            self.broker.open_question(
                session.session_id, request_id, event.tool_call_id or "", questions
            )
        self._link(session, event, request_id, "question_ids")
        return True

    def _on_turn_limit(self, session: Session, event: ExecutionEvent) -> bool:
        turns = event.get("turns")
        request_id = event.get("request_id")
        if request_id and self.broker is not None:
            self.broker.open_confirmation(
                session.session_id,
                request_id,
                tool_name="turn_limit",
                description=f"Reached {turns} turns. Continue?",
                kind=CONTINUATION_KIND,
            )
        session.add_notice(f"Reached the turn limit ({turns} turns).")
        return True

    def _on_compacting(self, session: Session, event: ExecutionEvent) -> bool:
        active = bool(event.get("active", False))
        session.compacting = active
        if not active:
            session.context_window.reset()
        return True

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def _on_completed(self, session: Session, event: ExecutionEvent) -> bool:
        self._end_response(session)
        return True

    def _on_error(self, session: Session, event: ExecutionEvent) -> bool:
        self._end_response(session)
        session.set_error(str(event.get("error") or "Unknown error"))
        return True

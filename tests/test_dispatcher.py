"""Tests for event dispatch onto session state."""

from __future__ import annotations

import pytest

from agentdeck.session.batching import ToolBatchAggregator
from agentdeck.session.broker import ConfirmationBroker, PermissionScope, RequestStatus
from agentdeck.session.dispatcher import EventDispatcher, summarize_output
from agentdeck.session.protocols import EventKind, ExecutionEvent
from agentdeck.session.state import Role, SessionStore, SubagentStatus, ToolCallStatus

from tests.utils import make_event


@pytest.fixture
def store() -> SessionStore:
    store = SessionStore()
    store.create("s1")
    store.create("s2")
    store.select("s1")
    return store


@pytest.fixture
def dispatcher(store: SessionStore) -> EventDispatcher:
    return EventDispatcher(store, ToolBatchAggregator(), ConfirmationBroker())


def _send(dispatcher: EventDispatcher, kind: EventKind, /, **kwargs) -> bool:
    return dispatcher.dispatch(make_event(kind, **kwargs), "s1")


class TestSessionFilter:
    """Only the current session's events are applied."""

    def test_other_session_changes_nothing(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        before = store.get("s2").to_dict()
        for kind, kwargs in [
            (EventKind.CONTENT_DELTA, {"delta": "hi"}),
            (EventKind.TOOL_START, {"tool_call_id": "c1", "tool_name": "Read"}),
            (EventKind.TOKEN_USAGE, {"total_tokens": 500}),
            (EventKind.ERROR, {"error": "boom"}),
        ]:
            assert dispatcher.dispatch(make_event(kind, "s2", **kwargs), "s1") is False

        assert store.get("s2").to_dict() == before

    def test_unknown_session_dropped(self, dispatcher: EventDispatcher) -> None:
        event = make_event(EventKind.CONTENT_DELTA, "ghost", delta="x")
        assert dispatcher.dispatch(event, "ghost") is False

    def test_no_current_session(self, dispatcher: EventDispatcher) -> None:
        assert dispatcher.dispatch(make_event(EventKind.CONTENT_DELTA, delta="x"), None) is False

    def test_subscribers_see_every_event_first(self, dispatcher: EventDispatcher) -> None:
        seen: list[ExecutionEvent] = []
        unsubscribe = dispatcher.subscribe(seen.append)
        dispatcher.dispatch(make_event(EventKind.CONTENT_DELTA, "s2", delta="x"), "s1")
        dispatcher.dispatch(make_event(EventKind.CONTENT_DELTA, "s1", delta="y"), "s1")
        unsubscribe()
        dispatcher.dispatch(make_event(EventKind.CONTENT_DELTA, "s1", delta="z"), "s1")
        assert [e.get("delta") for e in seen] == ["x", "y"]

    def test_subscriber_error_is_logged(self, dispatcher: EventDispatcher, store) -> None:
        def boom(_: ExecutionEvent) -> None:
            raise RuntimeError("subscriber down")

        dispatcher.subscribe(boom)
        assert _send(dispatcher, EventKind.CONTENT_DELTA, delta="still applied")
        assert store.get("s1").messages[-1].text == "still applied"


class TestMessages:
    """Streaming text and thinking."""

    def test_delta_creates_missing_message(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        _send(dispatcher, EventKind.CONTENT_DELTA, message_id="m1", delta="Hel")
        _send(dispatcher, EventKind.CONTENT_DELTA, message_id="m1", delta="lo")

        session = store.get("s1")
        message = session.get_message("m1")
        assert message.role is Role.ASSISTANT
        assert message.agent.text_before == "Hello"
        assert session.current_message_id == "m1"

    def test_text_after_tools_goes_to_second_buffer(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        _send(dispatcher, EventKind.MESSAGE_CREATED, message_id="m1", role="assistant")
        _send(dispatcher, EventKind.CONTENT_DELTA, delta="Looking. ")
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Read")
        _send(dispatcher, EventKind.CONTENT_DELTA, delta="Found it.")
        _send(dispatcher, EventKind.MESSAGE_COMPLETE, message_id="m1")

        message = store.get("s1").get_message("m1")
        assert message.agent.text_before == "Looking. "
        assert message.agent.text_after == "Found it."
        assert message.content == "Looking. Found it."
        assert store.get("s1").current_message_id is None

    def test_user_message_created(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.MESSAGE_CREATED, message_id="u1", role="user", content="hi")
        message = store.get("s1").get_message("u1")
        assert message.role is Role.USER
        assert message.content == "hi"
        # Deltas never land in a user message
        assert not _send(dispatcher, EventKind.CONTENT_DELTA, message_id="u1", delta="x")

    def test_thinking_feeds_message_and_session(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        _send(dispatcher, EventKind.THINKING_DELTA, delta="hmm ")
        _send(dispatcher, EventKind.THINKING_DELTA, delta="ok")
        session = store.get("s1")
        assert session.thinking == "hmm ok"
        assert session.current_message.agent.thinking == "hmm ok"

        _send(dispatcher, EventKind.COMPLETED)
        assert session.thinking is None

    def test_thinking_complete_clears_live_thinking(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        _send(dispatcher, EventKind.THINKING_DELTA, delta="planning")
        assert _send(dispatcher, EventKind.THINKING_COMPLETE)

        session = store.get("s1")
        assert session.thinking is None
        assert session.current_message.agent.thinking == "planning"
        assert session.current_message_id is not None
        assert not _send(dispatcher, EventKind.THINKING_COMPLETE)

    def test_unknown_role_ignored(self, dispatcher: EventDispatcher, store) -> None:
        before = len(store.get("s1").messages)
        assert not _send(dispatcher, EventKind.MESSAGE_CREATED, message_id="x1", role="tool")
        assert len(store.get("s1").messages) == before

    def test_error_sets_session_error(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.CONTENT_DELTA, delta="partial")
        _send(dispatcher, EventKind.ERROR, error="provider unavailable")
        session = store.get("s1")
        assert session.error == "provider unavailable"
        assert session.current_message_id is None
        assert session.messages[-1].content == "partial"


class TestTools:
    """Tool records, batching and results."""

    def test_tool_lifecycle(self, dispatcher: EventDispatcher, store: SessionStore) -> None:
        _send(
            dispatcher,
            EventKind.TOOL_START,
            tool_call_id="c1",
            tool_name="Bash",
            arguments={"command": "pytest"},
            tool_kind="execute",
        )
        _send(
            dispatcher,
            EventKind.TOOL_RESULT,
            tool_call_id="c1",
            success=True,
            output="\n5 passed in 0.1s\nmore",
        )
        _, record = store.get("s1").find_tool_call("c1")
        assert record.status is ToolCallStatus.SUCCESS
        assert record.arguments == '{"command": "pytest"}'
        assert record.summary == "5 passed in 0.1s"
        assert record.batch_id is None

    def test_duplicate_start_ignored(self, dispatcher: EventDispatcher, store) -> None:
        assert _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Read")
        assert not _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Read")
        assert len(store.get("s1").current_message.agent.tool_calls) == 1

    def test_result_applies_once(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Bash")
        assert _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c1", success=False)
        assert not _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c1", success=True)
        _, record = store.get("s1").find_tool_call("c1")
        assert record.status is ToolCallStatus.ERROR

    def test_result_for_unknown_call_ignored(self, dispatcher: EventDispatcher) -> None:
        assert not _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="nope", success=True)

    def test_start_without_call_id_ignored(self, dispatcher: EventDispatcher, store) -> None:
        assert not _send(dispatcher, EventKind.TOOL_START, tool_name="Read")
        session = store.get("s1")
        assert session.current_message is None or not session.current_message.agent.tool_calls
        assert dispatcher.aggregator.batches("s1") == []

    def test_completed_batch_is_retired(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Read")
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c2", tool_name="Grep")
        aggregator = dispatcher.aggregator
        assert len(aggregator.batches("s1")) == 1

        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c1", success=True)
        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c2", success=True)

        assert aggregator.batches("s1") == []
        assert aggregator.batch_for("s1", "c1") is None
        assert aggregator.open_batch("s1") is None
        # The message still renders the finished batch
        batch = store.get("s1").current_message.agent.batches[0]
        assert batch.is_complete
        assert not _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c2", success=False)
        assert batch.get("c2").status is ToolCallStatus.SUCCESS

        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c3", tool_name="Read")
        assert len(store.get("s1").current_message.agent.batches) == 2

    def test_batch_completes_after_last_member(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        for call_id in ("c1", "c2", "c3"):
            _send(dispatcher, EventKind.TOOL_START, tool_call_id=call_id, tool_name="Read")
        agent = store.get("s1").current_message.agent
        assert len(agent.batches) == 1
        batch = agent.batches[0]

        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c2", success=True)
        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c1", success=True)
        assert not batch.is_complete
        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="c3", success=True)
        assert batch.is_complete

    def test_write_tool_splits_batches(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c1", tool_name="Read")
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c2", tool_name="Edit")
        _send(dispatcher, EventKind.TOOL_START, tool_call_id="c3", tool_name="Grep")
        agent = store.get("s1").current_message.agent
        assert [b.tools[0].tool_call_id for b in agent.batches] == ["c1", "c3"]
        assert agent.find_tool_call("c2").batch_id is None

    def test_subagent_tracked_by_call_id(self, dispatcher: EventDispatcher, store) -> None:
        _send(
            dispatcher,
            EventKind.TOOL_START,
            tool_call_id="t1",
            tool_name="Task",
            arguments='{"subagent_type": "explorer", "description": "map the repo"}',
        )
        agent = store.get("s1").current_message.agent
        subagent = agent.subagents["t1"]
        assert subagent.type == "explorer"
        assert agent.active_subagent is subagent

        _send(dispatcher, EventKind.SUBAGENT_UPDATE, tool_name="Grep")
        assert subagent.current_tool == "Grep"

        _send(dispatcher, EventKind.TOOL_RESULT, tool_call_id="t1", success=True)
        assert subagent.status is SubagentStatus.COMPLETED
        assert agent.active_subagent is None

    def test_subagent_events(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.SUBAGENT_START, subagent_id="sa1", type="review")
        assert _send(dispatcher, EventKind.SUBAGENT_COMPLETE, success=False)
        agent = store.get("s1").current_message.agent
        assert agent.subagents["sa1"].status is SubagentStatus.FAILED
        assert not _send(dispatcher, EventKind.SUBAGENT_COMPLETE, subagent_id="sa1")


class TestSessionUpdates:
    """Usage, todos, compaction and round trips."""

    def test_token_usage_partial_merge(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.TOKEN_USAGE, input_tokens=100, total_tokens=150)
        _send(dispatcher, EventKind.TOKEN_USAGE, output_tokens=60, max_context_tokens=200_000)
        usage = store.get("s1").context_window.usage
        assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (100, 60, 150)
        assert usage.max_context_tokens == 200_000
        assert usage.is_default_max_tokens is False

    def test_todo_update_replaces_list(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.CONTENT_DELTA, delta="planning")
        _send(
            dispatcher,
            EventKind.TODO_UPDATE,
            todos=[{"id": "1", "content": "write tests", "status": "in_progress"}],
        )
        _send(dispatcher, EventKind.TODO_UPDATE, todos=[{"id": "2", "content": "ship"}])
        session = store.get("s1")
        assert [t.content for t in session.todos] == ["ship"]
        assert [t.content for t in session.current_message.agent.todos] == ["ship"]

    def test_compacting_resets_usage_when_done(self, dispatcher: EventDispatcher, store) -> None:
        session = store.get("s1")
        session.context_window.merge(total_tokens=1000)

        _send(dispatcher, EventKind.COMPACTING, active=True)
        assert session.compacting
        assert session.context_window.usage.total_tokens == 1000

        _send(dispatcher, EventKind.COMPACTING, active=False)
        assert not session.compacting
        assert session.context_window.usage.total_tokens == 0

    def test_confirmation_opened_and_linked(self, dispatcher: EventDispatcher, store) -> None:
        _send(
            dispatcher,
            EventKind.CONFIRMATION_REQUIRED,
            tool_call_id="c1",
            request_id="req-1",
            tool_name="Bash",
            description="rm build/",
            kind="execute",
        )
        _send(dispatcher, EventKind.CONFIRMATION_REQUIRED, tool_call_id="c1", request_id="req-1")

        broker = dispatcher.broker
        assert [r.request_id for r in broker.pending("s1")] == ["req-1"]
        assert store.get("s1").current_message.agent.confirmation_ids == ["req-1"]

    def test_confirmation_for_session_approved_signature(
        self, dispatcher: EventDispatcher, store: SessionStore
    ) -> None:
        broker = dispatcher.broker
        broker.open_confirmation("s1", "req-0", "c0", "Bash", "ls")
        broker.respond("req-0", True, scope=PermissionScope.SESSION)

        _send(
            dispatcher,
            EventKind.CONFIRMATION_REQUIRED,
            request_id="req-1",
            tool_name="Bash",
            kind="execute",
        )
        assert broker.get("req-1").status is RequestStatus.APPROVED

    def test_question_opened(self, dispatcher: EventDispatcher, store) -> None:
        _send(
            dispatcher,
            EventKind.QUESTION_REQUIRED,
            request_id="q-1",
            questions=[{"header": "Env", "question": "Where?", "options": [{"label": "dev"}]}],
        )
        assert dispatcher.broker.answer("q-1", {"Env": "dev"})
        assert store.get("s1").current_message.agent.question_ids == ["q-1"]

    def test_turn_limit_notice(self, dispatcher: EventDispatcher, store) -> None:
        _send(dispatcher, EventKind.TURN_LIMIT_REACHED, turns=25)
        assert store.get("s1").messages[-1].content == "Reached the turn limit (25 turns)."


class TestConsume:
    """The single dispatch loop."""

    @pytest.mark.asyncio
    async def test_consume_in_order(self, dispatcher: EventDispatcher, store) -> None:
        async def stream():
            yield make_event(EventKind.CONTENT_DELTA, delta="a")
            yield make_event(EventKind.CONTENT_DELTA, "s2", delta="x")
            yield make_event(EventKind.CONTENT_DELTA, delta="b")

        applied = await dispatcher.consume(stream(), lambda: store.current_session_id)
        assert applied == 2
        assert store.get("s1").current_message.agent.text == "ab"


def test_summarize_output() -> None:
    assert summarize_output(None) is None
    assert summarize_output("\n\n  first line \nsecond") == "first line"
    assert len(summarize_output("x" * 500)) == 120

"""Single-flight task coordination for one session.

The coordinator is a small state machine (Idle -> Running -> Idle). A command
submitted while Running waits in the CommandQueue and starts after the
running task settles. ``abort()`` is optimistic: the session looks stopped at
once, while the execution unwinds cooperatively in the background. Whatever
that unwinding does afterwards is kept away from the new state by token
identity.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from agentdeck.config.schema import CoordinatorConfig
from agentdeck.core.tokens import count_content_tokens, count_tokens
from agentdeck.logging import get_session_logger
from agentdeck.session.broker import ConfirmationBroker
from agentdeck.session.cancellation import (
    CancellationRegistry,
    CancellationToken,
    TaskCancelledError,
)
from agentdeck.session.command_queue import CommandQueue
from agentdeck.session.dispatcher import EventDispatcher
from agentdeck.session.protocols import (
    AgentExecutor,
    Command,
    Compactor,
    EventKind,
    ExecutionContext,
    ExecutionEvent,
)
from agentdeck.session.state import MessageKind, Session

STOPPED_NOTICE = "Task stopped by user."
CANCELLED_NOTICE = "Task cancelled."


class CoordinatorInvariantError(RuntimeError):
    """The coordinator found itself in a state it should never reach."""


@dataclass
class Task:
    """One running (or unwinding) command."""

    task_id: str
    session_id: str
    generation: int
    token: CancellationToken
    command: Command
    started_at: float = field(default_factory=time.time)
    future: asyncio.Task[None] | None = field(default=None, repr=False)


class TaskCoordinator:
    """Runs the commands of one session, one at a time.

    All methods except ``post`` and ``post_abort`` must be called on the
    event loop thread.
    """

    def __init__(
        self,
        session: Session,
        executor: AgentExecutor,
        dispatcher: EventDispatcher,
        *,
        broker: ConfirmationBroker | None = None,
        compactor: Compactor | None = None,
        config: CoordinatorConfig | None = None,
        current_session_id: Callable[[], str | None] | None = None,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self.session = session
        self._executor = executor
        self._dispatcher = dispatcher
        self._broker = broker
        self._compactor = compactor
        self._config = config or CoordinatorConfig()
        self._current_session_id = current_session_id or (lambda: session.session_id)
        self._token_counter = token_counter
        self._log = get_session_logger("coordinator", session.session_id)

        self._registry = CancellationRegistry(session.session_id)
        self._queue = CommandQueue()
        self._running = False
        self._generation = 0
        self._current: Task | None = None
        self._stop_notice_sent = False
        self._inflight: set[asyncio.Task[None]] = set()
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def queued(self) -> list[str]:
        return self._queue.snapshot()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current_task(self) -> Task | None:
        return self._current

    @property
    def token(self) -> CancellationToken | None:
        return self._registry.current()

    def update_config(self, config: CoordinatorConfig) -> None:
        """Apply a reloaded config; affects the next start."""
        self._config = config

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, command: Command) -> Task | None:
        """Start ``command`` now, or queue it behind the running task.

        Returns:
            The started Task, or None when the command was queued or ignored.
        """
        if command.is_empty:
            self._log.debug("ignoring empty command")
            return None
        if self._running:
            length = self._queue.enqueue(command)
            self._log.debug("queued command (%d waiting)", length)
            return None
        self.session.set_error(None)
        return self._start(command)

    def post(self, command: Command) -> None:
        """Thread-safe submit: runs ``submit`` on the event loop."""
        self._require_loop().call_soon_threadsafe(self.submit, command)

    def post_abort(self) -> None:
        """Thread-safe abort: runs ``abort`` on the event loop."""
        self._require_loop().call_soon_threadsafe(self.abort)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("Coordinator is not bound to an event loop yet")
        return self._loop

    def _start(self, command: Command, delay: float = 0.0) -> Task:
        current = self._registry.current()
        if current is not None and not current.cancelled:
            self._log.critical("live token %s found while idle", current.token_id)
            raise CoordinatorInvariantError(
                f"Session {self.session_id} has a live cancellation token while idle"
            )

        self._stop_notice_sent = False
        self.session.todos = []

        token = self._registry.create()
        self._generation += 1
        task = Task(
            task_id=f"task_{uuid.uuid4().hex[:8]}",
            session_id=self.session_id,
            generation=self._generation,
            token=token,
            command=command,
        )
        self._current = task
        self._running = True
        self.session.is_running = True

        self._loop = asyncio.get_running_loop()
        future = asyncio.create_task(self._run(task, delay), name=f"agentdeck-{task.task_id}")
        task.future = future
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        self._log.debug("started %s (generation %d)", task.task_id, task.generation)
        return task

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, task: Task, delay: float) -> None:
        token = task.token
        streamed = 0

        def emit(event: ExecutionEvent) -> None:
            nonlocal streamed
            if token.cancelled:
                self._log.debug("dropping %s from cancelled %s", event.kind.value, task.task_id)
                return
            if event.kind is EventKind.CONTENT_DELTA:
                streamed += 1
            self._dispatcher.dispatch(event, self._current_session_id())

        try:
            if delay > 0:
                await asyncio.sleep(delay)
            if token.cancelled:
                return

            history = self.session.history()
            self.session.add_user_message(task.command.display_text)
            await self._maybe_compact(task)
            token.raise_if_cancelled()

            context = ExecutionContext(
                session_id=self.session_id,
                task_id=task.task_id,
                generation=task.generation,
                token=token,
                emit=emit,
                history=history,
                broker=self._broker,
                max_turns=self._config.max_turns,
            )
            output = await self._executor.execute(task.command, context)

            if not output and not token.cancelled and streamed == 0:
                self.session.end_agent_response()
                self.session.add_notice(CANCELLED_NOTICE)
        except TaskCancelledError as e:
            self._log.debug("%s cancelled (%s)", task.task_id, e)
        except asyncio.CancelledError:
            self._log.debug("%s interrupted", task.task_id)
            raise
        except Exception as e:
            if token.cancelled:
                self._log.debug("error after abort suppressed: %s", e)
            else:
                self._report_error(task, e)
        finally:
            self._settle(task)

    async def _maybe_compact(self, task: Task) -> None:
        if self._compactor is None:
            return
        estimate = count_content_tokens(task.command.content(), self._token_counter)
        if not self.session.context_window.would_exceed(estimate):
            return

        self._log.info("compacting before %s (~%d tokens incoming)", task.task_id, estimate)
        self._set_compacting(True)
        try:
            await self._compactor.compact(self.session, task.token)
        except (TaskCancelledError, asyncio.CancelledError):
            self._set_compacting(False)
            raise
        except Exception as e:
            self._log.error("compaction failed: %s", e)
            self._set_compacting(False)
            return
        self.session.context_window.reset()
        self._set_compacting(False)

    def _set_compacting(self, active: bool) -> None:
        """Applied to the session whether or not it is the current one."""
        self.session.compacting = active
        self._dispatcher.notify(self._event(EventKind.COMPACTING, active=active))

    def _event(self, kind: EventKind, **payload: object) -> ExecutionEvent:
        return ExecutionEvent(kind=kind, session_id=self.session_id, payload=dict(payload))

    def _report_error(self, task: Task, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        self._log.error("%s failed: %s", task.task_id, message)
        self._dispatcher.close_open_batch(self.session_id)
        self.session.end_agent_response()
        self.session.set_error(message)
        self.session.add_assistant_message(f"Error: {message}", MessageKind.ERROR)

    def _settle(self, task: Task) -> None:
        """Cleanup after ``task`` finished, whatever the outcome.

        Touches nothing unless the stored token is still the one this task
        was started with.
        """
        if not self._registry.clear(task.token):
            self._log.debug("stale cleanup of generation %d ignored", task.generation)
            return

        if self._current is task:
            self._current = None
        self._running = False
        self.session.is_running = False
        self._dispatcher.forget_session(self.session_id)
        self.session.end_agent_response()

        next_command = self._queue.dequeue()
        if next_command is not None:
            self._start(next_command, delay=self._config.queue_delay)

    # -------------------------------------------------------------------------
    # Abort and shutdown
    # -------------------------------------------------------------------------

    def abort(self) -> bool:
        """Stop the running task and drop the queue.

        Returns:
            False when nothing was running.
        """
        if not self._running:
            self._log.debug("abort ignored, nothing running")
            return False

        if self._registry.current() is None:
            self._log.critical("running without a cancellation token")
        else:
            self._registry.cancel("aborted")

        self._running = False
        self.session.is_running = False
        dropped = self._queue.clear()
        self.session.todos = []
        self._dispatcher.forget_session(self.session_id)
        self.session.end_agent_response()
        if not self._stop_notice_sent:
            self._stop_notice_sent = True
            self.session.add_notice(STOPPED_NOTICE)
        if self._broker is not None:
            self._broker.cancel_session(self.session_id)

        self._log.info(
            "aborted generation %d (%d queued dropped)", self._generation, len(dropped)
        )
        return True

    async def join(self) -> None:
        """Wait until no execution of this coordinator is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        """Abort, interrupt whatever does not unwind on its own, and wait."""
        self.abort()
        for future in list(self._inflight):
            future.cancel()
        await self.join()

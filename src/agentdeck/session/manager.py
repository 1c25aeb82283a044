"""The application object the UI talks to.

SessionManager owns every per-application registry: the session store, the
dispatcher, the batch aggregator, the confirmation broker and one
TaskCoordinator per session. Nothing in the session layer is global.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from agentdeck.config import Config, get_config, on_config_reload
from agentdeck.core.context_window import ContextWindowTracker
from agentdeck.core.tokens import count_tokens
from agentdeck.logging import get_logger
from agentdeck.session.batching import ReadOnlyToolPolicy, ToolBatchAggregator
from agentdeck.session.broker import Answer, ConfirmationBroker, PermissionScope
from agentdeck.session.coordinator import Task, TaskCoordinator
from agentdeck.session.dispatcher import EventDispatcher
from agentdeck.session.protocols import AgentExecutor, Command, Compactor, EventSink
from agentdeck.session.state import Session, SessionStore

log = get_logger("manager")


class SessionNotFoundError(KeyError):
    """No session with the given id exists."""


class SessionManager:
    """Sessions, their coordinators and the shared event plumbing.

    Example:
        >>> async with SessionManager(executor) as manager:
        ...     manager.submit("list the open TODOs")
        ...     await manager.join()
        ...     print(manager.snapshot()["messages"])
    """

    def __init__(
        self,
        executor: AgentExecutor,
        *,
        compactor: Compactor | None = None,
        config: Config | None = None,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self._executor = executor
        self._compactor = compactor
        self._config = config or get_config()
        self._token_counter = token_counter

        self.store = SessionStore(self._make_tracker)
        self.aggregator = ToolBatchAggregator.from_config(self._config.batching)
        self.broker = ConfirmationBroker.from_config(self._config.permissions)
        self.dispatcher = EventDispatcher(self.store, self.aggregator, self.broker)
        self._coordinators: dict[str, TaskCoordinator] = {}
        self._unregister_reload: Callable[[], None] | None = on_config_reload(
            self._on_config_reload
        )
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def _make_tracker(self) -> ContextWindowTracker:
        return ContextWindowTracker(
            max_context_tokens=self._config.context.default_max_tokens,
            threshold=self._config.context.compress_threshold,
        )

    def _on_config_reload(self, config: Config) -> None:
        self._config = config
        self.broker.reload(config.permissions)
        self.aggregator.policy = ReadOnlyToolPolicy(extra=config.batching.read_only_tools)
        self.aggregator.enabled = config.batching.enabled
        for coordinator in self._coordinators.values():
            coordinator.update_config(config.coordinator)
        log.debug("Session manager picked up reloaded config")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @property
    def current_session_id(self) -> str | None:
        return self.store.current_session_id

    def create_session(
        self, session_id: str | None = None, title: str = "", select: bool = True
    ) -> Session:
        """Create a session with its own coordinator; selects it by default."""
        session = self.store.create(session_id, title=title)
        self._coordinators[session.session_id] = TaskCoordinator(
            session,
            self._executor,
            self.dispatcher,
            broker=self.broker,
            compactor=self._compactor,
            config=self._config.coordinator,
            current_session_id=lambda: self.store.current_session_id,
            token_counter=self._token_counter,
        )
        if select:
            self.store.select(session.session_id)
        log.info("Created session %s", session.session_id)
        return session

    def get_session(self, session_id: str | None = None) -> Session:
        """The named session, or the current one."""
        session_id = session_id or self.store.current_session_id
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[str]:
        return self.store.list_ids()

    def select_session(self, session_id: str | None) -> None:
        if session_id is not None and session_id not in self.store:
            raise SessionNotFoundError(session_id)
        self.store.select(session_id)

    async def delete_session(self, session_id: str) -> None:
        """Stop the session's work and drop all of its state."""
        coordinator = self._coordinators.pop(session_id, None)
        if coordinator is None:
            raise SessionNotFoundError(session_id)
        await coordinator.close()
        self.broker.forget_session(session_id)
        self.dispatcher.forget_session(session_id)
        self.store.delete(session_id)
        log.info("Deleted session %s", session_id)

    def clear_session(self, session_id: str | None = None) -> None:
        """Abort any running task and empty the transcript."""
        coordinator = self._coordinator(session_id)
        coordinator.abort()
        self.dispatcher.forget_session(coordinator.session_id)
        coordinator.session.reset()

    def _coordinator(self, session_id: str | None) -> TaskCoordinator:
        session_id = session_id or self.store.current_session_id
        coordinator = self._coordinators.get(session_id) if session_id else None
        if coordinator is None:
            raise SessionNotFoundError(session_id)
        return coordinator

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def submit(self, command: Command | str, session_id: str | None = None) -> Task | None:
        """Run or queue a command.

        Without ``session_id`` the current session is used; a session is
        created when none is selected.
        """
        if isinstance(command, str):
            command = Command.from_text(command)
        if session_id is None and self.store.current_session_id is None:
            self.create_session()
        self._loop = asyncio.get_running_loop()
        return self._coordinator(session_id).submit(command)

    def abort(self, session_id: str | None = None) -> bool:
        session_id = session_id or self.store.current_session_id
        coordinator = self._coordinators.get(session_id) if session_id else None
        if coordinator is None:
            return False
        return coordinator.abort()

    def post(self, command: Command | str, session_id: str | None = None) -> None:
        """Thread-safe ``submit``."""
        self._require_loop().call_soon_threadsafe(self.submit, command, session_id)

    def post_abort(self, session_id: str | None = None) -> None:
        """Thread-safe ``abort``."""
        self._require_loop().call_soon_threadsafe(self.abort, session_id)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("SessionManager is not bound to an event loop yet")
        return self._loop

    def is_running(self, session_id: str | None = None) -> bool:
        session_id = session_id or self.store.current_session_id
        coordinator = self._coordinators.get(session_id) if session_id else None
        return coordinator is not None and coordinator.is_running

    def queue_length(self, session_id: str | None = None) -> int:
        session_id = session_id or self.store.current_session_id
        coordinator = self._coordinators.get(session_id) if session_id else None
        return coordinator.queue_length if coordinator else 0

    def coordinator(self, session_id: str | None = None) -> TaskCoordinator:
        return self._coordinator(session_id)

    # -------------------------------------------------------------------------
    # Read-only projection
    # -------------------------------------------------------------------------

    def snapshot(self, session_id: str | None = None) -> dict[str, Any] | None:
        """Plain-dict view of a session for rendering; None if no session."""
        session_id = session_id or self.store.current_session_id
        session = self.store.get(session_id)
        if session is None:
            return None
        coordinator = self._coordinators[session.session_id]
        data = session.to_dict()
        data["queued"] = coordinator.queued
        data["generation"] = coordinator.generation
        data["batches"] = [b.to_dict() for b in self.aggregator.batches(session.session_id)]
        data["pending"] = [r.to_dict() for r in self.broker.pending(session.session_id)]
        return data

    def subscribe(self, callback: EventSink) -> Callable[[], None]:
        """Observe every execution event (all sessions, before filtering)."""
        return self.dispatcher.subscribe(callback)

    # -------------------------------------------------------------------------
    # Confirmations and questions
    # -------------------------------------------------------------------------

    def respond_permission(
        self,
        request_id: str,
        approved: bool,
        scope: PermissionScope | str = PermissionScope.ONCE,
    ) -> bool:
        if isinstance(scope, str):
            scope = PermissionScope(scope)
        return self.broker.respond(request_id, approved, scope)

    def answer_question(self, request_id: str, answers: dict[str, Answer]) -> bool:
        return self.broker.answer(request_id, answers)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def join(self, session_id: str | None = None) -> None:
        """Wait for in-flight work of one session, or of all sessions."""
        if session_id is not None:
            await self._coordinator(session_id).join()
            return
        for coordinator in list(self._coordinators.values()):
            await coordinator.join()

    async def close(self) -> None:
        for coordinator in list(self._coordinators.values()):
            await coordinator.close()
        if self._unregister_reload is not None:
            self._unregister_reload()
            self._unregister_reload = None
        log.debug("Session manager closed")

    async def __aenter__(self) -> SessionManager:
        self._loop = asyncio.get_running_loop()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

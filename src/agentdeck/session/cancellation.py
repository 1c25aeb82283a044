"""Cooperative cancellation tokens and the per-session token registry.

Cancellation is advisory: an execution observes its token (polling
``cancelled``, calling ``raise_if_cancelled()`` or awaiting ``wait()``);
nothing is interrupted preemptively.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable

from agentdeck.logging import get_logger

log = get_logger("cancellation")

CancelListener = Callable[["CancellationToken"], None]

_MISSING = object()


class TaskCancelledError(Exception):
    """Raised by an execution that stopped because its token was cancelled."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Task was cancelled")
        self.reason = reason


class CancellationToken:
    """A one-way cancelled flag with listeners.

    Tokens are compared by identity; the id only exists for logs.
    """

    def __init__(self) -> None:
        self.token_id = f"tok-{uuid.uuid4().hex[:8]}"
        self._cancelled = False
        self._reason: str | None = None
        self._listeners: list[CancelListener] = []
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, listener: CancelListener) -> Callable[[], None]:
        """Register a listener; fires immediately if already cancelled.

        Returns:
            A function that removes the listener.
        """
        if self._cancelled:
            self._notify(listener)
            return lambda: None

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def cancel(self, reason: str | None = None) -> bool:
        """Mark cancelled and fire listeners once.

        Returns:
            False if the token was already cancelled.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            self._notify(listener)
        log.debug("Token %s cancelled (%s)", self.token_id, reason or "no reason")
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError(self._reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _notify(self, listener: CancelListener) -> None:
        try:
            listener(self)
        except Exception:
            log.exception("Cancellation listener failed for %s", self.token_id)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "live"
        return f"<CancellationToken {self.token_id} {state}>"


class CancellationRegistry:
    """Owns the single "current" token of one session.

    ``clear(expected)`` is an identity compare-and-clear: a slow cleanup from
    an older task can never drop a token that a newer task created.
    """

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._token: CancellationToken | None = None

    def create(self) -> CancellationToken:
        """Return the live current token, or allocate a fresh one."""
        if self._token is not None and not self._token.cancelled:
            return self._token
        self._token = CancellationToken()
        log.debug("Session %s: new token %s", self._session_id, self._token.token_id)
        return self._token

    def current(self) -> CancellationToken | None:
        return self._token

    def clear(self, expected: CancellationToken | None | object = _MISSING) -> bool:
        """Drop the stored token.

        Args:
            expected: When given, clear only if it is the stored token
                (identity match). When omitted, always clear.

        Returns:
            True if the stored token was cleared.
        """
        if expected is not _MISSING and expected is not self._token:
            log.debug(
                "Session %s: stale clear ignored (expected %r, current %r)",
                self._session_id,
                expected,
                self._token,
            )
            return False
        self._token = None
        return True

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the current token without clearing the reference."""
        if self._token is None:
            return False
        return self._token.cancel(reason)

"""Groups consecutive read-only tool calls into display batches.

A run of read-only calls (Read, Grep, Glob...) renders as one collapsible
group; anything else breaks the run and renders on its own. Batches hold the
same ToolCallRecord objects the message holds, so status changes made by the
dispatcher are visible in both places.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from agentdeck.config.schema import BatchingConfig
from agentdeck.logging import get_logger
from agentdeck.session.state import ToolBatch, ToolCallRecord

log = get_logger("batching")

READ_ONLY_TOOLS: frozenset[str] = frozenset(
    {
        "Glob",
        "Grep",
        "Read",
        "LS",
        "SearchCodebase",
        "WebSearch",
        "WebFetch",
        "mcp_Fetch_fetch",
        "mcp_context7_resolve-library-id",
        "mcp_context7_query-docs",
        "mcp_GitHub_search_repositories",
        "mcp_GitHub_search_code",
        "mcp_GitHub_search_issues",
        "mcp_GitHub_search_users",
        "mcp_GitHub_get_file_contents",
        "mcp_GitHub_list_commits",
        "mcp_GitHub_list_issues",
        "mcp_GitHub_list_pull_requests",
        "mcp_GitHub_get_issue",
        "mcp_GitHub_get_pull_request",
        "mcp_GitHub_get_pull_request_files",
        "mcp_GitHub_get_pull_request_status",
        "mcp_GitHub_get_pull_request_comments",
        "mcp_GitHub_get_pull_request_reviews",
        "mcp_pencil_get_editor_state",
        "mcp_pencil_get_guidelines",
        "mcp_pencil_get_screenshot",
        "mcp_pencil_get_style_guide",
        "mcp_pencil_get_style_guide_tags",
        "mcp_pencil_get_variables",
        "mcp_pencil_snapshot_layout",
        "mcp_pencil_search_all_unique_properties",
        "mcp_pencil_batch_get",
        "mcp_Puppeteer_puppeteer_screenshot",
        "mcp_Sequential_Thinking_sequentialthinking",
        "CheckCommandStatus",
        "GetDiagnostics",
    }
)

# MCP tools following the verb naming convention are assumed read-only
MCP_PREFIX = "mcp_"
MCP_READ_ONLY_MARKERS: tuple[str, ...] = ("_get_", "_list_", "_search_")


class ReadOnlyToolPolicy:
    """Decides whether a tool name is read-only (and thus batchable)."""

    def __init__(
        self,
        names: Iterable[str] = READ_ONLY_TOOLS,
        extra: Iterable[str] = (),
        markers: tuple[str, ...] = MCP_READ_ONLY_MARKERS,
    ) -> None:
        self._names = frozenset(names) | frozenset(extra)
        self._markers = markers

    def is_read_only(self, tool_name: str) -> bool:
        if tool_name in self._names:
            return True
        if tool_name.startswith(MCP_PREFIX):
            return any(marker in tool_name for marker in self._markers)
        return False

    def __contains__(self, tool_name: object) -> bool:
        return isinstance(tool_name, str) and self.is_read_only(tool_name)


@dataclass(slots=True)
class _SessionBatches:
    open: ToolBatch | None = None
    by_call: dict[str, ToolBatch] = field(default_factory=dict)
    batches: list[ToolBatch] = field(default_factory=list)


class ToolBatchAggregator:
    """Per-session batch bookkeeping.

    Each session has at most one *open* batch: the one the next read-only
    call will join. A non-read-only call forgets it (the batch keeps its
    running members but accepts no new ones), and so does completion.
    Completed batches are retired: the messages that render them keep them,
    the aggregator only tracks batches that still have running members.
    """

    def __init__(self, policy: ReadOnlyToolPolicy | None = None, enabled: bool = True) -> None:
        self.policy = policy or ReadOnlyToolPolicy()
        self.enabled = enabled
        self._sessions: dict[str, _SessionBatches] = {}
        self._seq = itertools.count(1)

    @classmethod
    def from_config(cls, config: BatchingConfig) -> ToolBatchAggregator:
        return cls(ReadOnlyToolPolicy(extra=config.read_only_tools), enabled=config.enabled)

    def _state(self, session_id: str) -> _SessionBatches:
        state = self._sessions.get(session_id)
        if state is None:
            state = self._sessions[session_id] = _SessionBatches()
        return state

    def _new_batch_id(self) -> str:
        return f"batch-{int(time.time() * 1000)}-{next(self._seq)}"

    def on_tool_start(self, session_id: str, record: ToolCallRecord) -> ToolBatch | None:
        """Place a freshly started call.

        Returns:
            The batch the call joined (possibly new), or None when the call
            renders standalone.
        """
        state = self._state(session_id)

        if not self.enabled or not self.policy.is_read_only(record.tool_name):
            if state.open is not None:
                log.debug(
                    "Session %s: %s breaks batch %s",
                    session_id,
                    record.tool_name,
                    state.open.batch_id,
                )
            state.open = None
            return None

        batch = state.open
        if batch is None or batch.is_complete:
            batch = ToolBatch(batch_id=self._new_batch_id())
            state.batches.append(batch)
            state.open = batch

        batch.add(record)
        state.by_call[record.tool_call_id] = batch
        return batch

    def batch_for(self, session_id: str, tool_call_id: str) -> ToolBatch | None:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        return state.by_call.get(tool_call_id)

    def on_tool_result(self, session_id: str, tool_call_id: str) -> ToolBatch | None:
        """Recompute completion of the batch owning ``tool_call_id``.

        Call after the member record has been updated. Returns the batch, or
        None for standalone calls.
        """
        batch = self.batch_for(session_id, tool_call_id)
        if batch is None:
            return None
        if batch.refresh():
            self._retire(self._sessions[session_id], batch)
            log.debug("Session %s: batch %s complete", session_id, batch.batch_id)
        return batch

    def _retire(self, state: _SessionBatches, batch: ToolBatch) -> None:
        if state.open is batch:
            state.open = None
        for record in batch.tools:
            if state.by_call.get(record.tool_call_id) is batch:
                del state.by_call[record.tool_call_id]
        state.batches = [b for b in state.batches if b is not batch]

    def open_batch(self, session_id: str) -> ToolBatch | None:
        state = self._sessions.get(session_id)
        return state.open if state else None

    def close(self, session_id: str) -> ToolBatch | None:
        """Stop the open batch from accepting members; returns it if any."""
        state = self._sessions.get(session_id)
        if state is None:
            return None
        batch, state.open = state.open, None
        return batch

    def batches(self, session_id: str) -> list[ToolBatch]:
        """Batches of the session that still have running members."""
        state = self._sessions.get(session_id)
        return list(state.batches) if state else []

    def forget_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

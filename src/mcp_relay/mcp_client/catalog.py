"""
Per-session cache of the tools a server advertises.
"""
import weakref
from typing import Any

import structlog
from pydantic import ValidationError

from ..models.mcp import ToolDescriptor, ToolsListResult
from .exceptions import MCPMalformedResponseError, MCPNotFoundError
from .session import ProtocolSession, SessionState

logger = structlog.get_logger(__name__)

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
# Guards against a server that keeps handing out cursors.
MAX_PAGES = 100


class ToolCatalog:
    """
    Caches `tools/list` results keyed by session. An entry is always replaced
    or dropped whole, never merged: it is dropped when its session leaves
    READY and when the server announces that its tool list changed.
    """

    def __init__(self):
        self._cache: weakref.WeakKeyDictionary[ProtocolSession, dict[str, ToolDescriptor]] = weakref.WeakKeyDictionary()
        self._attached: weakref.WeakSet[ProtocolSession] = weakref.WeakSet()

    def attach(self, session: ProtocolSession) -> None:
        """Wires automatic invalidation into `session`. Safe to call repeatedly."""
        if session in self._attached:
            return
        self._attached.add(session)

        def _on_state_change(old: SessionState, new: SessionState) -> None:
            if old == SessionState.READY and new != SessionState.READY:
                self.invalidate(session)

        def _on_list_changed(_message: dict[str, Any]) -> None:
            logger.debug("Server reported tool list change.", server_name=session.name)
            self.invalidate(session)

        session.add_state_listener(_on_state_change)
        session.on_notification(TOOLS_LIST_CHANGED, _on_list_changed)

    def cached(self, session: ProtocolSession) -> list[ToolDescriptor] | None:
        entry = self._cache.get(session)
        return None if entry is None else list(entry.values())

    def invalidate(self, session: ProtocolSession) -> None:
        if self._cache.pop(session, None) is not None:
            logger.debug("Tool cache invalidated.", server_name=session.name)

    async def list(self, session: ProtocolSession) -> list[ToolDescriptor]:
        """Fetches every page of `tools/list` and replaces the session's cache entry."""
        self.attach(session)
        tools: dict[str, ToolDescriptor] = {}
        cursor: str | None = None
        for _ in range(MAX_PAGES):
            result = await session.call("tools/list", {"cursor": cursor} if cursor else None)
            try:
                page = ToolsListResult.model_validate(result)
            except ValidationError as e:
                raise MCPMalformedResponseError(
                    f"Malformed tools/list result: {e.errors()[0]['msg']}", server=session.name
                ) from e
            for tool in page.tools:
                tools[tool.name] = tool
            cursor = page.next_cursor
            if not cursor:
                break
        else:
            logger.warning("Stopped following tools/list cursors.", server_name=session.name, pages=MAX_PAGES)

        self._cache[session] = tools
        logger.debug("Tool cache refreshed.", server_name=session.name, tool_count=len(tools))
        return list(tools.values())

    async def describe(self, session: ProtocolSession, tool_name: str) -> ToolDescriptor:
        """Returns the cached descriptor, fetching only when the session has no cache entry."""
        entry = self._cache.get(session)
        if entry is None:
            await self.list(session)
            entry = self._cache.get(session, {})
        tool = entry.get(tool_name)
        if tool is None:
            raise MCPNotFoundError(f"Tool '{tool_name}' not found on server '{session.name}'", server=session.name)
        return tool

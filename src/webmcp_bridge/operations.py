"""Controller-facing WebMCP operations.

Thin wrappers over the connection manager and tool hub. They never raise:
failures come back as ``success=False`` with a readable ``error`` and a
machine-checkable ``error_kind``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from mcp import types
from playwright.async_api import Page
from pydantic import BaseModel, Field

from webmcp_bridge.connection import WebMCPConnectionManager
from webmcp_bridge.errors import WebMCPError
from webmcp_bridge.hub import RegisteredToolInfo
from webmcp_bridge.naming import display_domain
from webmcp_bridge.transport import CloseReason

logger = logging.getLogger(__name__)


class WebMCPConnectResult(BaseModel):
    """Result of connecting to a page's registry."""

    success: bool
    page_index: Optional[int] = None
    url: Optional[str] = None
    server_name: Optional[str] = None
    server_version: Optional[str] = None
    tool_count: int = 0
    tools: List[RegisteredToolInfo] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    recoverable: Optional[bool] = None


class WebMCPToolListResult(BaseModel):
    """Result of listing registered WebMCP tools."""

    success: bool
    count: int = 0
    tools: List[RegisteredToolInfo] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    recoverable: Optional[bool] = None


class WebMCPCallResult(BaseModel):
    """Result of calling a WebMCP tool."""

    success: bool
    tool_id: str
    content: List[Dict[str, Any]] = Field(default_factory=list)
    structured_content: Optional[Dict[str, Any]] = None
    is_error: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    recoverable: Optional[bool] = None


class WebMCPDisconnectResult(BaseModel):
    """Result of disconnecting from a page."""

    success: bool
    page_index: Optional[int] = None
    removed_tools: int = 0
    message: Optional[str] = None


class WebMCPDiffResult(BaseModel):
    """Catalog changes since the previous diff call."""

    success: bool = True
    full: bool
    tools: List[RegisteredToolInfo] = Field(default_factory=list)
    added: List[RegisteredToolInfo] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    message: Optional[str] = None


def _error_fields(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, WebMCPError):
        return {"error": exc.message, "error_kind": exc.kind.value, "recoverable": exc.recoverable}
    return {"error": str(exc), "error_kind": "internal_error", "recoverable": False}


async def connect(
    manager: WebMCPConnectionManager,
    page: Page,
    require_webmcp: bool = True,
) -> WebMCPConnectResult:
    page_index = manager.page_index(page)
    try:
        conn = await manager.get_client(page, require_webmcp=require_webmcp)
    except Exception as exc:
        logger.debug("WebMCP connect failed for %s: %s", page.url, exc)
        return WebMCPConnectResult(
            success=False, page_index=page_index, url=page.url, **_error_fields(exc)
        )

    tools = manager.hub.get_registered_tools(page_index=page_index)
    server_info = conn.server_info
    return WebMCPConnectResult(
        success=True,
        page_index=page_index,
        url=page.url,
        server_name=server_info.name if server_info else None,
        server_version=server_info.version if server_info else None,
        tool_count=len(tools),
        tools=tools,
        message=f"Connected to WebMCP server with {len(tools)} tool(s)",
    )


def list_tools(
    manager: WebMCPConnectionManager,
    page: Optional[Page] = None,
    pattern: Optional[str] = None,
    page_index: Optional[int] = None,
    all_pages: bool = False,
) -> WebMCPToolListResult:
    """List catalog entries for one page (default) or for every page."""
    if not all_pages and page_index is None and page is not None:
        page_index = manager.page_index(page)
    if all_pages:
        page_index = None

    tools = manager.hub.get_registered_tools(page_index=page_index, pattern=pattern)
    message = None
    if not tools:
        if page is not None and not all_pages and not manager.is_connected(page):
            if manager.last_close_reason.get(page) is CloseReason.NAVIGATION:
                message = (
                    "Page navigated since the last connection; tools will reappear "
                    "once the page's registry is reconnected."
                )
            else:
                message = "Not connected to WebMCP on this page. Use connect_webmcp first."
        else:
            message = "No WebMCP tools registered."
    return WebMCPToolListResult(success=True, count=len(tools), tools=tools, message=message)


async def call_tool(
    manager: WebMCPConnectionManager,
    tool_id: str,
    arguments: Any = None,
) -> WebMCPCallResult:
    if arguments is None:
        arguments = {}
    try:
        result = await manager.hub.call_tool(tool_id, arguments)
    except Exception as exc:
        logger.debug("WebMCP tool call %s failed: %s", tool_id, exc)
        return WebMCPCallResult(success=False, tool_id=tool_id, **_error_fields(exc))

    return WebMCPCallResult(
        success=not result.isError,
        tool_id=tool_id,
        content=[block.model_dump(mode="json", exclude_none=True) for block in result.content],
        structured_content=getattr(result, "structuredContent", None),
        is_error=bool(result.isError),
        error=_first_text(result) if result.isError else None,
        error_kind="tool_error" if result.isError else None,
    )


def _first_text(result: types.CallToolResult) -> Optional[str]:
    for block in result.content:
        if isinstance(block, types.TextContent):
            return block.text
    return None


async def disconnect(manager: WebMCPConnectionManager, page: Page) -> WebMCPDisconnectResult:
    page_index = manager.page_index(page)
    before = len(manager.hub.get_registered_tools(page_index=page_index))
    if not await manager.disconnect(page):
        return WebMCPDisconnectResult(
            success=True, page_index=page_index, message="Not connected to WebMCP on this page."
        )
    return WebMCPDisconnectResult(
        success=True,
        page_index=page_index,
        removed_tools=before,
        message="Disconnected from WebMCP server.",
    )


def diff_tools(manager: WebMCPConnectionManager, full: bool = False) -> WebMCPDiffResult:
    """Full catalog on first call (or ``full``), otherwise changes since last call."""
    hub = manager.hub
    tools = hub.get_registered_tools()
    current_ids = {tool.tool_id for tool in tools}
    last_seen = hub.get_last_seen_tool_ids()
    hub.set_last_seen_tool_ids(current_ids)

    if last_seen is None or full:
        if not tools:
            message = (
                "No WebMCP tools registered. Navigate to a page that registers "
                "tools through navigator.modelContext to discover them."
            )
        else:
            domains = sorted({display_domain(tool.domain) for tool in tools})
            message = f"{len(tools)} WebMCP tool(s) registered on {', '.join(domains)}"
        return WebMCPDiffResult(full=True, tools=tools, message=message)

    added = [tool for tool in tools if tool.tool_id not in last_seen]
    removed = sorted(last_seen - current_ids)
    if not added and not removed:
        message = "No changes since last poll."
    else:
        message = f"{len(added)} added, {len(removed)} removed"
    return WebMCPDiffResult(full=False, added=added, removed=removed, message=message)

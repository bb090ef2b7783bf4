"""Process-wide catalog of WebMCP tools across all connected pages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from mcp import types
from pydantic import BaseModel, Field

from webmcp_bridge.errors import (
    ArgumentValidationError,
    NoToolsAvailableError,
    ToolNotFoundError,
    WebMCPError,
)
from webmcp_bridge.naming import (
    compile_glob,
    extract_domain,
    generate_tool_id,
    validate_tool_name,
)

logger = logging.getLogger(__name__)


class ToolClient(Protocol):
    """What the hub needs from a page connection."""

    async def list_tools(self) -> types.ListToolsResult: ...

    async def call_tool(
        self, name: str, arguments: Dict[str, Any]
    ) -> types.CallToolResult: ...


class ToolConnector(Protocol):
    async def get_client(self, page: Any) -> ToolClient: ...


@dataclass
class ToolDescriptor:
    """One tool as exposed by a page's registry."""

    original_name: str
    description: str
    input_schema: Dict[str, Any]
    page_index: int
    domain_tag: str
    output_schema: Optional[Dict[str, Any]] = None
    annotations: Optional[Dict[str, Any]] = None

    @classmethod
    def from_tool(cls, tool: types.Tool, page_index: int, domain_tag: str) -> "ToolDescriptor":
        output_schema = getattr(tool, "outputSchema", None)
        annotations = getattr(tool, "annotations", None)
        if annotations is not None and hasattr(annotations, "model_dump"):
            annotations = annotations.model_dump(exclude_none=True)
        return cls(
            original_name=tool.name,
            description=tool.description or "",
            input_schema=dict(tool.inputSchema or {}),
            page_index=page_index,
            domain_tag=domain_tag,
            output_schema=output_schema,
            annotations=annotations or None,
        )


@dataclass
class RegisteredTool:
    tool_id: str
    page: Any
    descriptor: ToolDescriptor


class RegisteredToolInfo(BaseModel):
    """Public view of a registered tool."""

    tool_id: str
    original_name: str
    domain: str
    page_index: int
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Optional[Dict[str, Any]] = None
    annotations: Optional[Dict[str, Any]] = None


@dataclass
class SyncResult:
    synced: int = 0
    updated: int = 0
    removed: int = 0


@dataclass
class _PageEntry:
    tool_ids: Set[str] = field(default_factory=set)


class WebMCPToolHub:
    """Assigns stable ids to page tools and keeps them in step with page lifecycle.

    Tool ids follow ``webmcp_{domain}_page{index}_{name}``. A tool whose name
    is unchanged between two syncs keeps its id, so references held by the
    controller stay valid while descriptions or schemas change.
    """

    def __init__(
        self,
        page_index: Callable[[Any], int],
        connector: Optional[ToolConnector] = None,
        enabled: bool = True,
    ):
        self._page_index = page_index
        self._connector = connector
        self._enabled = enabled
        self._tools: Dict[str, RegisteredTool] = {}
        self._pages: Dict[Any, _PageEntry] = {}
        self._sync_in_progress: Set[Any] = set()
        self._last_seen_tool_ids: Optional[Set[str]] = None

    def set_connector(self, connector: ToolConnector) -> None:
        self._connector = connector

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    def is_enabled(self) -> bool:
        return self._enabled

    async def sync_tools_for_page(self, page: Any, client: ToolClient) -> SyncResult:
        """Pull the page's tool list and reconcile the catalog with it.

        Called on first connection to a page and on every tools-changed
        notification. Failures are logged and leave other pages untouched.
        """
        if not self._enabled:
            return SyncResult()

        if page in self._sync_in_progress:
            logger.debug("Sync already in progress for page, skipping")
            return SyncResult()

        self._sync_in_progress.add(page)
        url_at_start = page.url
        try:
            listed = await client.list_tools()
            if page.url != url_at_start:
                logger.debug("Page navigated during sync, aborting")
                return SyncResult()
            return self._apply_tool_changes(page, list(listed.tools))
        except Exception as exc:
            logger.warning("Failed to sync WebMCP tools for %s: %s", url_at_start, exc)
            return SyncResult()
        finally:
            self._sync_in_progress.discard(page)

    def _apply_tool_changes(self, page: Any, tools: List[types.Tool]) -> SyncResult:
        page_index = self._page_index(page)
        if page_index < 0:
            logger.debug("Page not found in pages list, skipping tool sync")
            return SyncResult()

        domain = extract_domain(page.url)
        entry = self._pages.setdefault(page, _PageEntry())
        result = SyncResult()
        new_ids: Set[str] = set()

        for tool in tools:
            tool_id = generate_tool_id(domain, page_index, tool.name)
            if tool_id in new_ids:
                logger.warning(
                    "Tool %r maps to already registered id %s on this page, skipping",
                    tool.name,
                    tool_id,
                )
                continue
            new_ids.add(tool_id)
            descriptor = ToolDescriptor.from_tool(tool, page_index, domain)

            existing = self._tools.get(tool_id)
            if existing is not None and existing.page is page:
                existing.descriptor = descriptor
                result.updated += 1
                continue

            if existing is not None:
                # Stale entry left behind by a page whose index shifted.
                logger.debug("Reassigning tool id %s to a different page", tool_id)
                stale = self._pages.get(existing.page)
                if stale is not None:
                    stale.tool_ids.discard(tool_id)

            for warning in validate_tool_name(tool.name):
                logger.warning(warning)
            logger.debug("Tracking WebMCP tool: %s", tool_id)
            self._tools[tool_id] = RegisteredTool(tool_id=tool_id, page=page, descriptor=descriptor)
            result.synced += 1

        for tool_id in entry.tool_ids - new_ids:
            registered = self._tools.get(tool_id)
            if registered is not None and registered.page is page:
                logger.debug("Removing stale WebMCP tool: %s", tool_id)
                del self._tools[tool_id]
                result.removed += 1

        entry.tool_ids = new_ids
        logger.info(
            "WebMCP tool tracking: %d added, %d updated, %d removed",
            result.synced,
            result.updated,
            result.removed,
        )
        return result

    def remove_tools_for_page(self, page: Any) -> int:
        """Drop every tool attributed to ``page``; other pages are untouched."""
        entry = self._pages.pop(page, None)
        if entry is None:
            return 0

        removed = 0
        for tool_id in entry.tool_ids:
            registered = self._tools.get(tool_id)
            if registered is not None and registered.page is page:
                del self._tools[tool_id]
                removed += 1

        logger.info("Removed %d tracked WebMCP tools for page", removed)
        return removed

    def resolve(self, tool_id: str) -> RegisteredTool:
        registered = self._tools.get(tool_id)
        if registered is None:
            raise ToolNotFoundError(f"Tool not found: {tool_id}")
        return registered

    async def call_tool(self, tool_id: str, arguments: Any) -> types.CallToolResult:
        """Invoke a tool by id with flat arguments.

        Raises:
            ToolNotFoundError: unknown id.
            ArgumentValidationError: ``arguments`` is not a JSON object.
            NoToolsAvailableError: the page connection could not be
                (re-)established.
        """
        registered = self.resolve(tool_id)
        if not isinstance(arguments, dict):
            raise ArgumentValidationError(
                f"Tool arguments must be a JSON object, got {type(arguments).__name__}"
            )
        if self._connector is None:
            raise NoToolsAvailableError("No WebMCP tools available on this page: no connector")

        try:
            client = await self._connector.get_client(registered.page)
        except WebMCPError as exc:
            raise NoToolsAvailableError(
                f"No WebMCP tools available on this page: {exc.message}"
            ) from exc

        if tool_id not in self._tools:
            raise ToolNotFoundError(f"Tool {tool_id} is no longer registered on its page")
        return await client.call_tool(registered.descriptor.original_name, arguments)

    def get_registered_tools(
        self,
        page_index: Optional[int] = None,
        pattern: Optional[str] = None,
    ) -> List[RegisteredToolInfo]:
        """Snapshot of the catalog, optionally filtered by page and name glob."""
        matcher = compile_glob(pattern) if pattern else None
        tools: List[RegisteredToolInfo] = []
        for registered in self._tools.values():
            current_index = self._page_index(registered.page)
            if page_index is not None and current_index != page_index:
                continue
            descriptor = registered.descriptor
            if matcher is not None and not (
                matcher.fullmatch(descriptor.original_name) or matcher.fullmatch(registered.tool_id)
            ):
                continue
            tools.append(
                RegisteredToolInfo(
                    tool_id=registered.tool_id,
                    original_name=descriptor.original_name,
                    domain=descriptor.domain_tag,
                    page_index=current_index,
                    description=descriptor.description,
                    input_schema=descriptor.input_schema,
                    output_schema=descriptor.output_schema,
                    annotations=descriptor.annotations,
                )
            )
        return tools

    def get_registered_tool_ids(self) -> List[str]:
        return list(self._tools)

    def get_tool_count(self) -> int:
        return len(self._tools)

    def get_last_seen_tool_ids(self) -> Optional[Set[str]]:
        return self._last_seen_tool_ids

    def set_last_seen_tool_ids(self, tool_ids: Set[str]) -> None:
        self._last_seen_tool_ids = set(tool_ids)

"""Per-page MCP client connections on top of the bridge transport."""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import ClientSession, types
from mcp.shared.message import SessionMessage
from playwright.async_api import Frame, Page

from webmcp_bridge import __version__
from webmcp_bridge.errors import (
    ErrorKind,
    NoToolsAvailableError,
    ServerStoppedError,
    SessionInitializeError,
    WebMCPError,
)
from webmcp_bridge.hub import WebMCPToolHub
from webmcp_bridge.transport import (
    DEFAULT_NAVIGATION_SETTLE_MS,
    DEFAULT_READY_TIMEOUT_MS,
    CloseReason,
    WebMCPClientTransport,
    consume_future_exception,
)

logger = logging.getLogger(__name__)

INTERNAL_URL_PREFIXES = ("chrome://", "chrome-extension://", "devtools://")

# Failures that just mean "this page has no registry".
_EXPECTED_CONNECT_FAILURES = {
    ErrorKind.HANDSHAKE_TIMEOUT,
    ErrorKind.WEBMCP_NOT_DETECTED,
    ErrorKind.TRANSPORT_CLOSED,
}


def is_internal_url(url: str) -> bool:
    return url == "about:blank" or url.startswith(INTERNAL_URL_PREFIXES)


@asynccontextmanager
async def bridge_streams(
    transport: WebMCPClientTransport,
) -> AsyncIterator[
    Tuple[
        MemoryObjectReceiveStream[SessionMessage | Exception],
        MemoryObjectSendStream[SessionMessage],
    ]
]:
    """Expose a started transport as the stream pair ``ClientSession`` expects."""
    read_send: MemoryObjectSendStream[SessionMessage | Exception]
    read_recv: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_send, read_recv = anyio.create_memory_object_stream(math.inf)
    write_send: MemoryObjectSendStream[SessionMessage]
    write_recv: MemoryObjectReceiveStream[SessionMessage]
    write_send, write_recv = anyio.create_memory_object_stream(0)

    def push(item: SessionMessage | Exception) -> None:
        try:
            read_send.send_nowait(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Dropping bridge message, session stream closed")

    previous_on_close = transport.on_close

    def on_close(reason: CloseReason) -> None:
        read_send.close()
        if previous_on_close is not None:
            previous_on_close(reason)

    transport.on_message = lambda message: push(SessionMessage(message))
    transport.on_error = push
    transport.on_close = on_close

    async def forward_writes() -> None:
        async with write_recv:
            async for session_message in write_recv:
                try:
                    await transport.send(session_message.message)
                except WebMCPError as exc:
                    request = session_message.message.root
                    if isinstance(request, types.JSONRPCRequest):
                        # Fail the pending request now instead of at its timeout.
                        push(
                            SessionMessage(
                                types.JSONRPCMessage(
                                    types.JSONRPCError(
                                        jsonrpc="2.0",
                                        id=request.id,
                                        error=types.ErrorData(
                                            code=types.INTERNAL_ERROR,
                                            message=exc.message,
                                        ),
                                    )
                                )
                            )
                        )
                    else:
                        push(exc)

    async with anyio.create_task_group() as tg:
        tg.start_soon(forward_writes)
        try:
            yield read_recv, write_send
        finally:
            tg.cancel_scope.cancel()
            read_send.close()
            write_send.close()


class WebMCPConnection:
    """An MCP ``ClientSession`` bound to one page through one transport.

    The session lives in its own task because anyio task groups must be
    entered and exited from the same task, while connections outlive the
    tool call that created them.
    """

    def __init__(
        self,
        page: Page,
        transport: WebMCPClientTransport,
        on_tools_changed: Optional[Callable[["WebMCPConnection"], None]] = None,
        on_closed: Optional[Callable[["WebMCPConnection", CloseReason], None]] = None,
    ):
        self.page = page
        self.transport = transport
        self.session: Optional[ClientSession] = None
        self.server_info: Optional[types.Implementation] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self._on_tools_changed = on_tools_changed
        self._on_closed = on_closed
        self._stop = asyncio.Event()
        self._opened: Optional["asyncio.Future[None]"] = None
        self._task: Optional["asyncio.Task[None]"] = None
        transport.on_close = self._handle_transport_closed

    @property
    def is_alive(self) -> bool:
        return self.session is not None and self.transport.is_ready and not self._stop.is_set()

    @property
    def supports_list_changed(self) -> bool:
        tools = self.capabilities.tools if self.capabilities else None
        return bool(tools and tools.listChanged)

    async def open(self, timeout_ms: Optional[int] = None) -> None:
        """Run the MCP initialize exchange over an already started transport.

        Raises:
            SessionInitializeError: initialize failed or did not complete
                within ``timeout_ms`` (defaults to the transport ready timeout).
        """
        timeout_ms = timeout_ms or self.transport.ready_timeout_ms
        self._opened = asyncio.get_running_loop().create_future()
        self._opened.add_done_callback(consume_future_exception)
        self._task = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(asyncio.shield(self._opened), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise SessionInitializeError(
                f"WebMCP initialize did not complete within {timeout_ms}ms"
            ) from None

    async def _run(self) -> None:
        initialized = False
        try:
            async with bridge_streams(self.transport) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    message_handler=self._handle_message,
                    client_info=types.Implementation(name="webmcp-bridge", version=__version__),
                ) as session:
                    result = await session.initialize()
                    self.session = session
                    self.server_info = result.serverInfo
                    self.capabilities = result.capabilities
                    self._opened.set_result(None)
                    initialized = True
                    await self._stop.wait()
        except Exception as exc:
            if not self._opened.done():
                self._opened.set_exception(
                    SessionInitializeError(f"WebMCP initialize failed: {exc}")
                )
            else:
                logger.debug("WebMCP session for %s ended: %s", self.page.url, exc)
        finally:
            self.session = None
            if not self._opened.done():
                self._opened.set_exception(
                    SessionInitializeError("WebMCP session ended before initialize")
                )
            if initialized and not self.transport.is_closed:
                # The session ended on its own; release the page-side bridge too.
                try:
                    await self.transport.close()
                except Exception as exc:
                    logger.debug("WebMCP transport close after session end failed: %s", exc)

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, ServerStoppedError):
            logger.warning("WebMCP server on %s stopped; connection kept open", self.page.url)
            return
        if isinstance(message, Exception):
            logger.debug("WebMCP bridge error on %s: %s", self.page.url, message)
            return
        if isinstance(message, types.ServerNotification) and isinstance(
            message.root, types.ToolListChangedNotification
        ):
            logger.info("WebMCP tools changed on %s, re-syncing...", self.page.url)
            if self._on_tools_changed is not None:
                self._on_tools_changed(self)

    def _handle_transport_closed(self, reason: CloseReason) -> None:
        self._stop.set()
        if self._on_closed is not None:
            self._on_closed(self, reason)

    async def list_tools(self) -> types.ListToolsResult:
        if self.session is None:
            raise NoToolsAvailableError("WebMCP session is not open")
        return await self.session.list_tools()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        if self.session is None:
            raise NoToolsAvailableError("WebMCP session is not open")
        return await self.session.call_tool(name, arguments)

    async def close(self, reason: CloseReason = CloseReason.EXPLICIT) -> None:
        self._stop.set()
        await self.transport.close(reason)
        if self._task is not None:
            if self._opened is not None and not self._opened.done():
                # Still inside initialize, which does not observe _stop.
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class WebMCPConnectionManager:
    """Owns at most one live connection per page and feeds the tool hub."""

    def __init__(
        self,
        pages: Callable[[], List[Page]],
        ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS,
        auto_connect_ready_timeout_ms: int = 30_000,
        navigation_settle_ms: int = DEFAULT_NAVIGATION_SETTLE_MS,
        auto_connect: bool = True,
        hub: Optional[WebMCPToolHub] = None,
    ):
        self._pages = pages
        self.ready_timeout_ms = ready_timeout_ms
        self.auto_connect_ready_timeout_ms = auto_connect_ready_timeout_ms
        self.navigation_settle_ms = navigation_settle_ms
        self.auto_connect = auto_connect
        self.hub = hub or WebMCPToolHub(self.page_index)
        self.hub.set_connector(self)
        self.last_close_reason: Dict[Page, CloseReason] = {}
        self._connections: Dict[Page, WebMCPConnection] = {}
        self._locks: Dict[Page, asyncio.Lock] = {}
        self._watched: Dict[Page, Callable[[Frame], None]] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    def page_index(self, page: Page) -> int:
        pages = self._pages()
        return pages.index(page) if page in pages else -1

    def get_connection(self, page: Page) -> Optional[WebMCPConnection]:
        return self._connections.get(page)

    def is_connected(self, page: Page) -> bool:
        conn = self._connections.get(page)
        return conn is not None and conn.is_alive

    async def get_client(
        self,
        page: Page,
        ready_timeout_ms: Optional[int] = None,
        require_webmcp: bool = False,
    ) -> WebMCPConnection:
        """Return the page's live connection, connecting (once) if needed."""
        lock = self._locks.setdefault(page, asyncio.Lock())
        async with lock:
            conn = self._connections.get(page)
            if conn is not None and conn.is_alive:
                return conn

            if conn is not None:
                self._connections.pop(page, None)
                try:
                    await conn.close()
                except Exception as exc:
                    logger.debug("WebMCP client close during reconnection: %s", exc)

            transport = WebMCPClientTransport(
                page,
                ready_timeout_ms=ready_timeout_ms or self.ready_timeout_ms,
                require_webmcp=require_webmcp,
                navigation_settle_ms=self.navigation_settle_ms,
            )
            conn = WebMCPConnection(
                page,
                transport,
                on_tools_changed=self._schedule_sync,
                on_closed=self._handle_connection_closed,
            )
            await transport.start()
            try:
                await conn.open()
            except (Exception, asyncio.CancelledError):
                await conn.close(CloseReason.HANDSHAKE_FAILED)
                raise

            self._connections[page] = conn
            self.last_close_reason.pop(page, None)
            logger.info("WebMCP connected for page: %s", page.url)

        await self.hub.sync_tools_for_page(page, conn)
        return conn

    async def disconnect(self, page: Page) -> bool:
        conn = self._connections.pop(page, None)
        if conn is None:
            return False
        await conn.close()
        self.hub.remove_tools_for_page(page)
        return True

    def _handle_connection_closed(self, conn: WebMCPConnection, reason: CloseReason) -> None:
        page = conn.page
        if self._connections.get(page) is conn:
            del self._connections[page]
            self.last_close_reason[page] = reason
            self.hub.remove_tools_for_page(page)
        if reason is CloseReason.NAVIGATION:
            logger.info("Page navigated, WebMCP connection closed: %s", page.url)
            if self.auto_connect and page in self._watched:
                self._spawn(self.try_connect(page))

    def _schedule_sync(self, conn: WebMCPConnection) -> None:
        self._spawn(self.hub.sync_tools_for_page(conn.page, conn))

    def watch_page(self, page: Page) -> None:
        """Install navigation auto-detection for ``page`` and try connecting."""
        if page in self._watched or page.url.startswith(INTERNAL_URL_PREFIXES):
            return

        def on_frame_navigated(frame: Frame) -> None:
            if frame.parent_frame is not None:
                return
            # Pages with a live bridge are handled by the transport itself.
            if page in self._connections:
                return
            self._spawn(self.try_connect(page))

        page.on("framenavigated", on_frame_navigated)
        self._watched[page] = on_frame_navigated
        logger.debug("WebMCP auto-detection listener installed for page: %s", page.url)
        if self.auto_connect:
            self._spawn(self.try_connect(page))

    async def handle_page_closed(self, page: Page) -> None:
        handler = self._watched.pop(page, None)
        if handler is not None:
            try:
                page.remove_listener("framenavigated", handler)
            except Exception as exc:
                logger.debug("Failed to remove auto-detection listener: %s", exc)
        self._locks.pop(page, None)
        self.last_close_reason.pop(page, None)
        conn = self._connections.pop(page, None)
        self.hub.remove_tools_for_page(page)
        if conn is not None:
            await conn.close(CloseReason.PAGE_CLOSED)

    async def try_connect(self, page: Page) -> bool:
        """Background connect attempt; failures are logged, never raised."""
        if not self.hub.is_enabled() or is_internal_url(page.url):
            return False
        try:
            await self.get_client(page, ready_timeout_ms=self.auto_connect_ready_timeout_ms)
        except WebMCPError as exc:
            if exc.kind in _EXPECTED_CONNECT_FAILURES:
                logger.debug("No WebMCP on page %s: %s", page.url, exc.message)
            else:
                logger.warning("Unexpected WebMCP connection error for %s: %s", page.url, exc)
            return False
        except Exception as exc:
            logger.warning("Unexpected WebMCP connection error for %s: %s", page.url, exc)
            return False
        return True

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close_all(self) -> None:
        for task in list(self._background):
            task.cancel()
        for page in list(self._connections):
            await self.disconnect(page)
        for page, handler in list(self._watched.items()):
            try:
                page.remove_listener("framenavigated", handler)
            except Exception as exc:
                logger.debug("Failed to remove auto-detection listener: %s", exc)
        self._watched.clear()

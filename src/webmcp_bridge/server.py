"""WebMCP Bridge MCP Server - exposes page-registered tools to MCP controllers."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import Context, FastMCP
from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from pydantic import BaseModel, Field

from webmcp_bridge import operations
from webmcp_bridge.connection import WebMCPConnectionManager
from webmcp_bridge.errors import PageNotFoundError
from webmcp_bridge.operations import (
    WebMCPCallResult,
    WebMCPConnectResult,
    WebMCPDiffResult,
    WebMCPDisconnectResult,
    WebMCPToolListResult,
)
from webmcp_bridge.transport import DEFAULT_NAVIGATION_SETTLE_MS, DEFAULT_READY_TIMEOUT_MS


logger = logging.getLogger(__name__)


@dataclass
class BrowserState:
    """Browser state container."""

    playwright: Playwright
    browser: Optional[Browser]
    context: BrowserContext
    manager: Optional[WebMCPConnectionManager] = None

    # Page index == position in this list; tool ids embed it.
    pages: List[Page] = field(default_factory=list)
    current_page_index: int = 0

    def get_current_page(self) -> Page:
        """Get the current active page."""
        if not self.pages:
            raise PageNotFoundError("No pages available")
        if not 0 <= self.current_page_index < len(self.pages):
            self.current_page_index = len(self.pages) - 1
        return self.pages[self.current_page_index]

    def get_page(self, page_index: Optional[int]) -> Page:
        """Get a page by index, defaulting to the current page."""
        if page_index is None:
            return self.get_current_page()
        if not 0 <= page_index < len(self.pages):
            raise PageNotFoundError(f"Page with index {page_index} not found")
        return self.pages[page_index]


class NavigationResult(BaseModel):
    """Navigation operation result."""

    success: bool
    url: str
    page_index: Optional[int] = None
    error: Optional[str] = None


class PageInfo(BaseModel):
    """Information about a browser page/tab."""

    page_index: int
    url: str
    title: str
    is_current: bool
    webmcp_connected: bool = False


class PageListResult(BaseModel):
    """Result of listing all open pages."""

    success: bool
    pages: List[PageInfo] = Field(default_factory=list)
    current_page_index: Optional[int] = None
    error: Optional[str] = None


class PageSwitchResult(BaseModel):
    """Result of switching between pages."""

    success: bool
    page_index: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None


class Config:
    """Server configuration."""

    def __init__(
        self,
        headless: bool = True,
        browser_type: str = "chromium",
        timeout: int = 30000,
        channel: Optional[str] = None,
        user_data_dir: Optional[str] = None,
        cdp_endpoint: Optional[str] = None,
        ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS,
        auto_connect_ready_timeout_ms: int = 30000,
        navigation_settle_ms: int = DEFAULT_NAVIGATION_SETTLE_MS,
        auto_connect: bool = True,
        require_webmcp: bool = True,
        log_level: str = "INFO",
    ):
        self.headless = headless
        self.browser_type = browser_type
        self.timeout = timeout
        self.channel = channel
        self.user_data_dir = user_data_dir
        # Attach to a running Chromium instead of launching one.
        self.cdp_endpoint = cdp_endpoint
        self.ready_timeout_ms = ready_timeout_ms
        self.auto_connect_ready_timeout_ms = auto_connect_ready_timeout_ms
        self.navigation_settle_ms = navigation_settle_ms
        self.auto_connect = auto_connect
        self.require_webmcp = require_webmcp
        self.log_level = log_level


# Global configuration
config = Config()


async def _shutdown_browser_state(state: Optional[BrowserState]):
    """Close bridges, browser/context and stop Playwright for a given state."""
    if not state:
        return

    if state.manager:
        try:
            await state.manager.close_all()
        except Exception as exc:
            logger.error("Error closing WebMCP connections: %s", exc)

    try:
        # An attached browser keeps running; browser.close() only disconnects from it.
        if state.context and not config.cdp_endpoint:
            await state.context.close()
        if state.browser:
            await state.browser.close()
    except Exception as exc:
        logger.error("Error closing browser: %s", exc)

    try:
        if state.playwright:
            await state.playwright.stop()
    except Exception as exc:
        logger.error("Error stopping playwright: %s", exc)


async def _create_browser_state() -> BrowserState:
    """Launch (or attach to) Chromium and return an initialized BrowserState."""
    if config.browser_type != "chromium":
        raise ValueError(
            f"Unsupported browser type for WebMCP bridging: {config.browser_type} "
            "(CDP sessions require chromium)"
        )

    playwright = await async_playwright().start()
    browser = None
    context = None

    try:
        if config.cdp_endpoint:
            browser = await playwright.chromium.connect_over_cdp(config.cdp_endpoint)
            context = browser.contexts[0] if browser.contexts else await browser.new_context()
        elif config.user_data_dir is not None:
            launch_options: Dict[str, Any] = {"headless": config.headless}
            if config.channel:
                launch_options["channel"] = config.channel
            context = await playwright.chromium.launch_persistent_context(
                config.user_data_dir, **launch_options
            )
            browser = context.browser
        else:
            launch_options = {"headless": config.headless}
            if config.channel:
                launch_options["channel"] = config.channel
            browser = await playwright.chromium.launch(**launch_options)
            context = await browser.new_context()

        state = BrowserState(playwright=playwright, browser=browser, context=context)
        state.manager = WebMCPConnectionManager(
            lambda: state.pages,
            ready_timeout_ms=config.ready_timeout_ms,
            auto_connect_ready_timeout_ms=config.auto_connect_ready_timeout_ms,
            navigation_settle_ms=config.navigation_settle_ms,
            auto_connect=config.auto_connect,
        )

        if not context.pages:
            await context.new_page()
        for page in context.pages:
            _track_page(state, page)
        _setup_page_tracking(state)

        logger.info("Browser started successfully")
        return state
    except Exception:
        # Best-effort cleanup on failure
        try:
            if context and not config.cdp_endpoint:
                await context.close()
            elif browser:
                await browser.close()
        except Exception as exc:
            logger.debug("Cleanup after failed start: %s", exc)
        try:
            await playwright.stop()
        except Exception as exc:
            logger.debug("Playwright stop after failed start: %s", exc)
        raise


def _track_page(state: BrowserState, page: Page):
    """Register a page, wire its close handling and WebMCP auto-detection."""
    if page in state.pages:
        return

    page.set_default_timeout(config.timeout)
    state.pages.append(page)

    async def handle_close(closed_page: Page):
        try:
            await state.manager.handle_page_closed(closed_page)
        except Exception as e:
            logger.error(f"Error cleaning up closed page: {e}")
        if closed_page in state.pages:
            closed_index = state.pages.index(closed_page)
            state.pages.remove(closed_page)
            if state.current_page_index > closed_index:
                state.current_page_index -= 1
        logger.info(f"Page closed: {closed_page.url}")

    page.on("close", handle_close)
    state.manager.watch_page(page)


def _setup_page_tracking(state: BrowserState):
    """Set up page tracking for new tabs and popups."""

    def handle_new_page(page: Page):
        """Handle new page/tab creation."""
        try:
            _track_page(state, page)
            logger.info(f"New page opened with index {state.pages.index(page)}, URL: {page.url}")
        except Exception as e:
            logger.error(f"Error handling new page: {e}")

    # Listen for new pages (tabs, popups, etc.)
    state.context.on("page", handle_new_page)


@asynccontextmanager
async def browser_lifespan(server: FastMCP) -> AsyncIterator[BrowserState]:
    """Manage browser lifecycle."""
    logger.info("Starting browser...")
    state: Optional[BrowserState] = None
    try:
        state = await _create_browser_state()
        yield state
    finally:
        logger.info("Shutting down browser...")
        await _shutdown_browser_state(state)


# Create FastMCP server with browser lifespan
mcp = FastMCP("WebMCP Bridge Server", lifespan=browser_lifespan)


def get_browser_state(ctx: Context) -> BrowserState:
    """Get browser state from context."""
    return ctx.request_context.lifespan_context


def get_current_page(ctx: Context) -> Page:
    """Get the current active page from context."""
    return get_browser_state(ctx).get_current_page()


# Page Management Tools
@mcp.tool()
async def navigate(url: str, ctx: Context, page_index: Optional[int] = None) -> NavigationResult:
    """Navigate a page to a URL.

    Tools registered by the previous document are dropped once the
    navigation replaces it; tools of the new document are discovered
    automatically when auto-connect is enabled.

    Args:
        url: The URL to navigate to
        page_index: Page to navigate (defaults to the current page)
        ctx: MCP context containing the browser state

    Returns:
        NavigationResult with success status, final URL and any errors
    """
    try:
        browser_state = get_browser_state(ctx)
        page = browser_state.get_page(page_index)
        await page.goto(url)
        return NavigationResult(
            success=True, url=page.url, page_index=browser_state.pages.index(page)
        )
    except Exception as e:
        return NavigationResult(success=False, url="", error=str(e))


@mcp.tool()
async def new_page(ctx: Context, url: Optional[str] = None) -> NavigationResult:
    """Open a new tab, optionally navigating it, and make it the current page."""
    try:
        browser_state = get_browser_state(ctx)
        page = await browser_state.context.new_page()
        _track_page(browser_state, page)
        browser_state.current_page_index = browser_state.pages.index(page)
        if url:
            await page.goto(url)
        return NavigationResult(
            success=True, url=page.url, page_index=browser_state.current_page_index
        )
    except Exception as e:
        return NavigationResult(success=False, url="", error=str(e))


@mcp.tool()
async def list_pages(ctx: Context) -> PageListResult:
    """List all open browser pages/tabs.

    Page indices returned here are the ones embedded in WebMCP tool ids.

    Args:
        ctx: MCP context containing the browser state

    Returns:
        PageListResult with every page and whether it has a live WebMCP bridge
    """
    try:
        browser_state = get_browser_state(ctx)
        pages_info = []

        for index, page in enumerate(browser_state.pages):
            try:
                pages_info.append(PageInfo(
                    page_index=index,
                    url=page.url,
                    title=await page.title(),
                    is_current=(index == browser_state.current_page_index),
                    webmcp_connected=browser_state.manager.is_connected(page),
                ))
            except Exception as e:
                logger.error(f"Error getting info for page {index}: {e}")

        return PageListResult(
            success=True,
            pages=pages_info,
            current_page_index=browser_state.current_page_index
        )
    except Exception as e:
        return PageListResult(success=False, error=str(e))


@mcp.tool()
async def select_page(page_index: int, ctx: Context) -> PageSwitchResult:
    """Make another page the default target of the WebMCP tools.

    Args:
        page_index: Index of the page (see list_pages)
        ctx: MCP context containing the browser state
    """
    try:
        browser_state = get_browser_state(ctx)
        page = browser_state.get_page(page_index)
        browser_state.current_page_index = page_index
        return PageSwitchResult(success=True, page_index=page_index, url=page.url)
    except Exception as e:
        return PageSwitchResult(success=False, error=str(e))


@mcp.tool()
async def close_page(page_index: int, ctx: Context) -> Dict[str, Any]:
    """Close a page/tab by index. Its WebMCP tools are removed.

    Cannot close the last remaining page.
    """
    try:
        browser_state = get_browser_state(ctx)
        page = browser_state.get_page(page_index)

        if len(browser_state.pages) <= 1:
            return {
                "success": False,
                "error": "Cannot close the last remaining page"
            }

        # The close handler untracks the page and its tools.
        await page.close()

        return {
            "success": True,
            "closed_page_index": page_index,
            "current_page_index": browser_state.current_page_index
        }
    except Exception as e:
        return {"success": False, "error": str(e)}


# WebMCP Tools
@mcp.tool()
async def connect_webmcp(ctx: Context, page_index: Optional[int] = None) -> WebMCPConnectResult:
    """Connect to the WebMCP tool registry of a page and sync its tools.

    Args:
        page_index: Page to connect to (defaults to the current page)
        ctx: MCP context containing the browser state

    Returns:
        WebMCPConnectResult with the server identity and the page's tool ids
    """
    browser_state = get_browser_state(ctx)
    try:
        page = browser_state.get_page(page_index)
    except PageNotFoundError as e:
        return WebMCPConnectResult(success=False, error=e.message, error_kind=e.kind.value)
    return await operations.connect(
        browser_state.manager, page, require_webmcp=config.require_webmcp
    )


@mcp.tool()
async def list_webmcp_tools(
    ctx: Context,
    pattern: Optional[str] = None,
    page_index: Optional[int] = None,
    all_pages: bool = False,
) -> WebMCPToolListResult:
    """List WebMCP tools registered by pages.

    Args:
        pattern: Case-insensitive glob (* and ?) matched against tool ids and names
        page_index: Only list tools from this page (defaults to the current page)
        all_pages: List tools from every page
        ctx: MCP context containing the browser state
    """
    browser_state = get_browser_state(ctx)
    page = None
    if page_index is None and not all_pages and browser_state.pages:
        page = browser_state.get_current_page()
    return operations.list_tools(
        browser_state.manager,
        page=page,
        pattern=pattern,
        page_index=page_index,
        all_pages=all_pages,
    )


@mcp.tool()
async def call_webmcp_tool(
    tool_id: str,
    ctx: Context,
    arguments: Optional[Dict[str, Any]] = None,
) -> WebMCPCallResult:
    """Call a WebMCP tool by id (e.g. webmcp_localhost_3000_page0_add_item).

    Args:
        tool_id: Tool id as returned by list_webmcp_tools
        arguments: Tool arguments as a flat JSON object
        ctx: MCP context containing the browser state
    """
    browser_state = get_browser_state(ctx)
    return await operations.call_tool(browser_state.manager, tool_id, arguments)


@mcp.tool()
async def disconnect_webmcp(ctx: Context, page_index: Optional[int] = None) -> WebMCPDisconnectResult:
    """Disconnect from a page's WebMCP registry and drop its tools."""
    browser_state = get_browser_state(ctx)
    try:
        page = browser_state.get_page(page_index)
    except PageNotFoundError as e:
        return WebMCPDisconnectResult(success=False, message=e.message)
    return await operations.disconnect(browser_state.manager, page)


@mcp.tool()
async def diff_webmcp_tools(ctx: Context, full: bool = False) -> WebMCPDiffResult:
    """Show WebMCP tools across all pages, with the diff since the last call.

    The first call (or full=True) returns the complete list; later calls
    return only added and removed tool ids.
    """
    return operations.diff_tools(get_browser_state(ctx).manager, full=full)


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="WebMCP Bridge MCP Server")
    parser.add_argument("transport", choices=["stdio", "http"], help="Transport type")
    parser.add_argument(
        "--port", type=int, default=8000, help="Port for HTTP transport"
    )
    parser.add_argument("--headed", action="store_true", help="Run in headed mode")
    parser.add_argument(
        "--timeout", type=int, default=30000, help="Default timeout (ms)"
    )
    parser.add_argument(
        "--channel",
        choices=[
            "chrome",
            "chrome-beta",
            "chrome-dev",
            "chrome-canary",
            "msedge",
            "msedge-beta",
            "msedge-dev",
            "msedge-canary",
        ],
        help="Browser channel (use real Chrome/Edge instead of bundled Chromium)",
    )
    parser.add_argument(
        "--user-data-dir",
        type=str,
        help="Path to Chrome user data directory (enables persistent context with your profile)",
    )
    parser.add_argument(
        "--cdp-endpoint",
        dest="cdp_endpoint",
        help="Attach to a running Chromium (e.g. http://localhost:9222) instead of launching one",
    )
    parser.add_argument(
        "--ready-timeout",
        dest="ready_timeout_ms",
        type=int,
        default=config.ready_timeout_ms,
        help="WebMCP handshake timeout for explicit connects (ms)",
    )
    parser.add_argument(
        "--auto-connect-ready-timeout",
        dest="auto_connect_ready_timeout_ms",
        type=int,
        default=config.auto_connect_ready_timeout_ms,
        help="WebMCP handshake timeout for background auto-connects (ms)",
    )
    parser.add_argument(
        "--navigation-settle",
        dest="navigation_settle_ms",
        type=int,
        default=config.navigation_settle_ms,
        help="Delay before probing the bridge after a navigation (ms)",
    )
    parser.add_argument(
        "--no-auto-connect",
        action="store_true",
        help="Do not discover WebMCP tools automatically on page open/navigation",
    )
    parser.add_argument(
        "--no-require-webmcp",
        action="store_true",
        help="Skip the navigator.modelContext pre-check on connect_webmcp",
    )
    parser.add_argument(
        "--log-level",
        default=config.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    # Update global configuration
    config.headless = not args.headed
    config.timeout = args.timeout
    config.channel = args.channel
    config.user_data_dir = getattr(args, "user_data_dir", None)
    config.cdp_endpoint = args.cdp_endpoint
    config.ready_timeout_ms = max(args.ready_timeout_ms, 1)
    config.auto_connect_ready_timeout_ms = max(args.auto_connect_ready_timeout_ms, 1)
    config.navigation_settle_ms = max(args.navigation_settle_ms, 0)
    config.auto_connect = not args.no_auto_connect
    config.require_webmcp = not args.no_require_webmcp
    config.log_level = args.log_level

    # Setup logging before emitting any log lines
    logging.basicConfig(level=getattr(logging, config.log_level))

    # Run the server using FastMCP's run method with transport
    if args.transport == "stdio":
        mcp.run()
    else:
        # HTTP transport using StreamableHTTP
        import uvicorn

        app = mcp.streamable_http_app()
        uvicorn.run(app, host="0.0.0.0", port=args.port)


if __name__ == "__main__":
    main()

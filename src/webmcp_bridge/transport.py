"""MCP client transport that talks to a page's registry through CDP.

Architecture::

    WebMCPClientTransport (this process)
        |  CDP: Runtime.bindingCalled  /  page.evaluate
        v
    bridge script (injected into the page)
        |  window.postMessage
        v
    page registry transport -> tools

One transport owns one CDP session and one set of page listeners. It is
single-use: once closed (explicitly, by a failed handshake or by a full
navigation) a new transport has to be created for the page.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Optional

from mcp.types import JSONRPCMessage
from playwright.async_api import CDPSession, Frame, Page
from playwright.async_api import Error as PlaywrightError

from webmcp_bridge.bridge_script import (
    BRIDGE_BINDING,
    CHECK_READY_SCRIPT,
    CHECK_WEBMCP_AVAILABLE_SCRIPT,
    DISPOSE_BRIDGE_SCRIPT,
    INJECT_BRIDGE_SCRIPT,
    BRIDGE_ALIVE_SCRIPT,
    SEND_TO_SERVER_SCRIPT,
)
from webmcp_bridge.envelope import (
    InboundPayload,
    SentinelPayload,
    Sentinel,
    parse_inbound,
    serialize_message,
)
from webmcp_bridge.errors import (
    AlreadyStartingError,
    BridgeInjectionError,
    BridgeNotFoundError,
    HandshakeTimeoutError,
    PageGoneError,
    PayloadParseError,
    ServerStoppedError,
    TransportClosedError,
    TransportNotStartedError,
    WebMCPNotDetectedError,
)

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT_MS = 10_000
DEFAULT_NAVIGATION_SETTLE_MS = 100


class TransportState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STARTED = "started"  # bridge injected, awaiting the ready signal
    READY = "ready"
    CLOSED = "closed"


class CloseReason(str, Enum):
    EXPLICIT = "explicit"
    NAVIGATION = "navigation"
    HANDSHAKE_FAILED = "handshake_failed"
    PAGE_CLOSED = "page_closed"


MessageCallback = Callable[[JSONRPCMessage], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[[CloseReason], None]


def consume_future_exception(future: "asyncio.Future[None]") -> None:
    # The ready signal may be rejected with nobody waiting on it.
    if not future.cancelled():
        future.exception()


class WebMCPClientTransport:
    """Bridge between this process and one page's in-page tool registry."""

    def __init__(
        self,
        page: Page,
        ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS,
        require_webmcp: bool = True,
        navigation_settle_ms: int = DEFAULT_NAVIGATION_SETTLE_MS,
    ):
        self.page = page
        self.ready_timeout_ms = ready_timeout_ms
        self.require_webmcp = require_webmcp
        # Heuristic only: slow page scripts can make a full navigation look
        # like client-side routing if the liveness check runs before the old context
        # is torn down.
        self.navigation_settle_ms = navigation_settle_ms

        self.state = TransportState.IDLE
        self.server_ready = False
        self.already_injected = False
        self.debug_session_id: Optional[str] = None
        self.close_reason: Optional[CloseReason] = None

        self.on_message: Optional[MessageCallback] = None
        self.on_error: Optional[ErrorCallback] = None
        self.on_close: Optional[CloseCallback] = None

        self._cdp_session: Optional[CDPSession] = None
        self._binding_installed = False
        self._navigation_observed = False
        self._ready: Optional["asyncio.Future[None]"] = None
        self._send_lock = asyncio.Lock()
        self._navigation_task: Optional["asyncio.Task[None]"] = None
        self._navigation_recheck = False
        self._closed_event: Optional[asyncio.Event] = None

        # Stable handler objects so remove_listener matches what on() added.
        self._binding_handler = self._on_binding_called
        self._navigation_handler = self._on_frame_navigated

    @property
    def is_closed(self) -> bool:
        return self.state is TransportState.CLOSED

    @property
    def is_ready(self) -> bool:
        return self.state is TransportState.READY

    async def check_webmcp_available(self) -> bool:
        try:
            result = await self.page.evaluate(CHECK_WEBMCP_AVAILABLE_SCRIPT)
        except PlaywrightError:
            return False
        return bool(result and result.get("available"))

    async def start(self) -> None:
        """Inject the bridge and complete the ready handshake.

        Raises:
            AlreadyStartingError: another ``start()`` is in flight or done.
            TransportClosedError: the transport was closed before or during start.
            WebMCPNotDetectedError: ``require_webmcp`` is set and the page has
                no registry.
            HandshakeTimeoutError: the registry did not answer in time.
        """
        if self.state is TransportState.STARTING:
            raise AlreadyStartingError("WebMCPClientTransport is already starting")
        if self.state is TransportState.CLOSED:
            raise TransportClosedError("WebMCPClientTransport has been closed")
        if self.state is not TransportState.IDLE:
            raise AlreadyStartingError("WebMCPClientTransport already started")

        self.state = TransportState.STARTING
        self._ready = asyncio.get_running_loop().create_future()
        self._ready.add_done_callback(consume_future_exception)

        try:
            await self._start_sequence()
        except (Exception, asyncio.CancelledError) as exc:
            if self._closed_event is not None:
                # close() won the race: release whatever was acquired after it ran.
                await self._release_resources(dispose_bridge=False)
                if isinstance(exc, TransportClosedError):
                    raise
                raise TransportClosedError(
                    "WebMCPClientTransport was closed during start"
                ) from exc
            await self._teardown(CloseReason.HANDSHAKE_FAILED)
            raise

        self.state = TransportState.READY
        logger.debug("WebMCP transport ready (session %s)", self.debug_session_id)

    async def _start_sequence(self) -> None:
        if self.require_webmcp:
            if not await self.check_webmcp_available():
                raise WebMCPNotDetectedError(
                    "WebMCP not detected on this page. "
                    "Ensure the page registers its tools through navigator.modelContext."
                )
            self._abort_if_closed()

        try:
            self._cdp_session = await self.page.context.new_cdp_session(self.page)
        except PlaywrightError as exc:
            raise PageGoneError(f"Failed to open CDP session: {exc}") from exc
        self.debug_session_id = uuid.uuid4().hex
        self._abort_if_closed()

        cdp = self._cdp_session
        try:
            await cdp.send("Runtime.enable")
            cdp.on("Runtime.bindingCalled", self._binding_handler)
            await cdp.send("Runtime.addBinding", {"name": BRIDGE_BINDING})
        except PlaywrightError as exc:
            raise PageGoneError(f"Failed to install bridge binding: {exc}") from exc
        self._binding_installed = True
        self._abort_if_closed()

        result = await self._evaluate(INJECT_BRIDGE_SCRIPT)
        if not result or not (result.get("success") or result.get("alreadyInjected")):
            raise BridgeInjectionError("Failed to inject WebMCP bridge script")
        self.already_injected = bool(result.get("alreadyInjected"))
        self._abort_if_closed()

        self.page.on("framenavigated", self._navigation_handler)
        self._navigation_observed = True
        self.state = TransportState.STARTED

        await self._evaluate(CHECK_READY_SCRIPT)
        self._abort_if_closed()

        try:
            await asyncio.wait_for(
                asyncio.shield(self._ready), timeout=self.ready_timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            raise HandshakeTimeoutError(
                f"WebMCP server did not respond within {self.ready_timeout_ms}ms. "
                "Ensure the page's registry transport is running."
            ) from None
        self._abort_if_closed()

    def _abort_if_closed(self) -> None:
        if self._closed_event is not None:
            raise TransportClosedError("WebMCPClientTransport was closed during start")

    async def _evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            raise PageGoneError(f"Page evaluation failed: {exc}") from exc

    async def send(self, message: JSONRPCMessage) -> None:
        """Forward one JSON-RPC message to the page's registry.

        Waits for the ready signal first, so a caller racing ``start()``
        is queued rather than rejected.
        """
        if self.state is TransportState.CLOSED:
            raise TransportClosedError("WebMCPClientTransport has been closed")
        if self.state is TransportState.IDLE or self._ready is None:
            raise TransportNotStartedError("WebMCPClientTransport not started")

        await asyncio.shield(self._ready)
        payload_json = serialize_message(message)

        async with self._send_lock:
            if self.state is TransportState.CLOSED:
                raise TransportClosedError("WebMCPClientTransport has been closed")
            try:
                result = await self.page.evaluate(SEND_TO_SERVER_SCRIPT, payload_json)
            except PlaywrightError as exc:
                error = PageGoneError(f"Failed to send message: {exc}")
                self._report_error(error)
                raise error from exc

        if result and result.get("ok"):
            return
        reason = (result or {}).get("reason")
        if reason == "bridge-missing":
            error = BridgeNotFoundError("WebMCP bridge not found on page")
        else:
            error = PayloadParseError("Bridge failed to send message")
        self._report_error(error)
        raise error

    def _on_binding_called(self, event: dict) -> None:
        if self.state is TransportState.CLOSED:
            return
        if event.get("name") != BRIDGE_BINDING:
            return
        try:
            payload = parse_inbound(event.get("payload"))
        except PayloadParseError as exc:
            self._report_error(exc)
            return
        self._handle_payload(payload)

    def _handle_payload(self, payload: InboundPayload) -> None:
        if isinstance(payload, SentinelPayload):
            if payload.sentinel is Sentinel.SERVER_READY:
                self._mark_ready()
            elif payload.sentinel is Sentinel.SERVER_STOPPED:
                self.server_ready = False
                logger.warning("WebMCP server stopped on %s", self.page.url)
                self._report_error(ServerStoppedError("WebMCP server stopped"))
            else:
                self._report_error(
                    PayloadParseError(f"Unexpected string payload: {payload.sentinel.value}")
                )
            return

        # A real message proves the server is up even if the ready ack was missed.
        self._mark_ready()
        if self.on_message is not None:
            self.on_message(payload.message)

    def _mark_ready(self) -> None:
        if self.server_ready:
            return
        self.server_ready = True
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _report_error(self, error: Exception) -> None:
        if self.on_error is not None:
            self.on_error(error)
        else:
            logger.debug("WebMCP transport error: %s", error)

    def _on_frame_navigated(self, frame: Frame) -> None:
        if self.state is TransportState.CLOSED or frame.parent_frame is not None:
            return
        if self._navigation_task is not None and not self._navigation_task.done():
            self._navigation_recheck = True
            return
        self._navigation_task = asyncio.get_running_loop().create_task(
            self._check_navigation()
        )

    async def _check_navigation(self) -> None:
        """Tell client-side routing apart from a full navigation.

        Both fire ``framenavigated``; only a full navigation destroys the
        execution context and with it the bridge marker.
        """
        while True:
            self._navigation_recheck = False
            await asyncio.sleep(self.navigation_settle_ms / 1000)
            if self.state is TransportState.CLOSED:
                return
            try:
                alive = bool(await self.page.evaluate(BRIDGE_ALIVE_SCRIPT))
            except PlaywrightError as exc:
                logger.debug("Bridge liveness check failed after navigation: %s", exc)
                alive = False
            if self.state is TransportState.CLOSED:
                return
            if not alive:
                logger.info("Full navigation on %s, closing WebMCP bridge", self.page.url)
                await self._teardown(CloseReason.NAVIGATION)
                return
            logger.debug("Client-side navigation on %s, bridge still alive", self.page.url)
            if not self._navigation_recheck:
                return

    async def close(self, reason: CloseReason = CloseReason.EXPLICIT) -> None:
        """Tear down the bridge. Safe to call any number of times."""
        await self._teardown(reason)

    async def _teardown(self, reason: CloseReason) -> None:
        if self._closed_event is not None:
            await self._closed_event.wait()
            return

        self._closed_event = asyncio.Event()
        self.state = TransportState.CLOSED
        self.close_reason = reason
        self.server_ready = False

        try:
            task = self._navigation_task
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()

            if self._ready is not None and not self._ready.done():
                if reason is CloseReason.NAVIGATION:
                    self._ready.set_exception(
                        TransportClosedError("Page navigated, connection lost")
                    )
                else:
                    self._ready.set_exception(TransportClosedError("Transport closed"))

            await self._release_resources(dispose_bridge=True)
        finally:
            self._closed_event.set()

        logger.debug("WebMCP transport closed (%s)", reason.value)
        if self.on_close is not None:
            try:
                self.on_close(reason)
            except Exception as exc:
                logger.error("WebMCP close callback failed: %s", exc)

    async def _release_resources(self, dispose_bridge: bool) -> None:
        """Release listeners, binding, bridge marker and CDP session (best effort)."""
        if self._navigation_observed:
            self._navigation_observed = False
            try:
                self.page.remove_listener("framenavigated", self._navigation_handler)
            except Exception as exc:
                logger.debug("Failed to remove navigation listener: %s", exc)

        cdp = self._cdp_session
        self._cdp_session = None

        if cdp is not None:
            try:
                cdp.remove_listener("Runtime.bindingCalled", self._binding_handler)
            except Exception as exc:
                logger.debug("Failed to remove binding listener: %s", exc)
            if self._binding_installed:
                self._binding_installed = False
                try:
                    await cdp.send("Runtime.removeBinding", {"name": BRIDGE_BINDING})
                except Exception as exc:
                    logger.debug("Failed to remove bridge binding: %s", exc)

        if dispose_bridge:
            try:
                await self.page.evaluate(DISPOSE_BRIDGE_SCRIPT)
            except Exception as exc:
                logger.debug("Bridge dispose skipped: %s", exc)

        if cdp is not None:
            try:
                await cdp.detach()
            except Exception as exc:
                logger.debug("CDP session detach failed: %s", exc)

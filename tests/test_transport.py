import asyncio

import pytest
from mcp import types

from fake_page import FakePage, FakeRegistry, wait_until
from webmcp_bridge.bridge_script import BRIDGE_VERSION
from webmcp_bridge.errors import (
    AlreadyStartingError,
    BridgeNotFoundError,
    HandshakeTimeoutError,
    PageGoneError,
    PayloadParseError,
    ServerStoppedError,
    TransportClosedError,
    TransportNotStartedError,
    WebMCPNotDetectedError,
)
from webmcp_bridge.transport import CloseReason, TransportState, WebMCPClientTransport


def _transport(page, **kwargs):
    kwargs.setdefault("ready_timeout_ms", 500)
    kwargs.setdefault("navigation_settle_ms", 0)
    return WebMCPClientTransport(page, **kwargs)


def _ping(request_id=1):
    return types.JSONRPCMessage(types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method="ping"))


@pytest.mark.asyncio
async def test_start_completes_ready_handshake():
    page = FakePage(registry=FakeRegistry())
    transport = _transport(page)

    await transport.start()

    assert transport.state is TransportState.READY
    assert transport.server_ready
    assert transport.debug_session_id
    session = page.cdp_sessions[0]
    assert session.sent[:2] == ["Runtime.enable", "Runtime.addBinding"]
    assert page.listener_count("framenavigated") == 1


@pytest.mark.asyncio
async def test_second_injection_reuses_existing_bridge():
    page = FakePage(registry=FakeRegistry())
    page.bridge_version = BRIDGE_VERSION
    transport = _transport(page)

    await transport.start()

    assert transport.already_injected
    assert transport.is_ready
    assert page.bridge_version == BRIDGE_VERSION


@pytest.mark.asyncio
async def test_concurrent_start_is_rejected():
    page = FakePage(registry=FakeRegistry())
    transport = _transport(page)

    first = asyncio.create_task(transport.start())
    await asyncio.sleep(0)
    with pytest.raises(AlreadyStartingError):
        await transport.start()
    await first

    with pytest.raises(AlreadyStartingError):
        await transport.start()
    assert page.cdp_sessions_created == 1


@pytest.mark.asyncio
async def test_start_without_registry_fails_before_touching_page():
    page = FakePage(registry=None)
    transport = _transport(page)

    with pytest.raises(WebMCPNotDetectedError):
        await transport.start()

    assert page.cdp_sessions_created == 0
    assert transport.state is TransportState.CLOSED


@pytest.mark.asyncio
async def test_handshake_timeout_releases_everything():
    page = FakePage(registry=FakeRegistry(ready=False))
    closes = []
    transport = _transport(page, ready_timeout_ms=50)
    transport.on_close = closes.append

    with pytest.raises(HandshakeTimeoutError):
        await transport.start()

    assert transport.state is TransportState.CLOSED
    assert closes == [CloseReason.HANDSHAKE_FAILED]
    assert page.cdp_sessions == []
    assert page.bindings == set()
    assert not page.bridge_installed
    assert page.listener_count("framenavigated") == 0


@pytest.mark.asyncio
async def test_cdp_failure_maps_to_page_gone():
    page = FakePage(registry=FakeRegistry())
    page.context.fail_cdp = True
    transport = _transport(page)

    with pytest.raises(PageGoneError):
        await transport.start()


@pytest.mark.asyncio
async def test_first_message_resolves_ready_without_ack():
    page = FakePage(registry=FakeRegistry(ready=False))
    received = []
    transport = _transport(page)
    transport.on_message = received.append

    start = asyncio.create_task(transport.start())
    await wait_until(lambda: transport.state is TransportState.STARTED)
    page.deliver({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
    await start

    assert transport.is_ready
    assert len(received) == 1


@pytest.mark.asyncio
async def test_close_is_idempotent():
    page = FakePage(registry=FakeRegistry())
    closes = []
    transport = _transport(page)
    transport.on_close = closes.append
    await transport.start()

    await transport.close()
    await transport.close()

    assert closes == [CloseReason.EXPLICIT]
    assert transport.close_reason is CloseReason.EXPLICIT
    assert page.cdp_sessions == []
    assert not page.bridge_installed


@pytest.mark.asyncio
async def test_close_during_start_wins():
    page = FakePage(registry=FakeRegistry(ready=False))
    closes = []
    transport = _transport(page, ready_timeout_ms=5000)
    transport.on_close = closes.append

    start = asyncio.create_task(transport.start())
    await wait_until(lambda: transport.state is TransportState.STARTED)
    await transport.close()

    with pytest.raises(TransportClosedError):
        await start
    assert closes == [CloseReason.EXPLICIT]
    assert page.cdp_sessions == []


@pytest.mark.asyncio
async def test_send_requires_start_and_rejects_after_close():
    page = FakePage(registry=FakeRegistry())
    transport = _transport(page)

    with pytest.raises(TransportNotStartedError):
        await transport.send(_ping())

    await transport.start()
    await transport.close()

    with pytest.raises(TransportClosedError):
        await transport.send(_ping())


@pytest.mark.asyncio
async def test_send_round_trip():
    page = FakePage(registry=FakeRegistry())
    received = []
    transport = _transport(page)
    transport.on_message = received.append
    await transport.start()

    await transport.send(_ping(7))
    await wait_until(lambda: received)

    assert page.registry.received[-1] == {"jsonrpc": "2.0", "id": 7, "method": "ping"}
    assert received[0].root.id == 7


@pytest.mark.asyncio
async def test_send_without_bridge_reports_bridge_not_found():
    page = FakePage(registry=FakeRegistry())
    errors = []
    transport = _transport(page)
    transport.on_error = errors.append
    await transport.start()
    page.bridge_version = None

    with pytest.raises(BridgeNotFoundError):
        await transport.send(_ping())
    assert isinstance(errors[0], BridgeNotFoundError)


@pytest.mark.asyncio
async def test_client_side_navigation_keeps_bridge():
    page = FakePage(registry=FakeRegistry())
    transport = _transport(page)
    await transport.start()

    page.navigate("http://localhost:3000/items", spa=True)
    page.navigate_child_frame()
    await asyncio.sleep(0.05)

    assert transport.is_ready
    assert transport.close_reason is None


@pytest.mark.asyncio
async def test_full_navigation_closes_transport():
    page = FakePage(registry=FakeRegistry())
    closes = []
    transport = _transport(page)
    transport.on_close = closes.append
    await transport.start()

    page.navigate("http://localhost:3000/other")
    await wait_until(lambda: transport.is_closed)

    assert closes == [CloseReason.NAVIGATION]
    assert page.cdp_sessions == []
    assert page.listener_count("framenavigated") == 0


@pytest.mark.asyncio
async def test_navigation_burst_closes_once():
    page = FakePage(registry=FakeRegistry())
    closes = []
    transport = _transport(page, navigation_settle_ms=20)
    transport.on_close = closes.append
    await transport.start()

    page.navigate("http://localhost:3000/a", spa=True)
    page.navigate("http://localhost:3000/b")
    page.navigate("http://localhost:3000/c")
    await wait_until(lambda: transport.is_closed)
    await asyncio.sleep(0.05)

    assert closes == [CloseReason.NAVIGATION]


@pytest.mark.asyncio
async def test_server_stopped_keeps_transport_open():
    page = FakePage(registry=FakeRegistry())
    errors = []
    transport = _transport(page)
    transport.on_error = errors.append
    await transport.start()

    page.deliver("mcp-server-stopped")
    await wait_until(lambda: errors)

    assert isinstance(errors[0], ServerStoppedError)
    assert not transport.server_ready
    assert transport.state is TransportState.READY


@pytest.mark.asyncio
async def test_malformed_payload_does_not_break_stream():
    page = FakePage(registry=FakeRegistry())
    errors = []
    received = []
    transport = _transport(page)
    transport.on_error = errors.append
    transport.on_message = received.append
    await transport.start()

    page.deliver_raw("{not json")
    page.deliver("mcp-check-ready")
    page.deliver({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
    await wait_until(lambda: received)

    assert [type(e) for e in errors] == [PayloadParseError, PayloadParseError]
    assert transport.is_ready

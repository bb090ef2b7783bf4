from types import SimpleNamespace

import pytest
import pytest_asyncio

from fake_page import FakePage, FakeRegistry, make_tool
from webmcp_bridge import server
from webmcp_bridge.connection import WebMCPConnectionManager
from webmcp_bridge.errors import PageNotFoundError


@pytest_asyncio.fixture
async def ctx():
    pages = [
        FakePage(registry=FakeRegistry([make_tool("add_item")])),
        FakePage(url="http://localhost:4000/", registry=FakeRegistry([make_tool("search")])),
    ]
    state = server.BrowserState(playwright=None, browser=None, context=None, pages=pages)
    state.manager = WebMCPConnectionManager(
        lambda: state.pages, ready_timeout_ms=1000, navigation_settle_ms=0, auto_connect=False
    )
    yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=state))
    await state.manager.close_all()


@pytest.mark.asyncio
async def test_get_page_bounds(ctx):
    state = server.get_browser_state(ctx)
    assert state.get_page(None) is state.pages[0]
    assert state.get_page(1) is state.pages[1]
    with pytest.raises(PageNotFoundError):
        state.get_page(5)


@pytest.mark.asyncio
async def test_connect_and_list_follow_selected_page(ctx):
    await server.connect_webmcp(ctx)
    await server.connect_webmcp(ctx, page_index=1)

    selected = await server.select_page(1, ctx)
    current = await server.list_webmcp_tools(ctx)
    everything = await server.list_webmcp_tools(ctx, all_pages=True)

    assert selected.success
    assert [tool.tool_id for tool in current.tools] == ["webmcp_localhost_4000_page1_search"]
    assert everything.count == 2


@pytest.mark.asyncio
async def test_connect_unknown_page(ctx):
    result = await server.connect_webmcp(ctx, page_index=7)

    assert not result.success
    assert result.error_kind == "page_not_found"


@pytest.mark.asyncio
async def test_call_and_diff_tools(ctx):
    await server.connect_webmcp(ctx)

    diff = await server.diff_webmcp_tools(ctx)
    call = await server.call_webmcp_tool("webmcp_localhost_3000_page0_missing", ctx)

    assert diff.full
    assert [tool.tool_id for tool in diff.tools] == ["webmcp_localhost_3000_page0_add_item"]
    assert call.error_kind == "tool_not_found"


def test_config_defaults():
    cfg = server.Config()
    assert cfg.browser_type == "chromium"
    assert cfg.ready_timeout_ms == 10000
    assert cfg.auto_connect_ready_timeout_ms == 30000
    assert cfg.navigation_settle_ms == 100
    assert cfg.auto_connect and cfg.require_webmcp

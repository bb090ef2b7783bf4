import pytest
import pytest_asyncio

from fake_page import FakePage, FakeRegistry, make_tool
from webmcp_bridge import operations
from webmcp_bridge.connection import WebMCPConnectionManager


@pytest_asyncio.fixture
async def manager_and_pages():
    registry = FakeRegistry(
        [
            make_tool("add_item", "Add an item", {"title": {"type": "string"}}),
            make_tool("list_items", "List items"),
        ]
    )
    registry.handlers["add_item"] = lambda args: f"added {args['title']}"
    pages = [
        FakePage(registry=registry),
        FakePage(url="https://example.com/", registry=None),
    ]
    manager = WebMCPConnectionManager(
        lambda: pages, ready_timeout_ms=1000, navigation_settle_ms=0, auto_connect=False
    )
    yield manager, pages
    await manager.close_all()


@pytest.mark.asyncio
async def test_connect_reports_server_and_tools(manager_and_pages):
    manager, pages = manager_and_pages

    result = await operations.connect(manager, pages[0])

    assert result.success
    assert result.server_name == "fake-registry"
    assert result.tool_count == 2
    assert {tool.tool_id for tool in result.tools} == {
        "webmcp_localhost_3000_page0_add_item",
        "webmcp_localhost_3000_page0_list_items",
    }


@pytest.mark.asyncio
async def test_connect_without_registry_reports_error_kind(manager_and_pages):
    manager, pages = manager_and_pages

    result = await operations.connect(manager, pages[1])

    assert not result.success
    assert result.error_kind == "webmcp_not_detected"
    assert "navigator.modelContext" in result.error


@pytest.mark.asyncio
async def test_list_tools_before_connect_explains(manager_and_pages):
    manager, pages = manager_and_pages

    result = operations.list_tools(manager, page=pages[0])

    assert result.success
    assert result.count == 0
    assert "connect_webmcp" in result.message


@pytest.mark.asyncio
async def test_list_tools_with_pattern(manager_and_pages):
    manager, pages = manager_and_pages
    await operations.connect(manager, pages[0])

    result = operations.list_tools(manager, page=pages[0], pattern="add*")

    assert [tool.original_name for tool in result.tools] == ["add_item"]
    assert result.tools[0].input_schema["properties"] == {"title": {"type": "string"}}


@pytest.mark.asyncio
async def test_call_tool_returns_content(manager_and_pages):
    manager, pages = manager_and_pages
    await operations.connect(manager, pages[0])

    result = await operations.call_tool(
        manager, "webmcp_localhost_3000_page0_add_item", {"title": "milk"}
    )

    assert result.success
    assert result.content == [{"type": "text", "text": "added milk"}]


@pytest.mark.asyncio
async def test_call_tool_surfaces_tool_errors(manager_and_pages):
    manager, pages = manager_and_pages
    await operations.connect(manager, pages[0])

    result = await operations.call_tool(manager, "webmcp_localhost_3000_page0_list_items")

    assert not result.success
    assert result.is_error
    assert result.error_kind == "tool_error"
    assert result.error == "Unknown tool: list_items"


@pytest.mark.asyncio
async def test_call_tool_error_kinds(manager_and_pages):
    manager, pages = manager_and_pages
    await operations.connect(manager, pages[0])

    missing = await operations.call_tool(manager, "webmcp_nowhere_page9_x", {})
    bad_args = await operations.call_tool(
        manager, "webmcp_localhost_3000_page0_add_item", "milk"
    )

    assert missing.error_kind == "tool_not_found"
    assert bad_args.error_kind == "argument_validation_failed"


@pytest.mark.asyncio
async def test_disconnect(manager_and_pages):
    manager, pages = manager_and_pages
    await operations.connect(manager, pages[0])

    result = await operations.disconnect(manager, pages[0])
    again = await operations.disconnect(manager, pages[0])

    assert result.removed_tools == 2
    assert again.removed_tools == 0
    assert "Not connected" in again.message


@pytest.mark.asyncio
async def test_diff_tools_full_then_delta(manager_and_pages):
    manager, pages = manager_and_pages

    empty = operations.diff_tools(manager)
    assert empty.full
    assert "No WebMCP tools registered" in empty.message

    await operations.connect(manager, pages[0])
    delta = operations.diff_tools(manager)
    assert not delta.full
    assert len(delta.added) == 2
    assert delta.removed == []

    unchanged = operations.diff_tools(manager)
    assert unchanged.message == "No changes since last poll."

    await operations.disconnect(manager, pages[0])
    gone = operations.diff_tools(manager)
    assert sorted(gone.removed) == [
        "webmcp_localhost_3000_page0_add_item",
        "webmcp_localhost_3000_page0_list_items",
    ]

    full = operations.diff_tools(manager, full=True)
    assert full.full
    assert full.tools == []


@pytest.mark.asyncio
async def test_errors_report_whether_a_retry_can_help(manager_and_pages):
    manager, pages = manager_and_pages

    not_detected = await operations.connect(manager, pages[1])
    assert not_detected.recoverable is False

    await operations.connect(manager, pages[0])
    manager.get_connection(pages[0]).session = None
    pages[0].registry.ready = False
    manager.ready_timeout_ms = 50

    result = await operations.call_tool(manager, "webmcp_localhost_3000_page0_list_items", {})

    assert result.error_kind == "no_tools_available"
    assert result.recoverable is True

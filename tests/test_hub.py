import logging

import pytest
from mcp import types

from webmcp_bridge.errors import (
    ArgumentValidationError,
    HandshakeTimeoutError,
    NoToolsAvailableError,
    ToolNotFoundError,
)
from webmcp_bridge.hub import SyncResult, WebMCPToolHub


class StubPage:
    def __init__(self, url):
        self.url = url


class StubClient:
    def __init__(self, *names, page=None, navigate_to=None):
        self.tools = [self.tool(name) for name in names]
        self.calls = []
        self.fail_list = False
        self._page = page
        self._navigate_to = navigate_to

    @staticmethod
    def tool(name, description=None):
        return types.Tool(
            name=name,
            description=description or f"{name} tool",
            inputSchema={"type": "object", "properties": {}},
        )

    async def list_tools(self):
        if self.fail_list:
            raise RuntimeError("registry went away")
        if self._navigate_to is not None:
            self._page.url = self._navigate_to
        return types.ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return types.CallToolResult(content=[types.TextContent(type="text", text="ok")])


class StubConnector:
    def __init__(self, clients):
        self.clients = clients
        self.error = None

    async def get_client(self, page):
        if self.error is not None:
            raise self.error
        return self.clients[page]


@pytest.fixture
def pages():
    return [StubPage("http://localhost:3000/"), StubPage("https://docs.example.com/guide")]


@pytest.fixture
def hub(pages):
    return WebMCPToolHub(lambda page: pages.index(page) if page in pages else -1)


@pytest.mark.asyncio
async def test_tool_ids_embed_domain_page_and_name(hub, pages):
    await hub.sync_tools_for_page(pages[0], StubClient("add_item"))
    await hub.sync_tools_for_page(pages[1], StubClient("search-docs"))

    assert sorted(hub.get_registered_tool_ids()) == [
        "webmcp_docs_example_com_page1_search_docs",
        "webmcp_localhost_3000_page0_add_item",
    ]


@pytest.mark.asyncio
async def test_resync_keeps_ids_and_updates_descriptors(hub, pages):
    client = StubClient("add_item")
    await hub.sync_tools_for_page(pages[0], client)

    client.tools = [StubClient.tool("add_item", "Add an item to the cart")]
    result = await hub.sync_tools_for_page(pages[0], client)

    assert result == SyncResult(synced=0, updated=1, removed=0)
    [tool] = hub.get_registered_tools()
    assert tool.tool_id == "webmcp_localhost_3000_page0_add_item"
    assert tool.description == "Add an item to the cart"


@pytest.mark.asyncio
async def test_resync_replaces_removed_tools(hub, pages):
    client = StubClient("a")
    await hub.sync_tools_for_page(pages[0], client)

    client.tools = [StubClient.tool("b"), StubClient.tool("c")]
    result = await hub.sync_tools_for_page(pages[0], client)

    assert result == SyncResult(synced=2, updated=0, removed=1)
    assert sorted(hub.get_registered_tool_ids()) == [
        "webmcp_localhost_3000_page0_b",
        "webmcp_localhost_3000_page0_c",
    ]


@pytest.mark.asyncio
async def test_remove_tools_for_page_leaves_other_pages(hub, pages):
    await hub.sync_tools_for_page(pages[0], StubClient("a", "b"))
    await hub.sync_tools_for_page(pages[1], StubClient("c"))

    assert hub.remove_tools_for_page(pages[0]) == 2
    assert hub.get_registered_tool_ids() == ["webmcp_docs_example_com_page1_c"]
    assert hub.remove_tools_for_page(pages[0]) == 0


@pytest.mark.asyncio
async def test_sanitize_collision_keeps_first_tool(hub, pages, caplog):
    with caplog.at_level(logging.WARNING):
        result = await hub.sync_tools_for_page(pages[0], StubClient("add-item", "add.item"))

    assert result.synced == 1
    [tool] = hub.get_registered_tools()
    assert tool.original_name == "add-item"
    assert "already registered" in caplog.text


@pytest.mark.asyncio
async def test_name_warnings_are_logged(hub, pages, caplog):
    with caplog.at_level(logging.WARNING):
        await hub.sync_tools_for_page(pages[0], StubClient("_internal"))

    assert "starts with underscore" in caplog.text
    assert hub.get_tool_count() == 1


@pytest.mark.asyncio
async def test_failed_sync_keeps_existing_catalog(hub, pages):
    client = StubClient("a")
    await hub.sync_tools_for_page(pages[0], client)

    client.fail_list = True
    assert await hub.sync_tools_for_page(pages[0], client) == SyncResult()
    assert hub.get_registered_tool_ids() == ["webmcp_localhost_3000_page0_a"]


@pytest.mark.asyncio
async def test_sync_aborts_when_page_navigates_mid_sync(hub, pages):
    client = StubClient("a", page=pages[0], navigate_to="http://localhost:3000/other")

    assert await hub.sync_tools_for_page(pages[0], client) == SyncResult()
    assert hub.get_tool_count() == 0


@pytest.mark.asyncio
async def test_disabled_hub_does_not_sync(hub, pages):
    hub.disable()
    assert not hub.is_enabled()
    await hub.sync_tools_for_page(pages[0], StubClient("a"))
    assert hub.get_tool_count() == 0

    hub.enable()
    await hub.sync_tools_for_page(pages[0], StubClient("a"))
    assert hub.get_tool_count() == 1


@pytest.mark.asyncio
async def test_untracked_page_is_skipped(hub):
    await hub.sync_tools_for_page(StubPage("http://localhost:3000/"), StubClient("a"))
    assert hub.get_tool_count() == 0


@pytest.mark.asyncio
async def test_get_registered_tools_filters(hub, pages):
    await hub.sync_tools_for_page(pages[0], StubClient("add_item", "remove_item"))
    await hub.sync_tools_for_page(pages[1], StubClient("search"))

    assert [t.original_name for t in hub.get_registered_tools(page_index=1)] == ["search"]
    assert sorted(t.original_name for t in hub.get_registered_tools(pattern="*_ITEM")) == [
        "add_item",
        "remove_item",
    ]
    assert [t.original_name for t in hub.get_registered_tools(pattern="webmcp_docs*")] == ["search"]


@pytest.mark.asyncio
async def test_call_tool_routes_flat_arguments(hub, pages):
    client = StubClient("add_item")
    hub.set_connector(StubConnector({pages[0]: client}))
    await hub.sync_tools_for_page(pages[0], client)

    result = await hub.call_tool(
        "webmcp_localhost_3000_page0_add_item", {"title": "milk", "qty": 2}
    )

    assert client.calls == [("add_item", {"title": "milk", "qty": 2})]
    assert result.content[0].text == "ok"


@pytest.mark.asyncio
async def test_call_tool_errors(hub, pages):
    client = StubClient("add_item")
    connector = StubConnector({pages[0]: client})
    hub.set_connector(connector)
    await hub.sync_tools_for_page(pages[0], client)
    tool_id = "webmcp_localhost_3000_page0_add_item"

    with pytest.raises(ToolNotFoundError):
        await hub.call_tool("webmcp_localhost_3000_page0_missing", {})

    with pytest.raises(ArgumentValidationError):
        await hub.call_tool(tool_id, ["milk"])

    connector.error = HandshakeTimeoutError("no answer")
    with pytest.raises(NoToolsAvailableError, match="No WebMCP tools available on this page"):
        await hub.call_tool(tool_id, {})
    assert client.calls == []


def test_last_seen_tool_ids(hub):
    assert hub.get_last_seen_tool_ids() is None
    hub.set_last_seen_tool_ids({"a"})
    assert hub.get_last_seen_tool_ids() == {"a"}

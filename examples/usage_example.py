#!/usr/bin/env python3
"""Example usage of the WebMCP Bridge Server over stdio.

Starts the server as a subprocess, opens a page that registers tools
through navigator.modelContext, and calls one of them.

    python examples/usage_example.py http://localhost:3000/
"""

import asyncio
import json
import sys

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


def _print_result(title, result):
    print(f"\n=== {title} ===")
    for block in result.content:
        text = getattr(block, "text", None)
        if text is None:
            continue
        try:
            print(json.dumps(json.loads(text), indent=2))
        except ValueError:
            print(text)


async def demo(url: str):
    params = StdioServerParameters(
        command=sys.executable,
        args=["-m", "webmcp_bridge.server", "stdio"],
    )
    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()

            _print_result("navigate", await session.call_tool("navigate", {"url": url}))
            _print_result("connect_webmcp", await session.call_tool("connect_webmcp", {}))

            listing = await session.call_tool("list_webmcp_tools", {})
            _print_result("list_webmcp_tools", listing)

            tools = listing.structuredContent.get("tools", []) if listing.structuredContent else []
            if tools:
                first = tools[0]["tool_id"]
                _print_result(
                    f"call_webmcp_tool {first}",
                    await session.call_tool("call_webmcp_tool", {"tool_id": first, "arguments": {}}),
                )

            _print_result("diff_webmcp_tools", await session.call_tool("diff_webmcp_tools", {}))


if __name__ == "__main__":
    asyncio.run(demo(sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3000/"))

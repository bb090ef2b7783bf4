"""Tool identifier rules.

Tool ids follow ``webmcp_{domain}_page{index}_{name}`` and are opaque to
everything outside the hub.
"""

from __future__ import annotations

import re
from typing import List
from urllib.parse import urlparse

TOOL_ID_PREFIX = "webmcp_"
UNKNOWN_DOMAIN = "unknown"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "[::1]"}
_LOCALHOST_TAG = re.compile(r"^localhost_(\d+)$")


def sanitize_name(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", name)


def extract_domain(url: str) -> str:
    """Derive the domain tag used in tool ids from a page URL.

    Loopback hosts keep their port (``localhost_3000``), other hosts are
    sanitized (``docs_example_com``), and URLs without an authority
    (``about:blank``, ``data:``, ``file://``) map to ``unknown``.
    """
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        port = parsed.port
    except (TypeError, ValueError):
        return UNKNOWN_DOMAIN

    if not hostname:
        return UNKNOWN_DOMAIN

    if hostname in _LOOPBACK_HOSTS:
        return f"localhost_{port or 80}"
    return sanitize_name(hostname)


def display_domain(domain: str) -> str:
    """Convert a domain tag back to a readable host (best effort)."""
    match = _LOCALHOST_TAG.match(domain)
    if match:
        return f"localhost:{match.group(1)}"
    return domain.replace("_", ".")


def generate_tool_id(domain: str, page_index: int, tool_name: str) -> str:
    return f"{TOOL_ID_PREFIX}{domain}_page{page_index}_{sanitize_name(tool_name)}"


def validate_tool_name(name: str) -> List[str]:
    """Return compatibility warnings for names not starting with a letter."""
    warnings: List[str] = []
    if name.startswith("_"):
        warnings.append(
            f'Tool name "{name}" starts with underscore. '
            "This may cause compatibility issues with some MCP clients. "
            "Consider using a letter as the first character."
        )
    if re.match(r"[0-9]", name):
        warnings.append(
            f'Tool name "{name}" starts with a number. '
            "This may cause compatibility issues. "
            "Consider using a letter as the first character."
        )
    if name.startswith("-"):
        warnings.append(
            f'Tool name "{name}" starts with hyphen. '
            "This may cause compatibility issues. "
            "Consider using a letter as the first character."
        )
    return warnings


def compile_glob(pattern: str) -> "re.Pattern[str]":
    """Compile a ``*``/``?`` glob into an anchored, case-insensitive regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)

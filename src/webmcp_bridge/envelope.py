"""Wire format shared by the injected bridge and the page's registry.

Messages travel inside a channel-tagged wrapper posted with
``window.postMessage``::

    {"channel": "mcp-default", "type": "mcp",
     "direction": "client-to-server" | "server-to-client",
     "payload": <sentinel string | JSON-RPC object>}

The bridge forwards only the ``payload`` across the debug binding. Inbound
payloads are resolved once, here, into either a ``SentinelPayload`` or a
``MessagePayload``; nothing downstream inspects raw payloads.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from mcp.types import JSONRPCMessage
from pydantic import ValidationError

from webmcp_bridge.errors import PayloadParseError

CHANNEL_ID = "mcp-default"
MESSAGE_TYPE = "mcp"
CLIENT_TO_SERVER = "client-to-server"
SERVER_TO_CLIENT = "server-to-client"


class Sentinel(str, Enum):
    CHECK_READY = "mcp-check-ready"
    SERVER_READY = "mcp-server-ready"
    SERVER_STOPPED = "mcp-server-stopped"


@dataclass(frozen=True)
class SentinelPayload:
    sentinel: Sentinel


@dataclass(frozen=True)
class MessagePayload:
    message: JSONRPCMessage


InboundPayload = Union[SentinelPayload, MessagePayload]


def serialize_message(message: JSONRPCMessage) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def parse_inbound(raw: str) -> InboundPayload:
    """Decode one payload received through the debug binding.

    Raises:
        PayloadParseError: the payload is not JSON, is an unknown string, or
            is an object that is not a JSON-RPC 2.0 message.
    """
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadParseError(f"Failed to parse message from bridge: {exc}") from exc
    return classify_payload(value)


def classify_payload(value: Any) -> InboundPayload:
    if isinstance(value, str):
        try:
            return SentinelPayload(Sentinel(value))
        except ValueError:
            raise PayloadParseError(f"Unexpected string payload: {value}") from None
    if isinstance(value, dict):
        try:
            return MessagePayload(JSONRPCMessage.model_validate(value))
        except ValidationError as exc:
            raise PayloadParseError(f"Invalid JSON-RPC message from bridge: {exc}") from exc
    raise PayloadParseError(f"Unsupported payload type: {type(value).__name__}")

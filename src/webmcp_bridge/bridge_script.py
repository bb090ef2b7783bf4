"""Page-side scripts evaluated through Playwright.

The injected bridge is a ferry between the debug channel and the page's
registry transport. It does not understand MCP: it forwards JSON-RPC
payloads between ``window.postMessage`` and the ``Runtime.addBinding``
binding installed by :class:`~webmcp_bridge.transport.WebMCPClientTransport`.

All scripts are arrow functions so ``page.evaluate`` invokes them (with the
optional argument) instead of treating them as bare expressions.
"""

from webmcp_bridge.envelope import (
    CHANNEL_ID,
    CLIENT_TO_SERVER,
    MESSAGE_TYPE,
    SERVER_TO_CLIENT,
    Sentinel,
)

BRIDGE_VERSION = "1.1.0"

# Page-global holding the bridge capability object. Distinct from the
# registry's own ``__mcpBridge`` property.
BRIDGE_WINDOW_PROPERTY = "__mcpCdpBridge"

# Binding the bridge calls to hand messages back to the controller.
BRIDGE_BINDING = "__mcpBridgeToClient"


def _render(template: str) -> str:
    return (
        template.replace("__BRIDGE_PROPERTY__", BRIDGE_WINDOW_PROPERTY)
        .replace("__BRIDGE_BINDING__", BRIDGE_BINDING)
        .replace("__BRIDGE_VERSION__", BRIDGE_VERSION)
        .replace("__CHANNEL_ID__", CHANNEL_ID)
        .replace("__MESSAGE_TYPE__", MESSAGE_TYPE)
        .replace("__CLIENT_TO_SERVER__", CLIENT_TO_SERVER)
        .replace("__SERVER_TO_CLIENT__", SERVER_TO_CLIENT)
        .replace("__CHECK_READY__", Sentinel.CHECK_READY.value)
        .replace("__SERVER_READY__", Sentinel.SERVER_READY.value)
        .replace("__SERVER_STOPPED__", Sentinel.SERVER_STOPPED.value)
    )


CHECK_WEBMCP_AVAILABLE_SCRIPT = _render(
    """
() => {
  if (typeof navigator !== 'undefined' && navigator.modelContext) {
    return { available: true, type: 'modelContext' };
  }
  if (window.__MCP_BRIDGE__) {
    return { available: true, type: 'bridge' };
  }
  return { available: false };
}
"""
)

INJECT_BRIDGE_SCRIPT = _render(
    """
() => {
  'use strict';
  var CHANNEL_ID = '__CHANNEL_ID__';
  var BRIDGE_VERSION = '__BRIDGE_VERSION__';

  var existing = window['__BRIDGE_PROPERTY__'];
  if (existing && existing.version === BRIDGE_VERSION) {
    return { alreadyInjected: true, version: BRIDGE_VERSION };
  }
  if (existing && typeof existing.dispose === 'function') {
    existing.dispose();
  }

  var serverReady = false;

  function handleServerMessage(event) {
    if (event.source !== window) return;
    var data = event.data;
    if (!data || data.channel !== CHANNEL_ID || data.type !== '__MESSAGE_TYPE__') return;
    if (data.direction !== '__SERVER_TO_CLIENT__') return;

    var payload = data.payload;
    if (payload === '__SERVER_READY__') {
      serverReady = true;
    } else if (payload === '__SERVER_STOPPED__') {
      serverReady = false;
    }

    if (typeof window['__BRIDGE_BINDING__'] === 'function') {
      try {
        window['__BRIDGE_BINDING__'](JSON.stringify(payload));
      } catch (err) {
        console.error('[WebMCP Bridge] Failed to forward message:', err);
      }
    }
  }

  function hasWebMCP() {
    return !!((typeof navigator !== 'undefined' && navigator.modelContext) || window.__MCP_BRIDGE__);
  }

  function post(payload) {
    window.postMessage({
      channel: CHANNEL_ID,
      type: '__MESSAGE_TYPE__',
      direction: '__CLIENT_TO_SERVER__',
      payload: payload
    }, window.location.origin);
  }

  window.addEventListener('message', handleServerMessage);

  window['__BRIDGE_PROPERTY__'] = {
    version: BRIDGE_VERSION,
    toServer: function(payloadJson) {
      try {
        post(JSON.parse(payloadJson));
        return true;
      } catch (err) {
        console.error('[WebMCP Bridge] Failed to send to server:', err);
        return false;
      }
    },
    checkReady: function() {
      post('__CHECK_READY__');
    },
    isServerReady: function() {
      return serverReady;
    },
    hasWebMCP: hasWebMCP,
    getChannelId: function() {
      return CHANNEL_ID;
    },
    dispose: function() {
      window.removeEventListener('message', handleServerMessage);
      delete window['__BRIDGE_PROPERTY__'];
    }
  };

  return { success: true, version: BRIDGE_VERSION, webMCPDetected: hasWebMCP() };
}
"""
)

CHECK_READY_SCRIPT = _render(
    """
() => {
  var bridge = window['__BRIDGE_PROPERTY__'];
  if (!bridge) return false;
  bridge.checkReady();
  return true;
}
"""
)

SEND_TO_SERVER_SCRIPT = _render(
    """
(payloadJson) => {
  var bridge = window['__BRIDGE_PROPERTY__'];
  if (!bridge) return { ok: false, reason: 'bridge-missing' };
  if (!bridge.toServer(payloadJson)) return { ok: false, reason: 'send-failed' };
  return { ok: true };
}
"""
)

# Liveness check used after a navigation notification: the marker only
# survives when the execution context survived (client-side routing).
BRIDGE_ALIVE_SCRIPT = _render(
    """
() => {
  var bridge = window['__BRIDGE_PROPERTY__'];
  return !!(bridge && bridge.version === '__BRIDGE_VERSION__');
}
"""
)

DISPOSE_BRIDGE_SCRIPT = _render(
    """
() => {
  var bridge = window['__BRIDGE_PROPERTY__'];
  if (!bridge) return false;
  bridge.dispose();
  return true;
}
"""
)

"""Gated tool mirror.

Builds a client-facing MCP server that re-exposes an upstream's tools
under their original names.  Every call is checked against the gate's
block patterns first; blocked calls are answered locally and never
reach the upstream.  Allowed calls are forwarded verbatim and the
upstream's ``content`` and ``isError`` are relayed unchanged.

Uses the low-level ``mcp.server.lowlevel.Server`` so the ``call_tool``
handler can return ``CallToolResult`` directly.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server

from mcp_guard.gateway.config import GateConfig
from mcp_guard.gateway.mcp_client import UpstreamCallError
from mcp_guard.gateway.registry import Gate
from mcp_guard.rules import evaluate
from mcp_guard.version import __version__

logger = logging.getLogger("mcp_guard.gateway.mirror")

SERVER_NAME = "mcp-guard"

BLOCK_PREFIX = "⛔ "

# Argument validation is left to the upstream
PERMISSIVE_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": True,
}

_LOG_ARGS_LIMIT = 200


def block_message(config: GateConfig, pattern: str | None) -> str:
    """Text shown to the client when a call is blocked."""
    if config.block_message:
        return config.block_message
    return f'Blocked: matched pattern "{pattern}"'


def _error_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=True,
    )


async def gated_call(
    gate: Gate,
    config: GateConfig,
    tool_name: str,
    arguments: dict[str, Any] | None,
) -> types.CallToolResult:
    """Apply block rules to one call, then forward it if allowed.

    Never raises: blocks and upstream failures both come back as
    ``isError=True`` results.
    """
    args = arguments if arguments is not None else {}
    logger.debug(
        "[%s] %s", tool_name, json.dumps(args, default=str)[:_LOG_ARGS_LIMIT],
    )

    if config.blocking:
        decision = evaluate(args, config.block)
        if decision.blocked:
            msg = block_message(config, decision.matched_pattern)
            logger.warning("BLOCKED %s/%s: %s", gate.name, tool_name, msg)
            return _error_result(f"{BLOCK_PREFIX}{msg}")

    try:
        result = await gate.connection.call_tool(tool_name, args)
    except UpstreamCallError as e:
        logger.error("Upstream error %s/%s: %s", gate.name, tool_name, e)
        return _error_result(f"Upstream error: {e}")
    except Exception as e:
        logger.error(
            "Upstream error %s/%s: %s", gate.name, tool_name, e, exc_info=True,
        )
        return _error_result(f"Upstream error: {e}")

    return types.CallToolResult(
        content=list(result.content or []),
        isError=bool(result.isError),
    )


def mirror_tool(tool_dict: dict[str, Any]) -> types.Tool:
    """Convert an upstream tool dict into the client-facing ``Tool``.

    Keeps the name, description and annotations but swaps the input
    schema for a permissive one.  The output schema is dropped because
    only ``content`` and ``isError`` are relayed.
    """
    kwargs: dict[str, Any] = {
        "name": tool_dict["name"],
        "title": tool_dict.get("title") or tool_dict["name"],
        "description": tool_dict.get("description", ""),
        "inputSchema": dict(PERMISSIVE_INPUT_SCHEMA),
    }
    if "annotations" in tool_dict:
        kwargs["annotations"] = types.ToolAnnotations(
            **tool_dict["annotations"],
        )
    return types.Tool(**kwargs)


def build_gated_server(gate: Gate, config: GateConfig) -> Server:
    """Create a per-session MCP server mirroring *gate*'s tools."""
    server: Server = Server(SERVER_NAME, version=__version__)
    tools = [mirror_tool(t) for t in gate.tools]
    known = {t.name for t in tools}

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return list(tools)

    @server.call_tool()
    async def handle_call_tool(
        name: str, arguments: dict[str, Any] | None,
    ) -> types.CallToolResult:
        if name not in known:
            return _error_result(f"Unknown tool: {name}")
        return await gated_call(gate, config, name, arguments)

    return server

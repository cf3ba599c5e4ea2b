"""Shared fixtures for the mcp-guard test suite.

Upstream MCP servers are replaced by in-process fakes injected through
the gate registry's connector, so no test touches the network.
"""

from __future__ import annotations

import json
from typing import Any

import pytest
from mcp.types import CallToolResult, TextContent

from mcp_guard.gateway.config import GateConfig, GuardConfig
from mcp_guard.gateway.mcp_client import UpstreamCallError
from mcp_guard.gateway.registry import Gate

UPSTREAM_TOOLS = [
    {
        "name": "query",
        "description": "Run a SQL query",
        "inputSchema": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
        "annotations": {"destructiveHint": True},
    },
    {
        "name": "list_tables",
        "description": "List tables",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class FakeUpstream:
    """Stands in for an ``UpstreamConnection``.

    Echoes each call back as text so tests can tell a forwarded call
    from a locally synthesized one.
    """

    def __init__(self, fail_with: str | None = None) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.closed = False
        self._fail_with = fail_with

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        self.calls.append((name, arguments))
        if self._fail_with is not None:
            raise UpstreamCallError(self._fail_with)
        return upstream_result(name, arguments)

    async def close(self) -> None:
        self.closed = True


def upstream_result(name: str, arguments: Any) -> CallToolResult:
    payload = json.dumps({"tool": name, "arguments": arguments}, sort_keys=True)
    return CallToolResult(
        content=[TextContent(type="text", text=f"upstream: {payload}")],
        isError=False,
    )


@pytest.fixture()
def db_gate_config() -> GateConfig:
    return GateConfig(
        name="db",
        url="http://up/db",
        block=("DROP", "DELETE"),
        block_message="no",
    )


@pytest.fixture()
def guard_config(db_gate_config) -> GuardConfig:
    return GuardConfig(
        servers={
            "db": db_gate_config,
            "docs": GateConfig(
                name="docs", url="http://up/docs", enabled=False, block=("DROP",),
            ),
        },
        port=6427,
    )


@pytest.fixture()
def fake_upstream_cls():
    return FakeUpstream


@pytest.fixture()
def make_gate():
    """Factory: ``make_gate(name, upstream=None) -> (Gate, FakeUpstream)``."""
    def _make(name: str = "db", upstream: FakeUpstream | None = None):
        upstream = upstream if upstream is not None else FakeUpstream()
        gate = Gate(name=name, connection=upstream, tools=list(UPSTREAM_TOOLS))
        return gate, upstream
    return _make


@pytest.fixture()
def expected_upstream_result():
    return upstream_result

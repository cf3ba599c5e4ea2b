"""MCP client for upstream Streamable HTTP servers.

Connects to an upstream over Streamable HTTP, performs the MCP
handshake, snapshots the upstream's tools and forwards tool calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.types import CallToolResult

logger = logging.getLogger("mcp_guard.gateway.mcp_client")

# Upstream responses may be held open as SSE streams
_SSE_READ_TIMEOUT = 300.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UpstreamError(Exception):
    """Base error for upstream MCP connection issues."""


class UpstreamConnectError(UpstreamError):
    """Failed to connect to, or initialize, an upstream MCP server."""


class UpstreamCallError(UpstreamError):
    """A forwarded tool call failed at the transport or protocol level."""


# ---------------------------------------------------------------------------
# UpstreamConnection
# ---------------------------------------------------------------------------

class UpstreamConnection:
    """MCP client connection to a single upstream HTTP server.

    The SDK's client transport and session are anyio context managers
    whose cancel scopes must be exited by the task that entered them.
    A connection may be opened while serving one request and closed at
    shutdown from another, so both contexts live in a dedicated runner
    task that holds them open until :meth:`close` is called.

    Usage::

        conn = UpstreamConnection("https://example.com/mcp")
        await conn.connect()
        try:
            result = await conn.call_tool("query", {"sql": "SELECT 1"})
        finally:
            await conn.close()
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        name: str = "",
    ) -> None:
        self._url = url
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._name = name or url
        self._session: ClientSession | None = None
        self._tools: list[dict[str, Any]] = []
        self._connected = False
        self._runner: asyncio.Task | None = None
        self._closing: asyncio.Event | None = None

    # -- properties ----------------------------------------------------------

    @property
    def tools(self) -> list[dict[str, Any]]:
        """Tool schemas the upstream exposed at connect time."""
        return list(self._tools)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport, run the MCP handshake and list tools.

        Raises:
            UpstreamConnectError: If the connection is refused, the
                handshake fails, or either step exceeds the timeout.
        """
        if self._runner is not None:
            raise UpstreamConnectError("Already connected")

        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        self._closing = asyncio.Event()
        self._runner = asyncio.create_task(
            self._run(ready), name=f"mcp-guard-upstream-{self._name}",
        )

        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self._stop_runner()
            raise UpstreamConnectError(
                f"Connection to '{self._url}' timed out "
                f"after {self._timeout}s"
            ) from None
        except asyncio.CancelledError:
            await self._stop_runner()
            raise
        except UpstreamConnectError:
            await self._stop_runner()
            raise

    async def _run(self, ready: asyncio.Future) -> None:
        """Hold the client transport and session open until closed."""
        try:
            async with httpx.AsyncClient(
                headers=self._headers,
                timeout=httpx.Timeout(self._timeout, read=_SSE_READ_TIMEOUT),
            ) as http_client, streamable_http_client(
                self._url, http_client=http_client,
            ) as (read_stream, write_stream, _get_session_id):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    tools_result = await session.list_tools()

                    self._tools = [_tool_to_dict(t) for t in tools_result.tools]
                    self._session = session
                    self._connected = True
                    ready.set_result(None)

                    assert self._closing is not None
                    await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(UpstreamConnectError(
                    f"Failed to connect to '{self._url}': {_describe(e)}"
                ))
            else:
                logger.warning(
                    "Upstream '%s' connection lost: %s",
                    self._name, _describe(e),
                )
        finally:
            self._connected = False
            self._session = None

    async def close(self) -> None:
        """Close the session and transport and stop the runner task."""
        await self._stop_runner()
        self._tools = []

    async def _stop_runner(self) -> None:
        runner = self._runner
        handshake_done = self._connected
        self._runner = None
        self._connected = False
        self._session = None
        if runner is None or runner.done():
            return
        if not handshake_done:
            # Still stuck in the handshake; it never reaches the close event
            runner.cancel()
            await asyncio.wait({runner})
            return
        if self._closing is not None:
            self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=self._timeout)
        except asyncio.TimeoutError:
            runner.cancel()
            logger.debug("Upstream '%s' did not close in time", self._name)
        except asyncio.CancelledError:
            if not runner.done():
                runner.cancel()
                raise
        except Exception:
            logger.debug("Error while closing upstream '%s'", self._name, exc_info=True)

    # -- tool calls ----------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Forward a tool call to the upstream server.

        Tool-level failures come back as a result with ``isError=True``.
        No timeout is applied; a hung upstream hangs the call.

        Raises:
            UpstreamCallError: On transport or protocol failure.
        """
        if not self._connected or self._session is None:
            raise UpstreamCallError("Not connected to upstream server")

        try:
            return await self._session.call_tool(name, arguments)
        except Exception as e:
            raise UpstreamCallError(_describe(e)) from e


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tool_to_dict(tool: Any) -> dict[str, Any]:
    """Convert an MCP Tool object to a plain dict preserving all fields."""
    return tool.model_dump(exclude_none=True)


def _describe(exc: BaseException) -> str:
    """Render an exception, unwrapping anyio exception groups."""
    inner = getattr(exc, "exceptions", None)
    if inner:
        return "; ".join(_describe(e) for e in inner)
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__

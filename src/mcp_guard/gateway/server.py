"""Guard HTTP server: session routing over MCP Streamable HTTP.

Each configured gate is served at ``/<gate name>``.  A client's first
``initialize`` POST to a gate connects the upstream (once per gate, via
the :class:`~mcp_guard.gateway.registry.GateRegistry`), mints a gated
tool mirror and a server-side transport, and registers the session once
the handshake response carries the new session id.  Later requests
carrying ``mcp-session-id`` are delivered straight to that session's
transport; ``DELETE`` ends the session.

Routing outcomes::

    /                           200 {"status": "ok", "gates": [...]}
    /<unknown>                  404 {"error": ..., "available": [...]}
    /<gate> + unknown session   404 JSON-RPC "Session not found"
    /<gate> + known session     delivered to the session transport
    /<gate> + no session        initialize POST opens a session,
                                anything else is 400, upstream
                                failure is 502

Every per-request error is converted into a response here; nothing
raised while handling a request takes the process down.
"""

from __future__ import annotations

import errno
import json
import logging
import signal
import socket
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, AsyncIterator

import anyio
import uvicorn
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import (
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
)
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from mcp_guard.gateway.config import GateConfig, GuardConfig
from mcp_guard.gateway.mcp_client import UpstreamConnectError
from mcp_guard.gateway.mirror import build_gated_server
from mcp_guard.gateway.registry import Gate, GateRegistry

logger = logging.getLogger("mcp_guard.gateway.server")

DEFAULT_HOST = "127.0.0.1"

# JSON-RPC error code clients treat as "re-initialize"
SESSION_NOT_FOUND_CODE = -32001


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PortInUseError(Exception):
    """The configured listen port is already bound."""


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """One client conversation bound to a gate."""
    session_id: str
    gate_name: str
    server: Server
    transport: StreamableHTTPServerTransport


class SessionTable:
    """Lock-protected map of session id to :class:`Session`."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def pop(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def drain(self) -> list[Session]:
        """Remove and return every session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class SessionRouter:
    """ASGI endpoint that dispatches each request per the routing table.

    Holds no per-request state; all shared state lives on the
    :class:`GuardServer` passed in.
    """

    def __init__(self, guard: GuardServer) -> None:
        self._guard = guard

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        request = Request(scope, receive)
        gate_name = request.url.path.strip("/")
        logger.debug("%s /%s", request.method, gate_name)

        try:
            await self._route(request, gate_name, scope, receive, tracking_send)
        except Exception as e:
            logger.error(
                "Error handling %s /%s: %s", request.method, gate_name, e,
                exc_info=True,
            )
            if not started:
                response = _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(e))
                await response(scope, receive, send)

    async def _route(
        self,
        request: Request,
        gate_name: str,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        config = self._guard.config

        if not gate_name:
            response = JSONResponse(
                {"status": "ok", "gates": config.gate_names},
            )
            await response(scope, receive, send)
            return

        gate_config = config.servers.get(gate_name)
        if gate_config is None:
            response = JSONResponse(
                {
                    "error": f'Unknown gate: "{gate_name}"',
                    "available": config.gate_names,
                },
                status_code=HTTPStatus.NOT_FOUND,
            )
            await response(scope, receive, send)
            return

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id:
            await self._continue_session(request, session_id, scope, receive, send)
            return

        await self._new_session(request, gate_name, gate_config, scope, receive, send)

    async def _continue_session(
        self,
        request: Request,
        session_id: str,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        sessions = self._guard.sessions
        session = sessions.get(session_id)
        if session is None:
            response = JSONResponse(
                {
                    "jsonrpc": "2.0",
                    "error": {
                        "code": SESSION_NOT_FOUND_CODE,
                        "message": "Session not found",
                    },
                    "id": None,
                },
                status_code=HTTPStatus.NOT_FOUND,
            )
            await response(scope, receive, send)
            return

        await session.transport.handle_request(scope, receive, send)

        if request.method == "DELETE":
            if sessions.pop(session_id) is not None:
                logger.info(
                    "Session %s closed by client (gate '%s')",
                    session_id, session.gate_name,
                )

    async def _new_session(
        self,
        request: Request,
        gate_name: str,
        gate_config: GateConfig,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        if request.method != "POST":
            response = _error(
                HTTPStatus.BAD_REQUEST, "New sessions must start with POST",
            )
            await response(scope, receive, send)
            return

        body = await request.body()
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            response = _error(HTTPStatus.BAD_REQUEST, "Invalid JSON body")
            await response(scope, receive, send)
            return

        if not _is_initialize(payload):
            response = _error(
                HTTPStatus.BAD_REQUEST,
                "New sessions must start with an initialize request",
            )
            await response(scope, receive, send)
            return

        try:
            gate = await self._guard.registry.get_or_connect(gate_name, gate_config)
        except UpstreamConnectError as e:
            logger.error("Upstream '%s' failed: %s", gate_name, e)
            response = _error(
                HTTPStatus.BAD_GATEWAY, f"Failed to connect to upstream: {e}",
            )
            await response(scope, receive, send)
            return

        await self._guard.open_session(
            gate_name, gate, gate_config, scope, _replay_body(body, receive), send,
        )


# ---------------------------------------------------------------------------
# GuardServer
# ---------------------------------------------------------------------------

class GuardServer:
    """Owns the gate registry, the session table and the ASGI app.

    Args:
        config: Loaded guard configuration.
        registry: Gate registry; a default one is created if omitted.
        json_response: Answer POSTs with plain JSON instead of an SSE
            stream.
    """

    def __init__(
        self,
        config: GuardConfig,
        registry: GateRegistry | None = None,
        json_response: bool = False,
    ) -> None:
        self.config = config
        self.registry = registry if registry is not None else GateRegistry()
        self.sessions = SessionTable()
        self._json_response = json_response
        self._task_group: TaskGroup | None = None
        self.app = Starlette(
            routes=[Route("/{gate_path:path}", endpoint=SessionRouter(self))],
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None

    async def open_session(
        self,
        gate_name: str,
        gate: Gate,
        gate_config: GateConfig,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        """Start a gated MCP server for a new session and hand it the
        initialize request.

        The session is registered as soon as the handshake response
        carries its id, before that response reaches the client.
        """
        if self._task_group is None:
            raise RuntimeError("Guard server is not running")

        session_id = uuid.uuid4().hex
        server = build_gated_server(gate, gate_config)
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self._json_response,
        )
        session = Session(
            session_id=session_id,
            gate_name=gate_name,
            server=server,
            transport=transport,
        )

        async def run_session(
            *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
        ) -> None:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await server.run(
                        read_stream,
                        write_stream,
                        server.create_initialization_options(),
                        stateless=False,
                    )
                except Exception:
                    logger.error(
                        "Session %s crashed", session_id, exc_info=True,
                    )
                finally:
                    if self.sessions.pop(session_id) is not None:
                        logger.info("Session %s ended", session_id)

        await self._task_group.start(run_session)

        registered = False

        async def register_on_handshake(message: Message) -> None:
            nonlocal registered
            if (
                message["type"] == "http.response.start"
                and message["status"] == HTTPStatus.OK
                and _header_value(message, MCP_SESSION_ID_HEADER) == session_id
            ):
                self.sessions.add(session)
                registered = True
                logger.info(
                    "Session %s opened on gate '%s'", session_id, gate_name,
                )
            await send(message)

        try:
            await transport.handle_request(scope, receive, register_on_handshake)
        finally:
            if not registered:
                await transport.terminate()

    async def close(self) -> None:
        """Close every upstream connection and active session."""
        await self.registry.close_all()
        for session in self.sessions.drain():
            try:
                await session.transport.terminate()
            except Exception:
                logger.warning(
                    "Error terminating session %s", session.session_id,
                    exc_info=True,
                )
        logger.info("Upstreams and sessions closed")

    async def serve(self, host: str = DEFAULT_HOST) -> None:
        """Serve until SIGTERM or SIGINT.

        Raises:
            PortInUseError: If the port is already bound.
        """
        sock = bind_socket(host, self.config.port)
        uv_config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            lifespan="on",
        )
        uv_server = _GuardUvicornServer(uv_config, self)

        logger.info("Listening on http://localhost:%d", self.config.port)
        for name, gate_config in self.config.servers.items():
            suffix = "" if gate_config.enabled else " (disabled)"
            logger.info("  %s -> %s%s", name, gate_config.url, suffix)

        await uv_server.serve(sockets=[sock])


class _GuardUvicornServer(uvicorn.Server):
    """SIGTERM tears down upstreams and sessions before stopping; SIGINT
    stops at once without per-session teardown."""

    def __init__(self, config: uvicorn.Config, guard: GuardServer) -> None:
        super().__init__(config)
        self._guard = guard
        self._graceful = True

    def handle_exit(self, sig: int, frame: Any) -> None:
        if sig == signal.SIGINT:
            self._graceful = False
            self.force_exit = True
        super().handle_exit(sig, frame)

    async def shutdown(self, sockets: list[socket.socket] | None = None) -> None:
        if self._graceful:
            await self._guard.close()
        await super().shutdown(sockets=sockets)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listen socket up front so a busy port fails fast."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(f"Port {port} already in use") from e
        raise
    return sock


def _error(status: HTTPStatus, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _is_initialize(payload: Any) -> bool:
    if isinstance(payload, dict):
        return payload.get("method") == "initialize"
    if isinstance(payload, list):
        return any(_is_initialize(item) for item in payload)
    return False


def _header_value(message: Message, name: str) -> str | None:
    target = name.lower().encode("latin-1")
    for key, value in message.get("headers", []):
        if key.lower() == target:
            return value.decode("latin-1")
    return None


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Return a ``receive`` that yields the already-read *body* first."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay

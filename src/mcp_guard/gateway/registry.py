"""Gate registry: one lazily-established upstream connection per gate.

The first request for a gate connects to its upstream; every later
session for the same gate reuses that connection for the life of the
process.  Concurrent first requests share a single in-flight connect
attempt.  A failed attempt is not cached, so the next request retries
from scratch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mcp_guard.gateway.config import GateConfig
from mcp_guard.gateway.mcp_client import (
    UpstreamConnectError,
    UpstreamConnection,
)

logger = logging.getLogger("mcp_guard.gateway.registry")


@dataclass
class Gate:
    """An established upstream connection plus its tool snapshot."""
    name: str
    connection: UpstreamConnection
    tools: list[dict[str, Any]] = field(default_factory=list)


Connector = Callable[[str, GateConfig], Awaitable[Gate]]


async def connect_gate(name: str, config: GateConfig) -> Gate:
    """Default connector: open an :class:`UpstreamConnection` for *config*."""
    connection = UpstreamConnection(
        url=config.url,
        headers=config.headers,
        timeout=config.timeout,
        name=name,
    )
    await connection.connect()
    return Gate(name=name, connection=connection, tools=connection.tools)


class GateRegistry:
    """Shared map of gate name to :class:`Gate` with single-flight creation.

    Args:
        connector: Coroutine function that establishes a gate.  Tests
            inject fakes here.
    """

    def __init__(self, connector: Connector = connect_gate) -> None:
        self._connector = connector
        self._gates: dict[str, Gate] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def get(self, name: str) -> Gate | None:
        return self._gates.get(name)

    async def get_or_connect(self, name: str, config: GateConfig) -> Gate:
        """Return the gate for *name*, connecting on first use.

        Raises:
            UpstreamConnectError: If the connect attempt fails.  Every
                caller waiting on that attempt sees the same error.
        """
        gate = self._gates.get(name)
        if gate is not None:
            return gate

        # The lock only guards the check-and-register step, never the
        # network I/O itself.
        async with self._lock:
            gate = self._gates.get(name)
            if gate is not None:
                return gate
            task = self._inflight.get(name)
            if task is None:
                task = asyncio.create_task(
                    self._connect(name, config),
                    name=f"mcp-guard-connect-{name}",
                )
                self._inflight[name] = task

        # Shielded so one waiter disconnecting does not abort the attempt
        # for everyone else.
        return await asyncio.shield(task)

    async def _connect(self, name: str, config: GateConfig) -> Gate:
        try:
            gate = await self._connector(name, config)
        except UpstreamConnectError as e:
            logger.warning("Upstream '%s' connect failed: %s", name, e)
            raise
        except Exception as e:
            logger.warning("Upstream '%s' connect failed: %s", name, e)
            raise UpstreamConnectError(str(e) or type(e).__name__) from e
        finally:
            self._inflight.pop(name, None)

        self._gates[name] = gate
        logger.info(
            "Upstream '%s' connected (%d tools)", name, len(gate.tools),
        )
        return gate

    async def close_all(self) -> None:
        """Close every cached upstream connection."""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

        gates = list(self._gates.items())
        self._gates.clear()
        for name, gate in gates:
            try:
                await gate.connection.close()
            except Exception:
                logger.warning("Error closing upstream '%s'", name, exc_info=True)
            else:
                logger.debug("Upstream '%s' closed", name)

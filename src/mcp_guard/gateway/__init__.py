"""mcp-guard gateway — gating proxy runtime for Streamable HTTP MCP servers."""

from mcp_guard.gateway.config import (
    GateConfig,
    GuardConfig,
    GuardConfigError,
    find_config,
    load_guard_config,
)
from mcp_guard.gateway.registry import Gate, GateRegistry
from mcp_guard.gateway.server import GuardServer, PortInUseError

__all__ = [
    "Gate",
    "GateConfig",
    "GateRegistry",
    "GuardConfig",
    "GuardConfigError",
    "GuardServer",
    "PortInUseError",
    "find_config",
    "load_guard_config",
]

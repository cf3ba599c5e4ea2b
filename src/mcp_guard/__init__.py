"""mcp-guard — gate your MCP servers.

A local proxy that sits in front of remote MCP servers, mirrors their
tools, and rejects calls whose arguments contain configured block
patterns before they reach the upstream.
"""

from .version import __version__
from .rules import BlockDecision, evaluate

__all__ = [
    "__version__",
    "BlockDecision",
    "evaluate",
]

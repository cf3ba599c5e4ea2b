"""
Entry point for running mcp-guard as a module.

    python -m mcp_guard
    mcp-guard
"""

import sys

from mcp_guard.cli import main

if __name__ == "__main__":
    sys.exit(main())

"""
CLI entry point for the mcp-guard command.

    mcp-guard              Toggle the background proxy on/off
    mcp-guard -d           Run in the foreground (debug)
    mcp-guard -c <path>    Use a specific config
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .gateway.config import GuardConfig, GuardConfigError, find_config, load_guard_config
from .toggle import ProcessToggle, ToggleError
from .utils.term import configure_logging, cyan, dim, green, red, yellow
from .version import __version__

logger = logging.getLogger("mcp_guard.cli")

EPILOG = """\
Config is auto-discovered by walking up from the current directory,
then from ~/.mcp-guard.json.

Example config:
  {
    "port": 6427,
    "servers": {
      "supabase_prod": {
        "url": "https://mcp.supabase.com/mcp?project_ref=xxx",
        "block": ["DELETE", "DROP", "UPDATE"],
        "blockMessage": "Blocked in production"
      }
    }
  }

Then in mcp.json:
  "supabase_prod": { "type": "http", "url": "http://localhost:6427/supabase_prod" }
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-guard",
        description="Gate your MCP servers. With no flags, toggles the proxy on/off.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        metavar="PATH",
        help="Path to the config file (default: auto-discovered)",
    )
    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Run in the foreground with verbose logging",
    )
    # Used by the detached background process
    parser.add_argument("--serve", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument(
        "--version", action="version", version=f"mcp-guard {__version__}",
    )
    return parser


def resolve_config_path(explicit: Optional[str]) -> Optional[Path]:
    """Explicit path (resolved), else the discovered config, else ``None``."""
    if explicit:
        return Path(explicit).expanduser().resolve()
    return find_config()


def format_gate_lines(config: GuardConfig) -> list[str]:
    lines = []
    for name, gate in config.servers.items():
        line = f"  {cyan(name)} {dim('→')} {dim(gate.url)}"
        if not gate.enabled:
            line += f" {yellow('(disabled)')}"
        lines.append(line)
    return lines


def _exit_on_sigterm(signum, frame):
    raise SystemExit(0)


def run_server(config: GuardConfig, verbose: bool = False) -> int:
    """Serve in this process until signalled.  Returns the exit code.

    uvicorn re-raises the signal that stopped it once it has shut down,
    so SIGTERM is mapped to a clean exit for the duration of the run.
    """
    from .gateway.server import GuardServer, PortInUseError

    configure_logging(verbose=verbose)
    server = GuardServer(config)
    previous = signal.signal(signal.SIGTERM, _exit_on_sigterm)
    try:
        asyncio.run(server.serve())
    except PortInUseError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        pass
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1
    except Exception as e:
        logger.error("Server failed: %s", e, exc_info=True)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Entry point for the ``mcp-guard`` command."""
    args = build_parser().parse_args(argv)
    try:
        return _run(args)
    except Exception as e:
        print(red(str(e) or type(e).__name__))
        return 1


def _run(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config)
    if config_path is None:
        print(
            red("No .mcp-guard.json found")
            + dim(f" (searched up from {Path.cwd()})")
        )
        return 1

    try:
        config = load_guard_config(config_path)
    except GuardConfigError as e:
        print(red(str(e)))
        return 1

    if args.serve:
        return run_server(config, verbose=args.debug)

    if args.debug:
        print(green("MCP Guard") + dim(f" → http://localhost:{config.port} (debug)"))
        return run_server(config, verbose=True)

    toggle = ProcessToggle(str(config_path), config.port)
    try:
        status = toggle.toggle()
    except ToggleError as e:
        print(red(str(e)))
        return 1

    if not status.running:
        print(red("MCP Guard off"))
        return 0

    print(green("MCP Guard on") + dim(f" → {status.address}"))
    print(dim(f"config: {config_path}"))
    for line in format_gate_lines(config):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())

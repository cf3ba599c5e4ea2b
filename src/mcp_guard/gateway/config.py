"""Guard config loader, validator and discovery.

Parses ``.mcp-guard.json`` (or a YAML equivalent) into validated
dataclasses, interpolates environment variables in upstream URLs and
headers, and locates the config file by walking up from the working
directory.

Config shape::

    {
      "port": 6427,
      "servers": {
        "supabase_prod": {
          "url": "https://mcp.supabase.com/mcp?project_ref=${PROJECT_REF}",
          "headers": {"Authorization": "Bearer ${SUPABASE_TOKEN}"},
          "block": ["DELETE", "DROP", "UPDATE"],
          "blockMessage": "Blocked in production"
        },
        "docs": {"url": "http://localhost:9000/mcp", "enabled": false}
      }
    }

Clients then point at ``http://localhost:6427/<gate name>``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

logger = logging.getLogger("mcp_guard.gateway.config")

DEFAULT_PORT = 6427
DEFAULT_CONNECT_TIMEOUT = 30.0

CONFIG_NAMES = (".mcp-guard.json", ".mcp-guard.yaml", ".mcp-guard.yml")

# Gate names become the first path segment of the proxy URL
_GATE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

# Pattern for ${VAR_NAME} interpolation
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

_KNOWN_GATE_FIELDS = frozenset({
    "url", "enabled", "block", "blockMessage", "headers", "timeout",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GuardConfigError(Exception):
    """Raised when the guard config is missing or invalid."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GateConfig:
    """Static configuration for one named upstream.

    Attributes:
        name: Gate name, also the proxy path segment.
        url: Upstream Streamable HTTP endpoint.
        enabled: When ``False`` the gate still proxies but never blocks.
        block: Case-insensitive substring patterns, checked in order.
        block_message: Replaces the default ``Blocked: matched pattern``
            text in block responses.
        headers: Extra HTTP headers sent on every upstream request.
        timeout: Seconds allowed for the upstream handshake and tool
            discovery.  Tool calls themselves are not bounded.
    """
    name: str
    url: str
    enabled: bool = True
    block: tuple[str, ...] = ()
    block_message: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_CONNECT_TIMEOUT

    @property
    def blocking(self) -> bool:
        """Whether calls through this gate go through the rule engine."""
        return self.enabled is not False and len(self.block) > 0


@dataclass(frozen=True)
class GuardConfig:
    """Process-wide configuration, loaded once at startup."""
    servers: dict[str, GateConfig]
    port: int = DEFAULT_PORT
    source_path: str = ""

    @property
    def gate_names(self) -> list[str]:
        return list(self.servers)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def load_guard_config(config_path: str | os.PathLike) -> GuardConfig:
    """Load and validate a guard config file.

    ``.yaml`` / ``.yml`` files are parsed as YAML, anything else as JSON.

    Raises:
        GuardConfigError: If the file is missing, unparsable, or fails
            validation.
    """
    config_file = Path(config_path).expanduser().resolve()
    if not config_file.is_file():
        raise GuardConfigError(f"Config not found: {config_file}")

    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise GuardConfigError(f"Cannot read config {config_file}: {e}") from e

    raw = parse_config_text(text, yaml_format=config_file.suffix in (".yaml", ".yml"))
    config = parse_guard_config(raw)
    return GuardConfig(
        servers=config.servers,
        port=config.port,
        source_path=str(config_file),
    )


def parse_config_text(text: str, *, yaml_format: bool = False) -> Any:
    """Decode config text, rejecting duplicate keys in either format."""
    if yaml_format:
        from mcp_guard.utils.safe_yaml import safe_yaml_load

        try:
            return safe_yaml_load(text)
        except (yaml.YAMLError, ValueError) as e:
            raise GuardConfigError(f"Invalid YAML in config file: {e}") from e

    from mcp_guard.utils.safe_json import safe_json_loads

    try:
        return safe_json_loads(text)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError subclass
        raise GuardConfigError(f"Invalid JSON in config file: {e}") from e


def parse_guard_config(raw: Any) -> GuardConfig:
    """Validate an already-decoded config mapping."""
    if not isinstance(raw, dict):
        raise GuardConfigError(
            "Config file must contain a mapping (got "
            f"{type(raw).__name__})"
        )

    port_raw = raw.get("port")
    # bool is an int subclass; reject it before falling back to the default
    if isinstance(port_raw, bool) or (
        port_raw is not None and not isinstance(port_raw, int)
    ):
        raise GuardConfigError(
            f"port must be an integer, got {port_raw!r}"
        )
    port = port_raw or DEFAULT_PORT
    if not 1 <= port <= 65535:
        raise GuardConfigError(f"port out of range: {port}")

    servers_raw = raw.get("servers")
    if not servers_raw or not isinstance(servers_raw, dict):
        raise GuardConfigError("Config must have at least one server")

    servers: dict[str, GateConfig] = {}
    for name, gate_raw in servers_raw.items():
        servers[str(name)] = _parse_gate(str(name), gate_raw)

    return GuardConfig(servers=servers, port=port)


def _parse_gate(name: str, raw: Any) -> GateConfig:
    """Parse and validate a single ``servers`` entry."""
    prefix = f"servers.{name}"

    if not _GATE_NAME_PATTERN.match(name):
        raise GuardConfigError(
            f"{prefix}: gate name contains invalid characters. "
            f"Use letters, digits, '.', '_' and '-' only."
        )

    if not isinstance(raw, dict):
        raise GuardConfigError(
            f"{prefix}: expected a mapping, got {type(raw).__name__}"
        )

    for key in raw:
        if key not in _KNOWN_GATE_FIELDS:
            logger.warning("%s: unknown field '%s' ignored", prefix, key)

    url_raw = raw.get("url")
    if not url_raw or not isinstance(url_raw, str):
        raise GuardConfigError(f"{prefix}: missing required field 'url'")
    url = _interpolate_env(url_raw, f"{prefix}.url")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise GuardConfigError(
            f"{prefix}.url must be an http(s) URL, got {url_raw!r}"
        )

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise GuardConfigError(
            f"{prefix}.enabled must be true or false, got {enabled!r}"
        )

    block_raw = raw.get("block", [])
    if block_raw is None:
        block_raw = []
    if not isinstance(block_raw, list):
        raise GuardConfigError(f"{prefix}.block must be a list of strings")
    block: list[str] = []
    for idx, pattern in enumerate(block_raw):
        if not isinstance(pattern, str):
            raise GuardConfigError(
                f"{prefix}.block[{idx}] must be a string, got {pattern!r}"
            )
        # An empty pattern is a substring of everything
        if not pattern.strip():
            raise GuardConfigError(f"{prefix}.block[{idx}] is empty")
        block.append(pattern)

    block_message = raw.get("blockMessage")
    if block_message is not None and not isinstance(block_message, str):
        raise GuardConfigError(f"{prefix}.blockMessage must be a string")

    headers: dict[str, str] = {}
    headers_raw = raw.get("headers")
    if headers_raw is not None:
        if not isinstance(headers_raw, dict):
            raise GuardConfigError(f"{prefix}.headers must be a mapping")
        for key, value in headers_raw.items():
            headers[str(key)] = _interpolate_env(
                str(value), f"{prefix}.headers.{key}",
            )

    timeout_raw = raw.get("timeout", DEFAULT_CONNECT_TIMEOUT)
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError):
        raise GuardConfigError(
            f"{prefix}.timeout must be a number, got {timeout_raw!r}"
        ) from None
    if timeout <= 0:
        raise GuardConfigError(f"{prefix}.timeout must be positive")

    return GateConfig(
        name=name,
        url=url,
        enabled=enabled,
        block=tuple(block),
        block_message=block_message,
        headers=headers,
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Environment variable interpolation
# ---------------------------------------------------------------------------

def _interpolate_env(value: str, where: str) -> str:
    """Resolve ``${VAR_NAME}`` patterns from ``os.environ``.

    Raises:
        GuardConfigError: If a referenced env var is not set.
    """
    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        resolved = os.environ.get(var_name)
        if resolved is None:
            raise GuardConfigError(
                f"{where}: environment variable '{var_name}' is not set"
            )
        return resolved

    return _ENV_VAR_PATTERN.sub(_replacer, value)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def find_config(
    start: str | os.PathLike | None = None,
    home: str | os.PathLike | None = None,
) -> Path | None:
    """Locate a config file by walking up from *start*.

    The walk stops after the home directory or the filesystem root,
    whichever comes first.  Falls back to the home directory itself, so
    ``~/.mcp-guard.json`` acts as the global config.
    """
    directory = Path(start if start is not None else Path.cwd()).resolve()
    home_dir = Path(home if home is not None else Path.home()).resolve()

    while True:
        found = _config_in(directory)
        if found is not None:
            return found
        parent = directory.parent
        if parent == directory or directory == home_dir:
            break
        directory = parent

    return _config_in(home_dir)


def _config_in(directory: Path) -> Path | None:
    for name in CONFIG_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None

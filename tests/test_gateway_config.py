"""Tests for guard config loading, validation and discovery."""

import json
import logging

import pytest

from mcp_guard.gateway.config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_PORT,
    GuardConfigError,
    find_config,
    load_guard_config,
    parse_guard_config,
)


def _write(path, data):
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


def _minimal(**gate):
    return {"servers": {"db": {"url": "http://localhost:9000/mcp", **gate}}}


# =============================================================================
# 1. VALID CONFIGS
# =============================================================================

class TestValidConfig:
    def test_full_config(self, tmp_path):
        path = _write(tmp_path / ".mcp-guard.json", {
            "port": 7000,
            "servers": {
                "supabase_prod": {
                    "url": "https://mcp.supabase.com/mcp?project_ref=abc",
                    "block": ["DELETE", "DROP"],
                    "blockMessage": "Blocked in production",
                    "headers": {"Authorization": "Bearer t"},
                    "timeout": 5,
                },
                "docs": {"url": "http://localhost:9000/mcp", "enabled": False},
            },
        })
        config = load_guard_config(path)
        assert config.port == 7000
        assert config.gate_names == ["supabase_prod", "docs"]
        assert config.source_path == str(path.resolve())

        prod = config.servers["supabase_prod"]
        assert prod.name == "supabase_prod"
        assert prod.block == ("DELETE", "DROP")
        assert prod.block_message == "Blocked in production"
        assert prod.headers == {"Authorization": "Bearer t"}
        assert prod.timeout == 5.0
        assert prod.blocking

        docs = config.servers["docs"]
        assert docs.enabled is False
        assert not docs.blocking

    def test_defaults(self):
        config = parse_guard_config(_minimal())
        gate = config.servers["db"]
        assert config.port == DEFAULT_PORT
        assert gate.enabled is True
        assert gate.block == ()
        assert gate.block_message is None
        assert gate.headers == {}
        assert gate.timeout == DEFAULT_CONNECT_TIMEOUT
        assert not gate.blocking

    def test_zero_port_uses_default(self):
        assert parse_guard_config({"port": 0, **_minimal()}).port == DEFAULT_PORT

    def test_yaml_config(self, tmp_path):
        path = _write(tmp_path / ".mcp-guard.yaml", (
            "port: 6500\n"
            "servers:\n"
            "  db:\n"
            "    url: http://localhost:9000/mcp\n"
            "    block: [DROP]\n"
        ))
        config = load_guard_config(path)
        assert config.port == 6500
        assert config.servers["db"].block == ("DROP",)

    def test_unknown_field_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="mcp_guard.gateway.config"):
            parse_guard_config(_minimal(blok=["DROP"]))
        assert "unknown field 'blok'" in caplog.text


# =============================================================================
# 2. INVALID CONFIGS
# =============================================================================

class TestInvalidConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(GuardConfigError, match="Config not found"):
            load_guard_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = _write(tmp_path / "c.json", "{not json")
        with pytest.raises(GuardConfigError, match="Invalid JSON"):
            load_guard_config(path)

    def test_duplicate_json_keys(self, tmp_path):
        path = _write(
            tmp_path / "c.json",
            '{"servers": {"db": {"url": "http://a/mcp"}, '
            '"db": {"url": "http://b/mcp"}}}',
        )
        with pytest.raises(GuardConfigError, match="Duplicate"):
            load_guard_config(path)

    def test_duplicate_yaml_keys(self, tmp_path):
        path = _write(tmp_path / "c.yml", (
            "servers:\n"
            "  db: {url: 'http://a/mcp'}\n"
            "servers:\n"
            "  db: {url: 'http://b/mcp'}\n"
        ))
        with pytest.raises(GuardConfigError, match="Duplicate"):
            load_guard_config(path)

    @pytest.mark.parametrize("raw", [
        {},
        {"servers": {}},
        {"servers": []},
        {"port": 6427},
    ])
    def test_no_servers(self, raw):
        with pytest.raises(GuardConfigError, match="at least one server"):
            parse_guard_config(raw)

    def test_not_a_mapping(self):
        with pytest.raises(GuardConfigError, match="mapping"):
            parse_guard_config(["servers"])

    @pytest.mark.parametrize("port", ["6427", True, 70000, -1, 1.5])
    def test_bad_port(self, port):
        with pytest.raises(GuardConfigError, match="port"):
            parse_guard_config({"port": port, **_minimal()})

    @pytest.mark.parametrize("port", [False, True])
    def test_boolean_port_rejected(self, port):
        """false must not fall through to the default port."""
        with pytest.raises(GuardConfigError, match="port must be an integer"):
            parse_guard_config({"port": port, **_minimal()})

    @pytest.mark.parametrize("url", [None, "", "ftp://host/x", "localhost:9000", 42])
    def test_bad_url(self, url):
        raw = {"servers": {"db": {"url": url}}}
        with pytest.raises(GuardConfigError, match="url"):
            parse_guard_config(raw)

    @pytest.mark.parametrize("name", ["has space", "a/b", "x?y", ""])
    def test_bad_gate_name(self, name):
        raw = {"servers": {name: {"url": "http://localhost/mcp"}}}
        with pytest.raises(GuardConfigError, match="gate name"):
            parse_guard_config(raw)

    def test_gate_not_mapping(self):
        with pytest.raises(GuardConfigError, match="expected a mapping"):
            parse_guard_config({"servers": {"db": "http://localhost/mcp"}})

    @pytest.mark.parametrize("block", ["DROP", [1], ["DROP", None]])
    def test_bad_block(self, block):
        with pytest.raises(GuardConfigError, match="block"):
            parse_guard_config(_minimal(block=block))

    def test_blank_pattern_rejected(self):
        with pytest.raises(GuardConfigError, match=r"block\[1\] is empty"):
            parse_guard_config(_minimal(block=["DROP", "  "]))

    def test_enabled_must_be_bool(self):
        with pytest.raises(GuardConfigError, match="enabled"):
            parse_guard_config(_minimal(enabled="no"))

    def test_block_message_must_be_string(self):
        with pytest.raises(GuardConfigError, match="blockMessage"):
            parse_guard_config(_minimal(blockMessage=["x"]))

    def test_headers_must_be_mapping(self):
        with pytest.raises(GuardConfigError, match="headers"):
            parse_guard_config(_minimal(headers=["Authorization"]))

    @pytest.mark.parametrize("timeout", [0, -5, "soon"])
    def test_bad_timeout(self, timeout):
        with pytest.raises(GuardConfigError, match="timeout"):
            parse_guard_config(_minimal(timeout=timeout))


# =============================================================================
# 3. ENVIRONMENT INTERPOLATION
# =============================================================================

class TestEnvInterpolation:
    def test_url_and_headers(self, monkeypatch):
        monkeypatch.setenv("MCPG_REF", "proj123")
        monkeypatch.setenv("MCPG_TOKEN", "secret")
        gate = parse_guard_config(_minimal(
            url="https://mcp.example.com/mcp?project_ref=${MCPG_REF}",
            headers={"Authorization": "Bearer ${MCPG_TOKEN}"},
        )).servers["db"]
        assert gate.url == "https://mcp.example.com/mcp?project_ref=proj123"
        assert gate.headers == {"Authorization": "Bearer secret"}

    def test_unset_variable(self, monkeypatch):
        monkeypatch.delenv("MCPG_MISSING", raising=False)
        with pytest.raises(GuardConfigError, match="MCPG_MISSING"):
            parse_guard_config(_minimal(headers={"X-Key": "${MCPG_MISSING}"}))

    def test_block_patterns_not_interpolated(self, monkeypatch):
        monkeypatch.setenv("MCPG_REF", "x")
        gate = parse_guard_config(_minimal(block=["${MCPG_REF}"])).servers["db"]
        assert gate.block == ("${MCPG_REF}",)


# =============================================================================
# 4. DISCOVERY
# =============================================================================

class TestFindConfig:
    def test_found_in_start_dir(self, tmp_path):
        config = _write(tmp_path / ".mcp-guard.json", _minimal())
        assert find_config(start=tmp_path, home=tmp_path) == config.resolve()

    def test_walks_up(self, tmp_path):
        home = tmp_path / "home"
        nested = home / "projects" / "app" / "src"
        nested.mkdir(parents=True)
        config = _write(home / "projects" / ".mcp-guard.json", _minimal())
        assert find_config(start=nested, home=home) == config.resolve()

    def test_nearest_wins(self, tmp_path):
        home = tmp_path / "home"
        project = home / "project"
        project.mkdir(parents=True)
        _write(home / ".mcp-guard.json", _minimal())
        nearest = _write(project / ".mcp-guard.json", _minimal())
        assert find_config(start=project, home=home) == nearest.resolve()

    def test_home_fallback_outside_home(self, tmp_path):
        home = tmp_path / "home"
        elsewhere = tmp_path / "elsewhere" / "deep"
        home.mkdir()
        elsewhere.mkdir(parents=True)
        global_config = _write(home / ".mcp-guard.json", _minimal())
        assert find_config(start=elsewhere, home=home) == global_config.resolve()

    def test_yaml_name_discovered(self, tmp_path):
        config = _write(tmp_path / ".mcp-guard.yml", "servers: {}\n")
        assert find_config(start=tmp_path, home=tmp_path) == config.resolve()

    def test_not_found(self, tmp_path):
        home = tmp_path / "home"
        start = home / "a"
        start.mkdir(parents=True)
        assert find_config(start=start, home=home) is None

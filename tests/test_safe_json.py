"""Tests for duplicate key detection in JSON and YAML config parsing.

A repeated key would silently replace an earlier gate or rule list, so
both parsers reject duplicates at every nesting level.
"""

import io

import pytest

from mcp_guard.utils.safe_json import safe_json_load, safe_json_loads
from mcp_guard.utils.safe_yaml import safe_yaml_load


# ===========================================================================
# safe_json_loads
# ===========================================================================


class TestSafeJsonLoads:

    def test_valid_config_parses(self):
        data = safe_json_loads('{"port": 6427, "servers": {"db": {"url": "http://x"}}}')
        assert data == {"port": 6427, "servers": {"db": {"url": "http://x"}}}

    def test_duplicate_top_level_key(self):
        with pytest.raises(ValueError, match="Duplicate JSON key.*'servers'"):
            safe_json_loads('{"servers": {}, "servers": {}}')

    def test_duplicate_gate_name(self):
        """Two gates with the same name would silently drop one."""
        text = '{"servers": {"db": {"url": "a"}, "db": {"url": "b"}}}'
        with pytest.raises(ValueError, match="Duplicate JSON key.*'db'"):
            safe_json_loads(text)

    def test_duplicate_inside_list_item(self):
        with pytest.raises(ValueError, match="Duplicate JSON key.*'k'"):
            safe_json_loads('[{"k": 1, "k": 2}]')

    def test_same_key_in_sibling_objects_allowed(self):
        data = safe_json_loads('{"a": {"url": 1}, "b": {"url": 2}}')
        assert data["a"]["url"] == 1
        assert data["b"]["url"] == 2

    @pytest.mark.parametrize("constant", ["NaN", "Infinity", "-Infinity"])
    def test_non_standard_constants_rejected(self, constant):
        with pytest.raises(ValueError, match="Non-standard JSON constant"):
            safe_json_loads(f'{{"timeout": {constant}}}')

    def test_malformed_json_raises_value_error(self):
        with pytest.raises(ValueError):
            safe_json_loads("{not json")


class TestSafeJsonLoad:

    def test_file_object(self):
        assert safe_json_load(io.StringIO('{"port": 1}')) == {"port": 1}

    def test_file_object_duplicate(self):
        with pytest.raises(ValueError, match="Duplicate JSON key"):
            safe_json_load(io.StringIO('{"port": 1, "port": 2}'))


# ===========================================================================
# safe_yaml_load
# ===========================================================================


class TestSafeYamlLoad:

    def test_valid_yaml(self):
        text = "port: 6427\nservers:\n  db:\n    url: http://x\n    block: [DROP]\n"
        assert safe_yaml_load(text) == {
            "port": 6427,
            "servers": {"db": {"url": "http://x", "block": ["DROP"]}},
        }

    def test_duplicate_top_level_key(self):
        text = "servers: {}\nservers: {}\n"
        with pytest.raises(ValueError, match="Duplicate YAML key.*'servers'.*line"):
            safe_yaml_load(text)

    def test_nested_duplicate(self):
        text = "servers:\n  db:\n    url: a\n    url: b\n"
        with pytest.raises(ValueError, match="Duplicate YAML key.*'url'"):
            safe_yaml_load(text)

    def test_stream_input(self):
        assert safe_yaml_load(io.StringIO("a: 1\n")) == {"a": 1}

    def test_unsafe_tags_rejected(self):
        import yaml

        with pytest.raises(yaml.YAMLError):
            safe_yaml_load("!!python/object/apply:os.system ['true']\n")

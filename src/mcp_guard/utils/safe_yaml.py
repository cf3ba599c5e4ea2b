"""YAML config loading that rejects duplicate mapping keys.

``yaml.safe_load`` lets a second ``servers:`` block replace the first
without a word; this loader raises instead.
"""

from __future__ import annotations

from collections.abc import Hashable
from typing import IO, Union

import yaml


class StrictSafeLoader(yaml.SafeLoader):
    """``SafeLoader`` whose mappings must have unique keys."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            self.flatten_mapping(node)
            keys = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=deep)
                if not isinstance(key, Hashable):
                    continue
                if key in keys:
                    raise ValueError(
                        f"Duplicate YAML key: {key!r} "
                        f"(line {key_node.start_mark.line + 1})"
                    )
                keys.add(key)
        return super().construct_mapping(node, deep=deep)


def safe_yaml_load(stream: Union[str, IO[str]]) -> object:
    """``yaml.safe_load`` with duplicate key detection."""
    return yaml.load(stream, Loader=StrictSafeLoader)

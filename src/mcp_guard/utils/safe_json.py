"""Strict JSON decoding for config files.

``json.loads`` keeps the last value of a repeated key, so a config that
names the same gate twice would silently lose one of them.  It also
accepts ``NaN`` and ``Infinity``.  Both are errors here.
"""

from __future__ import annotations

import json
from typing import IO, Any


def _unique_object(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    obj: dict[str, Any] = {}
    for key, value in pairs:
        if key in obj:
            raise ValueError(f"Duplicate JSON key: {key!r}")
        obj[key] = value
    return obj


def _no_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant not allowed: {name!r}")


_STRICT = {"object_pairs_hook": _unique_object, "parse_constant": _no_constant}


def safe_json_loads(s: str) -> Any:
    """``json.loads`` that raises ``ValueError`` on duplicate keys or
    NaN/Infinity at any depth."""
    return json.loads(s, **_STRICT)


def safe_json_load(fp: IO[str]) -> Any:
    return json.load(fp, **_STRICT)

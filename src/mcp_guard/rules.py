"""
Block rule engine.

Decides whether a tool call must be rejected before it reaches the
upstream server.  Every string leaf reachable from the call arguments
(mapping values and sequence elements, at any depth) is compared
against the gate's block patterns using case-insensitive substring
containment.

Patterns are checked in configured order, and for each pattern the
string leaves are checked in depth-first document order.  The first
hit wins, so on multiple matches the reported pattern is the earliest
one in the pattern list.

Mapping keys, numbers, booleans and ``None`` are never matched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence


@dataclass(frozen=True)
class BlockDecision:
    """Outcome of :func:`evaluate`.

    Attributes:
        blocked: ``True`` when some string leaf contains a pattern.
        matched_pattern: The pattern as configured (original casing),
            or ``None`` when not blocked.
    """
    blocked: bool
    matched_pattern: Optional[str] = None


ALLOW = BlockDecision(blocked=False)


def iter_string_leaves(value: Any) -> Iterator[str]:
    """Yield every string reachable from *value*, depth-first.

    Walks mappings (values only) and lists/tuples.  Iterative so that
    deeply nested payloads cannot exhaust the interpreter stack.
    """
    stack: list[Any] = [value]
    while stack:
        current = stack.pop()
        if isinstance(current, str):
            yield current
        elif isinstance(current, dict):
            stack.extend(reversed(list(current.values())))
        elif isinstance(current, (list, tuple)):
            stack.extend(reversed(current))
        # bool, int, float, None: nothing to match


def evaluate(arguments: Any, patterns: Sequence[str]) -> BlockDecision:
    """Check call *arguments* against block *patterns*.

    Args:
        arguments: Arbitrary JSON-like value (mapping, sequence, scalar
            or ``None``).
        patterns: Block patterns, matched case-insensitively as
            substrings.

    Returns:
        ``BlockDecision(blocked=True, matched_pattern=p)`` for the first
        pattern found in any string leaf, otherwise :data:`ALLOW`.
    """
    if not patterns:
        return ALLOW

    values = [v.casefold() for v in iter_string_leaves(arguments)]
    if not values:
        return ALLOW

    for pattern in patterns:
        needle = pattern.casefold()
        for value in values:
            if needle in value:
                return BlockDecision(blocked=True, matched_pattern=pattern)
    return ALLOW

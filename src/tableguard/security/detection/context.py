"""Context flattening and entropy helpers."""

import logging
import math
from collections import Counter
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)


def flatten_context(
    context: Mapping[str, Any],
    max_depth: int = 32,
    max_fields: int = 512,
    max_field_chars: int = 4096,
) -> dict[str, str]:
    """Flatten a nested context into dotted-path -> string pairs.

    Traversal uses an explicit stack, so attacker-controlled nesting cannot
    exhaust the interpreter's recursion limit. Containers deeper than
    ``max_depth`` are skipped and at most ``max_fields`` strings are
    collected. Strings longer than ``max_field_chars`` keep their head and
    tail, which bounds the cost of scanning padded payloads.

    Args:
        context: Security context (mappings, lists and scalars)
        max_depth: Maximum container nesting followed
        max_fields: Maximum number of string fields returned
        max_field_chars: Maximum characters kept per field

    Returns:
        Ordered mapping of dotted path to string value

    Example:
        >>> flatten_context({"a": {"b": "x"}, "c": ["y", 3]})
        {'a.b': 'x', 'c.0': 'y'}
    """
    fields: dict[str, str] = {}
    # Reversed pushes keep document order when popping
    stack: list[tuple[str, Any, int]] = [
        (str(k), v, 1) for k, v in reversed(list(context.items()))
    ]

    while stack:
        path, value, depth = stack.pop()

        if isinstance(value, str):
            if len(fields) >= max_fields:
                logger.debug("Context field cap reached (%d)", max_fields)
                break
            fields[path] = clip_field(value, max_field_chars)
            continue

        if isinstance(value, Mapping):
            children = [(f"{path}.{k}", v) for k, v in value.items()]
        elif isinstance(value, list | tuple):
            children = [(f"{path}.{i}", v) for i, v in enumerate(value)]
        else:
            continue

        if depth >= max_depth:
            logger.debug("Context depth cap reached at %s", path)
            continue
        stack.extend((p, v, depth + 1) for p, v in reversed(children))

    return fields


def shannon_entropy(value: str) -> float:
    """Shannon entropy of a string in bits per character."""
    if not value:
        return 0.0
    length = len(value)
    return -sum(
        (count / length) * math.log2(count / length) for count in Counter(value).values()
    )


def clip_field(value: str, max_chars: int) -> str:
    """Head and tail of value, joined by a newline, within max_chars."""
    if len(value) <= max_chars:
        return value
    half = max(1, (max_chars - 1) // 2)
    return value[:half] + "\n" + value[-half:]

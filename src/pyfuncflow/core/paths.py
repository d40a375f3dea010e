"""Reference paths into JSON data contexts.

A reference path addresses one node of a JSON document:

    $                 the whole document
    $.order.total     object members
    $.items[0]        array elements
    $['first name']   members whose names need quoting

Only single-node references are supported; there are no wildcards,
filters or slices. Every data-flow field of a state (input_path,
result_path, output_path, the ``.$`` keys of parameters templates and
Choice variables) is a reference path.
"""

from __future__ import annotations

import copy
import re
from functools import lru_cache
from typing import Any

from pyfuncflow.core.errors import DataPathError

Segment = str | int

_NAME = re.compile(r"[^.\[\]'\"]+")
_INDEX = re.compile(r"\[(\d+)\]")
_QUOTED = re.compile(r"\[(?:'([^']*)'|\"([^\"]*)\")\]")

_MISSING = object()


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[Segment, ...]:
    """Split a reference path into member names and array indexes.

    Raises:
        ValueError: If the path is not a valid reference path
    """
    if not isinstance(path, str) or not path.startswith("$"):
        raise ValueError(f"reference path must start with '$': {path!r}")

    segments: list[Segment] = []
    pos = 1
    while pos < len(path):
        char = path[pos]
        if char == ".":
            match = _NAME.match(path, pos + 1)
            if match is None:
                raise ValueError(f"expected a member name at offset {pos + 1} in {path!r}")
            segments.append(match.group(0))
            pos = match.end()
        elif char == "[":
            match = _INDEX.match(path, pos)
            if match is not None:
                segments.append(int(match.group(1)))
                pos = match.end()
                continue
            match = _QUOTED.match(path, pos)
            if match is None:
                raise ValueError(f"malformed bracket at offset {pos} in {path!r}")
            name = match.group(1) if match.group(1) is not None else match.group(2)
            segments.append(name)
            pos = match.end()
        else:
            raise ValueError(f"unexpected {char!r} at offset {pos} in {path!r}")
    return tuple(segments)


def is_valid_path(path: Any) -> bool:
    """Check a reference path without raising."""
    try:
        parse_path(path)
    except (ValueError, TypeError):
        return False
    return True


def lookup(data: Any, path: str) -> tuple[bool, Any]:
    """Resolve a path, reporting absence instead of raising.

    Returns:
        (True, value) if the node exists, (False, None) otherwise
    """
    node = data
    for segment in parse_path(path):
        if isinstance(segment, int):
            if not isinstance(node, list) or segment >= len(node):
                return False, None
            node = node[segment]
        else:
            if not isinstance(node, dict) or segment not in node:
                return False, None
            node = node[segment]
    return True, node


def get_path(data: Any, path: str) -> Any:
    """Resolve a path that must exist.

    Raises:
        DataPathError: If the path is invalid or does not resolve
    """
    try:
        found, value = lookup(data, path)
    except ValueError as e:
        raise DataPathError(str(e)) from e
    if not found:
        raise DataPathError(f"path {path} did not match anything in the data context")
    return value


def set_path(data: Any, path: str, value: Any) -> Any:
    """Return a copy of ``data`` with ``value`` placed at ``path``.

    Missing intermediate objects are created. ``$`` replaces the whole
    document.

    Raises:
        DataPathError: If an intermediate node is not a container
    """
    try:
        segments = parse_path(path)
    except ValueError as e:
        raise DataPathError(str(e)) from e
    if not segments:
        return copy.deepcopy(value)

    root = copy.deepcopy(data)
    if not isinstance(root, (dict, list)):
        root = {}
    node = root
    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if isinstance(segment, int):
            if not isinstance(node, list) or segment >= len(node):
                raise DataPathError(f"cannot index {path}: element {segment} does not exist")
            if last:
                node[segment] = copy.deepcopy(value)
            else:
                node = node[segment]
            continue
        if not isinstance(node, dict):
            raise DataPathError(f"cannot set {path}: {segment!r} is not inside an object")
        if last:
            node[segment] = copy.deepcopy(value)
        else:
            child = node.get(segment, _MISSING)
            if child is _MISSING or not isinstance(child, (dict, list)):
                child = {}
                node[segment] = child
            node = child
    return root


def apply_template(template: Any, data: Any) -> Any:
    """Build a JSON value from a parameters/result_selector template.

    Object keys ending in ``.$`` take their value from the path they name;
    the suffix is dropped from the output key. Everything else is copied.

    Example:
        apply_template({"id.$": "$.order.id", "kind": "refund"},
                       {"order": {"id": 7}})
        # {"id": 7, "kind": "refund"}
    """
    if isinstance(template, dict):
        built = {}
        for key, value in template.items():
            if key.endswith(".$"):
                if not isinstance(value, str):
                    raise DataPathError(f"template key {key!r} must map to a path string")
                built[key[:-2]] = copy.deepcopy(get_path(data, value))
            else:
                built[key] = apply_template(value, data)
        return built
    if isinstance(template, list):
        return [apply_template(item, data) for item in template]
    return copy.deepcopy(template)


def select_input(raw: Any, input_path: str | None) -> Any:
    """Apply input_path to a state's raw input."""
    if input_path is None:
        return raw
    return get_path(raw, input_path)


def merge_result(raw: Any, result: Any, result_path: str | None) -> Any:
    """Place a state's result into its raw input.

    An absent result_path replaces the input with the result.
    """
    if result_path is None:
        return result
    return set_path(raw, result_path, result)


def select_output(data: Any, output_path: str | None) -> Any:
    """Apply output_path to a state's output."""
    if output_path is None:
        return data
    return get_path(data, output_path)


__all__ = [
    "parse_path",
    "is_valid_path",
    "lookup",
    "get_path",
    "set_path",
    "apply_template",
    "select_input",
    "merge_result",
    "select_output",
]

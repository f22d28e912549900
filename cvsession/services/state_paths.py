"""Dotted-path access and diffing over JSON session documents.

Paths address the JSON-mode dump of an EnhancedSessionState, e.g.
"feature_states.podcast-generation.enabled" or "completed_steps.0".
Numeric segments index into lists. Keys containing "." are not addressable.
"""

import copy
from typing import Any

_MISSING = object()


class PathError(KeyError):
    """A path does not resolve inside the document."""


def split_path(path: str) -> list[str]:
    """Split a dotted path into segments.

    Raises:
        PathError: If the path is empty or has an empty segment.
    """
    if not path:
        msg = "Path must not be empty"
        raise PathError(msg)
    segments = path.split(".")
    if any(segment == "" for segment in segments):
        msg = f"Malformed path: {path!r}"
        raise PathError(msg)
    return segments


def join_path(segments: list[str]) -> str:
    return ".".join(segments)


def _child(container: Any, segment: str) -> Any:
    if isinstance(container, dict):
        return container.get(segment, _MISSING)
    if isinstance(container, list):
        if not segment.isdigit():
            return _MISSING
        index = int(segment)
        return container[index] if index < len(container) else _MISSING
    return _MISSING


def get_path(document: Any, path: str, default: Any = None) -> Any:
    """Read the value at path, or default when it does not exist."""
    node = document
    for segment in split_path(path):
        node = _child(node, segment)
        if node is _MISSING:
            return default
    return node


def has_path(document: Any, path: str) -> bool:
    return get_path(document, path, _MISSING) is not _MISSING


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Write value at path in place.

    Missing intermediate dict keys are created. A list index equal to the
    list length appends.

    Raises:
        PathError: If an intermediate node is not a container or a list
            index is out of range.
    """
    segments = split_path(path)
    node: Any = document
    for position, segment in enumerate(segments[:-1]):
        child = _child(node, segment)
        if child is _MISSING:
            if not isinstance(node, dict):
                msg = f"Cannot create {join_path(segments[: position + 1])!r}"
                raise PathError(msg)
            child = {}
            node[segment] = child
        node = child
    _assign(node, segments[-1], value, path)


def _assign(node: Any, segment: str, value: Any, path: str) -> None:
    if isinstance(node, dict):
        node[segment] = value
        return
    if isinstance(node, list) and segment.isdigit():
        index = int(segment)
        if index < len(node):
            node[index] = value
            return
        if index == len(node):
            node.append(value)
            return
    msg = f"Cannot assign {path!r}"
    raise PathError(msg)


def delete_path(document: dict[str, Any], path: str) -> None:
    """Remove the value at path in place.

    Raises:
        PathError: If the path does not exist.
    """
    segments = split_path(path)
    parent = document if len(segments) == 1 else get_path(
        document, join_path(segments[:-1]), _MISSING
    )
    leaf = segments[-1]
    if isinstance(parent, dict) and leaf in parent:
        del parent[leaf]
        return
    if isinstance(parent, list) and leaf.isdigit() and int(leaf) < len(parent):
        del parent[int(leaf)]
        return
    msg = f"Path does not exist: {path!r}"
    raise PathError(msg)


def paths_overlap(first: str, second: str) -> bool:
    """True when the paths are equal or one is a segment prefix of the other."""
    a = split_path(first)
    b = split_path(second)
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


def diff_documents(
    before: Any, after: Any, prefix: str = ""
) -> list[tuple[str, Any, Any]]:
    """Compute leaf-level differences between two JSON documents.

    Dicts are compared key by key. Lists and scalars are compared as whole
    values, so a changed list yields one entry for the list path.

    Returns:
        (path, old_value, new_value) tuples. A missing side is None.
    """
    if isinstance(before, dict) and isinstance(after, dict):
        changes: list[tuple[str, Any, Any]] = []
        for key in list(before) + [k for k in after if k not in before]:
            child_path = f"{prefix}.{key}" if prefix else str(key)
            if key not in after:
                changes.append((child_path, copy.deepcopy(before[key]), None))
            elif key not in before:
                changes.append((child_path, None, copy.deepcopy(after[key])))
            else:
                changes.extend(diff_documents(before[key], after[key], child_path))
        return changes
    if before == after:
        return []
    return [(prefix, copy.deepcopy(before), copy.deepcopy(after))]

"""Dotted path resolution into nested context documents."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_BRACKET_RE = re.compile(r"\[(\d+)\]")


@dataclass
class ContextPathError(Exception):
    message: str
    path: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path!r})"


def split_path(path: str) -> List[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``."""
    if not isinstance(path, str) or not path:
        raise ContextPathError("Path must be a non-empty string", str(path))
    normalized = _BRACKET_RE.sub(r".\1", path)
    segments = normalized.split(".")
    if any(segment == "" for segment in segments):
        raise ContextPathError("Empty path segment", path)
    return segments


def get_path(doc: Any, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING``.

    A key that literally equals the whole path wins over traversal, so
    documents that flatten ``service.name`` into one key still resolve.
    """
    if isinstance(doc, dict) and path in doc:
        return doc[path]

    current = doc
    for segment in split_path(path):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
            continue
        if isinstance(current, list):
            if not segment.isdigit():
                return MISSING
            idx = int(segment)
            if idx >= len(current):
                return MISSING
            current = current[idx]
            continue
        return MISSING
    return current

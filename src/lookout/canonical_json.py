"""Deterministic canonical JSON serialization and JSON-safe copies."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when an object cannot be represented as JSON."""


def _validate(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            _validate(value, f"{path}.{key}")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _validate(item, f"{path}[{idx}]")
        return
    if obj is None:
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return
    if isinstance(obj, (str, int, bool)):
        return
    raise CanonicalJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def canonical_dumps(obj: Any) -> str:
    """Serialize an object to deterministic canonical JSON.

    Rules:
    - Sort dict keys recursively.
    - Preserve list order (tuples serialize as lists).
    - UTF-8 with non-ASCII preserved.
    - No extra whitespace.
    """
    _validate(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def json_copy(obj: Any) -> Any:
    """Return a structurally equal copy that shares no references with obj.

    The copy goes through a JSON round trip, so anything that is not plain
    JSON data is rejected instead of leaking through.
    """
    return json.loads(canonical_dumps(obj))


def json_depth(obj: Any) -> int:
    """Nesting depth of objects and arrays; scalars have depth 0."""
    if isinstance(obj, dict):
        return 1 + max((json_depth(value) for value in obj.values()), default=0)
    if isinstance(obj, (list, tuple)):
        return 1 + max((json_depth(item) for item in obj), default=0)
    return 0

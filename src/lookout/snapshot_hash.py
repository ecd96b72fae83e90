"""Integration snapshot hashing."""

from __future__ import annotations

import hashlib
from typing import Any, Iterable

from .canonical_json import canonical_dumps


def snapshot_hash(entries: Iterable[Any]) -> str:
    """Return the canonical SHA-256 hash for an ordered list of snapshot entries."""
    data = canonical_dumps(list(entries)).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"


def code_hash(code: str) -> str:
    digest = hashlib.sha256(code.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"

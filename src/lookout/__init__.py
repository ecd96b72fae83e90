"""Lookout kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, json_copy, json_depth
from .context_path import MISSING, ContextPathError, get_path, split_path
from .snapshot_hash import code_hash, snapshot_hash

__all__ = [
    "CanonicalJsonTypeError",
    "ContextPathError",
    "MISSING",
    "canonical_dumps",
    "code_hash",
    "get_path",
    "json_copy",
    "json_depth",
    "snapshot_hash",
    "split_path",
]

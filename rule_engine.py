"""Declarative context rule evaluation and cache key derivation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from lookout.canonical_json import canonical_dumps
from lookout.context_path import MISSING, ContextPathError, get_path


Issue = Dict[str, Any]

RULE_KINDS = ("exists", "equals", "in", "pattern", "startsWith", "endsWith")
KEY_SEPARATOR = "|"
MISSING_SEGMENT = "undefined"

logger = logging.getLogger("lookout.rules")


@dataclass
class RuleSchemaError(Exception):
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})" if self.path else self.message


@dataclass
class RuleMatch:
    is_valid: bool
    matched_paths: List[str] = field(default_factory=list)
    failures: List[Issue] = field(default_factory=list)


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _rule_kind(rule: Any, path: str) -> str:
    if not isinstance(rule, dict):
        raise RuleSchemaError("Rule must be object", path)
    for kind in RULE_KINDS:
        if kind in rule:
            return kind
    raise RuleSchemaError(f"Rule must declare one of: {', '.join(RULE_KINDS)}", path)


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def _compile_pattern(pattern: Any, path: str) -> re.Pattern:
    if isinstance(pattern, re.Pattern):
        return pattern
    if isinstance(pattern, str):
        try:
            return re.compile(pattern)
        except re.error as exc:
            raise RuleSchemaError(f"Invalid pattern: {exc}", path) from exc
    raise RuleSchemaError("pattern must be string or compiled regex", path)


def validate_rules(rules: Any) -> List[Issue]:
    """Structural check of a rule map; returns issues instead of raising."""
    issues: List[Issue] = []
    if rules is None:
        return issues
    if not isinstance(rules, dict):
        return [_issue("RULES_INVALID", "match.context must be object", "match.context")]
    for path, rule in rules.items():
        where = f"match.context.{path}"
        if not isinstance(path, str) or not path:
            issues.append(_issue("RULE_PATH_INVALID", "rule path must be non-empty string", "match.context"))
            continue
        try:
            kind = _rule_kind(rule, where)
            value = rule[kind]
            if kind == "exists" and not isinstance(value, bool):
                raise RuleSchemaError("exists must be bool", where)
            if kind == "in" and not isinstance(value, (list, tuple)):
                raise RuleSchemaError("in must be list", where)
            if kind in ("startsWith", "endsWith"):
                if not isinstance(value, str):
                    raise RuleSchemaError(f"{kind} must be string", where)
                if len(value) > 200:
                    raise RuleSchemaError(f"{kind} must be at most 200 characters", where)
            if kind == "pattern":
                _compile_pattern(value, where)
        except RuleSchemaError as exc:
            issues.append(_issue("RULE_INVALID", exc.message, exc.path))
    return issues


def _test_rule(kind: str, expected: Any, value: Any, path: str) -> bool:
    if kind == "exists":
        present = value is not MISSING
        return present if expected else not present
    if kind == "equals":
        return _strict_equals(value, expected)
    if kind == "in":
        if not isinstance(expected, (list, tuple)):
            raise RuleSchemaError("in must be list", path)
        return any(_strict_equals(value, item) for item in expected)
    if kind == "pattern":
        compiled = _compile_pattern(expected, path)
        return isinstance(value, str) and compiled.search(value) is not None
    if kind == "startsWith":
        return isinstance(value, str) and value.startswith(expected)
    if kind == "endsWith":
        return isinstance(value, str) and value.endswith(expected)
    raise RuleSchemaError(f"Unknown rule: {kind}", path)


def evaluate(context: Any, rules: Dict[str, Any] | None) -> RuleMatch:
    """Evaluate every rule against the context (logical AND).

    All paths are tested even after a failure so diagnostics show the whole
    picture. Malformed rules raise RuleSchemaError.
    """
    if not rules:
        return RuleMatch(is_valid=True)
    if not isinstance(rules, dict):
        raise RuleSchemaError("match.context must be object", "match.context")

    match = RuleMatch(is_valid=True)
    for path, rule in rules.items():
        where = f"match.context.{path}"
        kind = _rule_kind(rule, where)
        try:
            value = get_path(context, path)
        except ContextPathError as exc:
            raise RuleSchemaError(exc.message, where) from exc
        match.matched_paths.append(path)
        if _test_rule(kind, rule[kind], value, where):
            continue
        match.is_valid = False
        expected = rule[kind]
        if isinstance(expected, re.Pattern):
            expected = expected.pattern
        actual = None if value is MISSING else value
        match.failures.append(
            _issue("RULE_FAILED", f"{kind} rule failed", path, {"rule": kind, "expected": expected, "actual": actual})
        )
    return match


def _segment(value: Any) -> str:
    if value is MISSING:
        return MISSING_SEGMENT
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    return canonical_dumps(value)


def cache_key_from(context: Any, paths: Sequence[str], integration_name: str | None = None) -> str | None:
    """Join path values with ``|`` in declared order; None when no paths.

    A missing path contributes the literal ``undefined`` segment, so an
    absent value and the string "undefined" share a key.
    """
    if not paths:
        return None
    segments: List[str] = []
    for path in paths:
        value = get_path(context, path)
        if value is MISSING:
            logger.warning(
                "cache_key_path_missing integration=%s path=%s using=%s",
                integration_name,
                path,
                MISSING_SEGMENT,
            )
        segments.append(_segment(value))
    return KEY_SEPARATOR.join(segments)

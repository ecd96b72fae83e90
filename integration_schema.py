"""Integration metadata, result and context validation."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple
from urllib.parse import urlparse

from lookout.canonical_json import CanonicalJsonTypeError, json_depth, canonical_dumps
from lookout.context_path import ContextPathError, split_path
from rule_engine import validate_rules


Issue = Dict[str, Any]

NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{3,}$")
CONTEXT_TYPE_RE = re.compile(r"^[a-z][a-z0-9_-]{1,}$")
WILDCARD = "*"
GENERIC_CONTEXT_TYPE = "generic"

DEFAULT_CACHE_TTL = 300
MAX_CACHE_TTL = 3600 * 24 * 30
DEFAULT_PRIORITY = 100
MIN_PRIORITY = 1
MAX_PRIORITY = 1000

RESULT_TYPES = {"text", "link", "dropdown"}
RESULT_STATUSES = {"important", "relevant", "success", "none"}
ALLOWED_RESULT_KEYS = {"type", "content", "href", "status", "icon", "tooltip", "items"}
ALLOWED_ITEM_KEYS = {"content", "href", "status", "icon", "tooltip"}

CONTEXT_MAX_DEPTH = 10


@dataclass
class MetadataError(Exception):
    message: str
    issues: List[Issue] = field(default_factory=list)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        if not self.issues:
            return self.message
        details = "; ".join(f"{i.get('path') or '$'}: {i.get('message')}" for i in self.issues)
        return f"{self.message}: {details}"


@dataclass(frozen=True)
class Integration:
    id: str
    code: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    path: str | None = None

    @property
    def name(self) -> str:
        name = self.metadata.get("name") if isinstance(self.metadata, dict) else None
        return name if isinstance(name, str) else self.id


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_absolute_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_path_list(value: Any, path: str, errors: List[Issue]) -> None:
    if not isinstance(value, list):
        errors.append(_issue("METADATA_PATHS_INVALID", "must be a list of context paths", path))
        return
    for idx, item in enumerate(value):
        if not isinstance(item, str) or not 2 <= len(item) <= 100:
            errors.append(_issue("METADATA_PATHS_INVALID", "entries must be strings of 2..100 characters", f"{path}[{idx}]"))
            continue
        try:
            split_path(item)
        except ContextPathError as exc:
            errors.append(_issue("METADATA_PATHS_INVALID", exc.message, f"{path}[{idx}]"))


def normalize_metadata(raw: dict) -> dict:
    """Apply defaults; never fails, validation reports what is still wrong."""
    normalized = copy.deepcopy(raw) if isinstance(raw, dict) else {}
    match = normalized.get("match")
    if isinstance(match, dict) and match.get("context") is None:
        match["context"] = {}
    if normalized.get("cache") is None:
        normalized["cache"] = DEFAULT_CACHE_TTL
    if normalized.get("requiredSecrets") is None:
        normalized["requiredSecrets"] = []
    if normalized.get("priority") is None:
        normalized["priority"] = DEFAULT_PRIORITY
    return normalized


def validate_metadata(metadata: Any) -> Tuple[List[Issue], List[Issue]]:
    errors: List[Issue] = []
    warnings: List[Issue] = []

    if not isinstance(metadata, dict):
        errors.append(_issue("METADATA_INVALID", "metadata must be an object", None))
        return errors, warnings

    name = metadata.get("name")
    if not isinstance(name, str) or len(name) > 100 or not NAME_RE.match(name):
        errors.append(
            _issue(
                "METADATA_NAME_INVALID",
                "name must start with a lowercase letter and contain only a-z, 0-9, '_' and '-' (min 4 chars)",
                "name",
            )
        )

    description = metadata.get("description")
    if description is not None and (not isinstance(description, str) or len(description) > 500):
        errors.append(_issue("METADATA_DESCRIPTION_INVALID", "description must be a string of at most 500 characters", "description"))

    match = metadata.get("match")
    if not isinstance(match, dict):
        errors.append(_issue("METADATA_MATCH_MISSING", "match section is required", "match"))
    else:
        context_type = match.get("contextType")
        if not isinstance(context_type, str) or len(context_type) > 100 or not (
            context_type == WILDCARD or CONTEXT_TYPE_RE.match(context_type)
        ):
            errors.append(
                _issue(
                    "METADATA_CONTEXT_TYPE_INVALID",
                    "match.contextType must be '*' or a lowercase adapter name",
                    "match.contextType",
                )
            )
        errors.extend(validate_rules(match.get("context")))
        if context_type == GENERIC_CONTEXT_TYPE:
            _validate_generic_match(match.get("context"), errors)

    cache = metadata.get("cache")
    if not _is_number(cache) or cache < 0 or cache > MAX_CACHE_TTL:
        errors.append(_issue("METADATA_CACHE_INVALID", f"cache must be a number of seconds in 0..{MAX_CACHE_TTL}", "cache"))

    secrets = metadata.get("requiredSecrets")
    if not isinstance(secrets, list) or not all(isinstance(s, str) and 2 <= len(s) <= 100 for s in secrets):
        errors.append(_issue("METADATA_SECRETS_INVALID", "requiredSecrets must be a list of secret names", "requiredSecrets"))

    if metadata.get("cacheKey") is not None:
        validate_path_list(metadata.get("cacheKey"), "cacheKey", errors)
        if isinstance(metadata.get("cacheKey"), list) and not metadata["cacheKey"]:
            warnings.append(_issue("METADATA_CACHE_KEY_EMPTY", "empty cacheKey falls back to match paths", "cacheKey"))

    priority = metadata.get("priority")
    if not _is_int(priority) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        errors.append(_issue("METADATA_PRIORITY_INVALID", f"priority must be an integer in {MIN_PRIORITY}..{MAX_PRIORITY}", "priority"))

    return errors, warnings


def _validate_generic_match(rules: Any, errors: List[Issue]) -> None:
    url_rule = rules.get("url") if isinstance(rules, dict) else None
    if not isinstance(url_rule, dict):
        errors.append(
            _issue(
                "METADATA_GENERIC_URL_REQUIRED",
                "generic contextType requires a url rule, otherwise it matches every request",
                "match.context.url",
            )
        )
        return
    target = url_rule.get("startsWith") if "startsWith" in url_rule else url_rule.get("equals")
    if target is None:
        errors.append(
            _issue(
                "METADATA_GENERIC_URL_REQUIRED",
                "generic contextType requires a url rule using startsWith or equals",
                "match.context.url",
            )
        )
        return
    if not _is_absolute_url(target):
        errors.append(_issue("METADATA_GENERIC_URL_INVALID", "generic contextType requires a valid url", "match.context.url"))


def validate_metadata_raw(raw: Any) -> Tuple[dict, List[Issue], List[Issue]]:
    normalized = normalize_metadata(raw)
    if not isinstance(raw, dict):
        return normalized, [_issue("METADATA_INVALID", "metadata must be an object", None)], []
    errors, warnings = validate_metadata(normalized)
    return normalized, errors, warnings


def _validate_tooltip(value: Any, path: str, errors: List[Issue]) -> None:
    if value is not None and (not isinstance(value, str) or not 1 <= len(value) <= 500):
        errors.append(_issue("RESULT_TOOLTIP_INVALID", "tooltip must be a string of 1..500 characters", path))


def _validate_optional_str(item: dict, key: str, path: str, errors: List[Issue]) -> None:
    if key in item and item[key] is not None and not isinstance(item[key], str):
        errors.append(_issue("RESULT_FIELD_INVALID", f"{key} must be a string", f"{path}.{key}"))


def _validate_item(item: Any, path: str, errors: List[Issue]) -> None:
    if not isinstance(item, dict):
        errors.append(_issue("RESULT_ITEM_INVALID", "dropdown item must be an object", path))
        return
    if not isinstance(item.get("content"), str):
        errors.append(_issue("RESULT_CONTENT_INVALID", "content must be a string", f"{path}.content"))
    if not isinstance(item.get("href"), str):
        errors.append(_issue("RESULT_HREF_INVALID", "href must be a string", f"{path}.href"))
    status = item.get("status")
    if status is not None and status not in RESULT_STATUSES:
        errors.append(_issue("RESULT_STATUS_INVALID", f"status must be one of {sorted(RESULT_STATUSES)}", f"{path}.status"))
    _validate_optional_str(item, "icon", path, errors)
    _validate_tooltip(item.get("tooltip"), f"{path}.tooltip", errors)


def _validate_result(result: Any, path: str, errors: List[Issue]) -> None:
    if not isinstance(result, dict):
        errors.append(_issue("RESULT_INVALID", "result must be an object", path))
        return
    kind = result.get("type")
    if kind not in RESULT_TYPES:
        errors.append(_issue("RESULT_TYPE_INVALID", f"type must be one of {sorted(RESULT_TYPES)}", f"{path}.type"))
    if not isinstance(result.get("content"), str):
        errors.append(_issue("RESULT_CONTENT_INVALID", "content must be a string", f"{path}.content"))
    status = result.get("status")
    if status is not None and status not in RESULT_STATUSES:
        errors.append(_issue("RESULT_STATUS_INVALID", f"status must be one of {sorted(RESULT_STATUSES)}", f"{path}.status"))
    _validate_optional_str(result, "href", path, errors)
    _validate_optional_str(result, "icon", path, errors)
    _validate_tooltip(result.get("tooltip"), f"{path}.tooltip", errors)
    items = result.get("items")
    if items is not None:
        if not isinstance(items, list):
            errors.append(_issue("RESULT_ITEMS_INVALID", "items must be a list", f"{path}.items"))
            items = []
        for idx, item in enumerate(items):
            _validate_item(item, f"{path}.items[{idx}]", errors)
    if kind == "dropdown" and not items:
        errors.append(_issue("RESULT_ITEMS_REQUIRED", "Dropdown type requires items array", f"{path}.items"))


def _strip_unknown(result: dict) -> dict:
    out = {key: value for key, value in result.items() if key in ALLOWED_RESULT_KEYS and value is not None}
    if isinstance(out.get("items"), list):
        out["items"] = [
            {key: value for key, value in item.items() if key in ALLOWED_ITEM_KEYS and value is not None}
            for item in out["items"]
        ]
    return out


def validate_results(value: Any) -> Tuple[List[dict], List[Issue]]:
    """Validate module output; returns cleaned results or errors.

    ``None`` means no results and a single mapping is wrapped in a list.
    Unknown keys are dropped from valid results.
    """
    if value is None:
        return [], []
    if isinstance(value, dict):
        value = [value]
    if isinstance(value, tuple):
        value = list(value)
    if not isinstance(value, list):
        return [], [_issue("RESULTS_INVALID", "results must be a list", "$")]

    errors: List[Issue] = []
    for idx, result in enumerate(value):
        _validate_result(result, f"$[{idx}]", errors)
    if errors:
        return [], errors
    try:
        canonical_dumps(value)
    except (CanonicalJsonTypeError, ValueError) as exc:
        return [], [_issue("RESULTS_NOT_JSON", str(exc), "$")]
    return [_strip_unknown(result) for result in value], []


def _validate_context_value(value: Any, path: str, errors: List[Dict[str, str]]) -> None:
    if value is None or isinstance(value, (str, bool)) or _is_number(value):
        return
    if isinstance(value, list):
        for idx, item in enumerate(value):
            if isinstance(item, (dict, list)):
                errors.append({"path": f"{path}.{idx}", "message": "Arrays may only contain primitive values"})
            else:
                _validate_context_value(item, f"{path}.{idx}", errors)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            _validate_context_value(item, f"{path}.{key}" if path else key, errors)
        return
    errors.append({"path": path, "message": f"Unsupported value type: {type(value).__name__}"})


def validate_context(body: Any, allowed_adapters: List[str] | None = None) -> List[Dict[str, str]]:
    """Validate an inbound context; returns ``{"path", "message"}`` details."""
    if not isinstance(body, dict):
        return [{"path": "", "message": "Context must be a JSON object"}]

    errors: List[Dict[str, str]] = []
    context_type = body.get("type")
    if not isinstance(context_type, str) or not context_type:
        errors.append({"path": "type", "message": "Required string field"})
    elif allowed_adapters is not None and context_type not in allowed_adapters:
        errors.append({"path": "type", "message": f"Invalid adapter type, expected one of: {', '.join(allowed_adapters)}"})

    url = body.get("url")
    if not isinstance(url, str):
        errors.append({"path": "url", "message": "Required string field"})
    elif not _is_absolute_url(url):
        errors.append({"path": "url", "message": "Invalid URL"})

    # the document itself is one level
    if json_depth(body) > CONTEXT_MAX_DEPTH + 1:
        errors.append({"path": "", "message": f"Context nesting exceeds {CONTEXT_MAX_DEPTH} levels"})
    else:
        for key, value in body.items():
            if key in ("type", "url"):
                continue
            _validate_context_value(value, key, errors)
    return errors

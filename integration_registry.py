"""Integration registry: immutable snapshots swapped atomically on reload."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Tuple
from urllib.parse import urlparse

from lookout.snapshot_hash import code_hash, snapshot_hash
from integration_schema import (
    DEFAULT_PRIORITY,
    GENERIC_CONTEXT_TYPE,
    WILDCARD,
    Integration,
    normalize_metadata,
    validate_path_list,
)
from result_cache import Cache
from rule_engine import RuleSchemaError, evaluate


Issue = Dict[str, Any]
DataFile = Dict[str, Any]

HISTORY_LIMIT = 100

logger = logging.getLogger("lookout.registry")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _priority(integration: Integration) -> int:
    value = integration.metadata.get("priority")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return DEFAULT_PRIORITY


@dataclass(frozen=True)
class RegistrySnapshot:
    integrations: Tuple[Integration, ...] = ()
    data_files: Tuple[DataFile, ...] = ()
    hash: str | None = None
    loaded_at: str | None = None
    by_name: Dict[str, Integration] = field(default_factory=dict)


def _build_snapshot(integrations: Iterable[Integration], data_files: Iterable[DataFile] | None) -> Tuple[RegistrySnapshot, List[Issue]]:
    warnings: List[Issue] = []
    kept: List[Integration] = []
    by_name: Dict[str, Integration] = {}
    for idx, integration in enumerate(integrations):
        if not isinstance(integration, Integration):
            warnings.append(_issue("REGISTRY_ENTRY_INVALID", "entry is not an Integration", f"integrations[{idx}]"))
            continue
        frozen = Integration(
            id=integration.id,
            code=integration.code,
            metadata=normalize_metadata(integration.metadata),
            path=integration.path,
        )
        cache_key = frozen.metadata.get("cacheKey")
        if cache_key is not None:
            key_errors: List[Issue] = []
            validate_path_list(cache_key, "cacheKey", key_errors)
            if key_errors:
                warnings.append(
                    _issue(
                        "REGISTRY_METADATA_INVALID",
                        "invalid cacheKey, integration excluded",
                        f"integrations[{idx}]",
                        {"name": frozen.name, "errors": key_errors},
                    )
                )
                continue
        if frozen.name in by_name:
            warnings.append(
                _issue(
                    "REGISTRY_DUPLICATE_NAME",
                    "integration name already loaded, keeping the first",
                    f"integrations[{idx}]",
                    {"name": frozen.name, "id": frozen.id},
                )
            )
            continue
        by_name[frozen.name] = frozen
        kept.append(frozen)

    files: List[DataFile] = []
    for idx, data_file in enumerate(data_files or []):
        if not isinstance(data_file, dict) or not isinstance(data_file.get("id"), str):
            warnings.append(_issue("REGISTRY_DATA_FILE_INVALID", "data file needs a string id", f"data_files[{idx}]"))
            continue
        files.append({"id": data_file["id"], "data": copy.deepcopy(data_file.get("data"))})

    digest = snapshot_hash(
        [{"id": i.id, "name": i.name, "code": code_hash(i.code), "path": i.path} for i in kept]
        + [{"data_file": f["id"]} for f in files]
    )
    snapshot = RegistrySnapshot(
        integrations=tuple(kept),
        data_files=tuple(files),
        hash=digest,
        loaded_at=_now(),
        by_name=by_name,
    )
    return snapshot, warnings


class IntegrationRegistry:
    def __init__(self, cache: Cache | None = None) -> None:
        self._cache = cache
        self._snapshot = RegistrySnapshot()
        self._swap_lock = threading.Lock()
        self._audit: List[dict] = []

    def load(self, integrations: Iterable[Integration], data_files: Iterable[DataFile] | None = None, reason: str = "load") -> dict:
        """Publish a new snapshot wholesale and clear the result cache."""
        snapshot, warnings = _build_snapshot(integrations, data_files)
        for warning in warnings:
            logger.warning("registry_load_warning code=%s path=%s detail=%s", warning["code"], warning["path"], warning["detail"])

        with self._swap_lock:
            previous = self._snapshot
            self._snapshot = snapshot
            if self._cache is not None:
                self._cache.clear()
            audit_id = str(uuid.uuid4())
            self._audit.insert(
                0,
                {
                    "audit_id": audit_id,
                    "action": reason,
                    "from_hash": previous.hash,
                    "to_hash": snapshot.hash,
                    "integrations": len(snapshot.integrations),
                    "data_files": len(snapshot.data_files),
                    "at": snapshot.loaded_at,
                },
            )
            del self._audit[HISTORY_LIMIT:]

        logger.info(
            "registry_loaded reason=%s integrations=%s data_files=%s hash=%s",
            reason,
            len(snapshot.integrations),
            len(snapshot.data_files),
            snapshot.hash,
        )
        return {"ok": True, "errors": [], "warnings": warnings, "snapshot_hash": snapshot.hash, "audit_id": audit_id}

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def snapshot_hash(self) -> str | None:
        return self._snapshot.hash

    def list(self) -> list[Integration]:
        return list(self._snapshot.integrations)

    def get(self, name: str) -> Integration | None:
        return self._snapshot.by_name.get(name)

    def data_files(self) -> list[DataFile]:
        return copy.deepcopy(list(self._snapshot.data_files))

    def history(self) -> list[dict]:
        return list(self._audit)

    def _matches(self, integration: Integration, context: dict) -> bool:
        match = integration.metadata.get("match")
        if not isinstance(match, dict):
            logger.error("registry_invalid_metadata integration=%s issue=missing_match", integration.id)
            return False
        context_type = match.get("contextType")
        if context_type != WILDCARD and context_type != context.get("type"):
            logger.debug(
                "registry_context_type_mismatch integration=%s expected=%s actual=%s",
                integration.id,
                context_type,
                context.get("type"),
            )
            return False
        result = evaluate(context, match.get("context"))
        if not result.is_valid:
            logger.debug(
                "registry_rules_failed integration=%s failures=%s",
                integration.id,
                [(f["path"], f["detail"]["rule"]) for f in result.failures],
            )
        return result.is_valid

    def resolve(self, context: Any) -> list[Integration]:
        """Matching integrations, priority descending, stable on ties."""
        if not isinstance(context, dict) or not context.get("url"):
            logger.debug("registry_resolve_skipped issue=missing_context_url")
            return []

        # one read of the reference; a concurrent load() cannot mix sets
        snapshot = self._snapshot
        matched: List[Integration] = []
        for integration in snapshot.integrations:
            try:
                if self._matches(integration, context):
                    matched.append(integration)
            except (RuleSchemaError, TypeError, AttributeError) as exc:
                logger.error(
                    "registry_match_error integration=%s url=%s error=%s",
                    integration.id,
                    context.get("url"),
                    exc,
                )
        ordered = sorted(matched, key=lambda i: -_priority(i))
        logger.debug(
            "registry_resolved count=%s order=%s",
            len(ordered),
            [(i.name, _priority(i)) for i in ordered],
        )
        return ordered

    def custom_hosts(self) -> list[str]:
        """Origins of generic-adapter integrations, from their url rules."""
        hosts: List[str] = []
        for integration in self._snapshot.integrations:
            match = integration.metadata.get("match")
            if not isinstance(match, dict) or match.get("contextType") != GENERIC_CONTEXT_TYPE:
                continue
            rules = match.get("context")
            url_rule = rules.get("url") if isinstance(rules, dict) else None
            url = _url_from_rule(url_rule)
            if not url:
                continue
            host = urlparse(url).netloc
            if not host:
                logger.warning("registry_host_unparseable integration=%s url=%s", integration.name, url)
                continue
            origin = f"https://{host}"
            if origin not in hosts:
                hosts.append(origin)
        return hosts


def _url_from_rule(rule: Any) -> str | None:
    if not isinstance(rule, dict):
        return None
    for kind in ("equals", "startsWith", "endsWith"):
        value = rule.get(kind)
        if isinstance(value, str) and value:
            return value
    values = rule.get("in")
    if isinstance(values, list) and values and isinstance(values[0], str):
        return values[0]
    return None

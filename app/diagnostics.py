"""Diagnostics helpers for the loaded integration snapshot."""

from __future__ import annotations

from typing import Any, Dict, List

from integration_schema import validate_metadata


Issue = Dict[str, Any]


def _rule_kinds(rules: Any) -> Dict[str, str]:
    if not isinstance(rules, dict):
        return {}
    kinds: Dict[str, str] = {}
    for path, rule in rules.items():
        if isinstance(rule, dict) and rule:
            kinds[path] = next(iter(rule.keys()))
    return kinds


def build_diagnostics(registry) -> dict:
    integrations: List[dict] = []
    for integration in registry.list():
        metadata = integration.metadata
        match = metadata.get("match") if isinstance(metadata, dict) else None
        errors, warnings = validate_metadata(metadata)
        integrations.append(
            {
                "id": integration.id,
                "name": integration.name,
                "path": integration.path,
                "context_type": match.get("contextType") if isinstance(match, dict) else None,
                "rules": _rule_kinds(match.get("context") if isinstance(match, dict) else None),
                "priority": metadata.get("priority"),
                "cache_ttl": metadata.get("cache"),
                "cache_key": metadata.get("cacheKey"),
                "required_secrets": list(metadata.get("requiredSecrets") or []),
                "errors": errors,
                "warnings": warnings,
            }
        )
    return {
        "snapshot_hash": registry.snapshot_hash(),
        "loaded_at": registry.snapshot().loaded_at,
        "integrations": integrations,
        "data_files": [data_file["id"] for data_file in registry.data_files()],
        "custom_hosts": registry.custom_hosts(),
        "history": registry.history(),
    }

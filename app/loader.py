"""Directory loader for integration sources and data files."""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

import yaml

from integration_registry import IntegrationRegistry
from integration_schema import WILDCARD, Integration, MetadataError, validate_metadata_raw
from sandbox_runner import IntegrationLoadError, Runner


INTEGRATION_SUFFIX = ".integration.py"
DATA_SUFFIXES = (".data.yml", ".data.yaml", ".data.json")
ALLOWED_SUFFIXES = (INTEGRATION_SUFFIX,) + DATA_SUFFIXES

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

Issue = Dict[str, Any]

logger = logging.getLogger("lookout.loader")


@dataclass
class LoaderError(Exception):
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})" if self.path else self.message


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _strip_suffix(name: str, suffixes: Iterable[str]) -> str:
    for suffix in suffixes:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


class FsIntegrationLoader:
    """Reads one flat directory; sibling helper files are only reachable via relative imports."""

    def __init__(self, root: Path | str, runner: Runner, allowed_adapters: Iterable[str] | None = None) -> None:
        self._root = Path(root).resolve()
        self._runner = runner
        self._allowed = list(allowed_adapters) if allowed_adapters is not None else None

    @property
    def root(self) -> Path:
        return self._root

    def _safe_path(self, file_name: str) -> Path | None:
        if not file_name or _CONTROL_CHARS.search(file_name):
            logger.warning("loader_path_rejected file=%r issue=control_chars", file_name)
            return None
        normalized = unicodedata.normalize("NFC", file_name)
        if Path(normalized).is_absolute() or "//" in normalized or "\\\\" in normalized:
            logger.warning("loader_path_rejected file=%s issue=absolute_or_slashes", file_name)
            return None
        if not normalized.lower().endswith(ALLOWED_SUFFIXES):
            logger.warning("loader_path_rejected file=%s issue=invalid_extension", file_name)
            return None
        resolved = (self._root / normalized).resolve()
        try:
            resolved.relative_to(self._root)
        except ValueError:
            logger.warning("loader_path_rejected file=%s issue=path_escape real=%s", file_name, resolved)
            return None
        return resolved

    def _list(self) -> List[str]:
        if not self._root.is_dir():
            raise LoaderError("Integrations directory does not exist", str(self._root))
        return sorted(entry.name for entry in self._root.iterdir() if entry.is_file())

    async def _load_integration(self, file_name: str, warnings: List[Issue]) -> Integration | None:
        path = self._safe_path(file_name)
        if path is None:
            warnings.append(_issue("LOADER_PATH_INVALID", "skipping file with invalid path", file_name))
            return None
        try:
            code = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("loader_integration_unreadable file=%s error=%s", file_name, exc)
            warnings.append(_issue("LOADER_INTEGRATION_FAILED", f"unable to read file: {exc}", file_name))
            return None
        try:
            raw = await self._runner.get_metadata(code, str(path))
        except IntegrationLoadError as exc:
            logger.error("loader_integration_failed file=%s error=%s", file_name, exc)
            warnings.append(_issue("LOADER_INTEGRATION_FAILED", str(exc), file_name))
            return None

        metadata, errors, meta_warnings = validate_metadata_raw(raw)
        for warning in meta_warnings:
            logger.warning("loader_metadata_warning file=%s path=%s message=%s", file_name, warning["path"], warning["message"])
        if errors:
            err = MetadataError(f"Integration {file_name} failed schema validation", errors)
            logger.warning("loader_schema_invalid file=%s error=%s", file_name, err)
            warnings.append(_issue("LOADER_SCHEMA_INVALID", str(err), file_name, {"errors": errors}))
            return None

        context_type = metadata["match"]["contextType"]
        if context_type != WILDCARD and self._allowed is not None and context_type not in self._allowed:
            logger.warning(
                "loader_context_type_not_allowed file=%s context_type=%s allowed=%s",
                file_name,
                context_type,
                self._allowed,
            )
            warnings.append(
                _issue(
                    "LOADER_CONTEXT_TYPE_NOT_ALLOWED",
                    f"contextType '{context_type}' is not in allowed adapters",
                    file_name,
                    {"allowed": self._allowed},
                )
            )
            return None

        logger.debug("loader_integration_loaded file=%s context_type=%s", file_name, context_type)
        return Integration(
            id=_strip_suffix(file_name, (INTEGRATION_SUFFIX,)),
            code=code,
            metadata=metadata,
            path=str(path),
        )

    def _load_data_file(self, file_name: str, warnings: List[Issue]) -> dict | None:
        path = self._safe_path(file_name)
        if path is None:
            warnings.append(_issue("LOADER_PATH_INVALID", "skipping file with invalid path", file_name))
            return None
        try:
            content = path.read_text(encoding="utf-8")
            if file_name.endswith(".data.json"):
                data = json.loads(content)
            else:
                data = yaml.safe_load(content)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            logger.warning("loader_data_file_unparseable file=%s error=%s", file_name, exc)
            warnings.append(_issue("LOADER_DATA_FILE_INVALID", f"Could not parse data file: {exc}", file_name))
            return None
        return {"id": _strip_suffix(file_name, DATA_SUFFIXES), "data": data}

    async def load(self) -> dict:
        files = self._list()
        integration_files = [f for f in files if f.endswith(INTEGRATION_SUFFIX)]
        if not integration_files:
            logger.error("loader_no_integrations root=%s", self._root)
            raise LoaderError("No integration files found, add at least one to the integrations folder", str(self._root))

        warnings: List[Issue] = []
        integrations: List[Integration] = []
        for file_name in integration_files:
            integration = await self._load_integration(file_name, warnings)
            if integration is not None:
                integrations.append(integration)

        data_files: List[dict] = []
        for file_name in files:
            if file_name.endswith(DATA_SUFFIXES):
                data_file = self._load_data_file(file_name, warnings)
                if data_file is not None:
                    data_files.append(data_file)

        logger.info(
            "loader_loaded root=%s integrations=%s data_files=%s skipped=%s",
            self._root,
            len(integrations),
            len(data_files),
            len(warnings),
        )
        return {"ok": True, "errors": [], "warnings": warnings, "integrations": integrations, "data_files": data_files}

    async def load_into(self, registry: IntegrationRegistry, reason: str = "load") -> dict:
        loaded = await self.load()
        result = registry.load(loaded["integrations"], loaded["data_files"], reason=reason)
        return {**result, "warnings": loaded["warnings"] + result["warnings"]}

"""Sandboxed integration execution.

Integration source is executed in a fresh namespace per call with a curated
``__builtins__`` and an ``__import__`` that only resolves:

- allow-listed standard library modules,
- third-party packages through the host import system,
- sibling files relative to the integration's declared location
  (``from .helper import fmt``), executed in the same restricted namespace.

Capabilities are injected as module globals (``cache``, ``fetch``,
``logger``) and as arguments to ``run(context, secrets, data_files)``.

This is logical isolation, not a security boundary: the restricted surface
and the deadline keep well-behaved integrations in their lane, nothing more.
Synchronous code runs in a worker thread that is abandoned (never killed)
when the deadline passes; coroutines are cancelled at their next await.
"""

from __future__ import annotations

import builtins
import copy
import functools
import inspect
import logging
import sys
import time
import types
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List

import anyio
import anyio.to_thread
import httpx

from lookout.canonical_json import json_copy
from integration_schema import Integration
from result_cache import Cache, NamespacedCache


SHOULD_RUN_TIMEOUT_MS = 1000
DEFAULT_RUN_TIMEOUT_MS = 5000
METADATA_TIMEOUT_MS = 5000

RUN_ENTRY = "run"
SHOULD_RUN_ENTRY = "should_run"

ALLOWED_STDLIB = frozenset(
    {
        "__future__",
        "asyncio",
        "base64",
        "bisect",
        "calendar",
        "collections",
        "collections.abc",
        "copy",
        "dataclasses",
        "datetime",
        "decimal",
        "enum",
        "fractions",
        "functools",
        "hashlib",
        "heapq",
        "hmac",
        "html",
        "itertools",
        "json",
        "math",
        "operator",
        "random",
        "re",
        "statistics",
        "string",
        "textwrap",
        "time",
        "typing",
        "unicodedata",
        "urllib.parse",
        "uuid",
        "zoneinfo",
    }
)

BLOCKED_BUILTINS = frozenset(
    {
        "breakpoint",
        "compile",
        "copyright",
        "credits",
        "eval",
        "exec",
        "exit",
        "globals",
        "help",
        "input",
        "license",
        "locals",
        "open",
        "quit",
        "vars",
    }
)

_STDLIB_NAMES = frozenset(getattr(sys, "stdlib_module_names", ())) | frozenset(sys.builtin_module_names)

logger = logging.getLogger("lookout.runner")


class IntegrationLoadError(Exception):
    """Integration source cannot be evaluated or lacks a callable run."""


class SandboxImportError(ImportError):
    pass


@dataclass
class IntegrationTimeoutError(Exception):
    timeout_ms: float

    def __str__(self) -> str:
        return f"Operation timed out after {self.timeout_ms:g}ms"


def integration_logger(name: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logging.getLogger(f"lookout.integration.{name}"), {"integration": name})


class HttpFetch:
    """Outbound HTTP for integrations.

    ``await fetch(url)`` from coroutines, ``fetch.sync(url)`` from plain
    functions. Both return an ``httpx.Response`` with the body already read.
    """

    def __init__(self, log: logging.LoggerAdapter, timeout: float = 30.0, transport: httpx.BaseTransport | None = None) -> None:
        self._log = log
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, url: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        kwargs.setdefault("timeout", self._timeout)
        async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
            response = await client.request(method, url, **kwargs)
        self._log.debug("fetch method=%s url=%s status=%s", method, url, response.status_code)
        return response

    def sync(self, url: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        kwargs.setdefault("timeout", self._timeout)
        with httpx.Client(transport=self._transport, follow_redirects=True) as client:
            response = client.request(method, url, **kwargs)
        self._log.debug("fetch method=%s url=%s status=%s", method, url, response.status_code)
        return response


class _Sandbox:
    """One execution's namespace, builtins and module table."""

    def __init__(self, integration_name: str, capabilities: Dict[str, Any]) -> None:
        self._name = integration_name
        self._capabilities = capabilities
        self._modules: Dict[str, types.ModuleType] = {}
        self._builtins = self._make_builtins(capabilities["logger"])

    def _make_builtins(self, log: logging.LoggerAdapter) -> Dict[str, Any]:
        def _print(*args: Any, sep: str | None = " ", end: str | None = "\n", file: Any = None, flush: bool = False) -> None:
            log.info("%s", (sep if sep is not None else " ").join(str(arg) for arg in args))

        allowed = {key: value for key, value in vars(builtins).items() if key not in BLOCKED_BUILTINS}
        allowed["__import__"] = self.import_module
        allowed["print"] = _print
        return allowed

    def _new_module(self, module_name: str, file_path: str | None) -> types.ModuleType:
        module = types.ModuleType(module_name)
        module.__dict__.update(self._capabilities)
        module.__dict__["__builtins__"] = self._builtins
        module.__dict__["__file__"] = file_path
        module.__dict__["__package__"] = None
        return module

    def exec_source(self, code: str, file_path: str | None, module_name: str) -> types.ModuleType:
        module = self._new_module(module_name, file_path)
        if file_path:
            self._modules[str(Path(file_path).resolve())] = module
        compiled = compile(code, file_path or f"<integration:{self._name}>", "exec")
        exec(compiled, module.__dict__)
        return module

    def import_module(
        self,
        name: str,
        globals: Dict[str, Any] | None = None,
        locals: Dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if level > 0:
            return self._import_relative(name, globals or {}, fromlist or (), level)
        if self._stdlib_allowed(name, fromlist or ()):
            return builtins.__import__(name, None, None, fromlist, 0)
        top = name.partition(".")[0]
        if top in _STDLIB_NAMES:
            raise SandboxImportError(f"Module '{name}' is not available to integrations")
        # third-party packages resolve through the host environment
        return builtins.__import__(name, None, None, fromlist, 0)

    @staticmethod
    def _stdlib_allowed(name: str, fromlist: Any) -> bool:
        if name in ALLOWED_STDLIB:
            return True
        return bool(fromlist) and all(f"{name}.{item}" in ALLOWED_STDLIB for item in fromlist)

    def _import_relative(self, name: str, importer_globals: Dict[str, Any], fromlist: Any, level: int) -> Any:
        dotted = "." * level + name
        location = importer_globals.get("__file__")
        if not location:
            raise SandboxImportError(f"Relative imports are not supported without a file path. Found: {dotted}")
        base = Path(location).resolve().parent
        for _ in range(level - 1):
            base = base.parent

        if name:
            module = self._load_relative(base, name.split("."), dotted)
        else:
            init = base / "__init__.py"
            if init.is_file():
                module = self._exec_file(init, f"lookout_sibling_{base.name}", dotted)
            else:
                module = types.ModuleType(f"<relative:{base}>")
                module.__dict__["__file__"] = str(init)

        # ``from pkg import name`` falls back to the submodule when pkg lacks the attribute
        module_file = Path(module.__dict__.get("__file__") or "")
        if module_file.name == "__init__.py":
            separator = "." if name else ""
            for item in fromlist:
                if item != "*" and not hasattr(module, item):
                    setattr(module, item, self._load_relative(module_file.parent, [item], f"{dotted}{separator}{item}"))
        return module

    def _load_relative(self, base: Path, parts: List[str], dotted: str) -> types.ModuleType:
        target = base.joinpath(*parts)
        candidates = [target.with_name(target.name + ".py"), target / "__init__.py"]
        path = next((c for c in candidates if c.is_file()), None)
        if path is None:
            raise SandboxImportError(f"Cannot find module '{dotted}' at path '{candidates[0]}'")
        return self._exec_file(path, f"lookout_sibling_{'_'.join(parts)}", dotted)

    def _exec_file(self, path: Path, module_name: str, dotted: str) -> types.ModuleType:
        key = str(path.resolve())
        existing = self._modules.get(key)
        if existing is not None:
            # partially initialised during an import cycle, same as regular imports
            return existing
        module = self._new_module(module_name, key)
        self._modules[key] = module
        try:
            source = path.read_text(encoding="utf-8")
            exec(compile(source, key, "exec"), module.__dict__)
        except SandboxImportError:
            self._modules.pop(key, None)
            raise
        except Exception as exc:
            self._modules.pop(key, None)
            raise SandboxImportError(f"Error loading module '{dotted}': {exc}") from exc
        return module


async def _invoke(fn: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await anyio.to_thread.run_sync(functools.partial(fn, *args), abandon_on_cancel=True)
    if inspect.isawaitable(result):
        result = await result
    return result


class Runner(ABC):
    @abstractmethod
    async def get_metadata(self, code: str, file_path: str | None = None) -> dict:
        ...

    @abstractmethod
    async def should_run(self, integration: Integration, context: dict, cache: Cache | None = None) -> bool:
        ...

    @abstractmethod
    async def run(
        self,
        integration: Integration,
        context: dict,
        secrets: Any,
        data_files: List[dict] | None = None,
        timeout_ms: float | None = None,
        cache: Cache | None = None,
    ) -> Any:
        ...


class SandboxRunner(Runner):
    should_run_timeout_ms: float = SHOULD_RUN_TIMEOUT_MS

    def __init__(
        self,
        default_timeout_ms: float = DEFAULT_RUN_TIMEOUT_MS,
        fetch_timeout_s: float = 30.0,
        fetch_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._default_timeout_ms = default_timeout_ms
        self._fetch_timeout_s = fetch_timeout_s
        self._fetch_transport = fetch_transport

    def _capabilities(self, integration_name: str, cache: Cache | None) -> Dict[str, Any]:
        log = integration_logger(integration_name)
        capabilities: Dict[str, Any] = {
            "logger": log,
            "fetch": HttpFetch(log, timeout=self._fetch_timeout_s, transport=self._fetch_transport),
            "cache": NamespacedCache(cache, integration_name) if cache is not None else None,
        }
        return capabilities

    async def _execute(
        self,
        name: str,
        code: str,
        file_path: str | None,
        timeout_ms: float,
        cache: Cache | None,
        consume: Callable[[types.ModuleType], Any],
    ) -> Any:
        sandbox = _Sandbox(name, self._capabilities(name, cache))
        module_name = f"lookout_integration_{name.replace('-', '_')}"
        result: Any = None
        with anyio.move_on_after(timeout_ms / 1000) as scope:
            module = await anyio.to_thread.run_sync(
                functools.partial(sandbox.exec_source, code, file_path, module_name),
                abandon_on_cancel=True,
            )
            result = await consume(module)
        if scope.cancelled_caught:
            raise IntegrationTimeoutError(timeout_ms)
        return result

    async def get_metadata(self, code: str, file_path: str | None = None) -> dict:
        label = Path(file_path).name if file_path else "unknown"

        async def _extract(module: types.ModuleType) -> Any:
            return module.__dict__

        try:
            namespace = await self._execute("metadata-extraction", code, file_path, METADATA_TIMEOUT_MS, None, _extract)
        except IntegrationTimeoutError as exc:
            raise IntegrationLoadError(f"Integration '{label}' timed out while loading: {exc}") from exc
        except Exception as exc:
            raise IntegrationLoadError(f"Integration '{label}' failed to load: {exc}") from exc

        run_fn = namespace.get(RUN_ENTRY)
        if run_fn is None:
            logger.error("integration_invalid file=%s error=missing_run_function", label)
            raise IntegrationLoadError(f"Integration '{label}' is missing required 'run' function")
        if not callable(run_fn):
            logger.error("integration_invalid file=%s error=invalid_run_function type=%s", label, type(run_fn).__name__)
            raise IntegrationLoadError(
                f"Integration '{label}' has invalid 'run' property: expected function, got {type(run_fn).__name__}"
            )
        should_run_fn = namespace.get(SHOULD_RUN_ENTRY)
        if should_run_fn is not None and not callable(should_run_fn):
            logger.error("integration_invalid file=%s error=invalid_should_run_function", label)
            raise IntegrationLoadError(
                f"Integration '{label}' has invalid 'should_run' property: expected function, got {type(should_run_fn).__name__}"
            )
        metadata = namespace.get("metadata")
        if not isinstance(metadata, dict):
            raise IntegrationLoadError(f"Integration '{label}' must define a metadata dict")
        logger.debug("integration_validated file=%s", label)
        return metadata

    async def should_run(self, integration: Integration, context: dict, cache: Cache | None = None) -> bool:
        """Fail closed: any error or timeout means the integration is skipped."""
        name = integration.name

        async def _decide(module: types.ModuleType) -> bool:
            fn = module.__dict__.get(SHOULD_RUN_ENTRY)
            if fn is None:
                return True
            return bool(await _invoke(fn, json_copy(context)))

        try:
            decision = await self._execute(name, integration.code, integration.path, self.should_run_timeout_ms, cache, _decide)
        except Exception as exc:
            logger.error("should_run_failed integration=%s error_type=%s error=%s", name, type(exc).__name__, exc)
            return False
        logger.debug("should_run_evaluated integration=%s result=%s url=%s", name, decision, context.get("url"))
        return decision

    async def run(
        self,
        integration: Integration,
        context: dict,
        secrets: Any,
        data_files: List[dict] | None = None,
        timeout_ms: float | None = None,
        cache: Cache | None = None,
    ) -> Any:
        """Execute ``run``; output is passed through unvalidated."""
        name = integration.name
        timeout_ms = timeout_ms if timeout_ms is not None else self._default_timeout_ms
        resolved_secrets = secrets.get_secrets_for_integration(integration) if secrets is not None else {}
        context_copy = json_copy(context)
        files = copy.deepcopy(data_files) if data_files is not None else []

        async def _call(module: types.ModuleType) -> Any:
            fn = module.__dict__.get(RUN_ENTRY)
            if not callable(fn):
                raise IntegrationLoadError(f"Integration '{name}' is missing required 'run' function")
            return await _invoke(fn, context_copy, dict(resolved_secrets), files)

        logger.debug("integration_run_started integration=%s timeout_ms=%s", name, timeout_ms)
        start = time.perf_counter()
        try:
            result = await self._execute(name, integration.code, integration.path, timeout_ms, cache, _call)
        except Exception as exc:
            logger.error(
                "integration_run_failed integration=%s duration_ms=%.1f error_type=%s error=%s",
                name,
                (time.perf_counter() - start) * 1000,
                type(exc).__name__,
                exc,
            )
            raise
        logger.debug("integration_run_completed integration=%s duration_ms=%.1f", name, (time.perf_counter() - start) * 1000)
        return result

"""FastAPI app exposing the integration engine."""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import Settings, adapter_description, load_settings
from app.diagnostics import build_diagnostics
from app.loader import FsIntegrationLoader, LoaderError
from app.secrets import EnvSecrets, SecretsProvider, SecretStoreError
from integration_registry import IntegrationRegistry
from integration_schema import validate_context
from orchestrator import Orchestrator
from result_cache import Cache, MemoryCache
from sandbox_runner import Runner, SandboxRunner


MAX_BODY_BYTES = 100 * 1024

logger = logging.getLogger("lookout.http")


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _json(body: Any, status: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _invalid_body(details: list) -> JSONResponse:
    return _json({"error": "Invalid request body", "details": details}, status=400)


def _internal_error() -> JSONResponse:
    return _json({"error": "Internal server error"}, status=500)


def _too_large() -> JSONResponse:
    return _json({"error": "Request body too large"}, status=413)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects declared oversized bodies before any handler reads them."""

    def __init__(self, app, max_bytes: int = MAX_BODY_BYTES) -> None:
        super().__init__(app)
        self._max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self._max_bytes:
            logger.warning("body_too_large path=%s bytes=%s limit=%s", request.url.path, declared, self._max_bytes)
            return _too_large()
        return await call_next(request)


def create_app(
    settings: Settings | None = None,
    secrets: SecretsProvider | None = None,
    runner: Runner | None = None,
    cache: Cache | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    cache = cache if cache is not None else MemoryCache(settings.cache_size)
    runner = runner or SandboxRunner(default_timeout_ms=settings.run_timeout_ms, fetch_timeout_s=settings.fetch_timeout_s)
    secrets = secrets or EnvSecrets(prefix=settings.secrets_prefix, secret_key=settings.secret_key)
    registry = IntegrationRegistry(cache)
    loader = FsIntegrationLoader(settings.integrations_dir, runner, settings.allowed_adapters)
    orchestrator = Orchestrator(registry, runner, cache, secrets, run_timeout_ms=settings.run_timeout_ms)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            secrets.load()
        except SecretStoreError as exc:
            logger.error("secrets_load_failed error=%s", exc)
            raise
        try:
            await loader.load_into(registry, reason="startup")
        except LoaderError as exc:
            # serve an empty snapshot; /integrations/reload can recover later
            logger.error("integrations_load_failed error=%s", exc)
        yield

    app = FastAPI(title="Lookout", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.cache = cache
    app.state.runner = runner
    app.state.orchestrator = orchestrator
    app.state.loader = loader
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=MAX_BODY_BYTES)

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        logger.info("%s %s %s total_ms=%.1f", request.method, request.url.path, response.status_code, total_ms)
        if total_ms >= settings.slow_request_ms:
            logger.warning(
                "slow_request method=%s path=%s total_ms=%.1f status=%s",
                request.method,
                request.url.path,
                total_ms,
                response.status_code,
            )
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("request_failed path=%s", request.url.path)
        return _internal_error()

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    @app.post("/context")
    async def handle_context(request: Request):
        raw = await request.body()
        # chunked bodies carry no content-length for the middleware to check
        if len(raw) > MAX_BODY_BYTES:
            return _too_large()
        try:
            body = json.loads(raw or b"null")
        except ValueError:
            return _invalid_body([{"path": "", "message": "Malformed JSON"}])

        details = validate_context(body, list(settings.allowed_adapters))
        if details:
            logger.warning("context_rejected details=%s", details)
            return _invalid_body(details)

        try:
            response = await orchestrator.handle(body)
        except Exception:
            logger.exception("context_request_failed url=%s", body.get("url"))
            return _internal_error()
        return _json(response)

    @app.get("/config")
    async def get_config():
        adapters = [
            {
                "name": name,
                "enabled": name in settings.allowed_adapters,
                "urls": list(urls),
                "description": adapter_description(name),
            }
            for name, urls in settings.adapters.items()
        ]
        return _json({"adapters": adapters, "customDomains": registry.custom_hosts(), "timestamp": _timestamp()})

    @app.get("/custom-domains")
    async def custom_domains():
        hosts = registry.custom_hosts()
        return _json({"hosts": hosts, "count": len(hosts), "timestamp": _timestamp()})

    @app.get("/diagnostics")
    async def diagnostics():
        return _json(build_diagnostics(registry))

    @app.post("/integrations/reload")
    async def reload_integrations():
        try:
            result = await loader.load_into(registry, reason="reload")
        except LoaderError as exc:
            return _json(
                {
                    "ok": False,
                    "errors": [{"code": "LOADER_FAILED", "message": exc.message, "path": exc.path, "detail": None}],
                    "warnings": [],
                },
                status=400,
            )
        return _json(result)

    return app


_settings = load_settings()
logging.basicConfig(level=getattr(logging, _settings.log_level, logging.INFO))
app = create_app(_settings)

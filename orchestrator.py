"""Request pipeline: resolve, consult cache, execute, validate, aggregate."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from lookout.context_path import ContextPathError
from integration_registry import IntegrationRegistry
from integration_schema import Integration, validate_results
from result_cache import Cache
from rule_engine import cache_key_from
from sandbox_runner import DEFAULT_RUN_TIMEOUT_MS, IntegrationTimeoutError, Runner


STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_TIMED_OUT = "timedOut"
STATUS_FAILED = "failed"

RESULT_CACHE_PREFIX = "r"

logger = logging.getLogger("lookout.orchestrator")


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _error_message(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


def error_result(integration_name: str, message: str) -> dict:
    return {"type": "text", "status": "important", "content": f"{integration_name}: {message}"}


def check_logs_result(integration_name: str) -> dict:
    return {"type": "text", "status": "important", "content": f"Integration {integration_name} failed, check logs"}


@dataclass
class ExecutionOutcome:
    integration_name: str
    status: str
    results: List[dict] = field(default_factory=list)
    error: str | None = None
    cache_hit: bool = False


def _key_paths(integration: Integration) -> List[str]:
    explicit = integration.metadata.get("cacheKey")
    if isinstance(explicit, list) and explicit:
        return list(explicit)
    match = integration.metadata.get("match")
    rules = match.get("context") if isinstance(match, dict) else None
    return list(rules.keys()) if isinstance(rules, dict) else []


def result_cache_key(integration: Integration, context: dict) -> str | None:
    derived = cache_key_from(context, _key_paths(integration), integration.name)
    if derived is None:
        return None
    return f"{RESULT_CACHE_PREFIX}:{integration.name}:{derived}"


class Orchestrator:
    def __init__(
        self,
        registry: IntegrationRegistry,
        runner: Runner,
        cache: Cache,
        secrets: Any,
        run_timeout_ms: float = DEFAULT_RUN_TIMEOUT_MS,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._cache = cache
        self._secrets = secrets
        self._run_timeout_ms = run_timeout_ms

    async def execute(self, integration: Integration, context: dict, data_files: List[dict] | None = None) -> ExecutionOutcome:
        """Run one integration with fault isolation.

        Only cache faults escape; everything the integration itself does
        wrong ends up as a failed or timed out outcome.
        """
        name = integration.name
        try:
            key = result_cache_key(integration, context)
        except ContextPathError as exc:
            logger.error("orchestrator_cache_key_invalid integration=%s error=%s", name, exc)
            return ExecutionOutcome(name, STATUS_FAILED, [check_logs_result(name)], exc.message)
        if key is not None:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("orchestrator_cache_hit integration=%s key=%s", name, key)
                return ExecutionOutcome(name, STATUS_SUCCESS, cached, cache_hit=True)

        if not await self._runner.should_run(integration, context, self._cache):
            logger.debug("orchestrator_skipped integration=%s", name)
            return ExecutionOutcome(name, STATUS_SKIPPED)

        start = time.perf_counter()
        try:
            output = await self._runner.run(
                integration,
                context,
                self._secrets,
                data_files,
                timeout_ms=self._run_timeout_ms,
                cache=self._cache,
            )
        except IntegrationTimeoutError as exc:
            logger.warning("orchestrator_run_timed_out integration=%s timeout_ms=%s", name, exc.timeout_ms)
            message = _error_message(exc)
            return ExecutionOutcome(name, STATUS_TIMED_OUT, [error_result(name, message)], message)
        except Exception as exc:
            logger.error("orchestrator_run_failed integration=%s error_type=%s error=%s", name, type(exc).__name__, exc)
            message = _error_message(exc)
            return ExecutionOutcome(name, STATUS_FAILED, [error_result(name, message)], message)

        results, errors = validate_results(output)
        if errors:
            logger.error(
                "orchestrator_invalid_results integration=%s errors=%s",
                name,
                [(e["path"], e["message"]) for e in errors],
            )
            return ExecutionOutcome(name, STATUS_FAILED, [check_logs_result(name)], "invalid results")

        ttl = integration.metadata.get("cache")
        if key is not None and isinstance(ttl, (int, float)) and ttl > 0:
            self._cache.set(key, results, ttl)
        logger.debug(
            "orchestrator_run_succeeded integration=%s results=%s duration_ms=%.1f",
            name,
            len(results),
            (time.perf_counter() - start) * 1000,
        )
        return ExecutionOutcome(name, STATUS_SUCCESS, results)

    async def handle(self, context: Any) -> Dict[str, Any]:
        if not isinstance(context, dict) or not context.get("url"):
            logger.warning("orchestrator_missing_url")
            return {
                "data": [],
                "count": 0,
                "cacheHits": 0,
                "failedCount": 0,
                "timestamp": _timestamp(),
                "integrationNames": [],
            }

        integrations = self._registry.resolve(context)
        data_files = self._registry.data_files()
        logger.info(
            "orchestrator_resolved url=%s type=%s integrations=%s",
            context.get("url"),
            context.get("type"),
            [i.name for i in integrations],
        )

        data: List[dict] = []
        cache_hits = 0
        failed = 0
        for integration in integrations:
            outcome = await self.execute(integration, context, data_files)
            data.extend(outcome.results)
            if outcome.cache_hit:
                cache_hits += 1
            if outcome.status in (STATUS_FAILED, STATUS_TIMED_OUT):
                failed += 1

        logger.info(
            "orchestrator_completed url=%s results=%s cache_hits=%s failed=%s",
            context.get("url"),
            len(data),
            cache_hits,
            failed,
        )
        return {
            "data": data,
            "count": len(data),
            "cacheHits": cache_hits,
            "failedCount": failed,
            "timestamp": _timestamp(),
            "integrationNames": [i.name for i in integrations],
        }

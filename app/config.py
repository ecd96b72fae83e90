"""Environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

ROOT = Path(__file__).resolve().parents[1]

DEFAULT_ADAPTER_URLS: Dict[str, Tuple[str, ...]] = {
    "aws": ("https://console.aws.com", r"\.console\.aws\.amazon\.com$"),
    "github": ("https://github.com",),
    "generic": (),
}

ADAPTER_DESCRIPTIONS = {
    "github": "GitHub adapter, collecting information about repositories, code, users, issues, pull requests, actions, and more",
    "aws": "AWS adapter, collecting information about Lambda, DynamoDB, S3, and more",
    "generic": "Generic adapter for custom domains",
}


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def adapter_description(name: str) -> str:
    return ADAPTER_DESCRIPTIONS.get(name, f"Adapter for {name}")


@dataclass(frozen=True)
class Settings:
    integrations_dir: Path
    run_timeout_ms: float = 5000
    cache_size: int = 1000
    allowed_adapters: Tuple[str, ...] = ("aws", "github", "generic")
    adapters: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_ADAPTER_URLS))
    secret_key: str | None = None
    secrets_prefix: str = "INTEGRATION_"
    log_level: str = "INFO"
    fetch_timeout_s: float = 30.0
    slow_request_ms: float = 1000.0


def load_settings(env_file: Path | None = ROOT / "app" / ".env") -> Settings:
    if env_file is not None:
        _load_env_file(env_file)

    integrations_dir = os.getenv("LOOKOUT_INTEGRATIONS_DIR", "").strip() or "./integrations"
    allowed = tuple(_csv(os.getenv("LOOKOUT_ALLOWED_ADAPTERS", "aws,github,generic")))
    adapters = dict(DEFAULT_ADAPTER_URLS)
    extra_generic = _csv(os.getenv("LOOKOUT_GENERIC_URLS", ""))
    if extra_generic:
        adapters["generic"] = tuple(adapters.get("generic", ())) + tuple(extra_generic)
    for name in allowed:
        adapters.setdefault(name, ())

    return Settings(
        integrations_dir=Path(integrations_dir),
        run_timeout_ms=float(os.getenv("LOOKOUT_RUN_TIMEOUT_MS", "5000")),
        cache_size=int(os.getenv("LOOKOUT_CACHE_SIZE", "1000")),
        allowed_adapters=allowed,
        adapters=adapters,
        secret_key=os.getenv("LOOKOUT_SECRET_KEY", "").strip() or None,
        secrets_prefix=os.getenv("LOOKOUT_SECRETS_PREFIX", "INTEGRATION_"),
        log_level=os.getenv("LOOKOUT_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        fetch_timeout_s=float(os.getenv("LOOKOUT_FETCH_TIMEOUT_S", "30")),
        slow_request_ms=float(os.getenv("LOOKOUT_REQ_SLOW_MS", "1000")),
    )

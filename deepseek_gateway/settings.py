"""Environment-driven settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from .upstream import DEFAULT_BASE_URL

LOG = logging.getLogger("deepseek-gateway")

# Numbered variables (NAME1, NAME2, ...) are scanned up to this index; past
# index 10 the scan stops at the first gap.
MAX_NUMBERED_VARS = 100


@dataclass
class AppSettings:
    upstream_tokens: list[str] = field(default_factory=list)
    api_keys: set[str] = field(default_factory=set)
    keep_alive_minutes: float = 30.0
    token_cache_path: Optional[str] = None
    upstream_base_url: str = DEFAULT_BASE_URL
    upstream_timeout_seconds: float = 120.0
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_connections: int = 200
    max_keepalive: int = 50
    drain_timeout_seconds: float = 30.0


def numbered_values(getenv: Callable[[str], Optional[str]], name: str) -> list[str]:
    """Collect ``NAME``, ``NAME1`` ... ``NAME100`` in order."""
    values: list[str] = []
    first = (getenv(name) or "").strip()
    if first:
        values.append(first)
    for i in range(1, MAX_NUMBERED_VARS + 1):
        val = (getenv(f"{name}{i}") or "").strip()
        if val:
            values.append(val)
        elif i > 10:
            break
    return values


def split_csv(raw: Optional[str]) -> list[str]:
    return [v.strip() for v in (raw or "").split(",") if v.strip()]


def load_settings(env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """Load settings from environment variables with validation."""
    source = os.environ if env is None else env
    getenv = source.get

    tokens = numbered_values(getenv, "DEEPSEEK_AUTHTOKEN") + split_csv(getenv("DEEPSEEK_TOKENS"))
    tokens = list(dict.fromkeys(tokens))
    keys = set(numbered_values(getenv, "API_KEY")) | set(split_csv(getenv("API_KEYS")))

    settings = AppSettings(
        upstream_tokens=tokens,
        api_keys=keys,
        keep_alive_minutes=max(0.0, float(getenv("KEEP_ALIVE_INTERVAL") or 30)),
        token_cache_path=(getenv("DEEPSEEK_TOKEN_CACHE") or "").strip() or None,
        upstream_base_url=(getenv("DEEPSEEK_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/"),
        upstream_timeout_seconds=max(5.0, float(getenv("UPSTREAM_TIMEOUT_SECONDS") or 120)),
        host=getenv("HOST") or "0.0.0.0",
        port=int(getenv("PORT") or 3000),
        log_level=(getenv("LOG_LEVEL") or "INFO").upper(),
        cors_origins=split_csv(getenv("CORS_ORIGINS") or "*"),
        max_connections=max(10, int(getenv("MAX_CONNECTIONS") or 200)),
        max_keepalive=max(10, int(getenv("MAX_KEEPALIVE") or 50)),
        drain_timeout_seconds=max(0.0, float(getenv("DRAIN_TIMEOUT_SECONDS") or 30)),
    )

    if tokens:
        LOG.info("Loaded %d upstream token(s) from environment", len(tokens))
    elif not settings.token_cache_path:
        LOG.warning("No DEEPSEEK_AUTHTOKEN configured - upstream requests will fail")
    if keys:
        LOG.info("Loaded %d caller API key(s) from environment", len(keys))
    else:
        LOG.warning("No API_KEY configured - the gateway accepts any caller")

    return settings

"""Upstream token pool and caller-facing API key set."""

from __future__ import annotations

import hmac
import json
import logging
import time
from pathlib import Path
from typing import Iterable, Optional

from .errors import AuthError

LOG = logging.getLogger("deepseek-gateway.credentials")

# Upstream tokens tend to expire after a day or two without use.
STALE_TOKEN_HOURS = 48.0


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CredentialPool:
    """Round-robin pool of upstream session tokens plus the API key set.

    The cursor is only touched by synchronous methods, so every call is
    atomic with respect to the event loop. Concurrent requests may still
    observe interleaved rotation; that only affects fairness.
    """

    def __init__(
        self,
        tokens: Iterable[str] = (),
        api_keys: Iterable[str] = (),
    ) -> None:
        self._tokens: list[str] = []
        self._cursor = 0
        self._default: Optional[str] = None
        self._api_keys: set[str] = set()
        self.add_tokens(tokens)
        for key in api_keys:
            self.add_api_key(key)

    # -- upstream tokens --

    def add_token(self, token: str) -> None:
        token = (token or "").strip()
        if not token or token in self._tokens:
            return
        self._tokens.append(token)
        if self._default is None:
            self._default = token

    def add_tokens(self, tokens: Iterable[str]) -> None:
        for t in tokens:
            self.add_token(t)

    def remove_token(self, token: str) -> bool:
        try:
            idx = self._tokens.index(token)
        except ValueError:
            return False
        del self._tokens[idx]
        if idx < self._cursor:
            self._cursor -= 1
        if self._cursor >= len(self._tokens):
            self._cursor = 0
        if self._default == token:
            self._default = self._tokens[0] if self._tokens else None
        return True

    def set_default_token(self, token: str) -> None:
        self._default = (token or "").strip() or None

    def next_token(self) -> str:
        if not self._tokens:
            if self._default:
                return self._default
            raise AuthError()
        token = self._tokens[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._tokens)
        return token

    def has_tokens(self) -> bool:
        return bool(self._tokens) or self._default is not None

    @property
    def tokens(self) -> list[str]:
        return list(self._tokens)

    @property
    def cursor(self) -> int:
        return self._cursor

    # -- caller API keys --

    def add_api_key(self, key: str) -> None:
        if key:
            self._api_keys.add(key)

    def validate_api_key(self, key: Optional[str]) -> bool:
        # No keys configured means open mode.
        if not self._api_keys:
            return True
        if key is None:
            return False
        return any(constant_time_compare(key, k) for k in self._api_keys)

    def status(self) -> dict[str, int]:
        return {
            "total_tokens": len(self._tokens),
            "current_index": self._cursor,
            "api_keys_configured": len(self._api_keys),
        }


# ── Token cache file ──────────────────────────────────────────────────────────


def load_cached_token(path: str | Path) -> Optional[str]:
    """Read a token saved by :func:`save_cached_token`, or ``None``."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        LOG.warning("Ignoring unreadable token cache %s: %s", p, exc)
        return None
    if not isinstance(data, dict):
        LOG.warning("Ignoring token cache %s: expected a JSON object", p)
        return None
    token = str(data.get("token") or "").strip()
    if not token:
        return None
    try:
        saved_at = float(data.get("saved_at") or 0)
    except (TypeError, ValueError):
        LOG.warning("Token cache %s has an invalid saved_at; age unknown", p)
        saved_at = 0.0
    if saved_at:
        age_hours = (time.time() - saved_at) / 3600
        if age_hours > STALE_TOKEN_HOURS:
            LOG.warning("Cached upstream token is %dh old - may need refresh", round(age_hours))
    return token


def save_cached_token(path: str | Path, token: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "token": token,
        "saved_at": time.time(),
        "expires_hint": "token may expire after ~24-48 hours of inactivity",
    }
    p.write_text(json.dumps(payload, indent=2), encoding="utf-8")

"""Tests for the credential pool and token cache."""

import json
import logging
import time
from pathlib import Path

import pytest

from deepseek_gateway.credentials import (
    CredentialPool,
    load_cached_token,
    save_cached_token,
)
from deepseek_gateway.errors import AuthError


# ── Round robin ───────────────────────────────────────────────────────────


def test_round_robin_visits_each_token_once_per_cycle() -> None:
    tokens = ["t1", "t2", "t3", "t4"]
    pool = CredentialPool(tokens)
    first_cycle = [pool.next_token() for _ in tokens]
    assert sorted(first_cycle) == sorted(tokens)
    assert first_cycle == tokens
    assert pool.next_token() == "t1"


def test_add_token_is_idempotent_and_first_becomes_default() -> None:
    pool = CredentialPool()
    pool.add_token("a")
    pool.add_token("a")
    pool.add_token("")
    pool.add_token("b")
    assert pool.tokens == ["a", "b"]
    pool.remove_token("a")
    pool.remove_token("b")
    with pytest.raises(AuthError):
        pool.next_token()


def test_empty_pool_falls_back_to_default() -> None:
    pool = CredentialPool()
    with pytest.raises(AuthError):
        pool.next_token()
    assert not pool.has_tokens()
    pool.set_default_token("fallback")
    assert pool.has_tokens()
    assert pool.next_token() == "fallback"
    assert pool.next_token() == "fallback"


def test_remove_token_keeps_cursor_valid() -> None:
    pool = CredentialPool(["a", "b", "c"])
    assert pool.next_token() == "a"
    assert pool.next_token() == "b"
    assert pool.cursor == 2
    pool.remove_token("c")
    assert pool.cursor == 0
    assert pool.next_token() == "a"
    pool.remove_token("a")
    assert 0 <= pool.cursor < len(pool.tokens)
    assert pool.next_token() == "b"
    assert pool.remove_token("missing") is False


def test_status_reports_pool_shape() -> None:
    pool = CredentialPool(["a", "b"], api_keys=["k"])
    pool.next_token()
    assert pool.status() == {"total_tokens": 2, "current_index": 1, "api_keys_configured": 1}


# ── API keys ──────────────────────────────────────────────────────────────


def test_open_mode_accepts_any_key() -> None:
    pool = CredentialPool()
    for key in ("", "anything", None):
        assert pool.validate_api_key(key) is True


def test_configured_keys_require_exact_match() -> None:
    pool = CredentialPool()
    pool.add_api_key("sk-one")
    pool.add_api_key("sk-two")
    assert pool.validate_api_key("sk-one")
    assert pool.validate_api_key("sk-two")
    for key in ("", "sk-on", "sk-one ", "SK-ONE", None):
        assert pool.validate_api_key(key) is False


# ── Token cache ───────────────────────────────────────────────────────────


def test_token_cache_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "cache" / "token.json"
    assert load_cached_token(path) is None
    save_cached_token(path, "cached-token")
    assert load_cached_token(path) == "cached-token"


def test_stale_cached_token_warns(tmp_path: Path, caplog) -> None:
    path = tmp_path / "token.json"
    path.write_text(json.dumps({"token": "old", "saved_at": time.time() - 72 * 3600}))
    with caplog.at_level(logging.WARNING, logger="deepseek-gateway.credentials"):
        assert load_cached_token(path) == "old"
    assert "may need refresh" in caplog.text


def test_unreadable_cache_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    path.write_text("{broken")
    assert load_cached_token(path) is None


@pytest.mark.parametrize("content", ["[1, 2]", '"tok"', "null"])
def test_cache_that_is_not_an_object_is_ignored(tmp_path: Path, content: str) -> None:
    path = tmp_path / "token.json"
    path.write_text(content)
    assert load_cached_token(path) is None


def test_cache_with_bad_timestamp_still_yields_token(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    path.write_text(json.dumps({"token": "tok", "saved_at": "yesterday"}))
    assert load_cached_token(path) == "tok"

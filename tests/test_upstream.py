"""Tests for the upstream session client against a mocked backend."""

import asyncio
import base64
import json
import re

import httpx
import pytest

from deepseek_gateway.credentials import CredentialPool
from deepseek_gateway.errors import AuthError, SolverError, UpstreamError
from deepseek_gateway.pow import ProofOfWorkAdapter
from deepseek_gateway.upstream import UpstreamSessionClient, new_client_stream_id

from upstream_fake import SAMPLE_STREAM, FakeUpstream, StubSolver, ok


def run_with_client(transport, coro_fn, tokens=("tok-a", "tok-b"), solver=None):
    async def _test():
        async with httpx.AsyncClient(transport=transport) as http:
            client = UpstreamSessionClient(
                http, CredentialPool(tokens), ProofOfWorkAdapter(solver or StubSolver())
            )
            return await coro_fn(client)

    return asyncio.run(_test())


def test_create_session_returns_id() -> None:
    fake = FakeUpstream()
    assert run_with_client(fake.transport(), lambda c: c.create_session()) == "sess-1"
    method, path, auth = fake.calls[0]
    assert (method, path) == ("POST", "/api/v0/chat_session/create")
    assert auth == "Bearer tok-a"


def test_create_session_accepts_nested_shape() -> None:
    fake = FakeUpstream(session_response=ok({"chat_session": {"id": "nested-7"}}))
    assert run_with_client(fake.transport(), lambda c: c.create_session()) == "nested-7"


def test_each_call_rotates_credential() -> None:
    fake = FakeUpstream()

    async def three_calls(c):
        await c.create_session()
        await c.get_challenge()
        await c.ping()

    run_with_client(fake.transport(), three_calls)
    assert [auth for _, _, auth in fake.calls] == ["Bearer tok-a", "Bearer tok-b", "Bearer tok-a"]


def test_http_error_status_propagates() -> None:
    fake = FakeUpstream(session_response=httpx.Response(429, json={"msg": "too many requests"}))
    with pytest.raises(UpstreamError) as ei:
        run_with_client(fake.transport(), lambda c: c.create_session())
    assert ei.value.status == 429
    assert ei.value.message == "too many requests"
    assert ei.value.error_type == "rate_limit_error"


def test_business_error_code_on_200_is_upstream_error() -> None:
    fake = FakeUpstream(
        session_response=httpx.Response(200, json={"code": 40003, "msg": "INVALID_TOKEN", "data": None})
    )
    with pytest.raises(UpstreamError) as ei:
        run_with_client(fake.transport(), lambda c: c.create_session())
    assert ei.value.status == 401
    assert "INVALID_TOKEN" in ei.value.message


def test_transport_failure_maps_to_502() -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=req)

    with pytest.raises(UpstreamError) as ei:
        run_with_client(httpx.MockTransport(handler), lambda c: c.ping())
    assert ei.value.status == 502


def test_empty_pool_raises_auth_error_before_any_call() -> None:
    fake = FakeUpstream()
    with pytest.raises(AuthError):
        run_with_client(fake.transport(), lambda c: c.create_session(), tokens=())
    assert fake.calls == []


def test_issue_completion_sends_solved_envelope_and_streams() -> None:
    fake = FakeUpstream()
    solver = StubSolver(answer=4242)

    async def complete(c):
        resp = await c.issue_completion("sess-9", "2+2?", reasoning_enabled=True, parent_message_id=3)
        try:
            return await resp.aread()
        finally:
            await resp.aclose()

    body = run_with_client(fake.transport(), complete, solver=solver)
    assert body == SAMPLE_STREAM
    assert fake.paths() == ["/api/v0/chat/create_pow_challenge", "/api/v0/chat/completion"]
    assert len(solver.calls) == 1

    envelope = json.loads(base64.b64decode(fake.pow_headers[0]))
    assert envelope["answer"] == 4242
    assert envelope["signature"] == "sig"

    sent = fake.completion_bodies[0]
    assert sent["chat_session_id"] == "sess-9"
    assert sent["prompt"] == "2+2?"
    assert sent["thinking_enabled"] is True
    assert sent["search_enabled"] is False
    assert sent["parent_message_id"] == 3
    assert sent["ref_file_ids"] == []
    assert re.fullmatch(r"\d{8}-[0-9a-f]{16}", sent["client_stream_id"])


def test_unsolved_challenge_aborts_before_completion() -> None:
    fake = FakeUpstream()
    with pytest.raises(SolverError):
        run_with_client(
            fake.transport(),
            lambda c: c.issue_completion("s", "hi", reasoning_enabled=False),
            solver=StubSolver(answer=None),
        )
    assert "/api/v0/chat/completion" not in fake.paths()


def test_completion_error_status_propagates() -> None:
    fake = FakeUpstream(completion_status=503)
    with pytest.raises(UpstreamError) as ei:
        run_with_client(fake.transport(), lambda c: c.issue_completion("s", "hi", False))
    assert ei.value.status == 503
    assert ei.value.message == "busy"


def test_ping_hits_settings_endpoint() -> None:
    fake = FakeUpstream()
    assert run_with_client(fake.transport(), lambda c: c.ping()) is True
    assert fake.paths() == ["/api/v0/client/settings"]


def test_client_stream_ids_are_unique() -> None:
    ids = {new_client_stream_id() for _ in range(50)}
    assert len(ids) == 50

"""Process-wide gateway service with explicit startup and shutdown."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional

import httpx

from .assembler import ResponseAssembler, sse_events
from .credentials import CredentialPool, load_cached_token, save_cached_token
from .errors import UpstreamError
from .keepalive import KeepAliveScheduler
from .models import ChatCompletionRequest, ModelSpec, messages_to_prompt
from .pow import ProofOfWorkAdapter, ProofOfWorkSolver
from .settings import AppSettings
from .translator import StreamTranslator
from .upstream import UpstreamSessionClient

LOG = logging.getLogger("deepseek-gateway")


async def read_upstream(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield raw body chunks, turning transport failures into ``UpstreamError``."""
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield chunk
    except httpx.HTTPError as exc:
        raise UpstreamError(502, f"upstream stream interrupted: {type(exc).__name__}: {exc}") from exc


class GatewayService:
    """Owns the credential pool, solver, HTTP client and keep-alive scheduler.

    Request handlers get it from ``app.state.service``; each request builds
    its own :class:`UpstreamSessionClient` on top of the shared pieces.
    """

    def __init__(
        self,
        settings: AppSettings,
        solver: Optional[ProofOfWorkSolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        pool: Optional[CredentialPool] = None,
    ) -> None:
        self.settings = settings
        self.pool = pool or CredentialPool(settings.upstream_tokens, settings.api_keys)
        self.pow = ProofOfWorkAdapter(solver)
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self.keep_alive = KeepAliveScheduler(
            self.ping,
            interval_minutes=settings.keep_alive_minutes,
            can_run=self.pool.has_tokens,
        )
        self._inflight = 0
        self._total_requests = 0
        self._total_errors = 0
        self._start_time = time.time()

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(self.settings.upstream_timeout_seconds, connect=10.0),
            transport=self._transport,
            limits=httpx.Limits(
                max_connections=self.settings.max_connections,
                max_keepalive_connections=self.settings.max_keepalive,
            ),
        )

    async def startup(self) -> None:
        self._http = self._make_client()
        self._start_time = time.time()
        cache_path = self.settings.token_cache_path
        if cache_path and not self.pool.tokens:
            cached = await asyncio.to_thread(load_cached_token, cache_path)
            if cached:
                self.pool.set_default_token(cached)
                LOG.info("Loaded upstream token from cache %s", cache_path)
        elif cache_path:
            try:
                await asyncio.to_thread(save_cached_token, cache_path, self.pool.tokens[0])
            except OSError as exc:
                LOG.warning("Could not write token cache %s: %s", cache_path, exc)
        if self.pool.has_tokens():
            LOG.info("Token pool status: %s", self.pool.status())
            self.keep_alive.start()
        else:
            LOG.warning("No upstream tokens found! Requests will fail.")

    async def shutdown(self) -> None:
        """Graceful shutdown: stop pinging, wait for in-flight requests, close the client."""
        await self.keep_alive.stop()
        deadline = time.time() + self.settings.drain_timeout_seconds
        while self._inflight > 0 and time.time() < deadline:
            LOG.info("Draining %d in-flight requests...", self._inflight)
            await asyncio.sleep(0.5)
        if self._http and not self._http.is_closed:
            await self._http.aclose()
        LOG.info("Gateway shutdown complete")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("HTTP client not initialised")
        return self._http

    def session_client(self) -> UpstreamSessionClient:
        return UpstreamSessionClient(
            self.http,
            self.pool,
            self.pow,
            base_url=self.settings.upstream_base_url,
            timeout=self.settings.upstream_timeout_seconds,
        )

    async def ping(self) -> bool:
        return await self.session_client().ping()

    # -- request accounting --

    def _acquire(self) -> None:
        self._inflight += 1
        self._total_requests += 1

    def _release(self) -> None:
        self._inflight = max(0, self._inflight - 1)

    def note_error(self) -> None:
        self._total_errors += 1

    # -- chat --

    async def open_chat(
        self, req: ChatCompletionRequest, model: ModelSpec
    ) -> tuple[str, httpx.Response]:
        client = self.session_client()
        session_id = req.chat_session_id or await client.create_session()
        response = await client.issue_completion(
            session_id,
            messages_to_prompt(req.messages),
            reasoning_enabled=model.reasoning,
            search_enabled=req.search,
            parent_message_id=req.parent_message_id,
        )
        return session_id, response

    async def complete(
        self, req: ChatCompletionRequest, model: ModelSpec
    ) -> tuple[dict[str, Any], ResponseAssembler]:
        self._acquire()
        try:
            session_id, response = await self.open_chat(req, model)
            translator = StreamTranslator(session_id)
            assembler = ResponseAssembler(req.model)
            try:
                body = await assembler.aggregate(translator.events(read_upstream(response)))
            finally:
                await response.aclose()
            return body, assembler
        finally:
            self._release()

    async def stream(
        self, req: ChatCompletionRequest, model: ModelSpec
    ) -> tuple[str, AsyncIterator[str]]:
        """Open the upstream stream and return the session id and SSE frames.

        Handshake failures raise before any frame is produced. Closing the
        returned generator (e.g. on client disconnect) closes the upstream.
        """
        self._acquire()
        try:
            session_id, response = await self.open_chat(req, model)
        except BaseException:
            self._release()
            raise
        translator = StreamTranslator(session_id)
        assembler = ResponseAssembler(req.model)

        async def frames() -> AsyncIterator[str]:
            try:
                chunks = assembler.stream(translator.events(read_upstream(response)))
                async for frame in sse_events(chunks):
                    yield frame
            finally:
                await response.aclose()
                self._release()

        return session_id, frames()

    # -- status --

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def stats(self) -> dict[str, Any]:
        return {
            "total_inflight": self._inflight,
            "total_requests_served": self._total_requests,
            "total_errors": self._total_errors,
        }

    def health(self) -> dict[str, Any]:
        healthy = self.pool.has_tokens()
        body: dict[str, Any] = {
            "status": "healthy" if healthy else "degraded",
            "uptime": int(self.uptime_seconds),
            "token_pool": self.pool.status(),
            "keep_alive": self.keep_alive.status(),
            **self.stats(),
        }
        if not healthy:
            body["warning"] = "No upstream tokens configured"
        return body

"""OpenAI-compatible HTTP surface for the DeepSeek web chat backend.

Callers speak the standard chat-completions protocol; every request is
translated into a DeepSeek web session:

- bearer API key check against the configured key set (open when empty)
- fresh chat session + proof-of-work handshake per completion
- upstream patch stream translated into ``chat.completion`` or SSE chunks,
  with reasoning wrapped in ``<think>`` markers
- round-robin over the upstream token pool
- keep-alive pings so idle tokens do not expire
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from . import __version__
from .errors import GatewayError, ValidationError, error_body, error_type_for_status
from .models import MODELS, ChatCompletionRequest, model_card, resolve_model
from .pow import ProofOfWorkSolver
from .service import GatewayService
from .settings import AppSettings, load_settings

LOG = logging.getLogger("deepseek-gateway")


# ── Helpers ───────────────────────────────────────────────────────────────────


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def parse_bearer_token(value: Optional[str]) -> str:
    """Extract bearer token from Authorization header."""
    if not value:
        return ""
    parts = value.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def error_response(
    status: int,
    message: str,
    error_type: str,
    code: str,
    request_id: str = "",
) -> JSONResponse:
    """Return an OpenAI-style error JSON response."""
    body: dict[str, Any] = error_body(message, error_type, code)
    if request_id:
        body["request_id"] = request_id
    return JSONResponse(body, status_code=status)


# ── App Factory ───────────────────────────────────────────────────────────────


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    solver: Optional[ProofOfWorkSolver] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    service = GatewayService(cfg, solver=solver, transport=transport)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await service.startup()
        LOG.info("DeepSeek gateway v%s ready on port %s", __version__, cfg.port)
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(
        title="DeepSeek OpenAI-Compatible Gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = cfg
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Chat-Session-Id", "X-Message-Id"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Request-ID"] = req_id
        response.headers["X-Gateway-Version"] = __version__
        return response

    # Exception handlers
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        req_id = getattr(request.state, "request_id", "")
        service.note_error()
        LOG.warning("Request failed: %s (%d) [req=%s]", exc.detail, exc.status_code, req_id)
        return error_response(exc.status_code, exc.detail, exc.error_type, exc.code, req_id)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return error_response(
            exc.status_code, str(exc.detail), error_type_for_status(exc.status_code),
            "http_error", req_id,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        req_id = getattr(request.state, "request_id", "")
        errors = exc.errors()
        if any("messages" in map(str, e.get("loc", ())) for e in errors):
            message, code = "messages is required and must be a non-empty array", "invalid_messages"
        else:
            first = errors[0] if errors else {}
            loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{loc}: {first.get('msg', 'invalid request')}" if loc else "invalid request body"
            code = "invalid_request"
        return error_response(400, message, "invalid_request_error", code, req_id)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        service.note_error()
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return error_response(500, "internal server error", "server_error", "internal_error", req_id)

    # Auth dependency
    def require_client(authorization: Optional[str] = Header(None)) -> None:
        tok = parse_bearer_token(authorization) or None
        if not service.pool.validate_api_key(tok):
            raise HTTPException(401, "Invalid API Key")

    # Chat completions
    async def chat_completions(request: Request, payload: ChatCompletionRequest) -> Response:
        req_id = getattr(request.state, "request_id", "")
        if payload.n != 1:
            raise ValidationError("Only n=1 is supported", code="unsupported_parameter")
        model = resolve_model(payload.model)
        LOG.info(
            "Request %s: %s (stream=%s, messages=%d)",
            req_id, payload.model, payload.stream, len(payload.messages),
        )

        if not payload.stream:
            body, assembler = await service.complete(payload, model)
            headers = {"X-Chat-Session-Id": str(assembler.session_id or "")}
            if assembler.message_id is not None:
                headers["X-Message-Id"] = str(assembler.message_id)
            return JSONResponse(body, headers=headers)

        session_id, frames = await service.stream(payload, model)
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Chat-Session-Id": session_id,
            },
        )

    # Routes: chat
    @app.post("/v1/chat/completions", dependencies=[Depends(require_client)])
    async def chat(request: Request, payload: ChatCompletionRequest):
        return await chat_completions(request, payload)

    @app.post("/chat/completions", dependencies=[Depends(require_client)])
    async def chat_legacy(request: Request, payload: ChatCompletionRequest):
        return await chat_completions(request, payload)

    # Routes: models
    @app.get("/v1/models", dependencies=[Depends(require_client)])
    async def list_models():
        return {"object": "list", "data": [model_card(m) for m in MODELS]}

    @app.get("/v1/models/{model_id}", dependencies=[Depends(require_client)])
    async def get_model(model_id: str):
        try:
            spec = resolve_model(model_id)
        except ValidationError:
            return error_response(
                404, f"Model '{model_id}' not found", "invalid_request_error", "model_not_found"
            )
        return model_card(spec.id)

    # Routes: health
    @app.get("/health")
    async def health():
        body = service.health()
        body["version"] = __version__
        return JSONResponse(body)

    @app.head("/health")
    async def health_head():
        return Response(status_code=200 if service.pool.has_tokens() else 503)

    return app


app = create_app()


def main() -> None:
    s = load_settings()
    uvicorn.run(
        "deepseek_gateway.app:app",
        host=s.host,
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()

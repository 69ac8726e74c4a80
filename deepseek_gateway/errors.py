"""Error taxonomy shared by the gateway core and the HTTP layer."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "server_error",
        code: str = "internal_error",
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type
        self.code = code

    def to_body(self) -> dict[str, Any]:
        return error_body(self.detail, self.error_type, self.code)


class AuthError(GatewayError):
    """No usable upstream credential."""

    def __init__(self, detail: str = "no upstream auth token configured") -> None:
        super().__init__(detail, 401, "authentication_error", "missing_upstream_token")


class UpstreamError(GatewayError):
    """An upstream HTTP call failed; the status is propagated as-is."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message, status, error_type_for_status(status), "upstream_error")
        self.status = status
        self.message = message


class SolverError(GatewayError):
    """The proof-of-work solver found no answer for a challenge."""

    def __init__(self, detail: str = "proof-of-work challenge could not be solved") -> None:
        super().__init__(detail, 502, "server_error", "pow_unsolved")


class ValidationError(GatewayError):
    """Caller input rejected before any upstream call."""

    def __init__(self, detail: str, code: str = "invalid_request") -> None:
        super().__init__(detail, 400, "invalid_request_error", code)


class ProtocolParseError(Exception):
    """A stream line could not be decoded. Always recovered by skipping the line."""


def error_type_for_status(status: int) -> str:
    if status in (401, 403):
        return "authentication_error"
    if status == 429:
        return "rate_limit_error"
    if 400 <= status < 500:
        return "invalid_request_error"
    return "server_error"


def error_body(message: str, error_type: str, code: str) -> dict[str, Any]:
    """Return an OpenAI-style error object."""
    return {"error": {"message": message, "type": error_type, "code": code}}

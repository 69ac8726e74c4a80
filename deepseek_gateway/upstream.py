"""Client for the upstream chat backend.

One instance is built per inbound request. It shares the process-wide
``httpx.AsyncClient`` and :class:`CredentialPool`, and takes a fresh token
from the pool on every HTTP call.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Optional

import httpx

from .credentials import CredentialPool
from .errors import UpstreamError
from .pow import COMPLETION_TARGET_PATH, PowChallenge, ProofOfWorkAdapter

LOG = logging.getLogger("deepseek-gateway.upstream")

DEFAULT_BASE_URL = "https://chat.deepseek.com/api/v0"
WEB_ORIGIN = "https://chat.deepseek.com"
PING_TIMEOUT_SECONDS = 10.0

_BASE_HEADERS = {
    "accept": "*/*",
    "accept-language": "en,en-US;q=0.9",
    "content-type": "application/json",
    "origin": WEB_ORIGIN,
    "referer": f"{WEB_ORIGIN}/",
    "user-agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36"
    ),
    "x-app-version": "20241129.1",
    "x-client-locale": "en_US",
    "x-client-platform": "web",
    "x-client-version": "1.6.1",
}


def join_url(base: str, path: str) -> str:
    """Join base URL and path safely."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def new_client_stream_id(now: Optional[datetime] = None) -> str:
    """Return an id like ``20260112-9989808bcf444dcf``."""
    now = now or datetime.now()
    return f"{now:%Y%m%d}-{secrets.token_hex(8)}"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:300] or response.reason_phrase or "upstream error"
    if isinstance(data, dict):
        for key in ("msg", "message", "detail", "error"):
            val = data.get(key)
            if isinstance(val, str) and val:
                return val
            if isinstance(val, dict) and val.get("message"):
                return str(val["message"])
    return response.reason_phrase or "upstream error"


class UpstreamSessionClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        pool: CredentialPool,
        pow_adapter: ProofOfWorkAdapter,
        base_url: str = DEFAULT_BASE_URL,
        timeout: Optional[float] = 120.0,
    ) -> None:
        self.http = http
        self.pool = pool
        self.pow = pow_adapter
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def build_headers(self, pow_response: Optional[str] = None) -> dict[str, str]:
        headers = dict(_BASE_HEADERS)
        headers["authorization"] = f"Bearer {self.pool.next_token()}"
        if pow_response:
            headers["x-ds-pow-response"] = pow_response
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        url = join_url(self.base_url, path)
        headers = self.build_headers()
        try:
            r = await self.http.request(
                method, url, json=json_body, headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.HTTPError as exc:
            LOG.warning("Upstream %s %s failed: %s", method, path, exc)
            raise UpstreamError(502, f"upstream error: {type(exc).__name__}: {exc}") from exc
        if not r.is_success:
            raise UpstreamError(r.status_code, _error_message(r))
        try:
            data = r.json()
        except ValueError:
            return {}
        # The backend reports some failures as HTTP 200 with a non-zero code.
        if isinstance(data, dict) and data.get("code") not in (None, 0):
            raise UpstreamError(
                401 if data.get("code") == 40003 else 502,
                str(data.get("msg") or f"upstream code {data.get('code')}"),
            )
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _biz_data(payload: dict[str, Any]) -> dict[str, Any]:
        biz = (payload.get("data") or {}).get("biz_data")
        if not isinstance(biz, dict):
            raise UpstreamError(502, "unexpected upstream response shape")
        return biz

    async def create_session(self) -> str:
        payload = await self._request("POST", "/chat_session/create", {"character_id": None})
        biz = self._biz_data(payload)
        session_id = biz.get("id") or (biz.get("chat_session") or {}).get("id")
        if not session_id:
            raise UpstreamError(502, "upstream did not return a chat session id")
        LOG.debug("Created chat session %s", session_id)
        return str(session_id)

    async def get_challenge(self) -> PowChallenge:
        payload = await self._request(
            "POST", "/chat/create_pow_challenge", {"target_path": COMPLETION_TARGET_PATH}
        )
        challenge = self._biz_data(payload).get("challenge")
        if not isinstance(challenge, dict):
            raise UpstreamError(502, "upstream did not return a proof-of-work challenge")
        return PowChallenge.from_payload(challenge)

    async def issue_completion(
        self,
        session_id: str,
        prompt: str,
        reasoning_enabled: bool,
        search_enabled: bool = False,
        parent_message_id: Optional[Any] = None,
    ) -> httpx.Response:
        """Open the completion stream. The caller must ``aclose()`` the response."""
        challenge = await self.get_challenge()
        pow_response = await self.pow.answer(challenge)
        body = {
            "chat_session_id": session_id,
            "parent_message_id": parent_message_id,
            "prompt": prompt,
            "ref_file_ids": [],
            "thinking_enabled": reasoning_enabled,
            "search_enabled": search_enabled,
            "client_stream_id": new_client_stream_id(),
        }
        request = self.http.build_request(
            "POST",
            join_url(self.base_url, "/chat/completion"),
            json=body,
            headers=self.build_headers(pow_response),
            timeout=self.timeout,
        )
        try:
            response = await self.http.send(request, stream=True)
        except httpx.HTTPError as exc:
            LOG.warning("Upstream completion stream failed: %s", exc)
            raise UpstreamError(502, f"upstream stream failed: {type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            try:
                await response.aread()
                message = _error_message(response)
            finally:
                await response.aclose()
            raise UpstreamError(response.status_code, message)
        return response

    async def ping(self) -> bool:
        await self._request(
            "GET", "/client/settings?did=&scope=banner", timeout=PING_TIMEOUT_SECONDS
        )
        return True

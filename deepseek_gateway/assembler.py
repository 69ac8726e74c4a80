"""Assemble translated events into OpenAI chat-completion shapes."""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, AsyncIterable, AsyncIterator, Optional

from .errors import GatewayError, error_body
from .translator import CONTENT, DONE, REASONING, StreamEvent

LOG = logging.getLogger("deepseek-gateway.assembler")

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n\n"
STREAM_SENTINEL = "[DONE]"


def new_completion_id() -> str:
    return f"chatcmpl-{secrets.token_hex(12)}"


def combine_reasoning(reasoning: str, content: str) -> str:
    """Embed reasoning in think markers ahead of the answer."""
    if not reasoning:
        return content
    return f"{THINK_OPEN}{reasoning}{THINK_CLOSE}{content}"


class ResponseAssembler:
    def __init__(
        self,
        model: str,
        completion_id: Optional[str] = None,
        created: Optional[int] = None,
    ) -> None:
        self.model = model
        self.completion_id = completion_id
        self.created = created if created is not None else int(time.time())
        self.message_id: Optional[Any] = None
        self.session_id: Optional[str] = None

    def _note_done(self, event: StreamEvent) -> None:
        self.message_id = event.message_id
        self.session_id = event.session_id

    # -- aggregated --

    async def aggregate(self, events: AsyncIterable[StreamEvent]) -> dict[str, Any]:
        reasoning: list[str] = []
        content: list[str] = []
        async for event in events:
            if event.kind == REASONING:
                reasoning.append(event.text)
            elif event.kind == CONTENT:
                content.append(event.text)
            elif event.kind == DONE:
                self._note_done(event)
        text = combine_reasoning("".join(reasoning).strip(), "".join(content).strip())
        cid = self.completion_id or (
            f"chatcmpl-{self.message_id}" if self.message_id is not None else new_completion_id()
        )
        return {
            "id": cid,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }

    # -- streaming --

    def chunk(self, delta: dict[str, Any], finish_reason: Optional[str] = None) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    async def stream(self, events: AsyncIterable[StreamEvent]) -> AsyncIterator[dict[str, Any]]:
        if self.completion_id is None:
            self.completion_id = new_completion_id()
        role_sent = False
        in_reasoning = False

        def text_chunk(text: str) -> dict[str, Any]:
            nonlocal role_sent
            if role_sent:
                return self.chunk({"content": text})
            role_sent = True
            return self.chunk({"role": "assistant", "content": text})

        async for event in events:
            if event.kind == REASONING:
                if not in_reasoning:
                    yield text_chunk(THINK_OPEN)
                    in_reasoning = True
                yield text_chunk(event.text)
            elif event.kind == CONTENT:
                if in_reasoning:
                    yield text_chunk(THINK_CLOSE)
                    in_reasoning = False
                yield text_chunk(event.text)
            elif event.kind == DONE:
                self._note_done(event)
                if in_reasoning:
                    yield text_chunk(THINK_CLOSE)
                    in_reasoning = False
                if not role_sent:
                    yield text_chunk("")
                yield self.chunk({}, "stop")
                return


async def sse_events(chunks: AsyncIterable[dict[str, Any]]) -> AsyncIterator[str]:
    """Frame chunks as server-sent events followed by the ``[DONE]`` sentinel.

    Response headers are committed once the first frame is out, so any later
    failure is reported as an in-band error frame and the stream ends.
    """
    try:
        async for chunk in chunks:
            yield f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"
    except GatewayError as exc:
        LOG.warning("Stream aborted: %s", exc.detail)
        yield f"data: {json.dumps(exc.to_body())}\n\n"
        return
    except Exception as exc:
        LOG.exception("Stream aborted by unexpected error")
        body = error_body(str(exc) or type(exc).__name__, "server_error", "stream_error")
        yield f"data: {json.dumps(body)}\n\n"
        return
    yield f"data: {STREAM_SENTINEL}\n\n"

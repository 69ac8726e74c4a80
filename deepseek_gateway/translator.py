"""Translate the upstream patch stream into reasoning/content/done events.

The upstream body is a line protocol: ``event: <name>`` lines set context,
``data: <json>`` lines carry JSON patches. Several patch shapes all mean
"append text to the active fragment", and most continuation patches omit the
fragment type, so the active channel is kept as sticky state across lines.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional

from .errors import ProtocolParseError

LOG = logging.getLogger("deepseek-gateway.translator")

REASONING = "reasoning"
CONTENT = "content"
DONE = "done"

THINK_FRAGMENT = "THINK"


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    text: str = ""
    message_id: Optional[Any] = None
    session_id: Optional[str] = None

    @classmethod
    def reasoning(cls, text: str) -> "StreamEvent":
        return cls(REASONING, text)

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(CONTENT, text)

    @classmethod
    def done(cls, message_id: Any = None, session_id: Optional[str] = None) -> "StreamEvent":
        return cls(DONE, message_id=message_id, session_id=session_id)


def parse_data_line(line: str) -> Any:
    try:
        return json.loads(line[len("data:"):].strip())
    except ValueError as exc:
        raise ProtocolParseError(f"undecodable data line: {line[:120]!r}") from exc


class StreamTranslator:
    def __init__(self, session_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self.message_id: Optional[Any] = None
        self.channel = CONTENT
        self.current_event: Optional[str] = None
        self.finished = False
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # -- public API --

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume one raw chunk and return the events completed by it."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        out: list[StreamEvent] = []
        for line in lines:
            out.extend(self.process_line(line))
        return out

    def finish(self) -> list[StreamEvent]:
        """Flush the trailing partial line and guarantee a terminal ``done``."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        out = self.process_line(tail) if tail.strip() else []
        if not self.finished:
            LOG.debug("Upstream stream ended without a finish signal")
            out.append(self._done())
        return out

    async def events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        """Pull chunks and yield events in arrival order, stopping after ``done``."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
                if event.kind == DONE:
                    return
        for event in self.finish():
            yield event

    # -- line handling --

    def process_line(self, raw: str) -> list[StreamEvent]:
        if self.finished:
            return []
        line = raw.strip()
        if line.startswith("event:"):
            self.current_event = line[len("event:"):].strip()
            return []
        if not line.startswith("data:"):
            return []
        try:
            data = parse_data_line(line)
        except ProtocolParseError as exc:
            LOG.debug("Skipping line: %s", exc)
            return []
        if not isinstance(data, dict):
            return []
        return self._classify(data)

    def _classify(self, data: dict[str, Any]) -> list[StreamEvent]:
        p = data.get("p")
        o = data.get("o")
        v = data.get("v")

        # Initial envelope: {"v": {"response": {"message_id": ..., "fragments": [...]}}}
        if isinstance(v, dict) and isinstance(v.get("response"), dict):
            response = v["response"]
            self.message_id = response.get("message_id", self.message_id)
            return self._fragments(response.get("fragments") or [])

        if p == "response" and o == "BATCH" and isinstance(v, list):
            out: list[StreamEvent] = []
            for op in v:
                if not isinstance(op, dict) or self.finished:
                    continue
                if op.get("p") == "fragments" and op.get("o") == "APPEND" and isinstance(op.get("v"), list):
                    out.extend(self._fragments(op["v"]))
                if op.get("p") == "status" and op.get("v") == "FINISHED":
                    out.append(self._done())
            return out

        if p == "response/fragments" and o == "APPEND" and isinstance(v, list):
            return self._fragments(v)

        if isinstance(v, str):
            if p and o == "APPEND":
                return self._text(v)
            if isinstance(p, str) and "/content" in p and not o:
                return self._text(v)
            if not p and not o:
                return self._text(v)

        if self.current_event == "finish":
            return [self._done()]
        return []

    def _fragments(self, fragments: list[Any]) -> list[StreamEvent]:
        out: list[StreamEvent] = []
        for fragment in fragments:
            if not isinstance(fragment, dict):
                continue
            kind = fragment.get("type") or "RESPONSE"
            self.channel = REASONING if kind == THINK_FRAGMENT else CONTENT
            text = fragment.get("content")
            if isinstance(text, str) and text:
                out.append(StreamEvent(self.channel, text))
        return out

    def _text(self, text: str) -> list[StreamEvent]:
        if not text:
            return []
        return [StreamEvent(self.channel, text)]

    def _done(self) -> StreamEvent:
        self.finished = True
        return StreamEvent.done(self.message_id, self.session_id)

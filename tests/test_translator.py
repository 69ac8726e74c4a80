"""Tests for the upstream stream translator."""

import asyncio

from deepseek_gateway.translator import CONTENT, DONE, REASONING, StreamEvent, StreamTranslator

from upstream_fake import CONTENT_ONLY_STREAM, SAMPLE_STREAM


def run(translator: StreamTranslator, *chunks: bytes) -> list[StreamEvent]:
    out: list[StreamEvent] = []
    for chunk in chunks:
        out.extend(translator.feed(chunk))
    out.extend(translator.finish())
    return out


def kinds(events: list[StreamEvent]) -> list[tuple[str, str]]:
    return [(e.kind, e.text) for e in events]


# ── Shapes ────────────────────────────────────────────────────────────────


def test_sample_stream_translates_deterministically() -> None:
    events = run(StreamTranslator("sess-1"), SAMPLE_STREAM)
    assert events == [
        StreamEvent.reasoning("Let me think"),
        StreamEvent.content("The answer is 4"),
        StreamEvent.done("m1", "sess-1"),
    ]


def test_chunk_boundaries_do_not_matter() -> None:
    byte_by_byte = [SAMPLE_STREAM[i:i + 1] for i in range(len(SAMPLE_STREAM))]
    assert run(StreamTranslator("s"), *byte_by_byte) == run(StreamTranslator("s"), SAMPLE_STREAM)


def test_multibyte_text_split_across_chunks() -> None:
    line = 'data: {"v":"café ☕"}\n'.encode("utf-8")
    cut = line.index("é".encode("utf-8")) + 1
    events = run(StreamTranslator(), line[:cut], line[cut:])
    assert kinds(events)[0] == (CONTENT, "café ☕")


def test_channel_is_sticky_across_continuations() -> None:
    t = StreamTranslator()
    events = run(
        t,
        b'data: {"v":{"response":{"message_id":1,"fragments":[{"type":"THINK","content":"a"}]}}}\n',
        b'data: {"v":"b"}\n',
        b'data: {"p":"response/fragments/-1/content","v":"c"}\n',
        b'data: {"p":"response/fragments","o":"APPEND","v":[{"type":"RESPONSE","content":"d"}]}\n',
        b'data: {"v":"e"}\n',
        b'data: {"p":"response/fragments/-1/content","o":"APPEND","v":"f"}\n',
    )
    assert kinds(events)[:6] == [
        (REASONING, "a"),
        (REASONING, "b"),
        (REASONING, "c"),
        (CONTENT, "d"),
        (CONTENT, "e"),
        (CONTENT, "f"),
    ]
    assert t.channel == CONTENT


def test_fragment_without_content_still_switches_channel() -> None:
    events = run(
        StreamTranslator(),
        b'data: {"p":"response/fragments","o":"APPEND","v":[{"type":"THINK"}]}\n',
        b'data: {"v":"thinking"}\n',
    )
    assert kinds(events)[0] == (REASONING, "thinking")


def test_overlapping_shapes_emit_once() -> None:
    # Matches the generic APPEND shape and mentions /content; must emit one event.
    events = run(
        StreamTranslator(),
        b'data: {"p":"response/fragments/-1/content","o":"APPEND","v":"x"}\n',
    )
    assert kinds(events) == [(CONTENT, "x"), (DONE, "")]


# ── Robustness ────────────────────────────────────────────────────────────


def test_malformed_line_between_valid_lines_is_skipped() -> None:
    lines = SAMPLE_STREAM.split(b"\n")
    stream = lines[0] + b"\ndata: {not json at all\n" + lines[1] + b"\n"
    events = run(StreamTranslator("s"), stream)
    assert kinds(events) == [
        (REASONING, "Let me think"),
        (CONTENT, "The answer is 4"),
        (DONE, ""),
    ]


def test_non_data_and_unknown_lines_are_dropped() -> None:
    events = run(
        StreamTranslator(),
        b": keep-alive comment\n",
        b"event: ready\n",
        b'data: {"request_message_id":1,"response_message_id":2}\n',
        b"data: [1, 2, 3]\n",
        b"\n",
        b'data: {"v":"ok"}\n',
    )
    assert kinds(events) == [(CONTENT, "ok"), (DONE, "")]


# ── Termination ───────────────────────────────────────────────────────────


def test_finish_event_emits_done() -> None:
    events = run(StreamTranslator("s"), CONTENT_ONLY_STREAM)
    assert kinds(events) == [(CONTENT, "Hello"), (CONTENT, " world"), (DONE, "")]
    assert events[-1].message_id == 7


def test_inline_finished_and_finish_event_report_done_once() -> None:
    events = run(
        StreamTranslator(),
        SAMPLE_STREAM,
        b'data: {"v":"late text"}\n',
        b"event: finish\n",
        b"data: {}\n",
    )
    assert [e.kind for e in events].count(DONE) == 1
    assert events[-1].kind == DONE
    assert all(e.text != "late text" for e in events)


def test_missing_finish_gets_synthetic_done() -> None:
    events = run(StreamTranslator("s"), b'data: {"v":"partial"}')
    assert kinds(events) == [(CONTENT, "partial"), (DONE, "")]
    assert events[-1].session_id == "s"


def test_events_stops_pulling_after_done() -> None:
    pulled: list[bytes] = []

    async def chunks():
        for chunk in (SAMPLE_STREAM, b'data: {"v":"never"}\n'):
            pulled.append(chunk)
            yield chunk

    async def _test():
        return [e async for e in StreamTranslator().events(chunks())]

    events = asyncio.run(_test())
    assert [e.kind for e in events] == [REASONING, CONTENT, DONE]
    assert pulled == [SAMPLE_STREAM]

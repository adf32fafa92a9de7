import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from gateway.reasoning import ReasoningMode
from gateway.schemas.responses import (
    OtherDone,
    OutputItemDone,
    ReasoningDelta,
    StreamDone,
    UnknownEvent,
    parse_event,
)
from gateway.translate import (
    DONE,
    ChatTranslator,
    aggregate_chat,
    aggregate_text,
    iter_sse_lines,
    translate_chat_stream,
    translate_text_stream,
)


def _sse(*events: Any) -> bytes:
    out = []
    for evt in events:
        payload = evt if isinstance(evt, str) else json.dumps(evt)
        out.append(f"data: {payload}\n\n")
    return "".join(out).encode("utf-8")


async def _aiter(chunks: List[bytes]):
    for chunk in chunks:
        yield chunk


async def _collect(agen) -> bytes:
    out = b""
    async for part in agen:
        out += part
    return out


def _frames(raw: bytes) -> List[Any]:
    frames = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: ")
        payload = block[len("data: "):]
        frames.append(payload if payload == DONE else json.loads(payload))
    return frames


def _deltas(frames: List[Any]) -> List[Dict[str, Any]]:
    return [f["choices"][0]["delta"] for f in frames if isinstance(f, dict) and "choices" in f]


SUMMARY_PART = {"type": "response.reasoning_summary_part.added"}


def _summary(text: str) -> Dict[str, Any]:
    return {"type": "response.reasoning_summary_text.delta", "delta": text}


def _text(text: str) -> Dict[str, Any]:
    return {"type": "response.output_text.delta", "delta": text}


def _completed(usage=None, rid="resp_1") -> Dict[str, Any]:
    response: Dict[str, Any] = {"id": rid}
    if usage is not None:
        response["usage"] = usage
    return {"type": "response.completed", "response": response}


TOOL_ITEM = {
    "type": "response.output_item.done",
    "item": {"type": "function_call", "call_id": "call_1", "name": "ls", "arguments": "{\"path\":\".\"}"},
}


def test_parse_event_dispatches_on_type():
    assert isinstance(parse_event(_summary("x")), ReasoningDelta)
    assert parse_event(_summary("x")).is_summary is True
    assert parse_event({"type": "response.reasoning_text.delta", "delta": "y"}).is_summary is False
    assert isinstance(parse_event(TOOL_ITEM), OutputItemDone)
    assert isinstance(parse_event({"type": "response.content_part.done"}), OtherDone)
    assert isinstance(parse_event({"type": "response.created"}), UnknownEvent)
    assert isinstance(parse_event({"delta": "no type"}), UnknownEvent)
    with pytest.raises(ValueError):
        parse_event(["not", "an", "object"])


def test_feed_stops_after_done_sentinel():
    tr = ChatTranslator("gpt-5", 1, "openai")
    assert tr.feed(StreamDone()) == [DONE]
    assert tr.feed(parse_event(_text("late"))) == []


@pytest.mark.asyncio
async def test_tagged_stream_orders_think_block_before_text():
    body = _sse(SUMMARY_PART, _summary("thinking"), _text("Hello"), _completed({"input_tokens": 3, "output_tokens": 4}))
    raw = await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1700000000, mode="tagged"))
    frames = _frames(raw)

    assert frames[-1] == DONE
    assert frames.count(DONE) == 1
    assert _deltas(frames) == [
        {"role": "assistant"},
        {"content": "<think>"},
        {"content": "thinking"},
        {"content": "</think>"},
        {"content": "Hello"},
        {},
    ]
    usage_chunk = frames[-2]
    assert usage_chunk["id"] == "resp_1"
    assert usage_chunk["usage"] == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}
    assert usage_chunk["choices"][0]["finish_reason"] is None
    for frame in frames[:-1]:
        assert frame["object"] == "chat.completion.chunk"
        assert frame["created"] == 1700000000
        assert frame["model"] == "gpt-5"


@pytest.mark.asyncio
async def test_wire_format_is_compact_and_unescaped():
    body = _sse(_text("héllo ✓"), _completed())
    raw = await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="openai"))
    assert raw.endswith(b"data: [DONE]\n\n")
    assert "\"content\":\"héllo ✓\"".encode("utf-8") in raw
    assert b"\", \"" not in raw


@pytest.mark.asyncio
async def test_byte_level_chunking_matches_single_read():
    body = _sse(SUMMARY_PART, _summary("rätsel"), _text("Grüße ✓"), _completed({"input_tokens": 1, "output_tokens": 1}))
    whole = await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged"))
    pieces = [body[i:i + 1] for i in range(len(body))]
    split = await _collect(translate_chat_stream(_aiter(pieces), "gpt-5", 1, mode="tagged"))
    assert split == whole


@pytest.mark.asyncio
async def test_crlf_lines_are_accepted():
    body = b"data: " + json.dumps(_text("hi")).encode() + b"\r\n\r\ndata: [DONE]\r\n\r\n"
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="hidden")))
    assert _deltas(frames) == [{"role": "assistant"}, {"content": "hi"}]
    assert frames[-1] == DONE


@pytest.mark.asyncio
async def test_openai_mode_summary_paragraphs():
    body = _sse(SUMMARY_PART, _summary("A"), SUMMARY_PART, _summary("B"), _text("X"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="openai")))
    assert _deltas(frames) == [
        {"role": "assistant"},
        {"reasoning_content": "A"},
        {"reasoning_content": "\n"},
        {"reasoning_content": "B"},
        {"content": "X"},
    ]
    # no usage on completed -> no usage chunk
    assert frames[-1] == DONE


@pytest.mark.asyncio
async def test_o3_mode_reasoning_shape():
    body = _sse(SUMMARY_PART, _summary("plan"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="o3")))
    assert _deltas(frames)[1] == {"reasoning": {"content": [{"type": "text", "text": "plan"}]}}


@pytest.mark.asyncio
async def test_r1_mode_never_emits_paragraph_breaks():
    body = _sse(SUMMARY_PART, _summary("A"), SUMMARY_PART, _summary("B"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="r1")))
    assert _deltas(frames) == [{"role": "assistant"}, {"reasoning_content": "A"}, {"reasoning_content": "B"}]


@pytest.mark.asyncio
async def test_hidden_mode_swallows_reasoning():
    body = _sse(SUMMARY_PART, _summary("secret"), {"type": "response.reasoning_text.delta", "delta": "more"}, _text("ok"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode=ReasoningMode.HIDDEN)))
    assert _deltas(frames) == [{"role": "assistant"}, {"content": "ok"}]
    assert b"secret" not in json.dumps(frames).encode()


@pytest.mark.asyncio
async def test_tool_call_chunks_use_index_zero():
    second = {
        "type": "response.output_item.done",
        "item": {"type": "function_call", "id": "fc_2", "name": "cat", "arguments": "{}"},
    }
    skipped = {"type": "response.output_item.done", "item": {"type": "function_call", "call_id": "x", "name": 5, "arguments": "{}"}}
    body = _sse(TOOL_ITEM, second, skipped, _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    deltas = _deltas(frames)
    assert deltas[0] == {"role": "assistant"}
    assert deltas[1] == {
        "tool_calls": [
            {"index": 0, "id": "call_1", "type": "function", "function": {"name": "ls", "arguments": "{\"path\":\".\"}"}}
        ]
    }
    assert frames[2]["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "tool_calls"}
    assert deltas[3]["tool_calls"][0]["index"] == 0
    assert deltas[3]["tool_calls"][0]["id"] == "fc_2"
    assert len([d for d in deltas if "tool_calls" in d]) == 2


@pytest.mark.asyncio
async def test_failed_event_emits_error_and_keeps_reading():
    failed = {"type": "response.failed", "response": {"id": "resp_f", "error": {"message": "boom"}}}
    body = _sse(failed, _text("after"), "[DONE]")
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    assert frames[0] == {"error": {"message": "boom"}}
    assert _deltas(frames) == [{"role": "assistant"}, {"content": "after"}]
    assert frames[-1] == DONE


@pytest.mark.asyncio
async def test_output_text_done_emits_stop_chunk():
    body = _sse(_text("hi"), {"type": "response.output_text.done", "text": "hi"}, _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    assert frames[2]["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "stop"}


@pytest.mark.asyncio
async def test_malformed_lines_are_skipped():
    body = b"data: {not json}\n\n: keep-alive\n\nevent: ping\n\n" + _sse(_text("ok"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    assert _deltas(frames) == [{"role": "assistant"}, {"content": "ok"}]


@pytest.mark.asyncio
async def test_truncated_upstream_still_closes_think_and_terminates():
    body = _sse(_summary("half a thought"))
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    assert _deltas(frames)[-1] == {"content": "</think>"}
    assert frames[-1] == DONE
    assert frames.count(DONE) == 1


@pytest.mark.asyncio
async def test_read_error_mid_stream_reports_inline_error_and_closes():
    closed = []

    async def flaky():
        yield _sse(_text("partial"))
        raise httpx.ReadError("connection reset")

    async def close():
        closed.append(True)

    frames = _frames(await _collect(translate_chat_stream(flaky(), "gpt-5", 1, mode="tagged", close=close)))
    assert _deltas(frames) == [{"role": "assistant"}, {"content": "partial"}]
    assert "connection reset" in frames[-2]["error"]["message"]
    assert frames[-1] == DONE
    assert closed == [True]


@pytest.mark.asyncio
async def test_client_disconnect_releases_upstream_once():
    closed = []

    async def endless():
        yield _sse(_text("a"))
        while True:
            yield _sse(_text("more"))

    async def close():
        closed.append(True)

    gen = translate_chat_stream(endless(), "gpt-5", 1, mode="tagged", close=close)
    first = await gen.__anext__()
    assert b"assistant" in first
    await gen.aclose()
    assert closed == [True]


@pytest.mark.asyncio
async def test_iter_sse_lines_flushes_unterminated_tail():
    lines = [line async for line in iter_sse_lines(_aiter([b"data: a\ndata: ", b"b"]))]
    assert lines == ["data: a", "data: b"]


# -- aggregation -----------------------------------------------------------


@pytest.mark.asyncio
async def test_aggregate_openai_mode_matches_stream_content():
    body = _sse(SUMMARY_PART, _summary("A"), SUMMARY_PART, _summary("B"),
                {"type": "response.reasoning_text.delta", "delta": "deep"},
                _text("Hel"), _text("lo"), _completed({"input_tokens": 2, "output_tokens": 5}))
    agg = await aggregate_chat(_aiter([body]), "gpt-5", 42, mode="openai")
    out = agg.render()
    assert out["id"] == "resp_1"
    assert out["object"] == "chat.completion"
    assert out["created"] == 42
    choice = out["choices"][0]
    assert choice["finish_reason"] == "stop"
    assert choice["message"]["content"] == "Hello"
    assert choice["message"]["reasoning_content"] == "A\nB\n\ndeep"
    assert out["usage"]["total_tokens"] == 7


@pytest.mark.asyncio
async def test_aggregate_tagged_and_hidden_packing():
    body = _sse(SUMMARY_PART, _summary("why"), _text("answer"), _completed())
    tagged = (await aggregate_chat(_aiter([body]), "gpt-5", 1, mode="tagged")).render()
    assert tagged["choices"][0]["message"]["content"] == "<think>why</think>answer"

    hidden = (await aggregate_chat(_aiter([body]), "gpt-5", 1, mode="hidden")).render()
    message = hidden["choices"][0]["message"]
    assert message == {"role": "assistant", "content": "answer"}
    assert "usage" not in hidden


@pytest.mark.asyncio
async def test_aggregate_tool_calls_sets_finish_reason():
    agg = await aggregate_chat(_aiter([_sse(TOOL_ITEM, _completed())]), "gpt-5", 1, mode="openai")
    choice = agg.render()["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] is None
    assert choice["message"]["tool_calls"] == [
        {"id": "call_1", "type": "function", "function": {"name": "ls", "arguments": "{\"path\":\".\"}"}}
    ]


@pytest.mark.asyncio
async def test_aggregate_records_failure():
    failed = {"type": "response.failed", "response": {"error": {"message": "quota exceeded"}}}
    agg = await aggregate_chat(_aiter([_sse(failed, "[DONE]")]), "gpt-5", 1, mode="tagged")
    assert agg.state.error_message == "quota exceeded"


@pytest.mark.asyncio
async def test_aggregate_falls_back_to_plain_json_body():
    body = json.dumps(
        {
            "id": "resp_json",
            "output": [
                {"type": "reasoning", "summary": [{"type": "summary_text", "text": "short"}]},
                {"type": "message", "content": [{"type": "output_text", "text": "from json"}]},
                {"type": "function_call", "call_id": "c9", "name": "run", "arguments": "{}"},
            ],
            "usage": {"input_tokens": 4, "output_tokens": 6},
        },
        indent=2,
    ).encode()
    closed = []

    async def close():
        closed.append(True)

    agg = await aggregate_chat(_aiter([body]), "gpt-5", 1, mode="r1", close=close)
    out = agg.render()
    assert out["id"] == "resp_json"
    message = out["choices"][0]["message"]
    assert message["content"] == "from json"
    assert message["reasoning_content"] == "short"
    assert message["tool_calls"][0]["id"] == "c9"
    assert out["usage"] == {"prompt_tokens": 4, "completion_tokens": 6, "total_tokens": 10}
    assert closed == [True]


# -- text completions ------------------------------------------------------


@pytest.mark.asyncio
async def test_text_stream_uses_text_completion_shape():
    body = _sse(_summary("hidden thought"), _text("Once"), _completed({"input_tokens": 1, "output_tokens": 1}))
    frames = _frames(await _collect(translate_text_stream(_aiter([body]), "gpt-5", 7)))
    assert frames[0]["object"] == "text_completion.chunk"
    assert frames[0]["choices"][0] == {"index": 0, "text": "Once", "finish_reason": None}
    assert frames[1]["usage"]["total_tokens"] == 2
    assert frames[-1] == DONE
    assert b"hidden thought" not in json.dumps(frames).encode()


@pytest.mark.asyncio
async def test_aggregate_text_completion():
    agg = await aggregate_text(_aiter([_sse(_text("foo"), _text("bar"), _completed(rid="cmpl_1"))]), "gpt-5", 3)
    assert agg.render() == {
        "id": "cmpl_1",
        "object": "text_completion",
        "created": 3,
        "model": "gpt-5",
        "choices": [{"index": 0, "text": "foobar", "finish_reason": "stop", "logprobs": None}],
    }


@pytest.mark.asyncio
async def test_text_stream_done_sentinel_sends_stop_chunk():
    body = _sse(_text("Once")) + b"data: [DONE]\n\n"
    frames = _frames(await _collect(translate_text_stream(_aiter([body]), "gpt-5", 7)))
    assert [f["choices"][0] for f in frames[:-1]] == [
        {"index": 0, "text": "Once", "finish_reason": None},
        {"index": 0, "text": "", "finish_reason": "stop"},
    ]
    assert frames[-1] == DONE


# -- end of stream edge cases -----------------------------------------------


@pytest.mark.asyncio
async def test_done_sentinel_closes_open_think_block():
    body = _sse(SUMMARY_PART, _summary("only thinking")) + b"data: [DONE]\n\n"
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="tagged")))
    assert _deltas(frames) == [
        {"role": "assistant"},
        {"content": "<think>"},
        {"content": "only thinking"},
        {"content": "</think>"},
    ]
    assert frames[-1] == DONE
    assert frames.count(DONE) == 1


@pytest.mark.asyncio
async def test_hidden_reasoning_only_stream_still_primes_role():
    body = _sse(SUMMARY_PART, _summary("secret"), _completed())
    frames = _frames(await _collect(translate_chat_stream(_aiter([body]), "gpt-5", 1, mode="hidden")))
    assert _deltas(frames) == [{"role": "assistant"}]
    assert frames[-1] == DONE
    assert b"secret" not in json.dumps(frames).encode()


@pytest.mark.asyncio
async def test_aggregate_abandons_upstream_when_cancelled():
    closed = []

    async def close():
        closed.append(True)

    async def stalled():
        yield _sse(_text("partial"))
        await asyncio.sleep(30)
        yield _sse(_completed())

    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    agg = await asyncio.wait_for(
        aggregate_chat(stalled(), "gpt-5", 1, mode="openai", close=close, cancel=cancel), timeout=2
    )
    assert agg.state.cancelled is True
    assert agg.state.full_text == "partial"
    assert closed == [True]


@pytest.mark.asyncio
async def test_aggregate_with_unfired_cancel_completes_normally():
    cancel = asyncio.Event()
    agg = await aggregate_chat(_aiter([_sse(_text("done"), _completed())]), "gpt-5", 1, cancel=cancel)
    assert agg.state.cancelled is False
    assert agg.render()["choices"][0]["message"]["content"] == "done"

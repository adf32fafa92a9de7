"""Responses-API SSE -> Chat Completions translation.

One state machine (``ChatTranslator.feed``) drives both the live SSE path
(``translate_chat_stream``) and the buffered path (``aggregate_chat``): the
streaming side writes every returned frame immediately, the aggregating side
ignores the frames and renders the accumulated state once at the end.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from .reasoning import ReasoningMode, apply_reasoning_to_message, normalize_mode
from .schemas.responses import (
    OutputItemDone,
    OutputTextDelta,
    OutputTextDone,
    ReasoningDelta,
    ReasoningSummaryPartAdded,
    ResponseCompleted,
    ResponseFailed,
    StreamDone,
    UpstreamEvent,
    parse_event,
)
from .transform import normalize_usage


logger = logging.getLogger("gateway.translate")

DONE = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

Frame = Union[Dict[str, Any], str]
CloseCallback = Callable[[], Awaitable[None]]


def render_frame(frame: Frame) -> bytes:
    if frame == DONE:
        return DONE_FRAME
    return f"data: {json.dumps(frame, ensure_ascii=False, separators=(',', ':'))}\n\n".encode("utf-8")


@dataclass
class TranslationState:
    response_id: str
    think_open: bool = False
    think_closed: bool = False
    saw_any_summary: bool = False
    pending_summary_paragraph: bool = False
    role_sent: bool = False
    full_text: str = ""
    reasoning_summary_text: str = ""
    reasoning_full_text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    final_usage: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    finished: bool = False
    cancelled: bool = False


class ChatTranslator:
    """Per-request translation state machine for chat completions."""

    chunk_object = "chat.completion.chunk"
    completion_object = "chat.completion"
    placeholder_id = "chatcmpl-stream"
    prime_role = True

    def __init__(self, model: str, created: int, mode: ReasoningMode | str = ReasoningMode.TAGGED) -> None:
        self.model = model
        self.created = created
        self.mode = normalize_mode(mode)
        self.state = TranslationState(response_id=self.placeholder_id)

    @property
    def finished(self) -> bool:
        return self.state.finished

    # -- frame builders -------------------------------------------------

    def chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.state.response_id,
            "object": self.chunk_object,
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _prime_role(self, frames: List[Frame]) -> None:
        if self.prime_role and not self.state.role_sent:
            self.state.role_sent = True
            frames.append(self.chunk({"role": "assistant"}))

    def _emit(self, frames: List[Frame], delta: Dict[str, Any], finish_reason: Optional[str] = None) -> None:
        self._prime_role(frames)
        frames.append(self.chunk(delta, finish_reason))

    def _close_think(self, frames: List[Frame]) -> None:
        st = self.state
        if self.mode is ReasoningMode.TAGGED and st.think_open and not st.think_closed:
            self._emit(frames, {"content": THINK_CLOSE})
            st.think_open = False
            st.think_closed = True

    # -- event dispatch -------------------------------------------------

    def feed(self, event: UpstreamEvent) -> List[Frame]:
        """Apply one upstream event and return the frames it produces, in order."""
        frames: List[Frame] = []
        if self.state.finished:
            return frames
        if isinstance(event, StreamDone):
            self.on_stream_done(frames)
            return frames
        if event.response_id:
            self.state.response_id = event.response_id

        if isinstance(event, OutputTextDelta):
            self.on_text_delta(event, frames)
        elif isinstance(event, OutputItemDone):
            self.on_item_done(event, frames)
        elif isinstance(event, ReasoningSummaryPartAdded):
            self.on_summary_part(event)
        elif isinstance(event, ReasoningDelta):
            self.on_reasoning_delta(event, frames)
        elif isinstance(event, OutputTextDone):
            self._emit(frames, {}, "stop")
        elif isinstance(event, ResponseFailed):
            self.state.error_message = event.message
            frames.append({"error": {"message": event.message}})
        elif isinstance(event, ResponseCompleted):
            self.on_completed(event, frames)
        else:
            # OtherDone and UnknownEvent carry nothing to translate
            usage = event.response.get("usage") if isinstance(event.response, dict) else None
            if isinstance(usage, dict):
                self.state.final_usage = normalize_usage(usage)
        return frames

    def on_text_delta(self, event: OutputTextDelta, frames: List[Frame]) -> None:
        self._close_think(frames)
        self.state.full_text += event.text
        self._emit(frames, {"content": event.text})

    def on_item_done(self, event: OutputItemDone, frames: List[Frame]) -> None:
        if not event.is_function_call:
            return
        item = event.item
        call_id = item.get("call_id") or item.get("id")
        name = item.get("name")
        args = item.get("arguments")
        if not (isinstance(call_id, str) and isinstance(name, str) and isinstance(args, str)):
            return
        call = {"id": call_id, "type": "function", "function": {"name": name, "arguments": args}}
        self.state.tool_calls.append(call)
        # Every call goes out at index 0; interleaved parallel calls are not supported
        self._emit(frames, {"tool_calls": [{"index": 0, **call}]})
        self._emit(frames, {}, "tool_calls")

    def on_summary_part(self, event: ReasoningSummaryPartAdded) -> None:
        st = self.state
        if self.mode not in (ReasoningMode.TAGGED, ReasoningMode.O3, ReasoningMode.OPENAI):
            return
        if st.saw_any_summary:
            st.pending_summary_paragraph = True
        else:
            st.saw_any_summary = True

    def _take_paragraph_break(self, event: ReasoningDelta) -> bool:
        st = self.state
        if event.is_summary and st.pending_summary_paragraph:
            st.pending_summary_paragraph = False
            st.reasoning_summary_text += "\n"
            return True
        return False

    def on_reasoning_delta(self, event: ReasoningDelta, frames: List[Frame]) -> None:
        st = self.state
        text = event.text
        mode = self.mode
        # the role chunk goes out even when the reasoning itself is swallowed
        self._prime_role(frames)

        if mode is ReasoningMode.HIDDEN:
            pass
        elif mode in (ReasoningMode.R1, ReasoningMode.OPENAI):
            if self._take_paragraph_break(event):
                self._emit(frames, {"reasoning_content": "\n"})
            self._emit(frames, {"reasoning_content": text})
        elif mode is ReasoningMode.O3:
            if self._take_paragraph_break(event):
                self._emit(frames, {"reasoning": {"content": [{"type": "text", "text": "\n"}]}})
            self._emit(frames, {"reasoning": {"content": [{"type": "text", "text": text}]}})
        elif mode is ReasoningMode.TAGGED:
            if not st.think_open and not st.think_closed:
                self._emit(frames, {"content": THINK_OPEN})
                st.think_open = True
            if st.think_open and not st.think_closed:
                if self._take_paragraph_break(event):
                    self._emit(frames, {"content": "\n"})
                self._emit(frames, {"content": text})

        if event.is_summary:
            st.reasoning_summary_text += text
        else:
            st.reasoning_full_text += text

    def on_completed(self, event: ResponseCompleted, frames: List[Frame]) -> None:
        self._close_think(frames)
        usage = normalize_usage(event.raw_usage)
        if usage:
            self.state.final_usage = usage
            frames.append({**self.chunk({}), "usage": usage})
        self.state.finished = True
        frames.append(DONE)

    def on_stream_done(self, frames: List[Frame]) -> None:
        self._close_think(frames)
        self.state.finished = True
        frames.append(DONE)

    def finish(self) -> List[Frame]:
        """Frames for an upstream that ended without ``completed`` or ``[DONE]``."""
        frames: List[Frame] = []
        if self.state.finished:
            return frames
        self._close_think(frames)
        self.state.finished = True
        frames.append(DONE)
        return frames

    # -- non-streaming rendering ----------------------------------------

    def absorb_json(self, obj: Dict[str, Any]) -> None:
        """Fill state from a single JSON body returned instead of an SSE stream."""
        st = self.state
        body = obj.get("response") if isinstance(obj.get("response"), dict) else obj
        rid = body.get("id")
        if isinstance(rid, str) and rid:
            st.response_id = rid
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            st.error_message = str(err["message"])

        for item in body.get("output") or []:
            if not isinstance(item, dict):
                continue
            itype = item.get("type")
            if itype == "message":
                for part in item.get("content") or []:
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        st.full_text += part["text"]
            elif itype == "reasoning":
                for part in item.get("summary") or []:
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        st.reasoning_summary_text += part["text"]
                for part in item.get("content") or []:
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        st.reasoning_full_text += part["text"]
            elif itype == "function_call":
                self.on_item_done(OutputItemDone(type="response.output_item.done", item=item), [])

        if not st.full_text and isinstance(body.get("output_text"), str):
            st.full_text = body["output_text"]

        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
            if not st.full_text:
                content = message.get("content", choice.get("text"))
                if isinstance(content, str):
                    st.full_text = content
            reasoning = message.get("reasoning_content")
            if isinstance(reasoning, str) and not st.reasoning_full_text:
                st.reasoning_full_text = reasoning
            for tc in message.get("tool_calls") or []:
                fn = tc.get("function") if isinstance(tc, dict) else None
                if isinstance(fn, dict) and isinstance(tc.get("id"), str):
                    st.tool_calls.append(
                        {
                            "id": tc["id"],
                            "type": "function",
                            "function": {"name": fn.get("name") or "", "arguments": fn.get("arguments") or ""},
                        }
                    )

        usage = normalize_usage(body.get("usage"))
        if usage:
            st.final_usage = usage
        st.finished = True

    def message(self) -> Dict[str, Any]:
        st = self.state
        message: Dict[str, Any] = {"role": "assistant", "content": st.full_text or None}
        if st.tool_calls:
            message["tool_calls"] = list(st.tool_calls)
        return apply_reasoning_to_message(message, st.reasoning_summary_text, st.reasoning_full_text, self.mode)

    def render(self) -> Dict[str, Any]:
        st = self.state
        result: Dict[str, Any] = {
            "id": st.response_id,
            "object": self.completion_object,
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": self.message(),
                    "finish_reason": "tool_calls" if st.tool_calls else "stop",
                }
            ],
        }
        if st.final_usage:
            result["usage"] = st.final_usage
        return result


class TextCompletionTranslator(ChatTranslator):
    """Same state machine, ``text_completion`` shapes, no reasoning or tool output."""

    chunk_object = "text_completion.chunk"
    completion_object = "text_completion"
    placeholder_id = "cmpl-stream"
    prime_role = False

    def __init__(self, model: str, created: int) -> None:
        super().__init__(model, created, ReasoningMode.HIDDEN)

    def chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.state.response_id,
            "object": self.chunk_object,
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "text": delta.get("content", ""), "finish_reason": finish_reason}],
        }

    def on_item_done(self, event: OutputItemDone, frames: List[Frame]) -> None:
        return None

    def on_stream_done(self, frames: List[Frame]) -> None:
        self._emit(frames, {}, "stop")
        super().on_stream_done(frames)

    def render(self) -> Dict[str, Any]:
        st = self.state
        result: Dict[str, Any] = {
            "id": st.response_id,
            "object": self.completion_object,
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "text": st.full_text, "finish_reason": "stop", "logprobs": None}],
        }
        if st.final_usage:
            result["usage"] = st.final_usage
        return result


# -- SSE input -------------------------------------------------------------


async def iter_sse_lines(byte_stream: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Split a byte stream into lines, holding partial lines across reads."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in byte_stream:
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer.rstrip("\r")


def data_payload(line: str) -> Optional[str]:
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


def decode_event(payload: str, log: logging.Logger) -> Optional[UpstreamEvent]:
    if payload == DONE:
        return StreamDone()
    try:
        return parse_event(json.loads(payload))
    except ValueError as exc:
        log.warning("Skipping malformed SSE data line: %s (%s)", payload[:200], exc)
        return None


async def _release(close: Optional[CloseCallback], log: logging.Logger) -> None:
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        log.debug("Error while closing upstream stream: %s", exc)


Renderer = Callable[[Frame], bytes]


async def stream_frames(
    translator: ChatTranslator,
    byte_stream: AsyncIterable[bytes],
    verbose: bool = False,
    close: Optional[CloseCallback] = None,
    log: Optional[logging.Logger] = None,
    render: Renderer = render_frame,
) -> AsyncIterator[bytes]:
    """Drive ``translator`` over the upstream bytes, yielding each rendered frame as it is produced.

    Frames that render to empty bytes are dropped. ``close`` runs exactly once
    however the stream ends, including client disconnects.
    """
    log = log or logger
    try:
        async for line in iter_sse_lines(byte_stream):
            if verbose:
                log.info("upstream sse: %s", line)
            payload = data_payload(line)
            if payload is None:
                continue
            event = decode_event(payload, log)
            if event is None:
                continue
            for frame in translator.feed(event):
                data = render(frame)
                if data:
                    yield data
            if translator.finished:
                break
        for frame in translator.finish():
            data = render(frame)
            if data:
                yield data
    except (asyncio.CancelledError, GeneratorExit):
        log.debug("Client disconnected; releasing upstream stream (id=%s)", translator.state.response_id)
        raise
    except Exception as exc:
        log.exception("Upstream stream failed mid-response")
        if not translator.finished:
            translator.state.finished = True
            translator.state.error_message = f"Upstream stream error: {exc}"
            for frame in ({"error": {"message": translator.state.error_message}}, DONE):
                data = render(frame)
                if data:
                    yield data
    finally:
        await _release(close, log)


def translate_chat_stream(
    byte_stream: AsyncIterable[bytes],
    model: str,
    created: int,
    verbose: bool = False,
    mode: ReasoningMode | str = ReasoningMode.TAGGED,
    *,
    close: Optional[CloseCallback] = None,
    logger: Optional[logging.Logger] = None,
) -> AsyncIterator[bytes]:
    """Translate an upstream responses SSE byte stream into chat.completion.chunk SSE bytes."""
    translator = ChatTranslator(model, created, mode)
    return stream_frames(translator, byte_stream, verbose, close, logger)


def translate_text_stream(
    byte_stream: AsyncIterable[bytes],
    model: str,
    created: int,
    verbose: bool = False,
    *,
    close: Optional[CloseCallback] = None,
    logger: Optional[logging.Logger] = None,
) -> AsyncIterator[bytes]:
    translator = TextCompletionTranslator(model, created)
    return stream_frames(translator, byte_stream, verbose, close, logger)


# -- buffered aggregation --------------------------------------------------


async def _fold_lines(
    translator: ChatTranslator,
    byte_stream: AsyncIterable[bytes],
    verbose: bool,
    log: logging.Logger,
    raw_lines: List[str],
) -> bool:
    saw_frames = False
    async for line in iter_sse_lines(byte_stream):
        if verbose:
            log.info("upstream sse: %s", line)
        payload = data_payload(line)
        if payload is None:
            if not saw_frames:
                raw_lines.append(line)
            continue
        saw_frames = True
        event = decode_event(payload, log)
        if event is None:
            continue
        translator.feed(event)
        if translator.finished:
            break
    return saw_frames


async def _aggregate(
    translator: ChatTranslator,
    byte_stream: AsyncIterable[bytes],
    verbose: bool,
    close: Optional[CloseCallback],
    log: Optional[logging.Logger],
    cancel: Optional[asyncio.Event] = None,
) -> ChatTranslator:
    log = log or logger
    raw_lines: List[str] = []
    try:
        if cancel is None:
            saw_frames = await _fold_lines(translator, byte_stream, verbose, log, raw_lines)
        else:
            fold = asyncio.ensure_future(_fold_lines(translator, byte_stream, verbose, log, raw_lines))
            waiter = asyncio.ensure_future(cancel.wait())
            try:
                done, _ = await asyncio.wait({fold, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
                if not fold.done():
                    fold.cancel()
                    await asyncio.wait({fold})
            if fold not in done:
                log.debug("Client disconnected; abandoning upstream response (id=%s)", translator.state.response_id)
                translator.state.cancelled = True
                return translator
            saw_frames = fold.result()
    finally:
        await _release(close, log)

    if not saw_frames:
        body = "\n".join(raw_lines).strip()
        if body:
            try:
                obj = json.loads(body)
            except ValueError:
                log.warning("Upstream returned neither SSE nor JSON: %s", body[:200])
            else:
                if isinstance(obj, dict):
                    translator.absorb_json(obj)
    return translator


async def aggregate_chat(
    byte_stream: AsyncIterable[bytes],
    model: str,
    created: int,
    verbose: bool = False,
    mode: ReasoningMode | str = ReasoningMode.TAGGED,
    *,
    close: Optional[CloseCallback] = None,
    logger: Optional[logging.Logger] = None,
    cancel: Optional[asyncio.Event] = None,
) -> ChatTranslator:
    """Consume the upstream stream and return the translator holding the folded result.

    Call ``render()`` on the result for the ``chat.completion`` body; a
    ``response.failed`` event leaves its message in ``state.error_message``.
    When ``cancel`` fires first the upstream is released early and
    ``state.cancelled`` is set.
    """
    translator = ChatTranslator(model, created, mode)
    return await _aggregate(translator, byte_stream, verbose, close, logger, cancel)


async def aggregate_text(
    byte_stream: AsyncIterable[bytes],
    model: str,
    created: int,
    verbose: bool = False,
    *,
    close: Optional[CloseCallback] = None,
    logger: Optional[logging.Logger] = None,
    cancel: Optional[asyncio.Event] = None,
) -> TextCompletionTranslator:
    translator = TextCompletionTranslator(model, created)
    await _aggregate(translator, byte_stream, verbose, close, logger, cancel)
    return translator

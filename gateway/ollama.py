"""Ollama-shaped output built on the chat translator.

``/api/chat`` runs the same state machine as ``/v1/chat/completions``; only
the rendering differs: NDJSON lines instead of SSE frames, reasoning in
``message.thinking`` and tool-call arguments as objects.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from .reasoning import ReasoningMode, apply_reasoning_to_message
from .translate import DONE, ChatTranslator, CloseCallback, Frame, stream_frames
from .transform import json_loads_safe


def _created_at() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _ndjson(obj: Dict[str, Any]) -> bytes:
    return (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def ollama_tool_calls(tool_calls: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for call in tool_calls or []:
        fn = call.get("function") or {}
        args = json_loads_safe(fn.get("arguments") or "{}")
        out.append({"function": {"name": fn.get("name") or "", "arguments": args if isinstance(args, dict) else {}}})
    return out


def _final_fields(translator: ChatTranslator) -> Dict[str, Any]:
    usage = translator.state.final_usage or {}
    return {
        "done": True,
        "done_reason": "tool_calls" if translator.state.tool_calls else "stop",
        "total_duration": 0,
        "load_duration": 0,
        "prompt_eval_count": usage.get("prompt_tokens", 0),
        "eval_count": usage.get("completion_tokens", 0),
    }


class OllamaRenderer:
    """Maps chat frames onto Ollama ``/api/chat`` NDJSON lines."""

    def __init__(self, translator: ChatTranslator) -> None:
        self.translator = translator

    def _line(self, message: Dict[str, Any], **extra: Any) -> bytes:
        return _ndjson(
            {
                "model": self.translator.model,
                "created_at": _created_at(),
                "message": {"role": "assistant", **message},
                **extra,
            }
        )

    def __call__(self, frame: Frame) -> bytes:
        if frame == DONE:
            return self._line({"content": ""}, **_final_fields(self.translator))
        if "error" in frame:
            return _ndjson({"error": frame["error"].get("message") or "upstream error"})
        choices = frame.get("choices") or []
        delta = choices[0].get("delta") if choices else None
        if not isinstance(delta, dict):
            return b""
        message: Dict[str, Any] = {"content": delta.get("content") or ""}
        thinking = delta.get("reasoning_content")
        if thinking is None and isinstance(delta.get("reasoning"), dict):
            thinking = "".join(p.get("text", "") for p in delta["reasoning"].get("content") or [])
        if thinking:
            message["thinking"] = thinking
        if delta.get("tool_calls"):
            message["tool_calls"] = ollama_tool_calls(delta["tool_calls"])
        if not (message["content"] or thinking or delta.get("tool_calls")):
            # role priming and finish-reason chunks have nothing to show
            return b""
        return self._line(message, done=False)


def translate_ollama_stream(
    byte_stream: AsyncIterable[bytes],
    model: str,
    created: int,
    verbose: bool = False,
    mode: ReasoningMode | str = ReasoningMode.OPENAI,
    *,
    close: Optional[CloseCallback] = None,
    logger: Optional[logging.Logger] = None,
) -> AsyncIterator[bytes]:
    translator = ChatTranslator(model, created, mode)
    return stream_frames(translator, byte_stream, verbose, close, logger, render=OllamaRenderer(translator))


def render_ollama_chat(translator: ChatTranslator) -> Dict[str, Any]:
    """Single ``done: true`` object for a non-streaming ``/api/chat`` call."""
    st = translator.state
    message: Dict[str, Any] = {"role": "assistant", "content": st.full_text}
    if translator.mode is ReasoningMode.TAGGED:
        message = apply_reasoning_to_message(message, st.reasoning_summary_text, st.reasoning_full_text, translator.mode)
    elif translator.mode is not ReasoningMode.HIDDEN:
        thinking = "\n\n".join(t for t in (st.reasoning_summary_text, st.reasoning_full_text) if t.strip())
        if thinking:
            message["thinking"] = thinking
    if st.tool_calls:
        message["tool_calls"] = ollama_tool_calls(st.tool_calls)
    return {
        "model": translator.model,
        "created_at": _created_at(),
        "message": message,
        **_final_fields(translator),
    }

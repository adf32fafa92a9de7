from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Any, Dict, List, Optional

from .config import settings


MODEL_ALIASES: Dict[str, str] = {
    "gpt5": "gpt-5",
    "gpt-5-latest": "gpt-5",
    "gpt-5": "gpt-5",
    "gpt5-codex": "gpt-5-codex",
    "gpt-5-codex": "gpt-5-codex",
    "gpt-5-codex-latest": "gpt-5-codex",
    "codex": "codex-mini-latest",
    "codex-mini": "codex-mini-latest",
    "codex-mini-latest": "codex-mini-latest",
}

_EFFORT_SUFFIXES = ("minimal", "low", "medium", "high")


def normalize_model_name(name: Optional[str], override: Optional[str] = None) -> str:
    """Resolve a client model string to the upstream model id.

    A non-empty override always wins. Otherwise the ``:tag`` and one effort
    suffix (``-high``, ``_low`` ...) are stripped before the alias lookup.
    """
    if isinstance(override, str) and override.strip():
        return override.strip()
    if not isinstance(name, str) or not name.strip():
        return "gpt-5"
    base = name.split(":", 1)[0].strip()
    for sep in ("-", "_"):
        lowered = base.lower()
        for effort in _EFFORT_SUFFIXES:
            suffix = f"{sep}{effort}"
            if lowered.endswith(suffix):
                base = base[: -len(suffix)]
                break
    return MODEL_ALIASES.get(base, base)


def fold_system_message(messages: List[Any]) -> List[Any]:
    """Upstream has no system role: move the first system message to the front as a user turn."""
    out = list(messages)
    for idx, msg in enumerate(out):
        if isinstance(msg, dict) and msg.get("role") == "system":
            sys_msg = out.pop(idx)
            out.insert(0, {"role": "user", "content": sys_msg.get("content") or ""})
            break
    return out


def _normalize_image_data_url(url: str) -> str:
    if not isinstance(url, str) or not url.startswith("data:image/") or ";base64," not in url:
        return url
    header, data = url.split(",", 1)
    data = data.strip().replace("\n", "").replace("\r", "")
    data = data.replace("-", "+").replace("_", "/")
    pad = -len(data) % 4
    if pad:
        data += "=" * pad
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return url
    return f"{header},{data}"


def _tool_output_text(content: Any) -> Optional[str]:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                t = part.get("text") or part.get("content")
                if isinstance(t, str) and t:
                    texts.append(t)
        return "\n".join(texts)
    return None


def convert_chat_messages_to_responses_input(messages: List[Any]) -> List[Dict[str, Any]]:
    """Map Chat Completions messages onto responses input items."""
    items: List[Dict[str, Any]] = []
    for message in messages or []:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role == "system":
            continue

        if role == "tool":
            call_id = message.get("tool_call_id") or message.get("id")
            if isinstance(call_id, str) and call_id:
                output = _tool_output_text(message.get("content"))
                if output is not None:
                    items.append({"type": "function_call_output", "call_id": call_id, "output": output})
            continue

        if role == "assistant" and isinstance(message.get("tool_calls"), list):
            for tc in message["tool_calls"]:
                if not isinstance(tc, dict):
                    continue
                if (tc.get("type") or "function") != "function":
                    continue
                call_id = tc.get("id") or tc.get("call_id")
                fn = tc.get("function") if isinstance(tc.get("function"), dict) else {}
                name = fn.get("name")
                args = fn.get("arguments")
                if isinstance(call_id, str) and isinstance(name, str) and isinstance(args, str):
                    items.append({"type": "function_call", "name": name, "arguments": args, "call_id": call_id})

        text_kind = "output_text" if role == "assistant" else "input_text"
        content = message.get("content") or ""
        parts: List[Dict[str, Any]] = []
        if isinstance(content, list):
            for part in content:
                if not isinstance(part, dict):
                    continue
                ptype = part.get("type")
                if ptype == "text":
                    text = part.get("text") or part.get("content") or ""
                    if isinstance(text, str) and text:
                        parts.append({"type": text_kind, "text": text})
                elif ptype == "image_url":
                    image = part.get("image_url")
                    url = image.get("url") if isinstance(image, dict) else image
                    if isinstance(url, str) and url:
                        parts.append({"type": "input_image", "image_url": _normalize_image_data_url(url)})
        elif isinstance(content, str) and content:
            parts.append({"type": text_kind, "text": content})

        if not parts:
            continue
        items.append({"type": "message", "role": "assistant" if role == "assistant" else "user", "content": parts})
    return items


def convert_tools_chat_to_responses(tools: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if not isinstance(tools, list):
        return out
    for t in tools:
        if not isinstance(t, dict) or t.get("type") != "function":
            continue
        fn = t.get("function")
        if not isinstance(fn, dict):
            continue
        name = fn.get("name")
        if not isinstance(name, str) or not name:
            continue
        out.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": fn.get("description") or "",
                    "parameters": fn.get("parameters") or {"type": "object", "properties": {}},
                },
            }
        )
    return out


def format_tools_for_upstream(tools: List[Dict[str, Any]], fmt: Optional[str] = None) -> List[Dict[str, Any]]:
    """Reshape nested tool definitions for the configured wire variant (flat | nested)."""
    mode = (fmt or settings.upstream_tools_format or "flat").lower()
    if mode != "flat":
        return list(tools or [])
    out: List[Dict[str, Any]] = []
    for t in tools or []:
        if not isinstance(t, dict) or t.get("type") != "function":
            continue
        fn = t.get("function") or {}
        if not isinstance(fn.get("name"), str) or not fn.get("name"):
            continue
        flat: Dict[str, Any] = {"type": "function", "name": fn["name"]}
        if fn.get("description"):
            flat["description"] = fn["description"]
        if fn.get("parameters"):
            flat["parameters"] = fn["parameters"]
        out.append(flat)
    return out


def format_tool_choice_for_upstream(choice: Any, fmt: Optional[str] = None) -> Any:
    if choice is None:
        return "auto"
    if isinstance(choice, str):
        return choice if choice in ("auto", "none", "required") else "auto"
    if not isinstance(choice, dict):
        return "auto"
    mode = (fmt or settings.upstream_tools_format or "flat").lower()
    fn = choice.get("function")
    if mode == "flat" and choice.get("type") and isinstance(fn, dict) and fn.get("name"):
        return {"type": choice["type"], "name": fn["name"]}
    return choice


def normalize_usage(raw: Any) -> Optional[Dict[str, int]]:
    """Fold responses-style usage counters into the Chat Completions shape."""
    if not isinstance(raw, dict):
        return None

    def _num(*keys: str) -> int:
        for key in keys:
            value = raw.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return 0

    prompt = _num("prompt_tokens", "input_tokens")
    completion = _num("completion_tokens", "output_tokens")
    total = raw.get("total_tokens")
    usage: Dict[str, int] = {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total if isinstance(total, (int, float)) and not isinstance(total, bool) else prompt + completion,
    }
    for key in ("cache_creation_input_tokens", "cache_read_input_tokens"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            usage[key] = value
    return usage


def prompt_to_text(prompt: Any, suffix: Any = None) -> str:
    """Collapse a /v1/completions prompt (string or list of strings) into one string."""
    if isinstance(prompt, list):
        prompt = "".join(p for p in prompt if isinstance(p, str))
    if not isinstance(prompt, str):
        prompt = suffix if isinstance(suffix, str) else ""
    return prompt


def now_unix() -> int:
    return int(time.time())


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def json_loads_safe(s: Any) -> Any:
    if not isinstance(s, str):
        return s
    try:
        return json.loads(s)
    except ValueError:
        return {}

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ReasoningMode(str, Enum):
    TAGGED = "tagged"
    OPENAI = "openai"
    O3 = "o3"
    R1 = "r1"
    HIDDEN = "hidden"


_ALIASES = {"hide": ReasoningMode.HIDDEN}
LEGACY_MODES = ("legacy", "current")

VALID_EFFORTS = ("none", "minimal", "low", "medium", "high")
VALID_SUMMARIES = ("auto", "concise", "detailed", "none")
_SUFFIX_EFFORTS = ("minimal", "low", "medium", "high")


def normalize_mode(raw: Optional[str]) -> ReasoningMode:
    """Map a configured mode string onto a ReasoningMode.

    Never raises: unknown, empty and missing values resolve to TAGGED.
    """
    if isinstance(raw, ReasoningMode):
        return raw
    value = str(raw or "").strip().lower()
    if value in _ALIASES:
        return _ALIASES[value]
    try:
        return ReasoningMode(value)
    except ValueError:
        return ReasoningMode.TAGGED


def rejected_mode_message(raw: Optional[str]) -> Optional[str]:
    """Return the 400 message for a legacy mode value, or None if the value is acceptable."""
    value = str(raw or "").strip().lower()
    if value in LEGACY_MODES:
        return f"Reasoning mode '{value}' is no longer supported. Use openai instead."
    return None


def build_reasoning_param(
    base_effort: str = "minimal",
    base_summary: str = "auto",
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    effort = str(base_effort or "").strip().lower()
    summary = str(base_summary or "").strip().lower()
    if isinstance(overrides, dict):
        o_eff = str(overrides.get("effort") or "").strip().lower()
        o_sum = str(overrides.get("summary") or "").strip().lower()
        if o_eff in VALID_EFFORTS:
            effort = o_eff
        if o_sum in VALID_SUMMARIES:
            summary = o_sum
    if effort not in VALID_EFFORTS:
        effort = "minimal"
    if summary not in VALID_SUMMARIES:
        summary = "auto"
    param = {"effort": effort}
    if summary != "none":
        param["summary"] = summary
    return param


def extract_reasoning_from_model_name(model: Any) -> Optional[Dict[str, str]]:
    """Infer an effort override from a model suffix, e.g. "gpt-5-high" -> {"effort": "high"}."""
    s = str(model or "").strip().lower()
    if not s:
        return None
    base = s.split(":", 1)[0]
    for sep in ("-", "_"):
        for effort in _SUFFIX_EFFORTS:
            if base.endswith(f"{sep}{effort}"):
                return {"effort": effort}
    return None


def apply_reasoning_to_message(
    message: Dict[str, Any],
    reasoning_summary_text: str,
    reasoning_full_text: str,
    mode: ReasoningMode | str,
) -> Dict[str, Any]:
    mode = normalize_mode(mode)
    if mode is ReasoningMode.HIDDEN:
        return message

    parts = []
    if isinstance(reasoning_summary_text, str) and reasoning_summary_text.strip():
        parts.append(reasoning_summary_text)
    if isinstance(reasoning_full_text, str) and reasoning_full_text.strip():
        parts.append(reasoning_full_text)
    text = "\n\n".join(parts)
    if not text:
        return message

    if mode is ReasoningMode.O3:
        message["reasoning"] = {"content": [{"type": "text", "text": text}]}
    elif mode in (ReasoningMode.R1, ReasoningMode.OPENAI):
        message["reasoning_content"] = text
    else:
        # tagged is the only mode that rewrites the visible content
        content = message.get("content")
        message["content"] = f"<think>{text}</think>" + (content if isinstance(content, str) else "")
    return message

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict


# Upstream responses-API stream events (subset used for translation)


class UpstreamEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = ""
    response: Any = None
    # Some providers attach usage at the root instead of under response
    usage: Any = None

    @property
    def response_id(self) -> Optional[str]:
        rid = self.response.get("id") if isinstance(self.response, dict) else None
        return rid if isinstance(rid, str) and rid else None


class OutputTextDelta(UpstreamEvent):
    delta: Any = ""

    @property
    def text(self) -> str:
        return self.delta if isinstance(self.delta, str) else ""


class OutputTextDone(UpstreamEvent):
    text: Any = None


class ReasoningSummaryPartAdded(UpstreamEvent):
    pass


class ReasoningDelta(UpstreamEvent):
    delta: Any = ""

    @property
    def text(self) -> str:
        return self.delta if isinstance(self.delta, str) else ""

    @property
    def is_summary(self) -> bool:
        return self.type in (
            "response.reasoning_summary_text.delta",
            "response.reasoning_summary.delta",
        )


class OutputItemDone(UpstreamEvent):
    item: Any = None

    @property
    def is_function_call(self) -> bool:
        return isinstance(self.item, dict) and self.item.get("type") == "function_call"


class ResponseFailed(UpstreamEvent):
    @property
    def message(self) -> str:
        error = self.response.get("error") if isinstance(self.response, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return "response.failed"


class ResponseCompleted(UpstreamEvent):
    @property
    def raw_usage(self) -> Optional[Dict[str, Any]]:
        usage = self.response.get("usage") if isinstance(self.response, dict) else None
        if isinstance(usage, dict):
            return usage
        return self.usage if isinstance(self.usage, dict) else None


class OtherDone(UpstreamEvent):
    pass


class UnknownEvent(UpstreamEvent):
    pass


class StreamDone(UpstreamEvent):
    """The literal ``data: [DONE]`` sentinel."""

    type: str = "[DONE]"


EVENT_TYPES: Dict[str, Type[UpstreamEvent]] = {
    "response.output_text.delta": OutputTextDelta,
    "response.output_text.done": OutputTextDone,
    "response.reasoning_summary_part.added": ReasoningSummaryPartAdded,
    "response.reasoning_summary_text.delta": ReasoningDelta,
    "response.reasoning_summary.delta": ReasoningDelta,
    "response.reasoning_text.delta": ReasoningDelta,
    "response.reasoning.delta": ReasoningDelta,
    "response.output_item.done": OutputItemDone,
    "response.failed": ResponseFailed,
    "response.completed": ResponseCompleted,
}


def parse_event(data: Any) -> UpstreamEvent:
    """Build the typed event for one decoded ``data:`` payload.

    Raises ValueError when the payload is not a JSON object.
    """
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    kind = data.get("type")
    kind = kind if isinstance(kind, str) else ""
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        cls = OtherDone if kind.endswith(".done") else UnknownEvent
    return cls.model_validate(data)

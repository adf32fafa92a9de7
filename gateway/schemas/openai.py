from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Inbound request bodies. Kept loose: unknown fields pass through and the
# message list is validated by the normalizer rather than here.


class _ChatLikeRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: Any = None
    prompt: Any = None
    input: Any = None
    tools: Optional[List[Dict[str, Any]]] = None

    def message_list(self) -> Any:
        """Messages, or a single user turn built from ``prompt`` / ``input`` strings."""
        if self.messages is not None:
            return self.messages
        for text in (self.prompt, self.input):
            if isinstance(text, str):
                return [{"role": "user", "content": text}]
        return []


class ChatCompletionRequest(_ChatLikeRequest):
    stream: Optional[bool] = False
    tool_choice: Any = None
    parallel_tool_calls: Optional[bool] = False
    reasoning: Any = None


class CompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    prompt: Union[str, List[Any], None] = None
    suffix: Optional[str] = None
    stream: Optional[bool] = False
    reasoning: Any = None


class OllamaChatRequest(_ChatLikeRequest):
    # Ollama streams unless told otherwise
    stream: Optional[bool] = True


class OllamaShowRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    model: Optional[str] = None


class ErrorDetail(BaseModel):
    message: str
    type: str = "api_error"


class ErrorResponse(BaseModel):
    error: ErrorDetail


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "owner"


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard] = Field(default_factory=list)

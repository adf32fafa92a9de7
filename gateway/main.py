from __future__ import annotations

import asyncio
import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import CredentialsProvider
from .config import settings
from .errors import error_response
from .instructions import InstructionsProvider
from .ollama import render_ollama_chat, translate_ollama_stream
from .reasoning import (
    ReasoningMode,
    build_reasoning_param,
    extract_reasoning_from_model_name,
    normalize_mode,
    rejected_mode_message,
)
from .schemas.openai import (
    ChatCompletionRequest,
    CompletionRequest,
    ModelCard,
    ModelList,
    OllamaChatRequest,
    OllamaShowRequest,
)
from .session import SessionCache
from .transform import (
    convert_chat_messages_to_responses_input,
    convert_tools_chat_to_responses,
    fold_system_message,
    json_dumps_safe,
    normalize_model_name,
    now_unix,
    prompt_to_text,
)
from .translate import aggregate_chat, aggregate_text, translate_chat_stream, translate_text_stream
from .upstream import UpstreamCancelled, UpstreamClient, close_http_client, get_http_client


logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("gateway")


app = FastAPI(title="Responses Gateway")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "OpenAI-Beta", "chatgpt-account-id"],
    expose_headers=["Content-Length"],
    max_age=600,
)

app.state.session_cache = SessionCache()
app.state.credentials = CredentialsProvider(settings)
app.state.instructions = InstructionsProvider(settings)
app.state.upstream = UpstreamClient(
    app.state.session_cache,
    app.state.credentials,
    app.state.instructions,
    logger=logging.getLogger("gateway.upstream"),
)

_STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
_OPEN_PATHS = ("/", "/health")


@app.exception_handler(StarletteHTTPException)
async def _http_exception_envelope(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.middleware("http")
async def _api_key_gate(request: Request, call_next):
    expected = settings.proxy_api_key
    if not expected or request.method == "OPTIONS" or request.url.path in _OPEN_PATHS:
        return await call_next(request)
    auth = request.headers.get("authorization")
    if not auth:
        return error_response(401, "Missing Authorization header")
    if not auth.startswith("Bearer "):
        return error_response(401, "Invalid Authorization header format. Expected: Bearer <token>")
    if not hmac.compare_digest(auth[7:].encode(), expected.encode()):
        return error_response(401, "Invalid API key")
    return await call_next(request)


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = get_http_client()


@app.on_event("shutdown")
async def _shutdown_client():
    await close_http_client()


def _legacy_mode_error() -> Optional[JSONResponse]:
    for raw in (settings.reasoning_output_mode, settings.reasoning_compat):
        message = rejected_mode_message(raw)
        if message:
            return error_response(400, message)
    return None


def _prefix_mode(mode: str) -> ReasoningMode:
    """Mode from a ``/{mode}/v1`` prefix; those routes only exist with REASONING_OUTPUT_MODE=all."""
    value = (mode or "").strip().lower()
    if not settings.mount_all_modes() or value not in {m.value for m in ReasoningMode}:
        raise HTTPException(status_code=404, detail="Not Found")
    return ReasoningMode(value)


async def _read_json(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        try:
            body = json.loads(raw.decode("utf-8", errors="ignore").replace("\r", "").replace("\n", ""))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    if settings.verbose:
        logger.info("IN %s %s\n%s", request.method, request.url.path, json_dumps_safe(body)[:2000])
    return body


def _reasoning_for(raw_model: Optional[str], overrides: Any) -> Dict[str, str]:
    if not isinstance(overrides, dict):
        overrides = extract_reasoning_from_model_name(raw_model)
    return build_reasoning_param(settings.reasoning_effort, settings.reasoning_summary, overrides)


def _upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


async def _watch_disconnect(request: Request, cancel: asyncio.Event, interval: float = 0.1) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(interval)


@asynccontextmanager
async def _disconnect_watch(request: Request):
    """Event that fires when the client goes away while the handler is still waiting on upstream.

    The watcher stops on exit so it never competes with a StreamingResponse
    for the receive channel.
    """
    cancel = asyncio.Event()
    watcher = asyncio.ensure_future(_watch_disconnect(request, cancel))
    try:
        yield cancel
    finally:
        watcher.cancel()


def _client_gone() -> Response:
    # nginx's "client closed request"; nobody is left to read it
    return Response(status_code=499)


async def _guarded(request: Request, handler, *args) -> Response:
    # body first: the watcher reads the same receive channel
    await request.body()
    async with _disconnect_watch(request) as cancel:
        try:
            return await handler(request, *args, cancel=cancel)
        except UpstreamCancelled:
            logger.info("Client disconnected before upstream answered %s", request.url.path)
            return _client_gone()


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health():
    return {"status": "ok"}


def _model_list() -> Dict[str, Any]:
    return ModelList(data=[ModelCard(id=m) for m in settings.model_ids()]).model_dump()


@app.get("/v1/models")
async def list_models():
    return JSONResponse(content=_model_list())


@app.get("/{mode}/v1/models")
async def list_models_for_mode(mode: str):
    _prefix_mode(mode)
    return JSONResponse(content=_model_list())


async def _chat_completions(request: Request, mode: ReasoningMode, cancel: Optional[asyncio.Event] = None) -> Response:
    body = await _read_json(request)
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        return error_response(400, str(e))

    model = normalize_model_name(parsed.model, settings.debug_model)
    messages = parsed.message_list()
    if not isinstance(messages, list):
        return error_response(400, "Request must include messages: []")
    messages = fold_system_message(messages)

    input_items = convert_chat_messages_to_responses_input(messages)
    if parsed.messages is not None and isinstance(parsed.prompt, str) and parsed.prompt.strip():
        input_items.append({"type": "message", "role": "user", "content": [{"type": "input_text", "text": parsed.prompt}]})
    tools = convert_tools_chat_to_responses(parsed.tools)
    reasoning_param = _reasoning_for(parsed.model, parsed.reasoning)

    upstream = _upstream(request)
    instructions = await upstream.instructions.for_model(model, upstream.client)
    result = await upstream.start(
        model,
        input_items,
        instructions=instructions,
        tools=tools,
        tool_choice=parsed.tool_choice or "auto",
        parallel_tool_calls=bool(parsed.parallel_tool_calls),
        reasoning_param=reasoning_param,
        client_headers=request.headers,
        cancel=cancel,
    )
    if result.error is not None:
        return error_response(result.error.status_code, result.error.message)

    resp = result.response
    created = now_unix()
    if parsed.stream:
        return StreamingResponse(
            translate_chat_stream(
                resp.aiter_bytes(), model, created, settings.verbose, mode, close=resp.aclose, logger=logger
            ),
            media_type="text/event-stream",
            headers=_STREAM_HEADERS,
        )

    try:
        agg = await aggregate_chat(
            resp.aiter_bytes(), model, created, settings.verbose, mode, close=resp.aclose, logger=logger, cancel=cancel
        )
    except httpx.HTTPError as e:
        logger.error("Error reading upstream response: %s", e)
        return error_response(502, f"Error reading upstream response: {e}")
    if agg.state.cancelled:
        return _client_gone()
    if agg.state.error_message:
        return error_response(502, agg.state.error_message)
    return JSONResponse(content=agg.render())


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    rejected = _legacy_mode_error()
    if rejected is not None:
        return rejected
    return await _guarded(request, _chat_completions, normalize_mode(settings.configured_mode()))


@app.post("/{mode}/v1/chat/completions")
async def chat_completions_for_mode(mode: str, request: Request):
    resolved = _prefix_mode(mode)
    rejected = _legacy_mode_error()
    if rejected is not None:
        return rejected
    return await _guarded(request, _chat_completions, resolved)


async def _completions(request: Request, cancel: Optional[asyncio.Event] = None) -> Response:
    body = await _read_json(request)
    try:
        parsed = CompletionRequest.model_validate(body)
    except ValidationError as e:
        return error_response(400, str(e))

    model = normalize_model_name(parsed.model, settings.debug_model)
    prompt = prompt_to_text(parsed.prompt, parsed.suffix)
    input_items = convert_chat_messages_to_responses_input([{"role": "user", "content": prompt}])
    reasoning_param = _reasoning_for(parsed.model, parsed.reasoning)

    upstream = _upstream(request)
    instructions = await upstream.instructions.for_model(model, upstream.client)
    result = await upstream.start(
        model,
        input_items,
        instructions=instructions,
        reasoning_param=reasoning_param,
        client_headers=request.headers,
        cancel=cancel,
    )
    if result.error is not None:
        return error_response(result.error.status_code, result.error.message)

    resp = result.response
    created = now_unix()
    if parsed.stream:
        return StreamingResponse(
            translate_text_stream(resp.aiter_bytes(), model, created, settings.verbose, close=resp.aclose, logger=logger),
            media_type="text/event-stream",
            headers=_STREAM_HEADERS,
        )

    try:
        agg = await aggregate_text(
            resp.aiter_bytes(), model, created, settings.verbose, close=resp.aclose, logger=logger, cancel=cancel
        )
    except httpx.HTTPError as e:
        logger.error("Error reading upstream response: %s", e)
        return error_response(502, f"Error reading upstream response: {e}")
    if agg.state.cancelled:
        return _client_gone()
    if agg.state.error_message:
        return error_response(502, agg.state.error_message)
    return JSONResponse(content=agg.render())


@app.post("/v1/completions")
async def completions(request: Request):
    rejected = _legacy_mode_error()
    if rejected is not None:
        return rejected
    return await _guarded(request, _completions)


@app.post("/{mode}/v1/completions")
async def completions_for_mode(mode: str, request: Request):
    _prefix_mode(mode)
    rejected = _legacy_mode_error()
    if rejected is not None:
        return rejected
    return await _guarded(request, _completions)


# Ollama-compatible surface


@app.post("/api/chat")
async def ollama_chat(request: Request):
    rejected = _legacy_mode_error()
    if rejected is not None:
        return rejected
    return await _guarded(request, _ollama_chat, normalize_mode(settings.configured_mode()))


async def _ollama_chat(request: Request, mode: ReasoningMode, cancel: Optional[asyncio.Event] = None) -> Response:
    body = await _read_json(request)
    try:
        parsed = OllamaChatRequest.model_validate(body)
    except ValidationError as e:
        return error_response(400, str(e))

    model = normalize_model_name(parsed.model, settings.debug_model)
    messages = parsed.message_list()
    if not isinstance(messages, list):
        return error_response(400, "Request must include messages: []")
    input_items = convert_chat_messages_to_responses_input(fold_system_message(messages))
    tools = convert_tools_chat_to_responses(parsed.tools)

    upstream = _upstream(request)
    instructions = await upstream.instructions.for_model(model, upstream.client)
    result = await upstream.start(
        model,
        input_items,
        instructions=instructions,
        tools=tools,
        tool_choice="auto",
        reasoning_param=_reasoning_for(parsed.model, None),
        client_headers=request.headers,
        cancel=cancel,
    )
    if result.error is not None:
        return error_response(result.error.status_code, result.error.message)

    resp = result.response
    created = now_unix()
    if parsed.stream:
        return StreamingResponse(
            translate_ollama_stream(
                resp.aiter_bytes(), model, created, settings.verbose, mode, close=resp.aclose, logger=logger
            ),
            media_type="application/x-ndjson",
            headers=_STREAM_HEADERS,
        )

    try:
        agg = await aggregate_chat(
            resp.aiter_bytes(), model, created, settings.verbose, mode, close=resp.aclose, logger=logger, cancel=cancel
        )
    except httpx.HTTPError as e:
        logger.error("Error reading upstream response: %s", e)
        return error_response(502, f"Error reading upstream response: {e}")
    if agg.state.cancelled:
        return _client_gone()
    if agg.state.error_message:
        return error_response(502, agg.state.error_message)
    return JSONResponse(content=render_ollama_chat(agg))


def _passthrough(resp: httpx.Response) -> Response:
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type", "application/json"),
    )


@app.post("/api/show")
async def ollama_show(request: Request):
    body = await _read_json(request)
    try:
        parsed = OllamaShowRequest.model_validate(body)
    except ValidationError as e:
        return error_response(400, str(e))
    name = parsed.name or parsed.model
    if not name:
        return error_response(400, "Model name is required")

    if settings.ollama_api_url:
        result = await _upstream(request).ollama("POST", "/api/show", body, request.headers)
        if result.error is not None:
            return error_response(result.error.status_code, result.error.message)
        return _passthrough(result.response)

    return JSONResponse(
        content={
            "modelfile": "",
            "parameters": "",
            "template": "{{ .Prompt }}",
            "details": {
                "parent_model": "",
                "format": "api",
                "family": "gpt",
                "families": ["gpt"],
                "parameter_size": "",
                "quantization_level": "",
            },
            "model_info": {"general.basename": normalize_model_name(name, settings.debug_model)},
            "capabilities": ["completion", "tools", "thinking"],
        }
    )


@app.get("/api/tags")
async def ollama_tags(request: Request):
    if settings.ollama_api_url:
        result = await _upstream(request).ollama("GET", "/api/tags", None, request.headers)
        if result.error is not None:
            return error_response(result.error.status_code, result.error.message)
        return _passthrough(result.response)

    models = [
        {
            "name": model_id,
            "model": model_id,
            "modified_at": "1970-01-01T00:00:00Z",
            "size": 0,
            "digest": "",
            "details": {"format": "api", "family": "gpt", "families": ["gpt"]},
        }
        for model_id in settings.model_ids()
    ]
    return JSONResponse(content={"models": models})


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .auth import AuthConfigError, Credentials, CredentialsProvider
from .config import Settings, settings as default_settings
from .errors import upstream_error_message
from .instructions import InstructionsProvider
from .session import SessionCache
from .transform import format_tool_choice_for_upstream, format_tools_for_upstream


logger = logging.getLogger("gateway.upstream")

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=default_settings.http2, limits=limits)
        except ImportError:
            # h2 extra missing: HTTP/1.1 only
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def close_http_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        client, _HTTPX_CLIENT = _HTTPX_CLIENT, None
        await client.aclose()


# Protocol headers owned by the gateway; client copies are never forwarded
RESERVED_HEADERS = frozenset(
    {"authorization", "content-type", "accept", "openai-beta", "chatgpt-account-id", "session_id"}
)

SAFE_FORWARD_HEADERS = (
    "user-agent",
    "accept-language",
    "sec-ch-ua",
    "sec-ch-ua-mobile",
    "sec-ch-ua-platform",
    "sec-ch-ua-arch",
    "sec-ch-ua-model",
    "x-forwarded-for",
    "x-forwarded-proto",
    "x-forwarded-host",
    "cf-connecting-ip",
)

_CANONICAL_NAMES = {
    "accept": "Accept",
    "content-type": "Content-Type",
    "authorization": "Authorization",
    "openai-beta": "OpenAI-Beta",
    "chatgpt-account-id": "chatgpt-account-id",
    "session_id": "session_id",
    "user-agent": "User-Agent",
}

_REDACTED = ("authorization", "chatgpt-account-id", "x-api-key")


class UpstreamCancelled(Exception):
    """The caller's cancel event fired before the upstream answered."""


@dataclass
class UpstreamError:
    status_code: int
    message: str


@dataclass
class UpstreamResult:
    response: Optional[httpx.Response] = None
    error: Optional[UpstreamError] = None

    @classmethod
    def failed(cls, status_code: int, message: str) -> "UpstreamResult":
        return cls(error=UpstreamError(status_code, message))


def _lower_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def set_header(headers: Dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing spelling of the same name."""
    lowered = name.lower()
    for existing in [k for k in headers if k.lower() == lowered]:
        del headers[existing]
    headers[_CANONICAL_NAMES.get(lowered, name)] = value


def forwarded_client_headers(client_headers: Optional[Mapping[str, str]], cfg: Settings) -> Dict[str, str]:
    """Client headers passed through in ``safe`` and ``list`` modes."""
    mode = cfg.forward_headers_mode
    src = _lower_headers(client_headers)
    if not src or mode not in ("safe", "list"):
        return {}
    if mode == "safe":
        names: List[str] = list(SAFE_FORWARD_HEADERS)
    else:
        names = [s.strip().lower() for s in cfg.forward_headers_list.split(",") if s.strip()]
    out: Dict[str, str] = {}
    for name in names:
        if name in RESERVED_HEADERS:
            continue
        value = src.get(name)
        if value:
            out[name] = value
    if names and "x-forwarded-for" not in out:
        connecting_ip = src.get("cf-connecting-ip") or src.get("x-real-ip")
        if connecting_ip:
            out["x-forwarded-for"] = connecting_ip
    return out


def codex_user_agent(cfg: Settings) -> str:
    os_part = " ".join(p for p in (cfg.codex_os_type, cfg.codex_os_version) if p)
    ua = f"{cfg.codex_originator}/{cfg.codex_version} ({os_part}; {cfg.codex_arch})"
    if cfg.codex_editor and cfg.codex_editor.strip():
        ua = f"{ua} {cfg.codex_editor.strip()}"
    return ua


def apply_header_overrides(headers: Dict[str, str], cfg: Settings) -> None:
    """Final pass for ``override`` / ``override-codex``. Authorization is never touched."""
    mode = cfg.forward_headers_mode
    if mode == "override":
        overrides = cfg.forward_headers_override
    elif mode == "override-codex":
        set_header(headers, "originator", cfg.codex_originator)
        set_header(headers, "User-Agent", codex_user_agent(cfg))
        overrides = cfg.forward_headers_override_codex
    else:
        return
    for name, raw in overrides.items():
        if str(name).lower() == "authorization" or raw is None:
            continue
        value = str(raw)
        if not value:
            continue
        set_header(headers, str(name), value)
        if str(name).lower() == "accept" and value.lower() != "text/event-stream":
            logger.warning("Header override changed Accept to %r; SSE behaviour may differ", value)


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in _REDACTED else v) for k, v in headers.items()}


async def read_error_message(response: httpx.Response) -> str:
    try:
        await response.aread()
    except httpx.HTTPError:
        return response.reason_phrase or "Upstream error"
    finally:
        await response.aclose()
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    return upstream_error_message(body, response.reason_phrase or "Upstream error")


class UpstreamClient:
    """Builds and sends responses-API requests for one configured upstream."""

    def __init__(
        self,
        session_cache: SessionCache,
        credentials: Optional[CredentialsProvider] = None,
        instructions: Optional[InstructionsProvider] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        cfg: Optional[Settings] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.session_cache = session_cache
        self.credentials = credentials or CredentialsProvider(self.cfg)
        self.instructions = instructions or InstructionsProvider(self.cfg)
        self._client = client
        self.log = logger if logger is not None else logging.getLogger("gateway.upstream")

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    def _auth_value(self, secret: str) -> str:
        scheme = (self.cfg.upstream_auth_scheme or "").strip()
        return f"{scheme} {secret.strip()}" if scheme else secret.strip()

    async def _auth_headers(self, creds: Optional[Credentials] = None) -> Tuple[Dict[str, str], Optional[UpstreamError]]:
        mode = self.cfg.upstream_auth_mode
        header_name = self.cfg.upstream_auth_header or "Authorization"
        headers: Dict[str, str] = {}

        if mode == "apikey_env":
            key = (self.cfg.upstream_api_key or "").strip()
            if not key:
                return headers, UpstreamError(401, "Missing upstream API key (set UPSTREAM_API_KEY)")
            headers[header_name] = self._auth_value(key)
            return headers, None

        if creds is None:
            try:
                creds = await self.credentials.get()
            except AuthConfigError as exc:
                if mode == "apikey_auth_json":
                    return headers, UpstreamError(400, str(exc))
                self.log.error("Could not read ChatGPT credentials: %s", exc)
                creds = Credentials()

        if mode == "apikey_auth_json":
            if not creds.api_key:
                key_name = self.cfg.upstream_auth_env_key
                return headers, UpstreamError(401, f"Missing upstream API key in OPENAI_CODEX_AUTH at key '{key_name}'")
            headers[header_name] = self._auth_value(creds.api_key)
            return headers, None

        # chatgpt_token
        if not creds.access_token or not creds.account_id:
            return headers, UpstreamError(401, "Missing ChatGPT credentials. Run 'codex login' first")
        headers[header_name] = self._auth_value(creds.access_token)
        headers["chatgpt-account-id"] = creds.account_id
        return headers, None

    def build_headers(
        self,
        auth_headers: Dict[str, str],
        session_id: str,
        client_headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        headers.update(forwarded_client_headers(client_headers, self.cfg))
        headers.update(auth_headers)
        headers["Accept"] = "text/event-stream"
        headers["OpenAI-Beta"] = "responses=experimental"
        headers["session_id"] = session_id
        apply_header_overrides(headers, self.cfg)
        return headers

    def build_body(
        self,
        model: str,
        input_items: List[Dict[str, Any]],
        instructions: str,
        session_id: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Any = None,
        parallel_tool_calls: bool = False,
        reasoning_param: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "instructions": instructions,
            "input": input_items,
            "tools": format_tools_for_upstream(tools or [], self.cfg.upstream_tools_format),
            "tool_choice": format_tool_choice_for_upstream(tool_choice, self.cfg.upstream_tools_format),
            "parallel_tool_calls": bool(parallel_tool_calls),
            "store": False,
            "stream": True,
            "include": ["reasoning.encrypted_content"] if reasoning_param else [],
            "prompt_cache_key": session_id,
        }
        if reasoning_param:
            body["reasoning"] = reasoning_param
        return body

    async def _send(
        self,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        cancel: Optional[asyncio.Event],
        timeout: Optional[float],
    ) -> httpx.Response:
        request = self.client.build_request(
            "POST", url, headers=headers, json=body, timeout=httpx.Timeout(timeout)
        )
        if cancel is None:
            return await self.client.send(request, stream=True)
        if cancel.is_set():
            raise UpstreamCancelled("request cancelled before it was sent")

        send = asyncio.ensure_future(self.client.send(request, stream=True))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({send, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            send.cancel()
            raise
        finally:
            waiter.cancel()
        if send in done:
            return send.result()
        send.cancel()
        try:
            response = await send
        except (asyncio.CancelledError, httpx.HTTPError):
            pass
        else:
            await response.aclose()
        raise UpstreamCancelled("request cancelled before upstream responded")

    async def start(
        self,
        model: str,
        input_items: List[Dict[str, Any]],
        *,
        instructions: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Any = None,
        parallel_tool_calls: bool = False,
        reasoning_param: Optional[Dict[str, Any]] = None,
        client_headers: Optional[Mapping[str, str]] = None,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResult:
        """Open a streaming responses request.

        Exactly one of ``response`` / ``error`` is set on the result. A
        successful response is still open; the caller owns closing it.
        Raises UpstreamCancelled when ``cancel`` fires first.
        """
        auth_headers, auth_error = await self._auth_headers()
        if auth_error is not None:
            return UpstreamResult(error=auth_error)

        if not (instructions and instructions.strip()):
            instructions = await self.instructions.for_model(model, self.client)
        src = _lower_headers(client_headers)
        session_id = self.session_cache.ensure_session_id(
            instructions, input_items, src.get("x-session-id") or src.get("session_id")
        )
        url = self.cfg.responses_url()
        body = self.build_body(
            model,
            input_items,
            instructions,
            session_id,
            tools=tools,
            tool_choice=tool_choice,
            parallel_tool_calls=parallel_tool_calls,
            reasoning_param=reasoning_param,
        )
        headers = self.build_headers(auth_headers, session_id, client_headers)
        if timeout is None:
            timeout = self.cfg.upstream_timeout

        if self.cfg.verbose:
            self.log.info(
                "upstream request: %s",
                json.dumps(
                    {
                        "url": url,
                        "headers": redact_headers(headers),
                        **{k: v for k, v in body.items() if k not in ("input", "instructions")},
                        "input_items": len(input_items),
                        "instructions_chars": len(instructions or ""),
                    },
                    ensure_ascii=False,
                ),
            )

        try:
            response = await self._send(url, headers, body, cancel, timeout)
            if response.status_code < 400:
                return UpstreamResult(response=response)

            status = response.status_code
            message = await read_error_message(response)
            self.log.error("Upstream %s returned HTTP %s: %s", url, status, message)

            if status == 401 and self.cfg.upstream_auth_mode == "chatgpt_token":
                refreshed = await self.credentials.refresh(self.client)
                if refreshed is not None:
                    retry_auth, retry_error = await self._auth_headers(refreshed)
                    if retry_error is None:
                        retry_headers = self.build_headers(retry_auth, session_id, client_headers)
                        retry = await self._send(url, retry_headers, body, cancel, timeout)
                        if retry.status_code < 400:
                            self.log.info("Upstream accepted request after token refresh")
                            return UpstreamResult(response=retry)
                        retry_message = await read_error_message(retry)
                        self.log.error("Retry after refresh returned HTTP %s: %s", retry.status_code, retry_message)
            return UpstreamResult.failed(status, message)
        except httpx.HTTPError as exc:
            self.log.error("Upstream request to %s failed: %s: %s", url, type(exc).__name__, exc)
            return UpstreamResult.failed(502, f"Upstream request failed: {exc}")

    async def ollama(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        client_headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamResult:
        """Plain (non-streaming) pass-through to ``OLLAMA_API_URL``."""
        base = (self.cfg.ollama_api_url or "").strip().rstrip("/")
        if not base:
            return UpstreamResult.failed(404, "OLLAMA_API_URL is not configured")
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        headers.update(forwarded_client_headers(client_headers, self.cfg))
        apply_header_overrides(headers, self.cfg)
        try:
            response = await self.client.request(
                method,
                f"{base}{path}",
                headers=headers,
                json=payload if method.upper() != "GET" else None,
                timeout=httpx.Timeout(self.cfg.upstream_timeout or 60.0),
            )
        except httpx.HTTPError as exc:
            self.log.error("Ollama request to %s failed: %s", path, exc)
            return UpstreamResult.failed(502, f"Upstream request failed: {exc}")
        if response.status_code >= 400:
            return UpstreamResult.failed(response.status_code, await read_error_message(response))
        return UpstreamResult(response=response)

import json
import os
from typing import Any, Dict, Optional


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _json_map(name: str) -> Dict[str, Any]:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except Exception:
        return {}
    return value if isinstance(value, dict) else {}


class Settings:
    def __init__(self) -> None:
        # Upstream target. UPSTREAM_RESPONSES_URL > UPSTREAM_BASE_URL + path > CHATGPT_RESPONSES_URL
        self.chatgpt_responses_url: str = os.environ.get(
            "CHATGPT_RESPONSES_URL", "https://chatgpt.com/backend-api/codex/responses"
        )
        self.upstream_responses_url: Optional[str] = os.environ.get("UPSTREAM_RESPONSES_URL")
        self.upstream_base_url: Optional[str] = os.environ.get("UPSTREAM_BASE_URL")
        self.upstream_wire_api_path: str = os.environ.get("UPSTREAM_WIRE_API_PATH", "/responses")
        # Auth mode for upstream (chatgpt_token | apikey_env | apikey_auth_json)
        self.upstream_auth_mode: str = os.environ.get("UPSTREAM_AUTH_MODE", "chatgpt_token").strip().lower()
        self.upstream_auth_env_key: str = os.environ.get("UPSTREAM_AUTH_ENV_KEY", "OPENAI_API_KEY").strip()
        self.upstream_api_key: Optional[str] = os.environ.get("UPSTREAM_API_KEY")
        self.upstream_auth_header: str = os.environ.get("UPSTREAM_AUTH_HEADER", "Authorization").strip()
        self.upstream_auth_scheme: str = os.environ.get("UPSTREAM_AUTH_SCHEME", "Bearer").strip()
        # Tool wire schema (flat | nested)
        self.upstream_tools_format: str = os.environ.get("UPSTREAM_TOOLS_FORMAT", "flat").strip().lower()
        try:
            self.upstream_timeout: Optional[float] = float(os.environ["UPSTREAM_TIMEOUT"])
        except (KeyError, ValueError):
            self.upstream_timeout = None
        self.http2: bool = _flag("PROXY_HTTP2", "0")

        # Client header forwarding (off | safe | list | override | override-codex)
        self.forward_headers_mode: str = os.environ.get("FORWARD_CLIENT_HEADERS_MODE", "off").strip().lower()
        self.forward_headers_list: str = os.environ.get("FORWARD_CLIENT_HEADERS_LIST", "")
        self.forward_headers_override: Dict[str, Any] = _json_map("FORWARD_CLIENT_HEADERS_OVERRIDE")
        self.forward_headers_override_codex: Dict[str, Any] = _json_map("FORWARD_CLIENT_HEADERS_OVERRIDE_CODEX")
        self.codex_originator: str = (
            os.environ.get("CODEX_INTERNAL_ORIGINATOR_OVERRIDE")
            or os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_ORIGINATOR")
            or "codex_cli_rs"
        ).strip()
        self.codex_version: str = os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_VERSION", "0.46.0").strip()
        self.codex_os_type: str = os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_OS_TYPE", "Linux").strip()
        self.codex_os_version: str = os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_OS_VERSION", "").strip()
        self.codex_arch: str = os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_ARCH", "x86_64").strip()
        self.codex_editor: Optional[str] = os.environ.get("FORWARD_CLIENT_HEADERS_CODEX_EDITOR")

        # Credentials
        self.codex_auth_json: Optional[str] = os.environ.get("OPENAI_CODEX_AUTH")
        self.codex_auth_file: str = os.environ.get(
            "CODEX_AUTH_FILE", os.path.join(os.path.expanduser("~"), ".codex", "auth.json")
        )
        self.chatgpt_client_id: str = os.environ.get("CHATGPT_LOCAL_CLIENT_ID", "app_EMoamEEZ73f0CkXaXp7hrann")
        self.token_url: str = os.environ.get("CHATGPT_TOKEN_URL", "https://auth.openai.com/oauth/token")
        # Inbound gate; when unset every request is accepted
        self.proxy_api_key: Optional[str] = os.environ.get("OPENAI_API_KEY")

        self.ollama_api_url: Optional[str] = os.environ.get("OLLAMA_API_URL")
        self.debug_model: Optional[str] = os.environ.get("DEBUG_MODEL")
        self.expose_models: str = os.environ.get("EXPOSE_MODELS", "gpt-5,gpt-5-codex,codex-mini-latest")

        # Reasoning
        self.reasoning_effort: str = os.environ.get("REASONING_EFFORT", "minimal")
        self.reasoning_summary: str = os.environ.get("REASONING_SUMMARY", "auto")
        self.reasoning_compat: Optional[str] = os.environ.get("REASONING_COMPAT")
        # REASONING_OUTPUT_MODE wins over REASONING_COMPAT; "all" mounts /{mode}/v1/* routes
        self.reasoning_output_mode: Optional[str] = os.environ.get("REASONING_OUTPUT_MODE")

        self.instructions_base_url: str = os.environ.get(
            "INSTRUCTIONS_BASE_URL", "https://raw.githubusercontent.com/RayBytes/ChatMock/main/prompt.md"
        )
        self.instructions_codex_url: str = os.environ.get(
            "INSTRUCTIONS_CODEX_URL", "https://raw.githubusercontent.com/RayBytes/ChatMock/main/prompt_gpt5_codex.md"
        )

        self.verbose: bool = _flag("VERBOSE")
        self.log_level: str = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

    def configured_mode(self) -> Optional[str]:
        """Raw mode string from configuration, before normalization."""
        if self.reasoning_output_mode and self.reasoning_output_mode.strip() and not self.mount_all_modes():
            return self.reasoning_output_mode
        return self.reasoning_compat

    def mount_all_modes(self) -> bool:
        return (self.reasoning_output_mode or "").strip().lower() == "all"

    def responses_url(self) -> str:
        if self.upstream_responses_url and self.upstream_responses_url.strip():
            return self.upstream_responses_url.strip()
        if self.upstream_base_url and self.upstream_base_url.strip():
            base = self.upstream_base_url.strip().rstrip("/")
            path = (self.upstream_wire_api_path or "").strip() or "/responses"
            if not path.startswith("/"):
                path = f"/{path}"
            return f"{base}{path}"
        return self.chatgpt_responses_url

    def model_ids(self) -> list[str]:
        return [m.strip() for m in self.expose_models.split(",") if m.strip()]


settings = Settings()

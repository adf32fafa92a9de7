from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from .schemas.openai import ErrorResponse


def error_type_for_status(status: int) -> str:
    t = "api_error"
    if status == 400:
        t = "invalid_request_error"
    elif status == 401:
        t = "authentication_error"
    elif status == 403:
        t = "permission_error"
    elif status == 404:
        t = "not_found_error"
    elif status == 429:
        t = "rate_limit_error"
    elif status in (502, 504):
        t = "upstream_error"
    return t


def error_body(status: int, message: str, error_type: Optional[str] = None) -> Dict[str, Any]:
    return ErrorResponse(
        error={"message": message, "type": error_type or error_type_for_status(status)}
    ).model_dump()


def error_response(status: int, message: str, error_type: Optional[str] = None) -> JSONResponse:
    return JSONResponse(status_code=status, content=error_body(status, message, error_type))


def upstream_error_message(body: Any, fallback: str) -> str:
    """Pull a human message out of an upstream error body (dict or text)."""
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
        if body.get("detail"):
            return str(body["detail"])
    elif isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return fallback

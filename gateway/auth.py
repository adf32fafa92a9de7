from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .config import Settings, settings as default_settings


logger = logging.getLogger("gateway.auth")

_AUTH_CLAIMS = "https://api.openai.com/auth"


class AuthConfigError(ValueError):
    """The configured auth document exists but cannot be parsed."""


@dataclass
class Credentials:
    access_token: Optional[str] = None
    account_id: Optional[str] = None
    api_key: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


def parse_jwt_claims(token: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(token, str) or token.count(".") != 2:
        return None
    payload = token.split(".")[1].replace("-", "+").replace("_", "/")
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.b64decode(payload).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Could not decode id_token claims: %s", exc)
        return None
    return claims if isinstance(claims, dict) else None


def account_id_from_id_token(id_token: Any) -> Optional[str]:
    claims = parse_jwt_claims(id_token) or {}
    auth = claims.get(_AUTH_CLAIMS)
    if isinstance(auth, dict) and isinstance(auth.get("chatgpt_account_id"), str):
        return auth["chatgpt_account_id"] or None
    return None


class CredentialsProvider:
    """Reads upstream credentials from OPENAI_CODEX_AUTH or the Codex auth file.

    Refreshed tokens are held in memory only; the source document is never
    rewritten.
    """

    def __init__(self, cfg: Optional[Settings] = None) -> None:
        self.cfg = cfg or default_settings
        self._refreshed: Optional[Credentials] = None
        self._lock = asyncio.Lock()

    def load_document(self) -> Dict[str, Any]:
        raw = self.cfg.codex_auth_json
        source = "OPENAI_CODEX_AUTH"
        if not (raw and raw.strip()):
            path = self.cfg.codex_auth_file
            if not path or not os.path.isfile(path):
                return {}
            with open(path, "r", encoding="utf-8") as fh:
                raw = fh.read()
            source = path
        try:
            doc = json.loads(raw)
        except ValueError as exc:
            raise AuthConfigError(f"Invalid {source} JSON") from exc
        if not isinstance(doc, dict):
            raise AuthConfigError(f"Invalid {source} JSON")
        return doc

    async def get(self) -> Credentials:
        doc = self.load_document()
        tokens = doc.get("tokens") if isinstance(doc.get("tokens"), dict) else {}
        key = doc.get(self.cfg.upstream_auth_env_key)
        creds = Credentials(
            access_token=tokens.get("access_token") or None,
            account_id=tokens.get("account_id") or account_id_from_id_token(tokens.get("id_token")),
            api_key=key.strip() if isinstance(key, str) and key.strip() else None,
            refresh_token=tokens.get("refresh_token") or None,
            id_token=tokens.get("id_token") or None,
        )
        if self._refreshed is not None:
            creds.access_token = self._refreshed.access_token or creds.access_token
            creds.account_id = self._refreshed.account_id or creds.account_id
            creds.refresh_token = self._refreshed.refresh_token or creds.refresh_token
            creds.id_token = self._refreshed.id_token or creds.id_token
        return creds

    async def refresh(self, client: httpx.AsyncClient) -> Optional[Credentials]:
        """Exchange the refresh token for a new access token; None when that is impossible."""
        async with self._lock:
            try:
                current = await self.get()
            except AuthConfigError as exc:
                logger.error("Token refresh skipped: %s", exc)
                return None
            if not current.refresh_token:
                logger.warning("Token refresh skipped: no refresh_token available")
                return None
            payload = {
                "client_id": self.cfg.chatgpt_client_id,
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
                "scope": "openid profile email",
            }
            try:
                resp = await client.post(self.cfg.token_url, json=payload, timeout=httpx.Timeout(30.0))
            except httpx.HTTPError as exc:
                logger.error("Token refresh request failed: %s", exc)
                return None
            if resp.status_code >= 400:
                logger.error("Token refresh rejected: HTTP %s", resp.status_code)
                return None
            try:
                data = resp.json()
            except ValueError:
                logger.error("Token refresh returned a non-JSON body")
                return None
            if not isinstance(data, dict) or not data.get("access_token"):
                logger.error("Token refresh response has no access_token")
                return None

            id_token = data.get("id_token") or current.id_token
            self._refreshed = Credentials(
                access_token=data["access_token"],
                account_id=account_id_from_id_token(id_token) or current.account_id,
                refresh_token=data.get("refresh_token") or current.refresh_token,
                id_token=id_token,
            )
            logger.info("Refreshed upstream access token")
            return await self.get()

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from .config import Settings, settings as default_settings
from .transform import normalize_model_name


logger = logging.getLogger("gateway.instructions")

FALLBACK_INSTRUCTIONS = (
    "You are Codex, a coding agent running in a terminal-based assistant. "
    "You are expected to be precise, safe and helpful. Keep answers concise, "
    "prefer editing existing files over creating new ones, and explain the "
    "changes you make."
)


class InstructionsProvider:
    """Base instructions per model, fetched once per URL and cached in-process."""

    def __init__(self, cfg: Optional[Settings] = None) -> None:
        self.cfg = cfg or default_settings
        self._cache: Dict[str, str] = {}

    async def _fetch(self, url: str, client: httpx.AsyncClient) -> str:
        cached = self._cache.get(url)
        if cached is not None:
            return cached
        text: Optional[str] = None
        try:
            resp = await client.get(url, timeout=httpx.Timeout(15.0))
            if resp.status_code < 400:
                text = resp.text
            else:
                logger.warning("Instructions fetch %s returned HTTP %s", url, resp.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Instructions fetch failed for %s: %s", url, exc)
        self._cache[url] = text if text and text.strip() else FALLBACK_INSTRUCTIONS
        return self._cache[url]

    async def for_model(self, model: Optional[str], client: httpx.AsyncClient) -> str:
        if normalize_model_name(model, self.cfg.debug_model) == "gpt-5-codex":
            return await self._fetch(self.cfg.instructions_codex_url.strip(), client)
        return await self._fetch(self.cfg.instructions_base_url.strip(), client)

from __future__ import annotations

import json
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional


MAX_ENTRIES = 10_000


def _canonical_first_user_message(input_items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for item in input_items or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        if item.get("role") == "assistant":
            continue
        content = item.get("content") if isinstance(item.get("content"), list) else []
        parts: List[Dict[str, str]] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            ptype = part.get("type")
            if ptype == "input_text":
                text = part.get("text")
                if isinstance(text, str) and text:
                    parts.append({"type": "input_text", "text": text})
            elif ptype == "input_image":
                img = part.get("image_url")
                url = img if isinstance(img, str) else (img.get("url") if isinstance(img, dict) else None)
                if isinstance(url, str) and url:
                    parts.append({"type": "input_image", "image_url": url})
        if parts:
            return {"type": "message", "role": "user", "content": parts}
    return None


def canonicalize_prefix(instructions: Optional[str], input_items: List[Dict[str, Any]]) -> str:
    """Deterministic JSON for (instructions, first user message); used as the cache key."""
    prefix: Dict[str, Any] = {}
    inst = instructions.strip() if isinstance(instructions, str) else ""
    if inst:
        prefix["instructions"] = inst
    first = _canonical_first_user_message(input_items)
    if first:
        prefix["first_user_message"] = first
    return json.dumps(prefix, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


class SessionCache:
    """Fingerprint -> session id map with FIFO eviction on insertion order."""

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def ensure_session_id(
        self,
        instructions: Optional[str],
        input_items: List[Dict[str, Any]],
        client_supplied: Optional[str] = None,
    ) -> str:
        client = str(client_supplied or "").strip()
        if client:
            return client
        key = canonicalize_prefix(instructions, input_items)
        with self._lock:
            existing = self._entries.get(key)
            if existing:
                return existing
            sid = str(uuid.uuid4())
            self._entries[key] = sid
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return sid

"""Conversation stores.

The registry persists handles through any object with load/save/delete.
Two implementations ship: an in-memory dict and a JSON file in the
remotechat data directory, so handles survive restarts.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Protocol

from .config import get_store_path
from .models import ConversationHandle

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Last-write-wins per key; no transactions."""

    def load(self, conversation_key: str) -> Optional[ConversationHandle]:
        ...

    def save(self, conversation_key: str, handle: ConversationHandle) -> None:
        ...

    def delete(self, conversation_key: str) -> None:
        ...


class MemoryConversationStore:
    """Process-local store."""

    def __init__(self):
        self._handles: dict[str, ConversationHandle] = {}

    def load(self, conversation_key: str) -> Optional[ConversationHandle]:
        return self._handles.get(conversation_key)

    def save(self, conversation_key: str, handle: ConversationHandle) -> None:
        self._handles[conversation_key] = handle

    def delete(self, conversation_key: str) -> None:
        self._handles.pop(conversation_key, None)

    def keys(self) -> list[str]:
        return list(self._handles)


class JsonConversationStore:
    """All handles in one JSON object keyed by conversation key.

    Every save rewrites the file through a temp file + rename so a crash
    never leaves a half-written store.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_store_path()
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Conversation store {self.path} unreadable, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def load(self, conversation_key: str) -> Optional[ConversationHandle]:
        with self._lock:
            entry = self._read().get(conversation_key)
        if not entry:
            return None
        try:
            return ConversationHandle.from_dict(entry)
        except (KeyError, TypeError):
            logger.warning(f"Ignoring malformed stored handle for {conversation_key}")
            return None

    def save(self, conversation_key: str, handle: ConversationHandle) -> None:
        with self._lock:
            data = self._read()
            data[conversation_key] = handle.to_dict()
            self._write(data)

    def delete(self, conversation_key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(conversation_key, None) is not None:
                self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._read())

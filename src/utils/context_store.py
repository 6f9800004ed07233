from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Deque, Dict, List, Protocol

from src.utils.errors import ValidationError
from src.utils.settings import get_settings

_ROLE_PREFIXES = {"user": "User", "assistant": "Bot"}


def format_turn(role: str, text: str) -> str:
    prefix = _ROLE_PREFIXES.get(role)
    if prefix is None:
        raise ValidationError(f"Unknown conversation role: {role}")
    return f"{prefix}: {text}"


@dataclass
class ContextBuffer:
    entries: Deque[str] = field(default_factory=deque)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ContextBackend(Protocol):
    """Storage for formatted turns keyed by user id."""

    def append(self, user_id: str, entries: List[str], max_entries: int, now: datetime) -> None: ...

    def recent(self, user_id: str, limit: int | None) -> List[str]: ...

    def clear(self, user_id: str) -> None: ...

    def prune(self, older_than: datetime) -> int: ...

    def users(self) -> List[str]: ...


class InMemoryContextBackend:
    def __init__(self) -> None:
        self._buffers: Dict[str, ContextBuffer] = {}

    def append(self, user_id: str, entries: List[str], max_entries: int, now: datetime) -> None:
        buffer = self._buffers.get(user_id)
        if buffer is None or buffer.entries.maxlen != max_entries:
            previous = buffer.entries if buffer else ()
            buffer = ContextBuffer(entries=deque(previous, maxlen=max_entries))
            self._buffers[user_id] = buffer
        buffer.entries.extend(entries)
        buffer.updated_at = now

    def recent(self, user_id: str, limit: int | None) -> List[str]:
        buffer = self._buffers.get(user_id)
        if buffer is None:
            return []
        entries = list(buffer.entries)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def clear(self, user_id: str) -> None:
        self._buffers.pop(user_id, None)

    def prune(self, older_than: datetime) -> int:
        expired = [uid for uid, buffer in self._buffers.items() if buffer.updated_at < older_than]
        for uid in expired:
            self._buffers.pop(uid, None)
        return len(expired)

    def users(self) -> List[str]:
        return list(self._buffers)


class ConversationContextStore:
    """Rolling window of recent turns per user used to build prompt context.

    Only the last ``window`` turns are read back for a prompt. At most
    ``max_turns`` turns are retained per user and users idle for longer than
    ``ttl_seconds`` are evicted on the next write.
    """

    def __init__(
        self,
        backend: ContextBackend | None = None,
        *,
        window: int = 5,
        max_turns: int = 50,
        ttl_seconds: int = 86400,
    ) -> None:
        self.window = max(window, 1)
        self.max_turns = max(max_turns, self.window)
        self.ttl_seconds = ttl_seconds
        self._backend: ContextBackend = backend or InMemoryContextBackend()
        self._lock = Lock()

    def _prune_locked(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        return self._backend.prune(now - timedelta(seconds=self.ttl_seconds))

    def append_turn(self, user_id: str, role: str, text: str) -> None:
        self.append_turns(user_id, [(role, text)])

    def append_turns(self, user_id: str, turns: List[tuple[str, str]]) -> None:
        entries = [format_turn(role, text) for role, text in turns]
        if not entries:
            return
        now = datetime.now(UTC)
        with self._lock:
            self._prune_locked(now)
            self._backend.append(user_id, entries, self.max_turns, now)

    def get_context(self, user_id: str) -> str:
        with self._lock:
            entries = self._backend.recent(user_id, self.window)
        return "\n".join(entries)

    def history(self, user_id: str) -> List[str]:
        with self._lock:
            return self._backend.recent(user_id, None)

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._backend.clear(user_id)

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {uid: self._backend.recent(uid, None) for uid in self._backend.users()}


_CONTEXT_STORE: ConversationContextStore | None = None


def get_context_store() -> ConversationContextStore:
    global _CONTEXT_STORE
    if _CONTEXT_STORE is None:
        settings = get_settings()
        _CONTEXT_STORE = ConversationContextStore(
            window=settings.context_window_turns,
            max_turns=settings.context_max_turns,
            ttl_seconds=settings.context_ttl_seconds,
        )
    return _CONTEXT_STORE


def reset_context_store() -> None:
    global _CONTEXT_STORE
    _CONTEXT_STORE = None

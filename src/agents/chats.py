from __future__ import annotations

import asyncio
import sqlite3
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, Tuple

from src.agents.generation import GenerationGateway
from src.schemas.models import ChatRecord, ChatSummary, Turn
from src.utils.chat_store import ChatStore
from src.utils.errors import NotFound, StorageFailure, ValidationError
from src.utils.logging import get_logger
from src.utils.security import require_user_id

log = get_logger(__name__)


def derive_title(text: str, max_chars: int = 30) -> str:
    return text[:max_chars]


class ChatService:
    """Chat records and the active/pinned listing state machine.

    A chat id is held by at most one of a user's two listings. Mutations for
    one user run one at a time; different users never wait on each other.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        gateway: GenerationGateway | None = None,
        title_max_chars: int = 30,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.title_max_chars = title_max_chars
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        async with lock:
            yield

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Chat store operation failed: {exc}") from exc

    async def create_chat(
        self,
        user_id: str,
        text: str,
        assistant_response: str,
        img: str | None = None,
    ) -> ChatRecord:
        user_id = require_user_id(user_id)
        if not text:
            raise ValidationError("Text is required")
        record = ChatRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            history=[
                Turn(role="user", content=text, img=img),
                Turn(role="assistant", content=assistant_response),
            ],
        )
        summary = ChatSummary(
            id=record.id,
            title=derive_title(text, self.title_max_chars),
            created_at=record.created_at,
        )
        async with self._user_lock(user_id):
            await self._run(self.store.insert_chat, record)
            await self._run(self.store.push_summary, user_id, "active", summary)
        log.info("chat_created", user_id=user_id, chat_id=record.id)
        return record

    async def get_chat(self, user_id: str, chat_id: str) -> ChatRecord:
        user_id = require_user_id(user_id)
        record = await self._run(self.store.find_chat, user_id, chat_id)
        if record is None:
            raise NotFound("Chat not found")
        return record

    async def list_chats(self, user_id: str) -> List[ChatSummary]:
        user_id = require_user_id(user_id)
        return await self._run(self.store.get_listing, user_id, "active")

    async def list_pinned(self, user_id: str) -> List[ChatSummary]:
        user_id = require_user_id(user_id)
        return await self._run(self.store.get_listing, user_id, "pinned")

    async def append_exchange(
        self,
        user_id: str,
        chat_id: str,
        question: str,
        assistant_response: str,
        img: str | None = None,
    ) -> None:
        user_id = require_user_id(user_id)
        turns = [
            Turn(role="user", content=question, img=img),
            Turn(role="assistant", content=assistant_response),
        ]
        async with self._user_lock(user_id):
            updated = await self._run(self.store.push_turns, user_id, chat_id, turns)
        if not updated:
            raise NotFound("Chat not found")
        log.info("chat_appended", user_id=user_id, chat_id=chat_id, turns=len(turns))

    async def rename_chat(self, user_id: str, chat_id: str, new_title: str) -> None:
        user_id = require_user_id(user_id)
        if not (new_title or "").strip():
            raise ValidationError("New title is required")
        async with self._user_lock(user_id):
            matched = await self._run(self.store.set_title, user_id, "active", chat_id, new_title)
            if not matched:
                matched = await self._run(self.store.set_title, user_id, "pinned", chat_id, new_title)
        if not matched:
            raise NotFound("Chat not found")
        log.info("chat_renamed", user_id=user_id, chat_id=chat_id)

    async def pin_chat(self, user_id: str, chat_id: str, title: str | None = None) -> bool:
        """Move a chat into the pinned listing; returns False when it was already pinned."""

        user_id = require_user_id(user_id)
        async with self._user_lock(user_id):
            record = await self._run(self.store.find_chat, user_id, chat_id)
            if record is None:
                raise NotFound("Chat not found")
            first_turn = next((turn.content for turn in record.history if turn.role == "user"), "")
            fallback = ChatSummary(
                id=chat_id,
                title=derive_title(first_turn, self.title_max_chars),
                created_at=record.created_at,
            )
            moved = await self._run(
                self.store.move_summary,
                user_id,
                chat_id,
                source="active",
                target="pinned",
                title=title or None,
                fallback=fallback,
            )
        if moved is None:
            log.info("chat_pin_noop", user_id=user_id, chat_id=chat_id)
            return False
        log.info("chat_pinned", user_id=user_id, chat_id=chat_id)
        return True

    async def unpin_chat(self, user_id: str, chat_id: str) -> bool:
        user_id = require_user_id(user_id)
        async with self._user_lock(user_id):
            moved = await self._run(
                self.store.move_summary,
                user_id,
                chat_id,
                source="pinned",
                target="active",
            )
        if moved is None:
            log.info("chat_unpin_noop", user_id=user_id, chat_id=chat_id)
            return False
        log.info("chat_unpinned", user_id=user_id, chat_id=chat_id)
        return True

    async def delete_chat(self, user_id: str, chat_id: str) -> None:
        user_id = require_user_id(user_id)
        async with self._user_lock(user_id):
            await self._run(self.store.pull_summary, user_id, "active", chat_id)
            await self._run(self.store.pull_summary, user_id, "pinned", chat_id)
            deleted = await self._run(self.store.delete_chat, user_id, chat_id)
        if not deleted:
            log.warning("chat_delete_missing", user_id=user_id, chat_id=chat_id)
            raise NotFound("Chat not found")
        log.info("chat_deleted", user_id=user_id, chat_id=chat_id)

    async def converse(
        self,
        user_id: str,
        query: str,
        *,
        mode: str = "grounded",
        chat_id: str | None = None,
    ) -> Tuple[str, str]:
        """Generate a reply and persist the exchange into a new or existing chat."""

        if self.gateway is None:
            raise ValidationError("Generation is not available")
        user_id = require_user_id(user_id)
        if chat_id:
            await self.get_chat(user_id, chat_id)
        reply = await self.gateway.answer(query, user_id, mode)
        if chat_id:
            await self.append_exchange(user_id, chat_id, query, reply)
            return chat_id, reply
        record = await self.create_chat(user_id, query, reply)
        return record.id, reply

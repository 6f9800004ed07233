from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List

from src.schemas.models import ChatRecord, ChatSummary, ListingKind, Turn
from src.utils import storage
from src.utils.storage import database_session, json_dumps, json_loads, now_iso

LISTING_KINDS: tuple[str, ...] = ("active", "pinned")

_READY_PATHS: set[Path] = set()


def _ensure_chat_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chats (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            history_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chats_user_id ON chats(user_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_listings (
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            summaries_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, kind)
        )
        """
    )


def _check_kind(kind: str) -> None:
    if kind not in LISTING_KINDS:
        raise ValueError(f"Unknown listing kind: {kind}")


def _chat_from_row(row: sqlite3.Row) -> ChatRecord:
    history = [Turn.model_validate(item) for item in json_loads(row["history_json"], []) if isinstance(item, dict)]
    return ChatRecord(
        id=row["id"],
        user_id=row["user_id"],
        history=history,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _dump_turns(turns: Iterable[Turn]) -> List[Dict[str, Any]]:
    return [turn.model_dump(mode="json", by_alias=True, exclude_none=True) for turn in turns]


def _dump_summaries(summaries: Iterable[ChatSummary]) -> str:
    return json_dumps([summary.model_dump(mode="json", by_alias=True) for summary in summaries])


def _load_summaries(raw: str | None) -> List[ChatSummary]:
    return [ChatSummary.model_validate(item) for item in json_loads(raw, []) if isinstance(item, dict)]


class ChatStore:
    """SQLite-backed chat records plus the per-user active and pinned listings.

    Every public method runs in a single transaction, so each call is atomic.
    Listings are stored one row per (user, kind) holding an ordered JSON array
    of summaries; pushes never insert an id that is already present.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path or storage.DATABASE_PATH

    def _session(self):
        path = self.path
        if path not in _READY_PATHS or not path.exists():
            with database_session(path) as conn:
                _ensure_chat_schema(conn)
            _READY_PATHS.add(path)
        return database_session(path)

    # chat records

    def find_chat(self, user_id: str, chat_id: str) -> ChatRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM chats WHERE id = ? AND user_id = ?",
                (chat_id, user_id),
            ).fetchone()
        return _chat_from_row(row) if row else None

    def insert_chat(self, record: ChatRecord) -> ChatRecord:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO chats (id, user_id, history_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    json_dumps(_dump_turns(record.history)),
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
        return record

    def push_turns(self, user_id: str, chat_id: str, turns: List[Turn]) -> bool:
        with self._session() as conn:
            row = conn.execute(
                "SELECT history_json FROM chats WHERE id = ? AND user_id = ?",
                (chat_id, user_id),
            ).fetchone()
            if row is None:
                return False
            history = json_loads(row["history_json"], [])
            history.extend(_dump_turns(turns))
            conn.execute(
                "UPDATE chats SET history_json = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (json_dumps(history), now_iso(), chat_id, user_id),
            )
        return True

    def delete_chat(self, user_id: str, chat_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM chats WHERE id = ? AND user_id = ?", (chat_id, user_id))
        return cursor.rowcount > 0

    # listing projections

    @staticmethod
    def _read_listing(conn: sqlite3.Connection, user_id: str, kind: str) -> List[ChatSummary] | None:
        row = conn.execute(
            "SELECT summaries_json FROM chat_listings WHERE user_id = ? AND kind = ?",
            (user_id, kind),
        ).fetchone()
        if row is None:
            return None
        return _load_summaries(row["summaries_json"])

    @staticmethod
    def _write_listing(conn: sqlite3.Connection, user_id: str, kind: str, summaries: List[ChatSummary]) -> None:
        now = now_iso()
        conn.execute(
            """
            INSERT INTO chat_listings (user_id, kind, summaries_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, kind) DO UPDATE SET
                summaries_json = excluded.summaries_json,
                updated_at = excluded.updated_at
            """,
            (user_id, kind, _dump_summaries(summaries), now, now),
        )

    def get_listing(self, user_id: str, kind: ListingKind) -> List[ChatSummary]:
        _check_kind(kind)
        with self._session() as conn:
            summaries = self._read_listing(conn, user_id, kind)
        return summaries or []

    def listing_exists(self, user_id: str, kind: ListingKind) -> bool:
        _check_kind(kind)
        with self._session() as conn:
            return self._read_listing(conn, user_id, kind) is not None

    def push_summary(self, user_id: str, kind: ListingKind, summary: ChatSummary, *, upsert: bool = True) -> bool:
        _check_kind(kind)
        with self._session() as conn:
            summaries = self._read_listing(conn, user_id, kind)
            if summaries is None:
                if not upsert:
                    return False
                summaries = []
            if any(item.id == summary.id for item in summaries):
                return False
            summaries.append(summary)
            self._write_listing(conn, user_id, kind, summaries)
        return True

    def pull_summary(self, user_id: str, kind: ListingKind, chat_id: str) -> ChatSummary | None:
        _check_kind(kind)
        with self._session() as conn:
            summaries = self._read_listing(conn, user_id, kind)
            if not summaries:
                return None
            removed = next((item for item in summaries if item.id == chat_id), None)
            if removed is None:
                return None
            self._write_listing(conn, user_id, kind, [item for item in summaries if item.id != chat_id])
        return removed

    def set_title(self, user_id: str, kind: ListingKind, chat_id: str, title: str) -> bool:
        _check_kind(kind)
        with self._session() as conn:
            summaries = self._read_listing(conn, user_id, kind)
            if not summaries:
                return False
            matched = False
            for item in summaries:
                if item.id == chat_id:
                    item.title = title
                    matched = True
            if matched:
                self._write_listing(conn, user_id, kind, summaries)
        return matched

    def move_summary(
        self,
        user_id: str,
        chat_id: str,
        *,
        source: ListingKind,
        target: ListingKind,
        title: str | None = None,
        fallback: ChatSummary | None = None,
    ) -> ChatSummary | None:
        """Move one summary between listings in a single transaction.

        Returns the moved summary, or ``None`` when nothing moved: the id is
        already held by ``target``, or it is absent from ``source`` and no
        ``fallback`` was given.
        """

        _check_kind(source)
        _check_kind(target)
        with self._session() as conn:
            target_summaries = self._read_listing(conn, user_id, target) or []
            existing = next((item for item in target_summaries if item.id == chat_id), None)
            if existing is not None:
                return None
            source_summaries = self._read_listing(conn, user_id, source) or []
            moved = next((item for item in source_summaries if item.id == chat_id), None)
            if moved is None:
                if fallback is None:
                    return None
                moved = fallback
            else:
                remaining = [item for item in source_summaries if item.id != chat_id]
                self._write_listing(conn, user_id, source, remaining)
            if title is not None:
                moved = moved.model_copy(update={"title": title})
            target_summaries.append(moved)
            self._write_listing(conn, user_id, target, target_summaries)
        return moved


_STORE: ChatStore | None = None


def get_chat_store() -> ChatStore:
    global _STORE
    if _STORE is None:
        _STORE = ChatStore()
    return _STORE


def reset_chat_store() -> None:
    global _STORE
    _STORE = None

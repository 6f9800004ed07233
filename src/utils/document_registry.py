from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List

from src.schemas.models import DocumentRecord
from src.utils import storage
from src.utils.storage import database_session

_READY_PATHS: set[Path] = set()


def _ensure_documents_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_url TEXT NOT NULL,
            content_type TEXT NOT NULL,
            uploaded_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_user_id ON documents(user_id)")


def _record_from_row(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        user_id=row["user_id"],
        file_name=row["file_name"],
        file_url=row["file_url"],
        content_type=row["content_type"],
        uploaded_at=row["uploaded_at"],
    )


class DocumentRegistry:
    """Metadata rows for uploaded documents, one per stored blob."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path or storage.DATABASE_PATH

    def _session(self):
        path = self.path
        if path not in _READY_PATHS or not path.exists():
            with database_session(path) as conn:
                _ensure_documents_schema(conn)
            _READY_PATHS.add(path)
        return database_session(path)

    def insert(self, record: DocumentRecord) -> DocumentRecord:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, user_id, file_name, file_url, content_type, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.file_name,
                    record.file_url,
                    record.content_type,
                    record.uploaded_at.isoformat(),
                ),
            )
        return record

    def get(self, document_id: str) -> DocumentRecord | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return _record_from_row(row) if row else None

    def list_for_user(self, user_id: str) -> List[DocumentRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE user_id = ? ORDER BY uploaded_at ASC",
                (user_id,),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def delete(self, document_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0


_REGISTRY: DocumentRegistry | None = None


def get_document_registry() -> DocumentRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = DocumentRegistry()
    return _REGISTRY


def reset_document_registry() -> None:
    global _REGISTRY
    _REGISTRY = None

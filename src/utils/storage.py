from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List

DATA_PROCESSED = Path("assets/data/processed")
UPLOADS_DIR = Path("assets/uploads")
DATABASE_PATH = DATA_PROCESSED / "chatbase.sqlite"
JOBS_PATH = DATA_PROCESSED / "jobs.json"

MAX_JOB_HISTORY = 500

DB_LOCK = RLock()
_JOBS_LOCK = RLock()


def ensure_dirs() -> None:
    for p in (DATA_PROCESSED, UPLOADS_DIR):
        p.mkdir(parents=True, exist_ok=True)


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def json_loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def connect_database(path: Path | None = None) -> sqlite3.Connection:
    ensure_dirs()
    db_path = path or DATABASE_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def load_jobs_history(limit: int | None = None) -> List[Dict[str, Any]]:
    ensure_dirs()
    if not JOBS_PATH.exists():
        return []
    try:
        records = json.loads(JOBS_PATH.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return []
    if not isinstance(records, list):
        return []
    records = [item for item in records if isinstance(item, dict)]
    records.sort(key=lambda item: item.get("started_at", ""), reverse=True)
    if limit and limit > 0:
        return records[:limit]
    return records


def append_job_history(entry: Dict[str, Any]) -> Path:
    with _JOBS_LOCK:
        records = load_jobs_history()
        payload = dict(entry)
        payload.setdefault("started_at", now_iso())
        records.insert(0, payload)
        tmp_path = JOBS_PATH.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(records[:MAX_JOB_HISTORY], ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(JOBS_PATH)
    return JOBS_PATH


@contextmanager
def database_session(path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and is always closed."""

    with DB_LOCK:
        conn = connect_database(path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

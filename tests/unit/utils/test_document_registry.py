from datetime import UTC, datetime, timedelta

import pytest

from src.schemas.models import DocumentRecord
from src.utils import storage
from src.utils.document_registry import DocumentRegistry


@pytest.fixture(autouse=True)
def storage_paths(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DATA_PROCESSED", tmp_path / "processed")
    monkeypatch.setattr(storage, "UPLOADS_DIR", tmp_path / "uploads")


def _record(document_id: str, user_id: str = "u1", offset: int = 0) -> DocumentRecord:
    return DocumentRecord(
        id=document_id,
        user_id=user_id,
        file_name=f"{document_id}.pdf",
        file_url=f"https://docs.s3.us-east-1.amazonaws.com/key-{document_id}.pdf",
        content_type="application/pdf",
        uploaded_at=datetime(2024, 1, 1, tzinfo=UTC) + timedelta(minutes=offset),
    )


def test_insert_get_and_delete(tmp_path):
    registry = DocumentRegistry(tmp_path / "db.sqlite")
    registry.insert(_record("d1"))

    fetched = registry.get("d1")
    assert fetched is not None
    assert fetched.file_name == "d1.pdf"
    assert fetched.uploaded_at == datetime(2024, 1, 1, tzinfo=UTC)

    assert registry.delete("d1") is True
    assert registry.get("d1") is None
    assert registry.delete("d1") is False


def test_list_is_scoped_and_ordered_by_upload_time(tmp_path):
    registry = DocumentRegistry(tmp_path / "db.sqlite")
    registry.insert(_record("late", offset=10))
    registry.insert(_record("early", offset=1))
    registry.insert(_record("other", user_id="u2"))

    assert [record.id for record in registry.list_for_user("u1")] == ["early", "late"]
    assert [record.id for record in registry.list_for_user("u2")] == ["other"]
    assert registry.list_for_user("nobody") == []


def test_schema_is_recreated_when_database_file_is_removed(tmp_path):
    registry = DocumentRegistry(tmp_path / "db.sqlite")
    registry.insert(_record("d1"))
    registry.path.unlink()

    registry.insert(_record("d2"))

    assert registry.get("d1") is None
    assert registry.get("d2") is not None

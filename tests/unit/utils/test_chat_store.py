import pytest

from src.schemas.models import ChatRecord, ChatSummary, Turn
from src.utils import storage
from src.utils.chat_store import ChatStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DATA_PROCESSED", tmp_path / "processed")
    monkeypatch.setattr(storage, "UPLOADS_DIR", tmp_path / "uploads")
    return ChatStore(tmp_path / "chats.sqlite")


def _record(chat_id: str = "c1", user_id: str = "u1") -> ChatRecord:
    return ChatRecord(
        id=chat_id,
        user_id=user_id,
        history=[Turn(role="user", content="hi"), Turn(role="assistant", content="hello")],
    )


def test_insert_and_find_chat_round_trips_history(store):
    store.insert_chat(_record())

    found = store.find_chat("u1", "c1")

    assert found is not None
    assert [turn.content for turn in found.history] == ["hi", "hello"]
    assert store.find_chat("other-user", "c1") is None


def test_push_turns_appends_batch_and_reports_missing(store):
    store.insert_chat(_record())

    assert store.push_turns("u1", "c1", [Turn(role="user", content="q2"), Turn(role="assistant", content="a2")])
    assert not store.push_turns("u1", "missing", [Turn(role="user", content="x")])

    found = store.find_chat("u1", "c1")
    assert [turn.role for turn in found.history] == ["user", "assistant", "user", "assistant"]
    assert found.updated_at >= found.created_at


def test_push_summary_creates_listing_lazily_and_skips_duplicates(store):
    assert not store.listing_exists("u1", "active")
    summary = ChatSummary(id="c1", title="hi")

    assert store.push_summary("u1", "active", summary)
    assert not store.push_summary("u1", "active", summary)

    assert store.listing_exists("u1", "active")
    assert [item.id for item in store.get_listing("u1", "active")] == ["c1"]


def test_push_summary_without_upsert_requires_listing(store):
    assert not store.push_summary("u1", "pinned", ChatSummary(id="c1", title="t"), upsert=False)
    assert not store.listing_exists("u1", "pinned")


def test_pull_summary_removes_by_id(store):
    store.push_summary("u1", "active", ChatSummary(id="c1", title="one"))
    store.push_summary("u1", "active", ChatSummary(id="c2", title="two"))

    removed = store.pull_summary("u1", "active", "c1")

    assert removed.title == "one"
    assert [item.id for item in store.get_listing("u1", "active")] == ["c2"]
    assert store.pull_summary("u1", "active", "c1") is None


def test_set_title_reports_match_even_when_unchanged(store):
    store.push_summary("u1", "active", ChatSummary(id="c1", title="same"))

    assert store.set_title("u1", "active", "c1", "same")
    assert not store.set_title("u1", "pinned", "c1", "same")


def test_move_summary_preserves_created_at_and_overrides_title(store):
    original = ChatSummary(id="c1", title="first")
    store.push_summary("u1", "active", original)

    moved = store.move_summary("u1", "c1", source="active", target="pinned", title="Pinned title")

    assert moved.title == "Pinned title"
    assert moved.created_at == original.created_at
    assert store.get_listing("u1", "active") == []
    assert [item.id for item in store.get_listing("u1", "pinned")] == ["c1"]


def test_move_summary_is_noop_when_target_holds_id(store):
    store.push_summary("u1", "pinned", ChatSummary(id="c1", title="t"))
    store.push_summary("u1", "active", ChatSummary(id="c2", title="other"))

    assert store.move_summary("u1", "c1", source="active", target="pinned") is None
    assert [item.id for item in store.get_listing("u1", "active")] == ["c2"]
    assert [item.id for item in store.get_listing("u1", "pinned")] == ["c1"]


def test_move_summary_uses_fallback_when_source_missing(store):
    fallback = ChatSummary(id="c9", title="fresh")

    moved = store.move_summary("u1", "c9", source="active", target="pinned", fallback=fallback)

    assert moved == fallback
    assert store.move_summary("u1", "c8", source="active", target="pinned") is None


def test_delete_chat_reports_existence(store):
    store.insert_chat(_record())

    assert store.delete_chat("u1", "c1")
    assert not store.delete_chat("u1", "c1")


def test_unknown_listing_kind_rejected(store):
    with pytest.raises(ValueError):
        store.get_listing("u1", "archived")


def test_schema_is_recreated_when_database_file_is_removed(store):
    store.insert_chat(_record("c1"))
    store.path.unlink()

    store.insert_chat(_record("c2"))

    assert store.find_chat("u1", "c1") is None
    assert store.find_chat("u1", "c2") is not None

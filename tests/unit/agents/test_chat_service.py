import asyncio

import pytest

from src.agents.chats import ChatService, derive_title
from src.agents.generation import GenerationGateway
from src.utils import storage
from src.utils.chat_store import ChatStore
from src.utils.context_store import ConversationContextStore
from src.utils.errors import NotFound, ValidationError
from src.utils.settings import Settings


class FakeGrounded:
    def __init__(self, reply: str = "grounded reply") -> None:
        self.reply = reply
        self.prompts = []

    def retrieve_and_generate(self, prompt, **kwargs):
        self.prompts.append(prompt)
        return self.reply


class FakeFreeform:
    def generate(self, prompt, *, model_id, params):
        return "freeform reply"


@pytest.fixture
def service(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DATA_PROCESSED", tmp_path / "processed")
    monkeypatch.setattr(storage, "UPLOADS_DIR", tmp_path / "uploads")
    gateway = GenerationGateway(
        grounded_backend=FakeGrounded(),
        freeform_backend=FakeFreeform(),
        context_store=ConversationContextStore(),
        settings=Settings(knowledge_base_id="kb", model_arn="arn"),
    )
    return ChatService(ChatStore(tmp_path / "chats.sqlite"), gateway=gateway)


def _ids(summaries):
    return [item.id for item in summaries]


def test_create_chat_seeds_history_and_active_listing(service):
    text = "What is the refund policy for enterprise plans?"
    record = asyncio.run(service.create_chat("u1", text, "It is 30 days."))

    assert [turn.role for turn in record.history] == ["user", "assistant"]
    listing = asyncio.run(service.list_chats("u1"))
    assert _ids(listing) == [record.id]
    assert listing[0].title == text[:30]
    assert asyncio.run(service.list_pinned("u1")) == []


def test_create_chat_appends_in_creation_order(service):
    first = asyncio.run(service.create_chat("u1", "one", "a"))
    second = asyncio.run(service.create_chat("u1", "two", "b"))

    assert _ids(asyncio.run(service.list_chats("u1"))) == [first.id, second.id]


def test_blank_user_id_is_rejected(service):
    with pytest.raises(ValidationError):
        asyncio.run(service.create_chat("  ", "hi", "hello"))
    with pytest.raises(ValidationError):
        asyncio.run(service.list_chats(""))


def test_get_chat_missing_raises_not_found(service):
    with pytest.raises(NotFound):
        asyncio.run(service.get_chat("u1", "missing"))


def test_append_exchange_keeps_listing_state(service):
    record = asyncio.run(service.create_chat("u1", "hi", "hello"))

    asyncio.run(service.append_exchange("u1", record.id, "next?", "sure"))

    chat = asyncio.run(service.get_chat("u1", record.id))
    assert [turn.content for turn in chat.history] == ["hi", "hello", "next?", "sure"]
    assert _ids(asyncio.run(service.list_chats("u1"))) == [record.id]

    with pytest.raises(NotFound):
        asyncio.run(service.append_exchange("u1", "missing", "q", "a"))


def test_rename_targets_whichever_listing_holds_the_chat(service):
    active = asyncio.run(service.create_chat("u1", "active chat", "a"))
    pinned = asyncio.run(service.create_chat("u1", "pinned chat", "b"))
    asyncio.run(service.pin_chat("u1", pinned.id))

    asyncio.run(service.rename_chat("u1", active.id, "Renamed active"))
    asyncio.run(service.rename_chat("u1", pinned.id, "Renamed pinned"))

    assert asyncio.run(service.list_chats("u1"))[0].title == "Renamed active"
    assert asyncio.run(service.list_pinned("u1"))[0].title == "Renamed pinned"


def test_rename_with_identical_title_succeeds(service):
    record = asyncio.run(service.create_chat("u1", "same", "a"))
    asyncio.run(service.rename_chat("u1", record.id, "same"))


def test_rename_missing_chat_raises_not_found(service):
    with pytest.raises(NotFound):
        asyncio.run(service.rename_chat("u1", "missing", "title"))


def test_pin_moves_summary_and_preserves_created_at(service):
    record = asyncio.run(service.create_chat("u1", "pin me", "ok"))
    before = asyncio.run(service.list_chats("u1"))[0]

    assert asyncio.run(service.pin_chat("u1", record.id, "Pinned title"))

    assert asyncio.run(service.list_chats("u1")) == []
    pinned = asyncio.run(service.list_pinned("u1"))
    assert _ids(pinned) == [record.id]
    assert pinned[0].title == "Pinned title"
    assert pinned[0].created_at == before.created_at


def test_repeated_pin_is_a_full_noop(service):
    first = asyncio.run(service.create_chat("u1", "first", "a"))
    second = asyncio.run(service.create_chat("u1", "second", "b"))
    asyncio.run(service.pin_chat("u1", first.id))

    assert not asyncio.run(service.pin_chat("u1", first.id))

    assert _ids(asyncio.run(service.list_pinned("u1"))) == [first.id]
    assert _ids(asyncio.run(service.list_chats("u1"))) == [second.id]


def test_pin_missing_chat_raises_not_found(service):
    with pytest.raises(NotFound):
        asyncio.run(service.pin_chat("u1", "missing"))


def test_pin_then_unpin_restores_summary_at_end(service):
    first = asyncio.run(service.create_chat("u1", "first", "a"))
    second = asyncio.run(service.create_chat("u1", "second", "b"))
    original = asyncio.run(service.list_chats("u1"))[0]

    asyncio.run(service.pin_chat("u1", first.id))
    assert asyncio.run(service.unpin_chat("u1", first.id))

    listing = asyncio.run(service.list_chats("u1"))
    assert _ids(listing) == [second.id, first.id]
    assert listing[1] == original
    assert asyncio.run(service.list_pinned("u1")) == []


def test_unpin_not_pinned_is_noop(service):
    record = asyncio.run(service.create_chat("u1", "x", "y"))

    assert not asyncio.run(service.unpin_chat("u1", record.id))
    assert _ids(asyncio.run(service.list_chats("u1"))) == [record.id]


def test_delete_removes_record_and_both_listings(service):
    active = asyncio.run(service.create_chat("u1", "active", "a"))
    pinned = asyncio.run(service.create_chat("u1", "pinned", "b"))
    asyncio.run(service.pin_chat("u1", pinned.id))

    asyncio.run(service.delete_chat("u1", active.id))
    asyncio.run(service.delete_chat("u1", pinned.id))

    assert asyncio.run(service.list_chats("u1")) == []
    assert asyncio.run(service.list_pinned("u1")) == []
    with pytest.raises(NotFound):
        asyncio.run(service.get_chat("u1", active.id))


def test_delete_missing_record_still_repairs_listing(service):
    record = asyncio.run(service.create_chat("u1", "orphan", "a"))
    service.store.delete_chat("u1", record.id)

    with pytest.raises(NotFound):
        asyncio.run(service.delete_chat("u1", record.id))

    assert asyncio.run(service.list_chats("u1")) == []


def test_chat_id_never_in_both_listings_after_mixed_operations(service):
    records = [asyncio.run(service.create_chat("u1", f"chat {idx}", "a")) for idx in range(4)]

    async def churn() -> None:
        await asyncio.gather(
            service.pin_chat("u1", records[0].id),
            service.pin_chat("u1", records[0].id),
            service.pin_chat("u1", records[1].id),
            service.unpin_chat("u1", records[1].id),
            service.rename_chat("u1", records[2].id, "renamed"),
            service.pin_chat("u1", records[3].id),
        )

    asyncio.run(churn())

    active = set(_ids(asyncio.run(service.list_chats("u1"))))
    pinned = set(_ids(asyncio.run(service.list_pinned("u1"))))
    assert active.isdisjoint(pinned)
    assert active | pinned == {record.id for record in records}
    assert len(asyncio.run(service.list_pinned("u1"))) == len(pinned)


def test_converse_creates_then_appends(service):
    chat_id, reply = asyncio.run(service.converse("u1", "first question"))
    assert reply == "grounded reply"

    same_id, _ = asyncio.run(service.converse("u1", "follow up", mode="freeform", chat_id=chat_id))

    assert same_id == chat_id
    chat = asyncio.run(service.get_chat("u1", chat_id))
    assert [turn.content for turn in chat.history] == [
        "first question",
        "grounded reply",
        "follow up",
        "freeform reply",
    ]


def test_converse_unknown_chat_raises_before_generation(service):
    with pytest.raises(NotFound):
        asyncio.run(service.converse("u1", "q", chat_id="missing"))
    assert service.gateway.grounded_backend.prompts == []


def test_derive_title_truncates():
    assert derive_title("a" * 40) == "a" * 30
    assert derive_title("short") == "short"

from datetime import UTC, datetime, timedelta
from threading import Thread

import pytest

from src.utils import context_store as context_module
from src.utils.context_store import ConversationContextStore, InMemoryContextBackend, format_turn
from src.utils.errors import ValidationError


def test_get_context_empty_for_unknown_user():
    store = ConversationContextStore()
    assert store.get_context("nobody") == ""


def test_get_context_returns_last_five_oldest_first():
    store = ConversationContextStore(window=5)
    for idx in range(7):
        store.append_turn("u1", "user" if idx % 2 == 0 else "assistant", f"m{idx}")

    context = store.get_context("u1")

    assert context.split("\n") == ["User: m2", "Bot: m3", "User: m4", "Bot: m5", "User: m6"]


def test_format_turn_prefixes_and_rejects_unknown_role():
    assert format_turn("user", "hi") == "User: hi"
    assert format_turn("assistant", "hello") == "Bot: hello"
    with pytest.raises(ValidationError):
        format_turn("system", "nope")


def test_users_are_isolated():
    store = ConversationContextStore()
    store.append_turn("alice", "user", "a")
    store.append_turn("bob", "user", "b")

    assert store.get_context("alice") == "User: a"
    assert store.get_context("bob") == "User: b"


def test_buffer_never_exceeds_max_turns():
    store = ConversationContextStore(window=2, max_turns=4)
    for idx in range(10):
        store.append_turn("u1", "user", str(idx))

    history = store.history("u1")
    assert len(history) == 4
    assert history == ["User: 6", "User: 7", "User: 8", "User: 9"]


def test_idle_users_are_evicted_after_ttl():
    backend = InMemoryContextBackend()
    store = ConversationContextStore(backend, ttl_seconds=60)
    store.append_turn("stale", "user", "old")
    backend._buffers["stale"].updated_at = datetime.now(UTC) - timedelta(seconds=120)

    store.append_turn("fresh", "user", "new")

    assert store.get_context("stale") == ""
    assert store.get_context("fresh") == "User: new"


def test_append_turns_records_pair_in_order():
    store = ConversationContextStore()
    store.append_turns("u1", [("user", "q"), ("assistant", "a")])
    assert store.get_context("u1") == "User: q\nBot: a"


def test_concurrent_appends_are_not_lost():
    store = ConversationContextStore(window=5, max_turns=1000)

    def worker(prefix: str) -> None:
        for idx in range(100):
            store.append_turn("shared", "user", f"{prefix}{idx}")

    threads = [Thread(target=worker, args=(name,)) for name in ("a", "b", "c")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store.history("shared")) == 300


def test_clear_and_snapshot():
    store = ConversationContextStore()
    store.append_turn("u1", "user", "x")
    store.append_turn("u2", "assistant", "y")

    assert store.snapshot() == {"u1": ["User: x"], "u2": ["Bot: y"]}
    store.clear("u1")
    assert store.snapshot() == {"u2": ["Bot: y"]}


def test_get_context_store_uses_settings(monkeypatch):
    monkeypatch.setenv("CONTEXT_WINDOW_TURNS", "3")
    monkeypatch.setenv("CONTEXT_MAX_TURNS", "10")
    from src.utils import settings as settings_module

    settings_module.reset_settings()
    context_module.reset_context_store()
    try:
        store = context_module.get_context_store()
        assert store.window == 3
        assert store.max_turns == 10
        assert context_module.get_context_store() is store
    finally:
        settings_module.reset_settings()
        context_module.reset_context_store()

from __future__ import annotations

import pytest

from solidgen.core.conversation_store import (
    DEFAULT_TITLE,
    CodeAccepted,
    Conversation,
    ConversationTurn,
    InMemoryConversationStore,
    JsonFileConversationStore,
    TurnAppended,
    TurnReplaced,
    build_store,
)
from solidgen.core.errors import ConversationNotFoundError


def _user(text: str) -> ConversationTurn:
    return ConversationTurn(role="user", content=text)


class TestEvents:
    def test_first_user_turn_names_the_conversation(self):
        conversation = Conversation()
        conversation.apply(TurnAppended(turn=_user("A hex nut with an M8 thread " * 5)))
        assert conversation.title == ("A hex nut with an M8 thread " * 5).strip()[:60]
        conversation.apply(TurnAppended(turn=_user("make it bigger")))
        assert conversation.title.startswith("A hex nut")

    def test_code_accepted(self):
        conversation = Conversation().apply_all([CodeAccepted(code="return sphere(1)", prompt="a ball")])
        assert conversation.current_code == "return sphere(1)"
        assert conversation.last_prompt == "a ball"

    def test_replace_out_of_range(self):
        with pytest.raises(IndexError):
            Conversation().apply(TurnReplaced(index=0, turn=_user("x")))

    def test_history_pairs(self):
        conversation = Conversation(turns=[_user("a"), ConversationTurn(role="assistant", content="b")])
        assert conversation.history == [("user", "a"), ("assistant", "b")]


class TestInMemoryStore:
    def test_crud(self):
        store = InMemoryConversationStore()
        created = store.create(title="Bracket")
        assert store.get(created.id).title == "Bracket"

        store.delete(created.id)
        with pytest.raises(ConversationNotFoundError):
            store.get(created.id)
        with pytest.raises(ConversationNotFoundError):
            store.delete(created.id)

    def test_get_returns_a_copy(self):
        store = InMemoryConversationStore()
        created = store.create()
        loaded = store.get(created.id)
        loaded.turns.append(_user("not saved"))
        assert store.get(created.id).turns == []
        assert loaded.title == DEFAULT_TITLE

    def test_list_newest_first(self):
        store = InMemoryConversationStore()
        older = store.create(title="older")
        newer = store.create(title="newer")
        touched = store.get(older.id).apply_all([TurnAppended(turn=_user("hi"))])
        store.save(touched)
        assert [c.id for c in store.list()] == [older.id, newer.id]


class TestJsonFileStore:
    def test_survives_a_new_instance(self, tmp_path):
        store = JsonFileConversationStore(tmp_path)
        created = store.create(turns=[_user("a mug")], current_code="return cylinder(4, 10)")

        reopened = JsonFileConversationStore(tmp_path)
        loaded = reopened.get(created.id)
        assert loaded.current_code == "return cylinder(4, 10)"
        assert loaded.turns[0].content == "a mug"
        assert (tmp_path / f"{created.id}.json").exists()

    def test_list_skips_unreadable_files(self, tmp_path):
        store = JsonFileConversationStore(tmp_path)
        created = store.create()
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        assert [c.id for c in store.list()] == [created.id]

    def test_delete(self, tmp_path):
        store = JsonFileConversationStore(tmp_path)
        created = store.create()
        store.delete(created.id)
        with pytest.raises(ConversationNotFoundError):
            store.get(created.id)

    def test_ids_cannot_escape_the_root(self, tmp_path):
        store = JsonFileConversationStore(tmp_path / "conversations")
        with pytest.raises(ConversationNotFoundError):
            store.get("../../etc/passwd")

    def test_ids_are_not_aliased_by_sanitizing(self, tmp_path):
        store = JsonFileConversationStore(tmp_path)
        store.save(Conversation(id="a_b", title="kept"))
        assert store.get("a_b").title == "kept"
        for alias in ("a/b", "a b", "_a_b"):
            with pytest.raises(ConversationNotFoundError):
                store.get(alias)
        with pytest.raises(ValueError):
            store.save(Conversation(id="a/b"))

    def test_import_many(self, tmp_path):
        store = JsonFileConversationStore(tmp_path)
        assert store.import_many([Conversation(title="a"), Conversation(title="b")]) == 2
        assert sorted(c.title for c in store.list()) == ["a", "b"]


def test_build_store(tmp_path):
    assert isinstance(build_store(None), InMemoryConversationStore)
    assert isinstance(build_store(tmp_path), JsonFileConversationStore)

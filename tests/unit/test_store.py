"""Tests for the in-memory conversation store and message model."""

import re

import pytest

from cubechat.db import SQLConversationStore
from cubechat.store import (
    InMemoryConversationStore,
    Message,
    get_store,
    utc_now_iso,
)


class TestMessage:
    def test_round_trip(self):
        msg = Message(role="assistant", content="x", timestamp="t", metadata={"a": [1]})
        assert Message.from_dict(msg.to_dict()) == msg

    def test_metadata_omitted_when_none(self):
        assert "metadata" not in Message(role="user", content="x", timestamp="t").to_dict()

    def test_from_dict_tolerates_missing_fields(self):
        msg = Message.from_dict({"role": "assistant", "metadata": "bogus"})
        assert msg.content == ""
        assert msg.metadata is None


def test_utc_now_iso_format():
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", utc_now_iso())


class TestInMemoryConversationStore:
    def test_messages_in_insertion_order(self, memory_store):
        cid = memory_store.create_conversation("u1", "Sales")
        memory_store.add_message(cid, Message(role="user", content="q", timestamp="t2"))
        memory_store.add_message(cid, Message(role="assistant", content="a", timestamp="t1"))
        assert [m.content for m in memory_store.list_messages(cid, "u1")] == ["q", "a"]

    def test_not_owned_is_none(self, memory_store):
        cid = memory_store.create_conversation("u1")
        assert memory_store.list_messages(cid, "u2") is None
        assert memory_store.list_messages("missing", "u1") is None

    def test_empty_conversation_is_empty_list(self, memory_store):
        cid = memory_store.create_conversation("u1")
        assert memory_store.list_messages(cid, "u1") == []

    def test_add_to_unknown_conversation(self, memory_store):
        with pytest.raises(KeyError):
            memory_store.add_message("missing", Message(role="user", content="q", timestamp="t"))

    def test_stored_metadata_is_a_copy(self, memory_store):
        cid = memory_store.create_conversation("u1")
        metadata = {"chartType": "bar"}
        memory_store.add_message(
            cid, Message(role="assistant", content="a", timestamp="t", metadata=metadata)
        )
        metadata["chartType"] = "line"
        assert memory_store.list_messages(cid, "u1")[0].metadata == {"chartType": "bar"}

    def test_list_conversations(self, memory_store):
        cid = memory_store.create_conversation("u1", "First")
        memory_store.create_conversation("u2", "Other user")
        memory_store.add_message(cid, Message(role="user", content="hello", timestamp="t9"))
        summaries = memory_store.list_conversations("u1")
        assert len(summaries) == 1
        assert summaries[0].to_dict()["lastMessage"] == "hello"
        assert summaries[0].to_dict()["title"] == "First"


class TestGetStore:
    def test_defaults_to_memory(self):
        assert isinstance(get_store(), InMemoryConversationStore)
        assert get_store() is get_store()

    def test_sql_when_url_configured(self, monkeypatch):
        monkeypatch.setenv("CUBECHAT_DATABASE_URL", "sqlite://")
        assert isinstance(get_store(), SQLConversationStore)

"""
Tests for ConversationStore against an in-memory database.
"""
import unittest

from app.errors import Forbidden, NotFound
from app.rag.conversation_store import ConversationStore
from tests.fakes import (
    make_session_factory, seed_chatbot, seed_conversation, seed_pill, seed_source, seed_user,
)


class TestConversationStore(unittest.TestCase):

    def setUp(self):
        self.sf = make_session_factory()
        seed_chatbot(self.sf, "bot-1")
        seed_chatbot(self.sf, "bot-2")
        seed_chatbot(self.sf, "bot-off", is_active=False)
        self.alice = seed_user(self.sf, "ext-alice")
        self.bob = seed_user(self.sf, "ext-bob")
        self.store = ConversationStore(self.sf)

    # Identity

    def test_resolve_user_id(self):
        assert self.store.resolve_user_id("ext-alice") == self.alice
        assert self.store.resolve_user_id("ext-unknown") is None
        assert self.store.resolve_user_id(None) is None

    # Chatbots

    def test_inactive_or_unknown_chatbot_is_none(self):
        assert self.store.get_active_chatbot("bot-1").id == "bot-1"
        assert self.store.get_active_chatbot("bot-off") is None
        assert self.store.get_active_chatbot("missing") is None

    # Conversation resolution

    def test_no_id_creates_conversation(self):
        conversation = self.store.resolve_conversation(None, "bot-1", self.alice)

        stored = self.store.get_conversation(conversation.id)
        assert stored.chatbot_id == "bot-1"
        assert stored.user_id == self.alice
        assert stored.message_count == 0
        assert stored.status == 'active'

    def test_unknown_conversation_is_not_found(self):
        with self.assertRaises(NotFound):
            self.store.resolve_conversation("missing", "bot-1", self.alice)

    def test_conversation_for_other_chatbot_is_forbidden(self):
        conversation_id = seed_conversation(self.sf, "bot-2", self.alice)

        with self.assertRaises(Forbidden) as ctx:
            self.store.resolve_conversation(conversation_id, "bot-1", self.alice)
        assert ctx.exception.message == "Conversation does not belong to this chatbot"

    def test_other_users_conversation_is_forbidden(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.bob)

        with self.assertRaises(Forbidden) as ctx:
            self.store.resolve_conversation(conversation_id, "bot-1", self.alice)
        assert ctx.exception.message == "Unauthorized access to conversation"

    def test_owned_conversation_is_not_available_anonymously(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.alice)

        with self.assertRaises(Forbidden):
            self.store.resolve_conversation(conversation_id, "bot-1", None)

    def test_anonymous_conversation_is_claimed(self):
        conversation_id = seed_conversation(self.sf, "bot-1", None)

        conversation = self.store.resolve_conversation(conversation_id, "bot-1", self.alice)

        assert conversation.user_id == self.alice
        assert self.store.get_conversation(conversation_id).user_id == self.alice

    def test_anonymous_conversation_stays_anonymous_for_anonymous_user(self):
        conversation_id = seed_conversation(self.sf, "bot-1", None)

        self.store.resolve_conversation(conversation_id, "bot-1", None)

        assert self.store.get_conversation(conversation_id).user_id is None

    def test_claim_only_succeeds_once(self):
        conversation_id = seed_conversation(self.sf, "bot-1", None)

        assert self.store.claim_conversation(conversation_id, self.alice)
        assert not self.store.claim_conversation(conversation_id, self.bob)
        assert self.store.get_conversation(conversation_id).user_id == self.alice

    # Messages and counters

    def test_user_message_never_carries_context(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.alice)

        self.store.add_message(conversation_id, 'user', "Hi", self.alice, context={"chunks": [{"chunkId": "c1"}]})

        [message] = self.store.get_messages(conversation_id)
        assert message.context is None

    def test_assistant_message_keeps_context_and_sources(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.alice)
        context = {"chunks": [{"chunkId": "c1", "sourceId": "s1"}]}

        self.store.add_message(conversation_id, 'user', "Hi", self.alice)
        self.store.add_message(conversation_id, 'assistant', "Hello", self.alice, context=context, source_ids=["s1"])

        messages = self.store.get_messages(conversation_id)
        assert [m.role for m in messages] == ['user', 'assistant']
        assert messages[1].context == context
        assert messages[1].source_ids == ["s1"]

    def test_invalid_role_is_rejected(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.alice)
        with self.assertRaises(ValueError):
            self.store.add_message(conversation_id, 'system', "nope")

    def test_increment_message_count(self):
        conversation_id = seed_conversation(self.sf, "bot-1", self.alice)
        before = self.store.get_conversation(conversation_id).updated_at

        self.store.increment_message_count(conversation_id, 2)
        self.store.increment_message_count(conversation_id, 1)

        conversation = self.store.get_conversation(conversation_id)
        assert conversation.message_count == 3
        assert conversation.updated_at >= before

    # Lookups used for the context payload

    def test_source_titles_are_scoped_to_chatbot(self):
        seed_source(self.sf, "s1", "bot-1", "Handbook")
        seed_source(self.sf, "s2", "bot-2", "Other bot's doc")

        titles = self.store.get_source_titles("bot-1", ["s1", "s2", "s3"])

        assert titles == {"s1": "Handbook"}
        assert self.store.get_source_titles("bot-1", []) == {}

    # Pill usage

    def test_log_pill_usage(self):
        seed_pill(self.sf, "pill_helpful_system", "feedback", "Helpful")

        usage_id = self.store.log_pill_usage(
            pill_id="pill_helpful_system",
            session_id="conv-1",
            chatbot_id="bot-1",
            prefill_text="This was helpful",
            sent_text="This was helpful!",
            source_chunk_ids=["c1", "c2"],
        )

        assert usage_id

    def test_log_pill_usage_unknown_pill(self):
        with self.assertRaises(NotFound):
            self.store.log_pill_usage(pill_id="nope", session_id="conv-1", chatbot_id="bot-1",
                                      prefill_text="a", sent_text="b")


if __name__ == "__main__":
    unittest.main()

"""
Tests for the streamed body: client disconnect and stream timeout.
"""
import asyncio
import unittest

from sqlalchemy import select

from app.db.models import ChunkPerformance, Conversation, Message
from app.models import ChatMessage, TurnRequest
from app.services import build_services
from tests.fakes import (
    FakeCompletionClient, FakeVectorSearch, create_mock_chunk, make_session_factory, make_settings,
    seed_chatbot,
)


class SlowCompletionClient(FakeCompletionClient):
    """Sends its first fragment, then stalls."""

    async def _fragments(self, messages):
        self.calls.append(messages)
        try:
            yield self.fragments[0]
            await asyncio.sleep(5)
            for fragment in self.fragments[1:]:
                yield fragment
        finally:
            self.closed = True


class StreamingTestCase(unittest.IsolatedAsyncioTestCase):

    def build(self, completion, **settings_overrides):
        self.settings = make_settings(**settings_overrides)
        self.sf = make_session_factory(self.settings)
        seed_chatbot(self.sf, "bot-1")
        self.completion = completion
        self.services = build_services(
            self.settings,
            session_factory=self.sf,
            completion=completion,
            vector_search=FakeVectorSearch([create_mock_chunk("c1", "s1")]),
        )
        self.pipeline = self.services.pipeline

    def request(self):
        return TurnRequest(messages=[ChatMessage(role="user", content="hello")], chatbot_id="bot-1")

    def stored(self, conversation_id):
        with self.sf() as session:
            messages = list(session.execute(
                select(Message).where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.role.desc())
            ).scalars())
            conversation = session.get(Conversation, conversation_id)
            usage = session.execute(select(ChunkPerformance.times_used)).scalars().all()
        return messages, conversation, usage


class TestClientDisconnect(StreamingTestCase):

    async def test_disconnect_closes_upstream_and_keeps_partial_reply(self):
        self.build(FakeCompletionClient(fragments=["Hello", " there", " friend"]))
        turn = await self.pipeline.start_turn(self.request())

        body = self.pipeline.stream_reply(turn)
        assert await body.__anext__() == "Hello"
        await body.aclose()
        await self.pipeline.drain()

        assert self.completion.closed
        messages, conversation, usage = self.stored(turn.conversation_id)
        assert [(m.role, m.content) for m in messages] == [('user', "hello"), ('assistant', "Hello")]
        assert conversation.message_count == 2
        assert usage == [1]

    async def test_disconnect_while_waiting_for_provider(self):
        self.build(SlowCompletionClient(fragments=["Thinking", " more"]))
        turn = await self.pipeline.start_turn(self.request())

        body = self.pipeline.stream_reply(turn)
        assert await body.__anext__() == "Thinking"
        consumer = asyncio.ensure_future(body.__anext__())
        await asyncio.sleep(0.05)
        consumer.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await consumer
        await self.pipeline.drain()

        assert self.completion.closed
        messages, conversation, _ = self.stored(turn.conversation_id)
        assert [m.content for m in messages] == ["hello", "Thinking"]
        assert conversation.message_count == 2


class TestStreamTimeout(StreamingTestCase):

    async def test_stalled_stream_ends_with_marker(self):
        self.build(SlowCompletionClient(fragments=["Partial", " never"]), stream_timeout_seconds=0.1)
        turn = await self.pipeline.start_turn(self.request())

        parts = [fragment async for fragment in self.pipeline.stream_reply(turn)]

        assert parts == ["Partial", "\n\n[Error: An error occurred while generating the response.]"]
        assert self.completion.closed
        messages, conversation, _ = self.stored(turn.conversation_id)
        assert messages[-1].content == "Partial"
        assert conversation.message_count == 2


if __name__ == "__main__":
    unittest.main()

"""
Tests for the sliding-window rate limiter, including fail-open behavior.
"""
import unittest
from datetime import timedelta

from app.db.database import session_scope
from app.db.models import Message, utcnow
from app.rag.conversation_store import ConversationStore
from app.rag.rate_limit import RateLimiter
from tests.fakes import make_session_factory, seed_chatbot, seed_conversation, seed_user


class BrokenStore:
    def count_user_messages_since(self, user_id, since):
        raise ConnectionError("database is down")


class TestRateLimiter(unittest.TestCase):

    def setUp(self):
        self.sf = make_session_factory()
        seed_chatbot(self.sf)
        self.user_id = seed_user(self.sf, "ext-1")
        self.conversation_id = seed_conversation(self.sf, user_id=self.user_id)
        self.store = ConversationStore(self.sf)

    def add_messages(self, count, role='user', age_seconds=0):
        created_at = utcnow() - timedelta(seconds=age_seconds)
        with session_scope(self.sf) as session:
            for i in range(count):
                session.add(Message(conversation_id=self.conversation_id, user_id=self.user_id,
                                    role=role, content=f"m{i}", created_at=created_at))

    def test_under_quota_is_allowed(self):
        self.add_messages(3)
        limiter = RateLimiter(self.store, max_messages=10, window_seconds=60)

        status = limiter.check(self.user_id)

        assert status.allowed
        assert status.remaining == 7
        assert status.limit == 10
        assert status.remaining_after_turn() == 6

    def test_at_quota_is_blocked(self):
        self.add_messages(10)
        limiter = RateLimiter(self.store, max_messages=10, window_seconds=60)

        status = limiter.check(self.user_id)

        assert not status.allowed
        assert status.remaining == 0

    def test_messages_outside_the_window_do_not_count(self):
        self.add_messages(10, age_seconds=120)
        limiter = RateLimiter(self.store, max_messages=10, window_seconds=60)

        assert limiter.check(self.user_id).allowed

    def test_assistant_messages_do_not_count(self):
        self.add_messages(10, role='assistant')
        limiter = RateLimiter(self.store, max_messages=10, window_seconds=60)

        assert limiter.check(self.user_id).remaining == 10

    def test_quota_is_configurable(self):
        self.add_messages(2)
        limiter = RateLimiter(self.store, max_messages=2, window_seconds=60)

        assert not limiter.check(self.user_id).allowed

    def test_reset_time_is_end_of_window(self):
        limiter = RateLimiter(self.store, max_messages=10, window_seconds=60)
        expected = int((utcnow() + timedelta(seconds=60)).timestamp())

        status = limiter.check(self.user_id)

        assert abs(status.reset_at - expected) <= 2

    def test_check_failure_fails_open(self):
        limiter = RateLimiter(BrokenStore(), max_messages=10, window_seconds=60)

        status = limiter.check("user-1")

        assert status.allowed
        assert not status.enforced
        assert status.remaining == 10
        assert status.remaining_after_turn() == 10

    def test_unenforced_status_reports_full_quota(self):
        status = RateLimiter(self.store, max_messages=5).unenforced()

        assert status.allowed
        assert status.remaining_after_turn() == 5


if __name__ == "__main__":
    unittest.main()

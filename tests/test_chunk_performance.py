"""
Tests for the atomic chunk_performance upsert.
"""
import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from app.analytics.chunk_performance import (
    chunk_key_for, increment_chunk_counters, satisfaction_rate,
)
from app.db.database import create_db_engine, is_memory_database, session_scope
from app.db.models import ChunkPerformance
from app.models import CounterIncrements
from app.rag.conversation_store import ConversationStore
from tests.fakes import make_session_factory, make_settings

MARCH = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
APRIL = datetime(2025, 4, 2, 9, 0, tzinfo=timezone.utc)


class TestSatisfactionRate(unittest.TestCase):

    def test_ratio(self):
        assert satisfaction_rate(3, 1) == 0.75
        assert satisfaction_rate(0, 2) == 0.0

    def test_no_feedback_is_zero(self):
        assert satisfaction_rate(0, 0) == 0.0


class TestChunkKey(unittest.TestCase):

    def test_key_uses_calendar_month(self):
        key = chunk_key_for("c1", "bot-1", MARCH)
        assert (key.chunk_id, key.chatbot_id, key.month, key.year) == ("c1", "bot-1", 3, 2025)


class TestIncrementChunkCounters(unittest.TestCase):

    def setUp(self):
        self.sf = make_session_factory()

    def increment(self, increments, now=MARCH, chunk_id="c1", chatbot_id="bot-1", source_id="s1"):
        with session_scope(self.sf) as session:
            return increment_chunk_counters(
                session, chunk_key_for(chunk_id, chatbot_id, now), source_id, increments, now=now
            )

    def rows(self):
        with self.sf() as session:
            return list(session.execute(select(ChunkPerformance)).scalars())

    def test_first_reference_creates_row(self):
        result = self.increment(CounterIncrements(times_used=1))

        assert result.created
        [row] = self.rows()
        assert row.times_used == 1
        assert row.source_id == "s1"
        assert (row.month, row.year) == (3, 2025)
        assert row.satisfaction_rate == 0.0

    def test_later_references_increment_the_same_row(self):
        self.increment(CounterIncrements(times_used=1), now=MARCH)
        result = self.increment(CounterIncrements(times_used=1), now=MARCH.replace(hour=13))

        assert not result.created
        [row] = self.rows()
        assert row.times_used == 2

    def test_new_month_gets_a_new_row(self):
        self.increment(CounterIncrements(times_used=1), now=MARCH)
        self.increment(CounterIncrements(times_used=1), now=APRIL)

        assert sorted((r.month, r.times_used) for r in self.rows()) == [(3, 1), (4, 1)]

    def test_rows_are_scoped_per_chatbot(self):
        self.increment(CounterIncrements(times_used=1), chatbot_id="bot-1")
        self.increment(CounterIncrements(times_used=1), chatbot_id="bot-2")

        assert len(self.rows()) == 2

    def test_ratio_recomputed_with_counters(self):
        self.increment(CounterIncrements(helpful=1), now=MARCH)
        self.increment(CounterIncrements(helpful=2, not_helpful=1), now=MARCH.replace(hour=13))
        result = self.increment(CounterIncrements(needs_examples=1), now=MARCH.replace(hour=14))

        [row] = self.rows()
        assert row.helpful_count == 3
        assert row.not_helpful_count == 1
        assert row.needs_examples_count == 1
        assert row.satisfaction_rate == 0.75
        assert result.satisfaction_rate == 0.75

    def test_ratio_on_create(self):
        result = self.increment(CounterIncrements(helpful=1, not_helpful=1))

        assert result.created
        assert result.satisfaction_rate == 0.5

    def test_every_counter_column_is_incremented(self):
        increments = CounterIncrements(
            times_used=1, helpful=1, not_helpful=1, needs_examples=1, needs_steps=1,
            needs_scripts=1, needs_case_study=1, copy_to_use_now=1,
        )
        self.increment(increments, now=MARCH)
        self.increment(increments, now=MARCH.replace(hour=13))

        [row] = self.rows()
        for column in ("times_used", "helpful_count", "not_helpful_count", "needs_examples_count",
                       "needs_steps_count", "needs_scripts_count", "needs_case_study_count",
                       "copy_to_use_now_count"):
            assert getattr(row, column) == 2, column

    def test_missing_source_is_rejected(self):
        with self.assertRaises(ValueError):
            self.increment(CounterIncrements(times_used=1), source_id="")
        assert self.rows() == []

    def test_update_at_the_same_instant_is_not_created(self):
        first = self.increment(CounterIncrements(times_used=1), now=MARCH)
        second = self.increment(CounterIncrements(times_used=1), now=MARCH)

        assert first.created
        assert not second.created
        assert second.chunk_performance_id == first.chunk_performance_id

    def test_missing_chatbot_is_rejected(self):
        with self.assertRaises(ValueError):
            self.increment(CounterIncrements(times_used=1), chatbot_id=None)


class TestConcurrentIncrements(unittest.TestCase):
    """Live and batch writers hitting the same row from parallel threads."""

    WORKERS = 8
    CALLS = 120

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        settings = make_settings(database_url=f"sqlite:///{os.path.join(self.tmpdir.name, 'counters.db')}")
        self.sf = make_session_factory(settings)
        self.store = ConversationStore(self.sf)

    def tearDown(self):
        self.sf.kw["bind"].dispose()
        self.tmpdir.cleanup()

    def batch_increment(self, increments):
        with session_scope(self.sf) as session:
            return increment_chunk_counters(session, chunk_key_for("c1", "bot-1"), "s1", increments)

    def call(self, i):
        # live usage, helpful, not helpful in rotation
        if i % 3 == 0:
            return self.store.increment_chunk_usage("c1", "s1", "bot-1")
        if i % 3 == 1:
            return self.batch_increment(CounterIncrements(helpful=1))
        return self.batch_increment(CounterIncrements(not_helpful=1))

    def test_no_increment_is_lost(self):
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(pool.map(self.call, range(self.CALLS)))

        with self.sf() as session:
            [row] = list(session.execute(select(ChunkPerformance)).scalars())

        expected = self.CALLS // 3
        assert row.times_used == expected
        assert row.helpful_count == expected
        assert row.not_helpful_count == expected
        assert abs(row.satisfaction_rate - satisfaction_rate(row.helpful_count, row.not_helpful_count)) < 1e-9
        assert sum(1 for r in results if r.created) == 1

    def test_every_returned_ratio_matches_its_counters(self):
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(pool.map(self.call, range(self.CALLS)))

        for result in results:
            assert abs(result.satisfaction_rate - satisfaction_rate(result.helpful_count, result.not_helpful_count)) < 1e-9


class TestEngineSelection(unittest.TestCase):

    def test_memory_urls(self):
        assert is_memory_database("sqlite://")
        assert is_memory_database("sqlite:///:memory:")
        assert is_memory_database("sqlite:///file:shared?mode=memory&uri=true")
        assert not is_memory_database("sqlite:////tmp/chatbots.db")

    def test_memory_database_shares_one_connection(self):
        engine = create_db_engine(make_settings(database_url="sqlite://"))
        assert isinstance(engine.pool, StaticPool)
        engine.dispose()

    def test_file_database_gets_a_real_pool(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = create_db_engine(make_settings(database_url=f"sqlite:///{os.path.join(tmpdir, 'x.db')}"))
            assert not isinstance(engine.pool, StaticPool)
            engine.dispose()


class TestCounterIncrements(unittest.TestCase):

    def test_add_and_is_empty(self):
        increments = CounterIncrements()
        assert increments.is_empty()

        increments.add("helpful")
        increments.add("helpful", 2)

        assert increments.helpful == 3
        assert not increments.is_empty()


if __name__ == "__main__":
    unittest.main()

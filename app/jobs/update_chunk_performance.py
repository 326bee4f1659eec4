"""
Chunk performance aggregation job.

Rolls recent events and pill usages into the monthly chunk_performance
counters. Meant to be triggered by an external scheduler (daily), either through
POST /jobs/update-chunk-performance or from the command line:

    python -m app.jobs.update_chunk_performance
    python -m app.jobs.update_chunk_performance --lookback-hours 48

Counted signals:
    copy event with metadata.copyUsage == 'use_now'   -> copy_to_use_now
    feedback pill  pill_helpful_system                 -> helpful
                   pill_not_helpful_system             -> not_helpful
    expansion pill pill_example_system                 -> needs_examples
                   pill_how_to_use_system              -> needs_steps
                   pill_say_more_system                -> needs_scripts
                   pill_who_done_system                -> needs_case_study
Anything else is ignored.

Each run reads [window_start, window_end), where window_end is now minus a short
grace lag (AGGREGATION_GRACE_SECONDS) and window_start is the later of
window_end - lookback and the end of the last successful run, so running twice
with no new records changes nothing. Runs hold an advisory lock on PostgreSQL,
so an overlapping run waits and then starts where the first one ended. The
whole run, including its aggregation_runs row, is one transaction: it either
applies every increment or none.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import argparse
import time

from sqlalchemy import select, text
from sqlalchemy.orm import Session, sessionmaker

from app.analytics.chunk_performance import chunk_key_for, increment_chunk_counters
from app.config import Settings
from app.db.database import session_scope
from app.db.models import (
    AggregationRun, ChunkPerformance, Conversation, Event, Message, Pill, PillUsage,
    as_utc, utcnow,
)
from app.models import AggregationSummary, CounterIncrements
from app.logging_config import get_logger

logger = get_logger(__name__)

# (pill_type, pill_id) -> CounterIncrements field
PILL_COUNTERS = {
    ('feedback', 'pill_helpful_system'): 'helpful',
    ('feedback', 'pill_not_helpful_system'): 'not_helpful',
    ('expansion', 'pill_example_system'): 'needs_examples',
    ('expansion', 'pill_how_to_use_system'): 'needs_steps',
    ('expansion', 'pill_say_more_system'): 'needs_scripts',
    ('expansion', 'pill_who_done_system'): 'needs_case_study',
}

COPY_USE_NOW = 'use_now'

# pg_advisory_xact_lock key shared by every aggregation run
AGGREGATION_LOCK_KEY = 7_310_442_815


def classify_pill(pill_type: str, pill_id: str) -> Optional[str]:
    """Counter for a pill usage, None for pills this job does not count."""
    return PILL_COUNTERS.get((pill_type, pill_id))


def is_copy_to_use_now(event_type: str, metadata: Optional[Dict]) -> bool:
    return event_type == 'copy' and isinstance(metadata, dict) and metadata.get('copyUsage') == COPY_USE_NOW


def acquire_run_lock(session: Session) -> None:
    """Block until no other aggregation run holds the lock. Released when the transaction ends."""
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": AGGREGATION_LOCK_KEY})


@dataclass
class PendingChunk:
    """Increments collected for one chunk before its source/chatbot are resolved."""
    chunk_id: str
    chatbot_id: Optional[str]
    increments: CounterIncrements = field(default_factory=CounterIncrements)


class ChunkSourceResolver:
    """
    chunk id -> (source_id, chatbot_id).

    Tries an existing chunk_performance row first. Otherwise falls back to the
    frozen context of the newest `scan_limit` assistant messages. The fallback
    is lossy: a chunk last used in an older message is not found, and the chunk
    is skipped for this run.
    """

    def __init__(self, session: Session, scan_limit: int = 1000):
        self.session = session
        self.scan_limit = scan_limit
        self._scanned: Optional[Dict[Tuple[str, Optional[str]], Tuple[str, str]]] = None

    def resolve(self, chunk_id: str, chatbot_id: Optional[str]) -> Optional[Tuple[str, str]]:
        return self._from_chunk_performance(chunk_id, chatbot_id) or self._from_messages(chunk_id, chatbot_id)

    def _from_chunk_performance(self, chunk_id: str, chatbot_id: Optional[str]) -> Optional[Tuple[str, str]]:
        stmt = select(ChunkPerformance.source_id, ChunkPerformance.chatbot_id).where(ChunkPerformance.chunk_id == chunk_id)
        if chatbot_id:
            stmt = stmt.where(ChunkPerformance.chatbot_id == chatbot_id)
        stmt = stmt.order_by(ChunkPerformance.year.desc(), ChunkPerformance.month.desc()).limit(1)
        row = self.session.execute(stmt).first()
        return (row.source_id, row.chatbot_id) if row else None

    def _from_messages(self, chunk_id: str, chatbot_id: Optional[str]) -> Optional[Tuple[str, str]]:
        if self._scanned is None:
            self._scanned = self._scan_messages()
        return self._scanned.get((chunk_id, chatbot_id))

    def _scan_messages(self) -> Dict[Tuple[str, Optional[str]], Tuple[str, str]]:
        """Index chunk ids found in recent assistant message contexts, newest message wins."""
        rows = self.session.execute(
            select(Message.context, Conversation.chatbot_id)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(Message.role == 'assistant', Message.context.isnot(None))
            .order_by(Message.created_at.desc())
            .limit(self.scan_limit)
        ).all()

        found = {}
        for row in rows:
            context = row.context or {}
            for chunk in context.get('chunks') or []:
                chunk_id = chunk.get('chunkId')
                source_id = chunk.get('sourceId')
                if not chunk_id or not source_id:
                    continue
                found.setdefault((chunk_id, row.chatbot_id), (source_id, row.chatbot_id))
                found.setdefault((chunk_id, None), (source_id, row.chatbot_id))

        logger.info(f"Scanned {len(rows)} assistant messages, {len(found)} chunk references indexed")
        return found


class ChunkPerformanceAggregator:

    def __init__(self, session_factory: sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def window_start(self, session: Session, window_end: datetime, lookback_hours: int) -> datetime:
        floor = window_end - timedelta(hours=lookback_hours)
        last_end = session.execute(
            select(AggregationRun.window_end)
            .where(AggregationRun.status == 'succeeded')
            .order_by(AggregationRun.window_end.desc())
            .limit(1)
        ).scalar_one_or_none()
        if last_end is not None and as_utc(last_end) > floor:
            # A run that started later may already have covered this window
            return min(as_utc(last_end), window_end)
        return floor

    def run(self, now: Optional[datetime] = None, lookback_hours: Optional[int] = None) -> AggregationSummary:
        """
        One aggregation pass.

        Raises:
            Exception: any failure; nothing from the run is applied and a
                failed aggregation_runs row is recorded
        """
        start = time.time()
        now = as_utc(now) if now else utcnow()
        lookback_hours = lookback_hours or self.settings.aggregation_lookback_hours
        window_end = now - timedelta(seconds=self.settings.aggregation_grace_seconds)
        window_start = None

        try:
            with session_scope(self.session_factory) as session:
                acquire_run_lock(session)
                window_start = self.window_start(session, window_end, lookback_hours)
                logger.info(f"[Update Chunk Performance] Starting aggregation for events/pill usage "
                            f"since {window_start.isoformat()}")

                summary = self._aggregate(session, window_start, window_end)
                summary.duration_ms = int((time.time() - start) * 1000)

                session.add(AggregationRun(
                    status='succeeded',
                    window_start=window_start,
                    window_end=window_end,
                    events_read=summary.events,
                    pill_usages_read=summary.pill_usages,
                    chunks_created=summary.chunks_created,
                    chunks_updated=summary.chunks_updated,
                    chunks_skipped=summary.chunks_skipped,
                    started_at=datetime.fromtimestamp(start, tz=now.tzinfo),
                    finished_at=utcnow(),
                ))
        except Exception as e:
            logger.error(f"[Update Chunk Performance] Error: {e}", exc_info=True)
            self._record_failure(window_start or window_end - timedelta(hours=lookback_hours), window_end, start, e)
            raise

        logger.info(
            f"[Update Chunk Performance] Completed in {summary.duration_ms}ms: "
            f"{summary.chunks_created} created, {summary.chunks_updated} updated, {summary.chunks_skipped} skipped"
        )
        return summary

    def _aggregate(self, session: Session, window_start: datetime, window_end: datetime) -> AggregationSummary:
        summary = AggregationSummary(window_start=window_start.isoformat(), window_end=window_end.isoformat())
        pending: Dict[Tuple[str, Optional[str]], PendingChunk] = {}

        def add(chunk_id: str, chatbot_id: Optional[str], counter: str):
            key = (chunk_id, chatbot_id)
            if key not in pending:
                pending[key] = PendingChunk(chunk_id=chunk_id, chatbot_id=chatbot_id)
            pending[key].increments.add(counter)

        # 1. Copy events
        events = session.execute(
            select(Event.event_type, Event.chunk_ids, Event.event_metadata, Conversation.chatbot_id)
            .outerjoin(Conversation, Event.session_id == Conversation.id)
            .where(Event.timestamp >= window_start, Event.timestamp < window_end)
        ).all()
        summary.events = len(events)

        for event in events:
            if not is_copy_to_use_now(event.event_type, event.event_metadata):
                continue
            for chunk_id in event.chunk_ids or []:
                add(chunk_id, event.chatbot_id, 'copy_to_use_now')

        # 2. Pill usages
        usages = session.execute(
            select(PillUsage.pill_id, PillUsage.source_chunk_ids, PillUsage.chatbot_id, Pill.pill_type)
            .join(Pill, PillUsage.pill_id == Pill.id)
            .where(PillUsage.timestamp >= window_start, PillUsage.timestamp < window_end)
        ).all()
        summary.pill_usages = len(usages)

        for usage in usages:
            counter = classify_pill(usage.pill_type, usage.pill_id)
            if counter is None:
                continue
            for chunk_id in usage.source_chunk_ids or []:
                add(chunk_id, usage.chatbot_id, counter)

        logger.info(f"[Update Chunk Performance] Found {summary.events} events and {summary.pill_usages} pill usages")

        # 3. Resolve source/chatbot, merging everything that lands on the same row
        resolver = ChunkSourceResolver(session, self.settings.aggregation_message_scan_limit)
        resolved: Dict[Tuple[str, str], Tuple[str, CounterIncrements]] = {}
        for item in pending.values():
            resolution = resolver.resolve(item.chunk_id, item.chatbot_id)
            if resolution is None:
                logger.warning(f"[Update Chunk Performance] Skipping chunk {item.chunk_id} - missing sourceId or chatbotId")
                summary.chunks_skipped += 1
                continue
            source_id, resolved_chatbot_id = resolution
            chatbot_id = item.chatbot_id or resolved_chatbot_id
            key = (item.chunk_id, chatbot_id)
            if key not in resolved:
                resolved[key] = (source_id, CounterIncrements())
            merged = resolved[key][1]
            for counter, amount in vars(item.increments).items():
                if amount:
                    merged.add(counter, amount)

        # 4. One atomic upsert per row
        for (chunk_id, chatbot_id), (source_id, increments) in resolved.items():
            if increments.is_empty():
                continue
            result = increment_chunk_counters(
                session, chunk_key_for(chunk_id, chatbot_id, window_end), source_id, increments, now=window_end
            )
            if result.created:
                summary.chunks_created += 1
            else:
                summary.chunks_updated += 1

        return summary

    def _record_failure(self, window_start: datetime, window_end: datetime, start: float, error: Exception) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.add(AggregationRun(
                    status='failed',
                    window_start=window_start,
                    window_end=window_end,
                    error_message=str(error)[:2000],
                    started_at=datetime.fromtimestamp(start, tz=window_end.tzinfo),
                    finished_at=utcnow(),
                ))
        except Exception as e:
            logger.error(f"[Update Chunk Performance] Could not record failed run: {e}")


def main(argv: Optional[List[str]] = None) -> int:
    from app.db.database import create_db_engine, create_session_factory
    from app.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Aggregate events and pill usages into chunk_performance")
    parser.add_argument("--lookback-hours", type=int, default=None,
                        help="Override AGGREGATION_LOOKBACK_HOURS for this run")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(level=settings.log_level, log_file=settings.log_file)

    engine = create_db_engine(settings)
    aggregator = ChunkPerformanceAggregator(create_session_factory(engine), settings)
    try:
        summary = aggregator.run(lookback_hours=args.lookback_hours)
    except Exception as e:
        print(f"❌ Aggregation failed: {e}")
        return 1
    finally:
        engine.dispose()

    print(f"✅ Processed {summary.events} events, {summary.pill_usages} pill usages: "
          f"{summary.chunks_created} created, {summary.chunks_updated} updated, "
          f"{summary.chunks_skipped} skipped ({summary.duration_ms}ms)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

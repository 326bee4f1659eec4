"""
Atomic Chunk_Performance counter updates.

Both the live chat turn (times_used) and the aggregation job (feedback, expansion
and copy counters) write through increment_chunk_counters. Each call is a single
INSERT ... ON CONFLICT DO UPDATE statement that adds the increments to the stored
counters and recomputes satisfaction_rate from the incremented helpful /
not_helpful values in the same statement, so no writer can observe counters and
ratio out of step and concurrent increments are never lost.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import Float, case, cast
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.db.models import ChunkPerformance, new_id, utcnow
from app.models import ChunkKey, CounterIncrements
from app.logging_config import get_logger

logger = get_logger(__name__)

# CounterIncrements field -> chunk_performance column
COUNTER_COLUMNS = {
    "times_used": "times_used",
    "helpful": "helpful_count",
    "not_helpful": "not_helpful_count",
    "needs_examples": "needs_examples_count",
    "needs_steps": "needs_steps_count",
    "needs_scripts": "needs_scripts_count",
    "needs_case_study": "needs_case_study_count",
    "copy_to_use_now": "copy_to_use_now_count",
}


@dataclass
class UpsertResult:
    """Row state after an increment."""
    chunk_performance_id: str
    created: bool
    helpful_count: int
    not_helpful_count: int
    satisfaction_rate: float


def satisfaction_rate(helpful: int, not_helpful: int) -> float:
    """helpful / (helpful + not_helpful), 0 when there is no feedback yet."""
    total = helpful + not_helpful
    return helpful / total if total > 0 else 0.0


def chunk_key_for(chunk_id: str, chatbot_id: str, now: Optional[datetime] = None) -> ChunkKey:
    """Key for the calendar month/year containing now (UTC)."""
    now = now or utcnow()
    return ChunkKey(chunk_id=chunk_id, chatbot_id=chatbot_id, month=now.month, year=now.year)


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Atomic upsert not supported for dialect '{dialect}'")


def increment_chunk_counters(
    session: Session,
    key: ChunkKey,
    source_id: str,
    increments: CounterIncrements,
    chunk_text: Optional[str] = None,
    chunk_metadata: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> UpsertResult:
    """
    Create-or-increment the row for key. Caller owns the transaction (commit/rollback).

    Raises:
        ValueError: if source_id or chatbot_id is missing (rows must never exist without them)
    """
    if not source_id or not key.chatbot_id or not key.chunk_id:
        raise ValueError(f"chunk_id, source_id and chatbot_id are required (chunk={key.chunk_id})")

    now = now or utcnow()
    table = ChunkPerformance.__table__
    insert = _insert_for(session)
    candidate_id = new_id()

    # Values for a brand new row
    insert_values = {
        "id": candidate_id,
        "chunk_id": key.chunk_id,
        "chatbot_id": key.chatbot_id,
        "month": key.month,
        "year": key.year,
        "source_id": source_id,
        "satisfaction_rate": satisfaction_rate(increments.helpful, increments.not_helpful),
        "chunk_text": chunk_text,
        "chunk_metadata": chunk_metadata,
        "created_at": now,
        "updated_at": now,
    }
    for field_name, column in COUNTER_COLUMNS.items():
        insert_values[column] = getattr(increments, field_name)

    # Existing row keeps its id, so the returned id tells insert from update.
    # Every SET expression reads the pre-update row, so the ratio
    # is computed from the same incremented values written to the counters
    new_helpful = table.c.helpful_count + increments.helpful
    new_not_helpful = table.c.not_helpful_count + increments.not_helpful
    total_feedback = new_helpful + new_not_helpful

    update_values = {
        column: table.c[column] + getattr(increments, field_name)
        for field_name, column in COUNTER_COLUMNS.items()
    }
    update_values["satisfaction_rate"] = case(
        (total_feedback > 0, cast(new_helpful, Float) / total_feedback),
        else_=0.0,
    )
    update_values["updated_at"] = now
    if chunk_text is not None:
        update_values["chunk_text"] = chunk_text

    stmt = insert(table).values(**insert_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["chunk_id", "chatbot_id", "month", "year"],
        set_=update_values,
    ).returning(
        table.c.id,
        table.c.helpful_count,
        table.c.not_helpful_count,
        table.c.satisfaction_rate,
    )

    row = session.execute(stmt).one()
    logger.debug(f"Chunk counters upserted: chunk={key.chunk_id} chatbot={key.chatbot_id} {key.year}-{key.month:02d}")

    return UpsertResult(
        chunk_performance_id=row.id,
        created=row.id == candidate_id,
        helpful_count=row.helpful_count,
        not_helpful_count=row.not_helpful_count,
        satisfaction_rate=row.satisfaction_rate,
    )

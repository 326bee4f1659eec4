"""
Database models for the chatbot RAG service.

SCHEMA OVERVIEW
===============================================================================

TABLE: users - Internal users, linked to the external identity provider
-------------------------------------------------------------------------------
id                VARCHAR       PRIMARY KEY        UUID
external_id       VARCHAR       UNIQUE NOT NULL    Opaque subject id from the identity provider
email             VARCHAR
created_at        TIMESTAMP


TABLE: chatbots - Configured persona / knowledge base pairings
-------------------------------------------------------------------------------
id                VARCHAR       PRIMARY KEY
title             TEXT          NOT NULL
is_active         BOOLEAN       DEFAULT TRUE       Inactive chatbots cannot be chatted with
is_public         BOOLEAN       DEFAULT FALSE
created_at        TIMESTAMP


TABLE: sources - Ingested documents a chatbot answers from
-------------------------------------------------------------------------------
id                VARCHAR       PRIMARY KEY
chatbot_id        VARCHAR       NOT NULL
title             TEXT          NOT NULL           Copied into message context for attribution


TABLE: document_chunks - Retrievable passages with vector embeddings
-------------------------------------------------------------------------------
chunk_id          VARCHAR       PRIMARY KEY        "{sourceId}-chunk-{n}"
namespace         VARCHAR       NOT NULL           "chatbot-{chatbotId}" partition key
source_id         VARCHAR       NOT NULL
content           TEXT          NOT NULL
page              INTEGER
section           VARCHAR
embedding         VECTOR(N)                        N = EMBEDDING_DIMENSIONS (1536 for text-embedding-3-small)

INDEX: idx_chunks_namespace ON namespace
INDEX: idx_chunks_embedding ON embedding USING hnsw (vector_cosine_ops)


TABLE: conversations - One chat session between an end user and a chatbot
-------------------------------------------------------------------------------
id                VARCHAR       PRIMARY KEY
chatbot_id        VARCHAR       NOT NULL
user_id           VARCHAR                          NULL = anonymous (may later be claimed)
status            VARCHAR       DEFAULT 'active'   'active' | 'closed'
message_count     INTEGER       DEFAULT 0          Incremented by the pipeline, never recomputed
suggestion_pills  JSONB                            Cached AI-generated conversation starters
suggestion_pills_cached_at TIMESTAMP
created_at / updated_at TIMESTAMP                  updated_at doubles as "last activity"


TABLE: messages - One row per role per turn, immutable once written
-------------------------------------------------------------------------------
id                VARCHAR       PRIMARY KEY
conversation_id   VARCHAR       NOT NULL
user_id           VARCHAR
role              VARCHAR       NOT NULL           'user' | 'assistant'
content           TEXT          NOT NULL
context           JSONB                            {"chunks": [...]} assistant messages only
follow_up_pills   JSONB                            Follow-up suggestion strings
source_ids        TEXT[]                           Distinct source ids referenced
created_at        TIMESTAMP

INDEX: idx_messages_conversation ON conversation_id
INDEX: idx_messages_role_created ON (role, created_at)


TABLE: chunk_performance - Monthly per-chunk analytics counters
-------------------------------------------------------------------------------
id, chunk_id, source_id, chatbot_id, month, year
times_used, helpful_count, not_helpful_count,
needs_examples_count, needs_steps_count, needs_scripts_count, needs_case_study_count,
copy_to_use_now_count  INTEGER DEFAULT 0           Only ever incremented
satisfaction_rate      FLOAT   DEFAULT 0           helpful / (helpful + not_helpful), 0 when no feedback
chunk_text, chunk_metadata                         Optional cached chunk content

UNIQUE: (chunk_id, chatbot_id, month, year)


TABLE: pills / pill_usages / events - Feedback affordances and their append-only logs
TABLE: aggregation_runs - Window bookkeeping for the chunk performance job
"""
import os
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Float, Boolean, ForeignKey,
    UniqueConstraint, Index, JSON,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from pgvector.sqlalchemy import Vector

from .database import Base

EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))

# JSONB / TEXT[] on PostgreSQL, plain JSON elsewhere (SQLite in tests). None is stored as SQL NULL.
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
StringList = JSON().with_variant(ARRAY(String), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Timestamps read back from SQLite are naive; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class User(Base):
    """Internal user row; external_id is the identity provider's subject id."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    external_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, external_id={self.external_id})>"


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Chatbot(id={self.id}, title={self.title[:50]}, active={self.is_active})>"


class Source(Base):
    __tablename__ = "sources"

    id = Column(String, primary_key=True, default=new_id)
    chatbot_id = Column(String, ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Source(id={self.id}, title={self.title[:50]})>"


class DocumentChunk(Base):
    """Passages with vector embeddings, partitioned by namespace (one per chatbot)."""
    __tablename__ = "document_chunks"

    chunk_id = Column(String, primary_key=True)
    namespace = Column(String, nullable=False)
    source_id = Column(String, nullable=False, index=True)

    # Content (raw passage text, no context prepended)
    content = Column(Text, nullable=False)
    page = Column(Integer)
    section = Column(String)

    # NULL = embedding not generated yet, never returned by retrieval
    embedding = Column(Vector(EMBEDDING_DIMENSIONS))

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_chunks_namespace', 'namespace'),
        Index('idx_chunks_embedding', 'embedding', postgresql_using='hnsw',
              postgresql_with={'m': 16, 'ef_construction': 64},
              postgresql_ops={'embedding': 'vector_cosine_ops'}),
    )

    def __repr__(self):
        return f"<DocumentChunk(id={self.chunk_id}, namespace={self.namespace}, source={self.source_id})>"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=new_id)
    chatbot_id = Column(String, ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), index=True)  # NULL = anonymous

    status = Column(String, default='active', nullable=False)  # 'active' | 'closed'
    message_count = Column(Integer, default=0, nullable=False)

    # Cached suggestion pills (AI-generated conversation starters)
    suggestion_pills = Column(JSONType)
    suggestion_pills_cached_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Conversation(id={self.id}, chatbot={self.chatbot_id}, messages={self.message_count})>"


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"))

    role = Column(String, nullable=False)  # 'user' | 'assistant'
    content = Column(Text, nullable=False)

    # Frozen retrieval context: {"chunks": [{chunkId, sourceId, sourceTitle, text, page, section, relevanceScore, positionWeight}]}
    context = Column(JSONType)
    follow_up_pills = Column(JSONType)
    source_ids = Column(StringList, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_messages_conversation', 'conversation_id'),
        Index('idx_messages_role_created', 'role', 'created_at'),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, role={self.role}, conversation={self.conversation_id})>"


class ChunkPerformance(Base):
    """Monthly per-chunk counters. Written only through app.analytics.chunk_performance."""
    __tablename__ = "chunk_performance"

    id = Column(String, primary_key=True, default=new_id)
    chunk_id = Column(String, nullable=False)
    source_id = Column(String, nullable=False)
    chatbot_id = Column(String, nullable=False)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)

    times_used = Column(Integer, default=0, nullable=False)
    helpful_count = Column(Integer, default=0, nullable=False)
    not_helpful_count = Column(Integer, default=0, nullable=False)
    needs_examples_count = Column(Integer, default=0, nullable=False)
    needs_steps_count = Column(Integer, default=0, nullable=False)
    needs_scripts_count = Column(Integer, default=0, nullable=False)
    needs_case_study_count = Column(Integer, default=0, nullable=False)
    copy_to_use_now_count = Column(Integer, default=0, nullable=False)
    satisfaction_rate = Column(Float, default=0.0, nullable=False)

    chunk_text = Column(Text)
    chunk_metadata = Column(JSONType)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('chunk_id', 'chatbot_id', 'month', 'year', name='uq_chunk_chatbot_month_year'),
        Index('idx_chunk_performance_chatbot_period', 'chatbot_id', 'year', 'month'),
    )

    def __repr__(self):
        return (f"<ChunkPerformance(chunk={self.chunk_id}, chatbot={self.chatbot_id}, "
                f"{self.year}-{self.month:02d}, used={self.times_used}, rate={self.satisfaction_rate:.2f})>")


class Pill(Base):
    """Feedback / expansion / suggested-question quick actions. chatbot_id NULL = system pill."""
    __tablename__ = "pills"

    id = Column(String, primary_key=True, default=new_id)
    chatbot_id = Column(String, ForeignKey("chatbots.id", ondelete="CASCADE"))
    pill_type = Column(String, nullable=False)  # 'feedback' | 'expansion' | 'suggested'
    label = Column(String, nullable=False)
    prefill_text = Column(Text, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Pill(id={self.id}, type={self.pill_type}, label={self.label})>"


class PillUsage(Base):
    """Append-only: a pill was used to compose a message against a set of chunks."""
    __tablename__ = "pill_usages"

    id = Column(String, primary_key=True, default=new_id)
    pill_id = Column(String, ForeignKey("pills.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String)  # conversation id
    user_id = Column(String)
    chatbot_id = Column(String, nullable=False)
    source_chunk_ids = Column(StringList, default=list)
    prefill_text = Column(Text, nullable=False)
    sent_text = Column(Text, nullable=False)
    was_modified = Column(Boolean, default=False, nullable=False)
    paired_with_pill_id = Column(String)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_pill_usages_timestamp', 'timestamp'),
    )


class Event(Base):
    """Append-only interaction log (copy, bookmark, expansion_followup, ...)."""
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=new_id)
    session_id = Column(String)
    user_id = Column(String)
    message_id = Column(String)
    event_type = Column(String, nullable=False)
    chunk_ids = Column(StringList, default=list)
    # Named event_metadata to avoid conflict with SQLAlchemy's reserved 'metadata' attribute
    event_metadata = Column("metadata", JSONType)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_events_timestamp', 'timestamp'),
    )


class AggregationRun(Base):
    """One row per chunk performance job run; window_end of the last success is the next run's floor."""
    __tablename__ = "aggregation_runs"

    id = Column(String, primary_key=True, default=new_id)
    status = Column(String, default='running', nullable=False)  # 'running' | 'succeeded' | 'failed'
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    events_read = Column(Integer, default=0, nullable=False)
    pill_usages_read = Column(Integer, default=0, nullable=False)
    chunks_created = Column(Integer, default=0, nullable=False)
    chunks_updated = Column(Integer, default=0, nullable=False)
    chunks_skipped = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_aggregation_runs_status_end', 'status', 'window_end'),
    )

    def __repr__(self):
        return f"<AggregationRun(id={self.id}, status={self.status}, window_end={self.window_end})>"

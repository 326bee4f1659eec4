"""
Process-wide service construction.

Everything that holds a connection pool or an HTTP client is built once here at
startup and shared by every request. Tests build a Services with fakes instead.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.config import Settings
from app.db.database import create_db_engine, create_session_factory
from app.identity import HeaderIdentityProvider
from app.jobs.update_chunk_performance import ChunkPerformanceAggregator
from app.rag.conversation_store import ConversationStore
from app.rag.pipeline import ChatTurnPipeline
from app.rag.post_turn import PostTurnOutbox
from app.rag.providers import CompletionClient, build_completion_client
from app.rag.rate_limit import RateLimiter
from app.retrieval.semantic_search import PgVectorSearch, RetrievalClient


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    store: ConversationStore
    completion: CompletionClient
    retrieval: RetrievalClient
    pipeline: ChatTurnPipeline
    aggregator: ChunkPerformanceAggregator
    identity: HeaderIdentityProvider
    engine: Optional[Engine] = None

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def build_services(
    settings: Settings,
    session_factory: Optional[sessionmaker] = None,
    completion: Optional[CompletionClient] = None,
    vector_search=None,
) -> Services:
    """
    Wire the services. Any collaborator passed in is used as-is; the rest are
    built from settings.
    """
    engine = None
    if session_factory is None:
        engine = create_db_engine(settings)
        session_factory = create_session_factory(engine)

    completion = completion or build_completion_client(settings)
    store = ConversationStore(session_factory)
    retrieval = RetrievalClient(
        embed=completion.embed,
        vector_search=vector_search or PgVectorSearch(session_factory),
        timeout_seconds=settings.retrieval_timeout_seconds,
    )
    pipeline = ChatTurnPipeline(
        store=store,
        retrieval=retrieval,
        completion=completion,
        rate_limiter=RateLimiter(store, settings.rate_limit_max_messages, settings.rate_limit_window_seconds),
        outbox=PostTurnOutbox(max_attempts=settings.post_turn_max_attempts),
        settings=settings,
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        store=store,
        completion=completion,
        retrieval=retrieval,
        pipeline=pipeline,
        aggregator=ChunkPerformanceAggregator(session_factory, settings),
        identity=HeaderIdentityProvider(settings.identity_header),
        engine=engine,
    )

"""
Semantic search over a chatbot's document chunks.

RetrievalClient embeds the query with the completion provider's embedding model,
then runs a cosine similarity search scoped to one namespace in the pgvector
chunk table. Failures are raised by cause so the chat pipeline can decide
between "continue without context" and "tell the user":

    EmbeddingError               query could not be embedded
    VectorSearchConnectionError  vector store unreachable or too slow
    RetrievalQueryError          anything else (bad query, bad row, ...)

Zero hits is a valid result, not an error.
"""
import asyncio
import time
from typing import Awaitable, Callable, List

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.errors import (
    EmbeddingError, RetrievalError, RetrievalQueryError, VectorSearchConnectionError,
    is_connectivity_error,
)
from app.models import RetrievedChunk
from app.logging_config import get_logger

logger = get_logger(__name__)

Embedder = Callable[[str], Awaitable[List[float]]]


def namespace_for_chatbot(chatbot_id: str) -> str:
    """One namespace per chatbot; ingestion writes chunks under the same key."""
    return f"chatbot-{chatbot_id}"


class PgVectorSearch:
    """Cosine similarity search against document_chunks (pgvector)."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def search(self, embedding: List[float], namespace: str, top_k: int) -> List[RetrievedChunk]:
        stmt = text(
            """
select
chk.chunk_id
, chk.source_id
, chk.content
, chk.page
, chk.section
, 1 - (chk.embedding <=> :query_vector) as similarity_score

from document_chunks chk
where chk.namespace = :namespace
  and chk.embedding is not null
order by chk.embedding <=> :query_vector asc
limit :top_k
"""
        )

        with self.session_factory() as session:
            rows = session.execute(stmt, {
                'query_vector': str(embedding),
                'namespace': namespace,
                'top_k': top_k,
            }).fetchall()

        return [
            RetrievedChunk(
                chunk_id=row.chunk_id,
                source_id=row.source_id,
                text=row.content,
                relevance_score=float(row.similarity_score),
                page=row.page,
                section=row.section,
            )
            for row in rows
        ]


class RetrievalClient:
    """
    Query -> top-K chunks for one namespace.

    Args:
        embed: async callable returning the query embedding (the completion
            client's embed method)
        vector_search: object with a blocking search(embedding, namespace, top_k)
        timeout_seconds: budget for embedding and for the vector search, each
    """

    def __init__(self, embed: Embedder, vector_search, timeout_seconds: float = 10.0):
        self.embed = embed
        self.vector_search = vector_search
        self.timeout_seconds = timeout_seconds

    async def retrieve(self, query: str, namespace: str, top_k: int = 5) -> List[RetrievedChunk]:
        """
        Return up to top_k chunks ordered by descending similarity.

        Raises:
            EmbeddingError, VectorSearchConnectionError, RetrievalQueryError
        """
        if not query or not query.strip():
            raise RetrievalQueryError("Query is empty")

        # Embed query
        embed_start = time.time()
        try:
            query_embedding = await asyncio.wait_for(self.embed(query), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"Embedding timed out after {self.timeout_seconds}s") from e
        except RetrievalError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Failed to generate query embedding: {e}") from e

        if not query_embedding:
            raise EmbeddingError("Embedding provider returned an empty vector")
        embed_time = (time.time() - embed_start) * 1000
        logger.info(f"  Query embedding time: {embed_time:.0f}ms")

        # Execute vector similarity search
        search_start = time.time()
        try:
            chunks = await asyncio.wait_for(
                run_in_threadpool(self.vector_search.search, query_embedding, namespace, top_k),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise VectorSearchConnectionError(f"Vector search timed out after {self.timeout_seconds}s") from e
        except (ConnectionError, OSError) as e:
            raise VectorSearchConnectionError(f"Vector store unreachable: {e}") from e
        except SQLAlchemyError as e:
            if is_connectivity_error(e):
                raise VectorSearchConnectionError(f"Vector store unreachable: {e}") from e
            raise RetrievalQueryError(f"Vector search failed: {e}") from e
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalQueryError(f"Vector search failed: {e}") from e

        search_time = (time.time() - search_start) * 1000
        logger.info(f"  Vector search time: {search_time:.0f}ms ({len(chunks)} chunks, namespace={namespace})")

        return sorted(chunks, key=lambda c: c.relevance_score, reverse=True)

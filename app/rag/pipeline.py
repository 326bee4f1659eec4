"""
Chat turn pipeline.

One HTTP turn runs in two halves:

start_turn()    identify -> validate -> chatbot -> rate limit -> conversation ->
                store user message -> retrieve -> system prompt -> open completion
                stream. Any failure here is a clean JSON error response.

stream_reply()  async generator the endpoint streams to the client. Forwards
                fragments as they arrive and accumulates them; on completion (or
                an in-stream error marker) runs the post-turn tasks. If the
                client disconnects, the upstream completion is closed and the
                post-turn tasks still run on the partial reply.
"""
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Set
import asyncio
import time

from fastapi.concurrency import run_in_threadpool

from app.analytics.pill_usage import pill_usages_for_turn
from app.analytics.weighting import calculate_chunk_weights
from app.config import Settings
from app.errors import (
    ChatServiceError, CompletionError, EmbeddingError, InternalFailure, NotFound,
    RateLimitExceeded, RetrievalError, ServiceUnavailable, ValidationFailed,
    VectorSearchConnectionError, is_connectivity_error,
)
from app.models import PostTurnReport, RateLimitStatus, RetrievedChunk, TurnRequest
from app.rag.generation import build_system_prompt
from app.rag.post_turn import PostTurnOutbox, PostTurnTask
from app.retrieval.semantic_search import namespace_for_chatbot
from app.logging_config import get_logger

logger = get_logger(__name__)
metrics_logger = get_logger("metrics")

STREAM_ERROR_MESSAGE = "An error occurred while generating the response."


@dataclass
class PreparedTurn:
    """Everything stream_reply() needs once the completion stream is open."""
    conversation_id: str
    chatbot_id: str
    user_id: Optional[str]
    rate_limit: RateLimitStatus
    chunks: List[RetrievedChunk]
    context: Optional[Dict]
    source_ids: List[str]
    system_prompt: str
    stream: Optional[AsyncIterator[str]] = None
    request: Optional[TurnRequest] = None
    started_at: float = field(default_factory=time.time)

    def response_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.rate_limit.limit),
            "X-RateLimit-Remaining": str(self.rate_limit.remaining_after_turn()),
            "X-RateLimit-Reset": str(self.rate_limit.reset_at),
            "X-Conversation-Id": self.conversation_id,
            "Cache-Control": "no-cache",
        }


def validate_turn_request(request: TurnRequest) -> None:
    """Shape checks, before any read or write."""
    if not request.messages:
        raise ValidationFailed("Messages array is required and cannot be empty")
    if not request.chatbot_id:
        raise ValidationFailed("chatbotId is required")
    if request.last_message.role != 'user':
        raise ValidationFailed("Last message must be from user")


def distinct_source_ids(chunks: List[RetrievedChunk]) -> List[str]:
    return list(dict.fromkeys(chunk.source_id for chunk in chunks))


class ChatTurnPipeline:
    """
    Orchestrates one chat turn. Built once at startup with its collaborators:

        store         ConversationStore (blocking, run in the thread pool)
        retrieval     RetrievalClient
        completion    CompletionClient
        rate_limiter  RateLimiter
        outbox        PostTurnOutbox
    """

    def __init__(self, store, retrieval, completion, rate_limiter, outbox: PostTurnOutbox, settings: Settings):
        self.store = store
        self.retrieval = retrieval
        self.completion = completion
        self.rate_limiter = rate_limiter
        self.outbox = outbox
        self.settings = settings
        # Post-turn work detached from disconnected requests
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # First half: everything before the first byte is sent
    # ------------------------------------------------------------------

    async def start_turn(self, request: TurnRequest) -> PreparedTurn:
        """
        Run steps up to opening the completion stream.

        Raises:
            ChatServiceError: terminal outcome, rendered as {"error": message}
        """
        # 1. Identify (unknown or missing subject -> anonymous)
        user_id = None
        if request.external_user_id:
            user_id = await run_in_threadpool(self.store.resolve_user_id, request.external_user_id)

        # 2. Validate
        validate_turn_request(request)

        # 3. Target chatbot
        chatbot = await run_in_threadpool(self.store.get_active_chatbot, request.chatbot_id)
        if chatbot is None:
            raise NotFound("Chatbot not found")

        # 4. Rate limit (identified users only)
        if user_id is not None:
            rate_limit = await run_in_threadpool(self.rate_limiter.check, user_id)
            if not rate_limit.allowed:
                logger.info(f"Rate limit exceeded for user {user_id}")
                raise RateLimitExceeded(limit=rate_limit.limit, remaining=0, reset_at=rate_limit.reset_at)
        else:
            rate_limit = self.rate_limiter.unenforced()

        # 5. Resolve or create conversation
        conversation = await run_in_threadpool(
            self.store.resolve_conversation, request.conversation_id, request.chatbot_id, user_id
        )
        conversation_id = conversation.id

        # 6. Store user message before anything can fail
        query = request.last_message.content
        try:
            await run_in_threadpool(self.store.add_message, conversation_id, 'user', query, user_id)
        except Exception as e:
            logger.error(f"Database error storing user message: {e}", exc_info=True)
            if is_connectivity_error(e):
                raise ServiceUnavailable("Database connection error. Please try again.") from e
            raise InternalFailure("An error occurred. Please try again.") from e

        turn = PreparedTurn(
            conversation_id=conversation_id,
            chatbot_id=request.chatbot_id,
            user_id=user_id,
            rate_limit=rate_limit,
            chunks=[],
            context=None,
            source_ids=[],
            system_prompt="",
            request=request,
        )

        # From here on the user message is stored: terminal failures still count it
        try:
            await self._prepare_generation(turn, query)
        except ChatServiceError:
            await self.finalize(turn, reply=None)
            raise
        except Exception as e:
            logger.error(f"Unexpected error preparing turn for conversation {conversation_id}: {e}", exc_info=True)
            await self.finalize(turn, reply=None)
            raise InternalFailure(self._unexpected_message(e)) from e

        return turn

    async def _prepare_generation(self, turn: PreparedTurn, query: str) -> None:
        # 7. Retrieve context
        retrieval_start = time.time()
        turn.chunks = await self._retrieve(query, turn.chatbot_id)
        retrieval_time = (time.time() - retrieval_start) * 1000
        logger.info(f"Retrieval time: {retrieval_time:.0f}ms ({len(turn.chunks)} chunks)")

        turn.source_ids = distinct_source_ids(turn.chunks)
        turn.context = await self._frozen_context(turn)

        # 8. System prompt
        turn.system_prompt = build_system_prompt(turn.chunks)

        # 9. Open the completion stream; failures before the first fragment end the turn here
        try:
            turn.stream = await self.completion.complete(turn.system_prompt, turn.request.messages)
        except CompletionError as e:
            if e.is_operator_facing:
                logger.critical(f"Completion provider rejected credentials: {e.detail}")
            else:
                logger.error(f"Completion request failed ({e.kind}, status={e.status_code}): {e.detail}")
            raise e.to_service_error() from e

    async def _retrieve(self, query: str, chatbot_id: str) -> List[RetrievedChunk]:
        try:
            chunks = await self.retrieval.retrieve(
                query, namespace_for_chatbot(chatbot_id), self.settings.retrieval_top_k
            )
        except VectorSearchConnectionError as e:
            logger.error(f"Vector search unavailable: {e}")
            raise ServiceUnavailable("Unable to retrieve content. Please try again in a moment.") from e
        except EmbeddingError as e:
            logger.error(f"Query embedding failed: {e}")
            raise ServiceUnavailable("Service temporarily unavailable. Please try again shortly.") from e
        except RetrievalError as e:
            logger.warning(f"Retrieval failed, continuing without context: {e}")
            return []

        if not chunks:
            logger.warning("No chunks retrieved, answering from general knowledge")
        return chunks

    async def _frozen_context(self, turn: PreparedTurn) -> Optional[Dict]:
        """Context payload stored on the assistant message. None when nothing was retrieved."""
        if not turn.chunks:
            return None

        try:
            titles = await run_in_threadpool(self.store.get_source_titles, turn.chatbot_id, turn.source_ids)
        except Exception as e:
            logger.error(f"Error fetching source titles: {e}")
            titles = {}

        weights = calculate_chunk_weights(turn.chunks)
        return {
            "chunks": [
                chunk.to_context(titles.get(chunk.source_id), weight)
                for chunk, weight in zip(turn.chunks, weights)
            ]
        }

    # ------------------------------------------------------------------
    # Second half: the streamed body
    # ------------------------------------------------------------------

    async def stream_reply(self, turn: PreparedTurn) -> AsyncIterator[str]:
        """
        Response body. Yields text fragments, possibly ending with an
        "\\n\\n[Error: ...]" marker, then runs the post-turn tasks.
        """
        parts: List[str] = []
        fragments = 0
        completed = False
        try:
            try:
                async with asyncio.timeout(self.settings.stream_timeout_seconds):
                    async for fragment in turn.stream:
                        parts.append(fragment)
                        fragments += 1
                        yield fragment
            except CompletionError as e:
                logger.error(f"Error during streaming ({e.kind}): {e.detail}")
                yield self._error_marker(self._stream_error_message(e))
            except TimeoutError:
                logger.error(f"Generation timeout after {self.settings.stream_timeout_seconds}s "
                             f"(conversation {turn.conversation_id})")
                yield self._error_marker(STREAM_ERROR_MESSAGE)
            except Exception as e:
                logger.error(f"Error during streaming: {e}", exc_info=True)
                yield self._error_marker(self._unexpected_message(e, prefix="Streaming error"))
            completed = True
        finally:
            reply = "".join(parts)
            if completed:
                await self._close_stream(turn)
                await self.finalize(turn, reply=reply)
                total_ms = (time.time() - turn.started_at) * 1000
                metrics_logger.info(
                    f"conversation_id={turn.conversation_id} "
                    f"chatbot_id={turn.chatbot_id} "
                    f"chunks_used={len(turn.chunks)} "
                    f"fragments={fragments} "
                    f"reply_chars={len(reply)} "
                    f"total_stream_time={total_ms:.0f}ms"
                )
            else:
                logger.info(f"Client disconnected from conversation {turn.conversation_id} "
                            f"after {fragments} fragments, cancelling generation")
                self._spawn(self._cleanup_after_disconnect(turn, reply))

    @staticmethod
    def _error_marker(message: str) -> str:
        return f"\n\n[Error: {message}]"

    def _stream_error_message(self, error: CompletionError) -> str:
        if error.kind == "other" and not self.settings.is_production and error.detail:
            return f"Streaming error: {error.detail}"
        return STREAM_ERROR_MESSAGE

    def _unexpected_message(self, error: Exception, prefix: str = "") -> Optional[str]:
        """Detailed message outside production, generic one in production."""
        if self.settings.is_production:
            return STREAM_ERROR_MESSAGE if prefix else None
        return f"{prefix}: {error}" if prefix else str(error)

    async def _close_stream(self, turn: PreparedTurn) -> None:
        if turn.stream is None:
            return
        try:
            await turn.stream.aclose()
        except Exception as e:
            logger.warning(f"Error closing completion stream: {e}")

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.error("No running event loop, post-turn tasks for a disconnected client were dropped")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cleanup_after_disconnect(self, turn: PreparedTurn, partial_reply: str) -> None:
        await self._close_stream(turn)
        # Keep whatever the user already saw; nothing to store if nothing arrived
        await self.finalize(turn, reply=partial_reply or None)

    async def drain(self) -> None:
        """Wait for detached post-turn work (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Post-turn tasks
    # ------------------------------------------------------------------

    async def finalize(self, turn: PreparedTurn, reply: Optional[str]) -> PostTurnReport:
        """
        Best-effort writes after the turn. reply None means no assistant message
        is stored (the turn ended before any text was produced).
        """
        report = PostTurnReport()

        assistant_saved = False
        if reply is not None:
            assistant_saved = await self.outbox.run_task(PostTurnTask(
                "assistant_message",
                self.store.add_message,
                (turn.conversation_id, 'assistant', reply),
                {"user_id": turn.user_id, "context": turn.context, "source_ids": turn.source_ids},
            ), report)

        tasks = [PostTurnTask(
            "conversation_count",
            self.store.increment_message_count,
            (turn.conversation_id, 2 if assistant_saved else 1),
        )]

        # Usage counters and pill logging only for turns that produced an answer
        if reply is not None:
            for chunk in turn.chunks:
                tasks.append(PostTurnTask(
                    f"chunk_usage:{chunk.chunk_id}",
                    self.store.increment_chunk_usage,
                    (chunk.chunk_id, chunk.source_id, turn.chatbot_id),
                ))

            pill_metadata = turn.request.pill_metadata if turn.request else None
            chunk_ids = [chunk.chunk_id for chunk in turn.chunks]
            for pill_id, paired_with in pill_usages_for_turn(pill_metadata):
                tasks.append(PostTurnTask(f"pill_usage:{pill_id}", self.store.log_pill_usage, kwargs={
                    "pill_id": pill_id,
                    "session_id": turn.conversation_id,
                    "chatbot_id": turn.chatbot_id,
                    "prefill_text": pill_metadata.prefill_text,
                    "sent_text": pill_metadata.sent_text,
                    "user_id": turn.user_id,
                    "source_chunk_ids": chunk_ids,
                    "was_modified": pill_metadata.was_modified,
                    "paired_with_pill_id": paired_with,
                }))

        await self.outbox.run(tasks, report)

        if report.failed:
            logger.warning(f"Post-turn tasks failed for conversation {turn.conversation_id}: {report.failed}")
        return report

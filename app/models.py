"""
Core data models for the chatbot RAG service.

These models represent the data passed between retrieval, generation,
the chat turn pipeline and the analytics job. Persistent entities live in
app/db/models.py.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional


@dataclass
class RetrievedChunk:
    """
    A single passage returned by the Retrieval Client.

    Ephemeral: once an assistant message is stored, the chunks used for it are
    frozen into that message's context payload (see to_context).
    """
    chunk_id: str
    source_id: str
    text: str
    relevance_score: float
    page: Optional[int] = None
    section: Optional[str] = None

    def location_label(self) -> str:
        """'Page 3, Introduction' style label, empty when neither is known."""
        page_info = f"Page {self.page}" if self.page else ""
        section_info = f", {self.section}" if self.section else ""
        return (page_info + section_info).lstrip(", ")

    def to_context(self, source_title: Optional[str] = None, position_weight: Optional[float] = None) -> Dict:
        """Frozen context entry stored on the assistant message (camelCase keys, as the UI reads them)."""
        return {
            "chunkId": self.chunk_id,
            "sourceId": self.source_id,
            "sourceTitle": source_title,
            "text": self.text,
            "page": self.page,
            "section": self.section,
            "relevanceScore": self.relevance_score,
            "positionWeight": position_weight,
        }


@dataclass
class ChatMessage:
    """One entry of the conversation history sent by the client."""
    role: str  # "user" | "assistant"
    content: str

    def to_dict(self) -> Dict:
        return {"role": self.role, "content": self.content}


@dataclass
class PillMetadata:
    """Which pill (feedback / expansion / suggested question) produced this turn's text."""
    feedback_pill_id: Optional[str] = None
    expansion_pill_id: Optional[str] = None
    suggested_pill_id: Optional[str] = None
    prefill_text: Optional[str] = None
    sent_text: Optional[str] = None
    was_modified: bool = False

    @property
    def used_any_pill(self) -> bool:
        return bool(self.feedback_pill_id or self.expansion_pill_id or self.suggested_pill_id)


@dataclass
class TurnRequest:
    """Validated input for one chat turn."""
    messages: List[ChatMessage]
    chatbot_id: str
    conversation_id: Optional[str] = None
    pill_metadata: Optional[PillMetadata] = None
    external_user_id: Optional[str] = None  # opaque subject id from the identity provider

    @property
    def last_message(self) -> ChatMessage:
        return self.messages[-1]


@dataclass
class RateLimitStatus:
    """
    Outcome of a rate limit check.

    enforced is False for anonymous users and when the check failed open;
    in both cases remaining equals the configured limit.
    """
    allowed: bool
    remaining: int
    limit: int
    reset_at: int  # unix seconds
    enforced: bool = True

    def remaining_after_turn(self) -> int:
        if not self.enforced:
            return self.limit
        return max(0, self.remaining - 1)


@dataclass
class AggregationSummary:
    """Result of one chunk performance aggregation run."""
    events: int = 0
    pill_usages: int = 0
    chunks_created: int = 0
    chunks_updated: int = 0
    chunks_skipped: int = 0
    duration_ms: int = 0
    window_start: Optional[str] = None
    window_end: Optional[str] = None

    def to_response(self) -> Dict:
        return {
            "success": True,
            "processed": {
                "events": self.events,
                "pillUsages": self.pill_usages,
                "chunksCreated": self.chunks_created,
                "chunksUpdated": self.chunks_updated,
            },
            "duration": f"{self.duration_ms}ms",
        }

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class CounterIncrements:
    """Per-key increments applied to one Chunk_Performance row."""
    times_used: int = 0
    helpful: int = 0
    not_helpful: int = 0
    needs_examples: int = 0
    needs_steps: int = 0
    needs_scripts: int = 0
    needs_case_study: int = 0
    copy_to_use_now: int = 0

    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def add(self, counter: str, amount: int = 1) -> None:
        setattr(self, counter, getattr(self, counter) + amount)


@dataclass
class ChunkKey:
    """Chunk_Performance identity: (chunk, chatbot, calendar month, calendar year)."""
    chunk_id: str
    chatbot_id: str
    month: int
    year: int


@dataclass
class PostTurnReport:
    """Which post-turn tasks succeeded / failed (for logging and tests)."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

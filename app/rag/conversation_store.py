"""
Conversation Store for the chatbot RAG service.

Durable conversations and messages in PostgreSQL, plus the small set of other
reads and writes a chat turn needs (chatbot lookup, identity mapping, rate limit
counts, usage counters, pill logging). Every method opens its own short
transaction, so a failure in one step never rolls back an earlier one; in
particular the inbound user message is committed before retrieval starts.

Methods are blocking; async callers run them in the thread pool.
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from app.analytics.chunk_performance import UpsertResult, chunk_key_for, increment_chunk_counters
from app.analytics.pill_usage import log_pill_usage
from app.db.database import session_scope
from app.db.models import Chatbot, Conversation, Message, Source, User, utcnow
from app.errors import Forbidden, NotFound
from app.models import CounterIncrements
from app.logging_config import get_logger

logger = get_logger(__name__)


class ConversationStore:
    """
    Typed access to the relational store.

    Handles:
    - Identity mapping (external subject id -> internal user id)
    - Conversation resolution: existence, chatbot match, ownership, anonymous claim
    - Message persistence and the conversation message counter
    - Per-chunk usage counters and pill usage logging
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_user_id(self, external_id: Optional[str]) -> Optional[str]:
        """Internal user id for an external subject id. Unknown subjects are anonymous."""
        if not external_id:
            return None
        with self.session_factory() as session:
            return session.execute(
                select(User.id).where(User.external_id == external_id)
            ).scalar_one_or_none()

    def get_active_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        with self.session_factory() as session:
            chatbot = session.get(Chatbot, chatbot_id)
            if chatbot is None or not chatbot.is_active:
                return None
            return chatbot

    def count_user_messages_since(self, user_id: str, since: datetime) -> int:
        """User-authored messages in conversations owned by user_id created at or after since."""
        with self.session_factory() as session:
            return session.execute(
                select(func.count(Message.id))
                .join(Conversation, Message.conversation_id == Conversation.id)
                .where(
                    Conversation.user_id == user_id,
                    Message.role == 'user',
                    Message.created_at >= since,
                )
            ).scalar_one()

    def get_source_titles(self, chatbot_id: str, source_ids: List[str]) -> Dict[str, str]:
        """source_id -> title for sources belonging to chatbot_id."""
        if not source_ids:
            return {}
        with self.session_factory() as session:
            rows = session.execute(
                select(Source.id, Source.title)
                .where(Source.id.in_(source_ids), Source.chatbot_id == chatbot_id)
            ).all()
        return {row.id: row.title for row in rows}

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.session_factory() as session:
            return session.get(Conversation, conversation_id)

    def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages in creation order."""
        with self.session_factory() as session:
            return list(session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.role.desc())
            ).scalars())

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def resolve_conversation(self, conversation_id: Optional[str], chatbot_id: str, user_id: Optional[str]) -> Conversation:
        """
        Existing conversation for this turn, or a new one when no id is given.

        An anonymous conversation is claimed by an identified user on first use.
        Ownership never moves from one user to another, or from a user back to
        anonymous.

        Raises:
            NotFound: conversation_id does not exist
            Forbidden: conversation belongs to another chatbot or another user
        """
        if not conversation_id:
            return self.create_conversation(chatbot_id, user_id)

        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.chatbot_id != chatbot_id:
            raise Forbidden("Conversation does not belong to this chatbot")
        if conversation.user_id is not None and conversation.user_id != user_id:
            raise Forbidden("Unauthorized access to conversation")

        if conversation.user_id is None and user_id is not None:
            try:
                if self.claim_conversation(conversation.id, user_id):
                    conversation.user_id = user_id
            except Exception as e:
                logger.warning(f"Failed to claim conversation {conversation.id} for user {user_id}: {e}")

        return conversation

    def create_conversation(self, chatbot_id: str, user_id: Optional[str]) -> Conversation:
        with session_scope(self.session_factory) as session:
            conversation = Conversation(
                chatbot_id=chatbot_id,
                user_id=user_id,
                status='active',
                message_count=0,
            )
            session.add(conversation)
        logger.info(f"Created conversation {conversation.id} (chatbot={chatbot_id}, anonymous={user_id is None})")
        return conversation

    def claim_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Set the owner of an anonymous conversation. False if it already had one."""
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id, Conversation.user_id.is_(None))
                .values(user_id=user_id, updated_at=utcnow())
            )
            claimed = result.rowcount == 1
        if claimed:
            logger.info(f"Conversation {conversation_id} claimed by user {user_id}")
        return claimed

    def increment_message_count(self, conversation_id: str, amount: int) -> None:
        """Atomic message_count += amount, and bump updated_at."""
        with session_scope(self.session_factory) as session:
            session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(message_count=Conversation.message_count + amount, updated_at=utcnow())
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        context: Optional[Dict] = None,
        source_ids: Optional[List[str]] = None,
    ) -> Message:
        """Persist one message. Only assistant messages carry a context payload."""
        if role not in ('user', 'assistant'):
            raise ValueError(f"Invalid message role: {role}")
        if role != 'assistant':
            context = None

        with session_scope(self.session_factory) as session:
            message = Message(
                conversation_id=conversation_id,
                user_id=user_id,
                role=role,
                content=content,
                context=context,
                source_ids=list(source_ids or []),
            )
            session.add(message)
        return message

    # ------------------------------------------------------------------
    # Analytics side effects
    # ------------------------------------------------------------------

    def increment_chunk_usage(self, chunk_id: str, source_id: str, chatbot_id: str) -> UpsertResult:
        """times_used += 1 for the current month's row, in its own transaction."""
        with session_scope(self.session_factory) as session:
            return increment_chunk_counters(
                session,
                chunk_key_for(chunk_id, chatbot_id),
                source_id,
                CounterIncrements(times_used=1),
            )

    def log_pill_usage(self, **kwargs) -> str:
        """Append a pill usage row; returns its id. See app.analytics.pill_usage.log_pill_usage."""
        with session_scope(self.session_factory) as session:
            usage = log_pill_usage(session, **kwargs)
            return usage.id

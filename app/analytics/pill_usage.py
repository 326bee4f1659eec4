"""
Pill usage logging.

A pill is a quick action in the chat UI ("Helpful", "Give me an example", a
suggested question) that prefills the message box. When a message composed from
a pill is sent, one PillUsage row is appended against the chunks that grounded
the answer being reacted to. Rows are never updated; the aggregation job reads
them.
"""
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.db.models import Chatbot, Pill, PillUsage
from app.errors import NotFound
from app.models import PillMetadata
from app.logging_config import get_logger

logger = get_logger(__name__)


def log_pill_usage(
    session: Session,
    pill_id: str,
    session_id: str,
    chatbot_id: str,
    prefill_text: str,
    sent_text: str,
    user_id: Optional[str] = None,
    source_chunk_ids: Optional[List[str]] = None,
    was_modified: bool = False,
    paired_with_pill_id: Optional[str] = None,
) -> PillUsage:
    """
    Append a PillUsage row. Caller owns the transaction.

    Raises:
        NotFound: pill or chatbot does not exist
    """
    if session.get(Pill, pill_id) is None:
        raise NotFound("Pill not found")
    if session.get(Chatbot, chatbot_id) is None:
        raise NotFound("Chatbot not found")

    usage = PillUsage(
        pill_id=pill_id,
        session_id=session_id,
        user_id=user_id,
        chatbot_id=chatbot_id,
        source_chunk_ids=list(source_chunk_ids or []),
        prefill_text=prefill_text,
        sent_text=sent_text,
        was_modified=was_modified,
        paired_with_pill_id=paired_with_pill_id,
    )
    session.add(usage)
    session.flush()

    logger.debug(f"Logged pill usage: pill={pill_id} chatbot={chatbot_id} chunks={len(usage.source_chunk_ids)}")
    return usage


def pill_usages_for_turn(pill_metadata: Optional[PillMetadata]) -> List[Tuple[str, Optional[str]]]:
    """
    Which (pill_id, paired_with_pill_id) usages a chat turn should log.

    - feedback pill: logged, paired with the expansion pill when both were used
    - expansion pill: logged on its own only when no feedback pill was used
    - suggested pill: logged only when neither feedback nor expansion was used
    Nothing is logged without both prefill and sent text.
    """
    if pill_metadata is None or not pill_metadata.used_any_pill:
        return []
    if not pill_metadata.prefill_text or not pill_metadata.sent_text:
        return []

    usages = []
    if pill_metadata.feedback_pill_id:
        usages.append((pill_metadata.feedback_pill_id, pill_metadata.expansion_pill_id))
    elif pill_metadata.expansion_pill_id:
        usages.append((pill_metadata.expansion_pill_id, None))
    elif pill_metadata.suggested_pill_id:
        usages.append((pill_metadata.suggested_pill_id, None))
    return usages

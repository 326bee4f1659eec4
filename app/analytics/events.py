"""
Interaction event log (copy, bookmark, ...). Append-only; the aggregation job
counts the "copy to use now" events.
"""
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.db.models import Event
from app.errors import ValidationFailed

EVENT_TYPES = ('copy', 'bookmark', 'conversation_pattern', 'expansion_followup', 'gap_submission')


def log_event(
    session: Session,
    event_type: str,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    chunk_ids: Optional[List[str]] = None,
    metadata: Optional[Dict] = None,
) -> Event:
    """
    Append an Event row. messageId is lifted out of metadata into its own column;
    metadata left empty is stored as NULL.
    """
    if event_type not in EVENT_TYPES:
        raise ValidationFailed(f"eventType must be one of: {', '.join(EVENT_TYPES)}")

    metadata = dict(metadata or {})
    message_id = metadata.pop("messageId", None)

    event = Event(
        session_id=session_id,
        user_id=user_id,
        message_id=message_id,
        event_type=event_type,
        chunk_ids=list(chunk_ids or []),
        event_metadata=metadata or None,
    )
    session.add(event)
    session.flush()
    return event

"""
Per-user sliding-window rate limiting.

The count lives in the shared database (user-authored messages in the trailing
window), so every API instance sees the same quota. Anonymous users are never
checked. A failing check lets the request through.
"""
from datetime import timedelta

from app.db.models import utcnow
from app.models import RateLimitStatus
from app.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:

    def __init__(self, store, max_messages: int = 10, window_seconds: int = 60):
        self.store = store
        self.max_messages = max_messages
        self.window_seconds = window_seconds

    def _reset_at(self, now) -> int:
        return int((now + timedelta(seconds=self.window_seconds)).timestamp())

    def unenforced(self) -> RateLimitStatus:
        """Status reported for anonymous turns and failed checks: full quota remaining."""
        return RateLimitStatus(
            allowed=True,
            remaining=self.max_messages,
            limit=self.max_messages,
            reset_at=self._reset_at(utcnow()),
            enforced=False,
        )

    def check(self, user_id: str) -> RateLimitStatus:
        """Quota status for an identified user. Never raises."""
        now = utcnow()
        try:
            since = now - timedelta(seconds=self.window_seconds)
            recent = self.store.count_user_messages_since(user_id, since)
        except Exception as e:
            logger.error(f"Rate limit check failed for user {user_id}, allowing request: {e}", exc_info=True)
            return self.unenforced()

        return RateLimitStatus(
            allowed=recent < self.max_messages,
            remaining=max(0, self.max_messages - recent),
            limit=self.max_messages,
            reset_at=self._reset_at(now),
        )

"""
Post-turn side effects.

Once the user has their answer, the remaining writes (assistant message,
conversation counter, chunk usage counters, pill usage) are best-effort. Each
is a named PostTurnTask; PostTurnOutbox runs them one by one, retries each a
bounded number of times and records the outcome. Nothing here raises to the
caller.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
import asyncio

from fastapi.concurrency import run_in_threadpool

from app.models import PostTurnReport
from app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class PostTurnTask:
    """A blocking store call to run after the turn, e.g. ("conversation_count", store.increment_message_count, (id, 2))."""
    name: str
    fn: Callable[..., Any]
    args: Tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class PostTurnOutbox:

    def __init__(self, max_attempts: int = 2, retry_delay_seconds: float = 0.05):
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds

    async def run_task(self, task: PostTurnTask, report: PostTurnReport) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await run_in_threadpool(task.fn, *task.args, **task.kwargs)
                report.succeeded.append(task.name)
                return True
            except Exception as e:
                if attempt < self.max_attempts:
                    logger.warning(f"Post-turn task {task.name} failed (attempt {attempt}/{self.max_attempts}), retrying: {e}")
                    await asyncio.sleep(self.retry_delay_seconds)
                else:
                    logger.error(f"Post-turn task {task.name} failed after {attempt} attempts: {e}", exc_info=True)

        report.failed.append(task.name)
        return False

    async def run(self, tasks: Iterable[PostTurnTask], report: Optional[PostTurnReport] = None) -> PostTurnReport:
        """Run tasks in order. Each one runs even if an earlier one failed."""
        report = report or PostTurnReport()
        for task in tasks:
            await self.run_task(task, report)
        return report

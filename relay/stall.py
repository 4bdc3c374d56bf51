"""Stall detection and bounded re-dispatch for delegated takeover goals."""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from .agent_api import AgentAPIError
from .control import ControlState, ControlStore
from .state import PendingStore

logger = logging.getLogger(__name__)

DEFAULT_STALL_THRESHOLD = 90.0
DEFAULT_RETRY_LIMIT = 1
STALL_REASON = "stall timeout"


class StallAction(str, Enum):
    NONE = "none"
    RETRIED = "retried"
    BLOCKED = "blocked"


class StallDetector:
    """Checks, once per maintenance tick, whether the takeover stopped progressing.

    ``dispatch`` re-sends the stored goal to the agent; ``notify`` tells the
    human what happened.
    """

    def __init__(
        self,
        control: ControlStore,
        pending: PendingStore,
        dispatch: Callable[[ControlState], Awaitable[str]],
        notify: Callable[[str], Awaitable[None]],
        *,
        threshold: float = DEFAULT_STALL_THRESHOLD,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.control = control
        self.pending = pending
        self._dispatch = dispatch
        self._notify = notify
        self.threshold = threshold
        self.retry_limit = retry_limit
        self._clock = clock

    async def check(self) -> StallAction:
        state = self.control.load()
        if not state.takeover_active or not state.takeover_goal or not state.last_progress_at:
            return StallAction.NONE
        if state.blocked:
            return StallAction.NONE

        now = self._clock()
        # A human decision is outstanding, not the agent
        if state.active_session_id and self.pending.has_outstanding(state.active_session_id, now):
            return StallAction.NONE

        elapsed = now - state.last_progress_at
        if elapsed < self.threshold:
            return StallAction.NONE

        if state.retry_count >= self.retry_limit:
            await asyncio.to_thread(self.control.mark_blocked, STALL_REASON)
            await self._notify(
                f"⛔ Takeover blocked: no progress for {int(elapsed)}s after "
                f"{state.retry_count} automatic retries. Manual intervention required."
            )
            return StallAction.BLOCKED

        attempt = state.retry_count + 1
        logger.warning(f"Takeover stalled for {int(elapsed)}s, re-dispatching (attempt {attempt}/{self.retry_limit})")
        # Stamp progress before dispatching; the retry counts as progress
        await asyncio.to_thread(self.control.update, retry_count=attempt, last_progress_at=now)
        try:
            session_id = await self._dispatch(state)
        except AgentAPIError as e:
            logger.error(f"Re-dispatch failed: {e}")
            await self._notify(f"🔁 Automatic retry {attempt}/{self.retry_limit} failed: {e}")
            return StallAction.RETRIED

        if session_id and session_id != state.active_session_id:
            await asyncio.to_thread(self.control.update, active_session_id=session_id)
        await self._notify(
            f"🔁 No progress for {int(elapsed)}s, goal re-dispatched automatically "
            f"(retry {attempt}/{self.retry_limit})."
        )
        return StallAction.RETRIED

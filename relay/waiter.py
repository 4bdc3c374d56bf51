"""Blocking wait for a question answer, with phase tracing.

The waiter runs inside the agent's process, whose surrounding control flow
we do not see. Every phase is appended to a trace so that an aborted wait
can be told apart from one that finished on its own.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

from .lifecycle import PollDecision, WaitResult, classify
from .state import PendingStore
from .telegram_bot import ChatTransport

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_POLL_TIMEOUT = 300.0


class Phase(str, Enum):
    HOOK_ENTER = "hook_enter"
    PARAMS_EXTRACTED = "params_extracted"
    DELIVERY_START = "delivery_start"
    DELIVERY_DONE = "delivery_done"
    POLL_START = "poll_start"
    POLL_ITERATION = "poll_iteration"
    POLL_EXIT = "poll_exit"
    CATCH_ERROR = "catch_error"
    FINALLY_EXIT = "finally_exit"
    IDLE_CHECK = "idle_check"


class Diagnosis(str, Enum):
    DELIVERY_FAILED = "delivery_failed"
    POLL_NEVER_ITERATED = "poll_never_iterated"
    EXTERNAL_ABORT = "external_abort"
    CODE_ERROR = "code_error"
    NORMAL = "normal"


def diagnose_abnormal_exit(phases: Iterable[str] | None) -> Diagnosis:
    """Classify a recorded phase sequence; rules are checked in order."""
    if not isinstance(phases, (list, tuple, set, frozenset)):
        return Diagnosis.NORMAL
    seen = {p.value if isinstance(p, Phase) else p for p in phases}

    def has(phase: Phase) -> bool:
        return phase.value in seen

    if has(Phase.DELIVERY_DONE) and not has(Phase.POLL_START) and has(Phase.FINALLY_EXIT):
        return Diagnosis.DELIVERY_FAILED
    if has(Phase.POLL_START) and not has(Phase.POLL_ITERATION) and has(Phase.FINALLY_EXIT):
        return Diagnosis.POLL_NEVER_ITERATED
    if has(Phase.FINALLY_EXIT) and not has(Phase.CATCH_ERROR):
        return Diagnosis.EXTERNAL_ABORT
    if has(Phase.CATCH_ERROR):
        return Diagnosis.CODE_ERROR
    return Diagnosis.NORMAL


def build_trace_entry(phase: str, elapsed_ms: int, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """One trace record; ``ts``, ``phase`` and ``elapsed_ms`` win over context keys."""
    now = datetime.now(timezone.utc)
    entry = dict(context or {})
    entry["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    entry["phase"] = phase
    entry["elapsed_ms"] = elapsed_ms
    return entry


class TraceSink(Protocol):
    def write(self, entry: dict[str, Any]) -> None: ...


class MemoryTraceSink:
    def __init__(self):
        self.entries: list[dict[str, Any]] = []

    def write(self, entry: dict[str, Any]) -> None:
        self.entries.append(entry)


class LoggingTraceSink:
    def write(self, entry: dict[str, Any]) -> None:
        logger.debug(f"trace {entry['phase']} +{entry['elapsed_ms']}ms {entry}")


class JsonlTraceSink:
    """Appends one JSON line per entry; write failures are logged and dropped."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def write(self, entry: dict[str, Any]) -> None:
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write trace to {self.path}: {e}")


class Trace:
    """Ordered phases of one hook invocation, timed from its creation."""

    def __init__(self, sink: TraceSink | None = None, *, clock: Callable[[], float] = time.monotonic):
        self.sink = sink or LoggingTraceSink()
        self._clock = clock
        self._start = clock()
        self.phases: list[str] = []

    def record(self, phase: Phase, **context: Any) -> None:
        self.phases.append(phase.value)
        elapsed_ms = int((self._clock() - self._start) * 1000)
        self.sink.write(build_trace_entry(phase.value, elapsed_ms, context))

    def diagnose(self) -> Diagnosis:
        return diagnose_abnormal_exit(self.phases)


class BlockingWaiter:
    """Polls the pending store until a question is answered, times out or vanishes."""

    def __init__(
        self,
        pending: PendingStore,
        chat: ChatTransport,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pending = pending
        self.chat = chat
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._clock = clock
        self._sleep = sleep

    async def wait(self, request_id: str, trace: Trace | None = None) -> WaitResult:
        trace = trace or Trace()
        trace.record(Phase.POLL_START, request_id=request_id, timeout=self.poll_timeout)
        iteration = 0

        while True:
            await self._sleep(self.poll_interval)
            iteration += 1
            record = self.pending.get(request_id)
            decision = classify(record, self._clock(), self.poll_timeout)
            trace.record(Phase.POLL_ITERATION, iteration=iteration, decision=decision.value)

            if decision == PollDecision.CONTINUE:
                continue

            trace.record(Phase.POLL_EXIT, reason=decision.value, iterations=iteration)
            if decision == PollDecision.INVALIDATED:
                logger.info(f"Question {request_id} vanished from the store")
                return WaitResult.invalidated()

            if record.chat_id and record.message_id:
                await self.chat.edit_message(record.chat_id, record.message_id, clear_buttons=True)

            if decision == PollDecision.TIMED_OUT:
                logger.warning(f"Question {request_id} timed out after {self.poll_timeout:.0f}s")
                return WaitResult.timed_out()

            if await asyncio.to_thread(self.pending.remove, request_id) is None:
                logger.info(f"Question {request_id} was handed off before it could be consumed")
                return WaitResult.invalidated()
            logger.info(f"Question {request_id} answered")
            return WaitResult.answered(record.answer)

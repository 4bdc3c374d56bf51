"""Request lifecycle states and the poll decision used by the waiter."""

from dataclasses import dataclass
from enum import Enum

from .state import PendingRequest, RequestKind


class RequestState(str, Enum):
    OPEN = "open"
    ANSWERED_BY_OPTION = "answered_by_option"
    ANSWERED_BY_FREE_TEXT = "answered_by_free_text"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


class PollDecision(str, Enum):
    INVALIDATED = "invalidated"
    ANSWERED = "answered"
    TIMED_OUT = "timed_out"
    CONTINUE = "continue"


def classify(record: PendingRequest | None, now: float, poll_timeout: float) -> PollDecision:
    """Decide what a waiter polling ``record`` should do next.

    The checks run in a fixed order: a vanished record is invalidated even if
    a stale copy elsewhere had an answer, and an existing answer wins over an
    elapsed timeout.
    """
    if record is None:
        return PollDecision.INVALIDATED
    if record.answered:
        return PollDecision.ANSWERED
    if now - record.created_at >= poll_timeout:
        return PollDecision.TIMED_OUT
    return PollDecision.CONTINUE


def request_state(
    record: PendingRequest | None, now: float, open_ttl: float, request_ttl: float
) -> RequestState:
    """Observed state of a stored record, as shown in status listings."""
    if record is None:
        return RequestState.INVALIDATED
    open_question = record.kind == RequestKind.QUESTION and not record.answered
    if record.age(now) > (open_ttl if open_question else request_ttl):
        return RequestState.EXPIRED
    if record.answered:
        if record.answer not in {o.value for o in record.options}:
            return RequestState.ANSWERED_BY_FREE_TEXT
        return RequestState.ANSWERED_BY_OPTION
    return RequestState.OPEN


@dataclass(frozen=True)
class WaitResult:
    """Outcome of a blocking wait: answered with text, timed out, or invalidated."""

    outcome: PollDecision
    answer: str | None = None

    @classmethod
    def answered(cls, text: str) -> "WaitResult":
        return cls(PollDecision.ANSWERED, text)

    @classmethod
    def timed_out(cls) -> "WaitResult":
        return cls(PollDecision.TIMED_OUT)

    @classmethod
    def invalidated(cls) -> "WaitResult":
        return cls(PollDecision.INVALIDATED)

"""Tests for the blocking waiter, phase tracing and exit diagnosis."""

from __future__ import annotations

import itertools
import json
import re

import pytest

from relay.lifecycle import PollDecision
from relay.state import PendingRequest, QuestionOption, RequestKind
from relay.waiter import (
    BlockingWaiter,
    Diagnosis,
    JsonlTraceSink,
    MemoryTraceSink,
    Phase,
    Trace,
    build_trace_entry,
    diagnose_abnormal_exit,
)


class SteppingSleep:
    """Advances the fake clock instead of sleeping and runs a hook per tick."""

    def __init__(self, clock, on_tick=None):
        self.clock = clock
        self.on_tick = on_tick
        self.ticks = 0

    async def __call__(self, seconds):
        self.ticks += 1
        self.clock.advance(seconds)
        if self.on_tick:
            self.on_tick(self.ticks)


def _store_question(pending, clock, **kw) -> PendingRequest:
    request = PendingRequest(
        id="q1",
        kind=RequestKind.QUESTION,
        session_id="ses_1",
        created_at=clock.now,
        question="Which target?",
        options=[QuestionOption("Web App", "Web App"), QuestionOption("CLI", "CLI")],
        chat_id=-5000,
        message_id=55,
        **kw,
    )
    pending.add(request)
    return request


def _waiter(pending, chat, clock, sleep) -> BlockingWaiter:
    return BlockingWaiter(pending, chat, poll_interval=1.0, poll_timeout=300.0, clock=clock, sleep=sleep)


@pytest.mark.anyio
async def test_answered_question_is_consumed(pending, chat, clock) -> None:
    _store_question(pending, clock)
    sleep = SteppingSleep(clock, lambda tick: tick == 3 and pending.answer("q1", "CLI"))
    sink = MemoryTraceSink()
    trace = Trace(sink, clock=clock)

    result = await _waiter(pending, chat, clock, sleep).wait("q1", trace)

    assert result.outcome == PollDecision.ANSWERED
    assert result.answer == "CLI"
    assert pending.get("q1") is None
    assert chat.edits == [{"chat_id": -5000, "message_id": 55, "text": None, "clear_buttons": True}]
    assert trace.phases == ["poll_start"] + ["poll_iteration"] * 3 + ["poll_exit"]
    assert sink.entries[-1]["reason"] == "answered"
    assert trace.diagnose() == Diagnosis.NORMAL


@pytest.mark.anyio
async def test_empty_answer_still_counts(pending, chat, clock) -> None:
    _store_question(pending, clock)
    pending.answer("q1", "")
    result = await _waiter(pending, chat, clock, SteppingSleep(clock)).wait("q1")
    assert result == result.answered("")


@pytest.mark.anyio
async def test_timeout_leaves_record_for_sweeper(pending, chat, clock) -> None:
    _store_question(pending, clock)
    sleep = SteppingSleep(clock)

    result = await _waiter(pending, chat, clock, sleep).wait("q1")

    assert result.outcome == PollDecision.TIMED_OUT
    assert result.answer is None
    assert sleep.ticks == 300
    assert pending.get("q1") is not None
    assert chat.edits[-1]["clear_buttons"] is True


@pytest.mark.anyio
async def test_vanished_record_is_invalidated(pending, chat, clock) -> None:
    _store_question(pending, clock)
    sleep = SteppingSleep(clock, lambda tick: tick == 2 and pending.remove("q1"))

    result = await _waiter(pending, chat, clock, sleep).wait("q1")

    assert result.outcome == PollDecision.INVALIDATED
    assert chat.edits == []


@pytest.mark.anyio
async def test_answer_wins_over_elapsed_timeout(pending, chat, clock) -> None:
    _store_question(pending, clock)
    clock.advance(1000)
    pending.answer("q1", "Web App")
    result = await _waiter(pending, chat, clock, SteppingSleep(clock)).wait("q1")
    assert result.answer == "Web App"


ALL_PHASES = [p.value for p in Phase]


def _expected_diagnosis(phases: set[str]) -> Diagnosis:
    if "delivery_done" in phases and "poll_start" not in phases and "finally_exit" in phases:
        return Diagnosis.DELIVERY_FAILED
    if "poll_start" in phases and "poll_iteration" not in phases and "finally_exit" in phases:
        return Diagnosis.POLL_NEVER_ITERATED
    if "finally_exit" in phases and "catch_error" not in phases:
        return Diagnosis.EXTERNAL_ABORT
    if "catch_error" in phases:
        return Diagnosis.CODE_ERROR
    return Diagnosis.NORMAL


RELEVANT = ["delivery_done", "poll_start", "poll_iteration", "catch_error", "finally_exit"]


@pytest.mark.parametrize(
    "subset",
    [set(c) for n in range(len(RELEVANT) + 1) for c in itertools.combinations(RELEVANT, n)],
)
def test_diagnosis_over_all_phase_subsets(subset) -> None:
    phases = ["hook_enter", "params_extracted"] + sorted(subset)
    assert diagnose_abnormal_exit(phases) == _expected_diagnosis(subset)
    assert diagnose_abnormal_exit(tuple(phases)) == _expected_diagnosis(subset)


@pytest.mark.parametrize(
    "phases, expected",
    [
        (["delivery_start", "delivery_done", "finally_exit"], Diagnosis.DELIVERY_FAILED),
        (["delivery_done", "poll_start", "finally_exit"], Diagnosis.POLL_NEVER_ITERATED),
        (["poll_start", "poll_iteration", "finally_exit"], Diagnosis.EXTERNAL_ABORT),
        (["poll_start", "catch_error", "finally_exit"], Diagnosis.POLL_NEVER_ITERATED),
        (["poll_iteration", "catch_error", "finally_exit"], Diagnosis.CODE_ERROR),
        (["poll_start", "poll_iteration", "poll_exit"], Diagnosis.NORMAL),
        ([Phase.CATCH_ERROR], Diagnosis.CODE_ERROR),
        ([], Diagnosis.NORMAL),
        (None, Diagnosis.NORMAL),
        ("finally_exit", Diagnosis.NORMAL),
        ({"phases": ["finally_exit"]}, Diagnosis.NORMAL),
    ],
)
def test_diagnosis_examples(phases, expected) -> None:
    assert diagnose_abnormal_exit(phases) == expected


def test_build_trace_entry_fixed_keys_win() -> None:
    entry = build_trace_entry("poll_exit", 1234, {"phase": "spoofed", "elapsed_ms": -1, "reason": "answered"})
    assert entry["phase"] == "poll_exit"
    assert entry["elapsed_ms"] == 1234
    assert entry["reason"] == "answered"
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", entry["ts"])


def test_trace_elapsed_uses_clock(clock) -> None:
    sink = MemoryTraceSink()
    trace = Trace(sink, clock=clock)
    clock.advance(1.5)
    trace.record(Phase.HOOK_ENTER, event="question.asked")
    assert sink.entries[0]["elapsed_ms"] == 1500
    assert sink.entries[0]["event"] == "question.asked"
    assert trace.phases == ["hook_enter"]


def test_jsonl_sink_appends_lines(tmp_path) -> None:
    path = tmp_path / "trace.jsonl"
    sink = JsonlTraceSink(path)
    sink.write(build_trace_entry("hook_enter", 0))
    sink.write(build_trace_entry("poll_start", 5, {"request_id": "q1"}))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["phase"] for line in lines] == ["hook_enter", "poll_start"]
    assert lines[1]["request_id"] == "q1"


def test_jsonl_sink_write_failure_is_not_raised(tmp_path) -> None:
    sink = JsonlTraceSink(tmp_path / "missing-dir" / "trace.jsonl")
    sink.write(build_trace_entry("hook_enter", 0))


def test_phase_names_are_stable() -> None:
    assert ALL_PHASES == [
        "hook_enter",
        "params_extracted",
        "delivery_start",
        "delivery_done",
        "poll_start",
        "poll_iteration",
        "poll_exit",
        "catch_error",
        "finally_exit",
        "idle_check",
    ]


@pytest.mark.anyio
async def test_stored_null_answer_ends_the_wait(pending, pending_file, chat, clock) -> None:
    _store_question(pending, clock)
    pending_file.transaction(lambda doc: ({"q1": {**doc["q1"], "answer": None}}, None))
    sleep = SteppingSleep(clock)

    result = await _waiter(pending, chat, clock, sleep).wait("q1")

    assert result == result.answered("")
    assert sleep.ticks == 1


@pytest.mark.anyio
async def test_answer_claimed_by_handoff_is_invalidated(pending, chat, clock, monkeypatch) -> None:
    _store_question(pending, clock)
    pending.answer("q1", "CLI")
    monkeypatch.setattr(pending, "remove", lambda request_id: None)

    result = await _waiter(pending, chat, clock, SteppingSleep(clock)).wait("q1")

    assert result.outcome == PollDecision.INVALIDATED

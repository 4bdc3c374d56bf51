"""Tests for stall detection and bounded re-dispatch."""

from __future__ import annotations

import pytest

from relay.stall import STALL_REASON, StallAction
from relay.state import PendingRequest, RequestKind


@pytest.mark.anyio
async def test_stall_retries_once_then_blocks(relay, control, agent_server, chat, clock) -> None:
    control.start_takeover("plan the release", session_id="ses_1")

    clock.advance(91)
    assert await relay.stall.check() == StallAction.RETRIED
    state = control.load()
    assert state.retry_count == 1
    assert state.last_progress_at == clock.now
    assert not state.blocked
    [prompt] = agent_server.calls("POST", "/session/ses_1/prompt_async")
    assert "RELAY_GOAL: plan the release" in prompt["parts"][0]["text"]
    assert prompt["agent"] == state.selected_agent
    assert "re-dispatched" in chat.notifications[-1]

    clock.advance(45)
    assert await relay.stall.check() == StallAction.NONE

    clock.advance(46)
    assert await relay.stall.check() == StallAction.BLOCKED
    state = control.load()
    assert state.blocked
    assert state.blocked_reason == STALL_REASON
    assert "Manual intervention required" in chat.notifications[-1]
    assert len(agent_server.calls("POST", "/session/ses_1/prompt_async")) == 1

    # Blocked takeovers are left alone until progress or a restart
    clock.advance(500)
    assert await relay.stall.check() == StallAction.NONE


@pytest.mark.anyio
async def test_progress_unblocks_and_keeps_retry_count(relay, control, clock) -> None:
    control.start_takeover("plan", session_id="ses_1")
    control.update(retry_count=1)
    clock.advance(91)
    assert await relay.stall.check() == StallAction.BLOCKED

    relay.note_progress("ses_1")
    state = control.load()
    assert not state.blocked
    clock.advance(91)
    assert await relay.stall.check() == StallAction.BLOCKED


@pytest.mark.anyio
async def test_inactive_takeover_never_stalls(relay, control, clock) -> None:
    clock.advance(10_000)
    assert await relay.stall.check() == StallAction.NONE

    control.start_takeover("plan")
    control.stop_takeover()
    clock.advance(10_000)
    assert await relay.stall.check() == StallAction.NONE


@pytest.mark.anyio
async def test_below_threshold_is_not_a_stall(relay, control, clock) -> None:
    control.start_takeover("plan", session_id="ses_1")
    clock.advance(89)
    assert await relay.stall.check() == StallAction.NONE


@pytest.mark.anyio
async def test_outstanding_permission_suppresses_stall(relay, control, pending, clock, agent_server) -> None:
    control.start_takeover("plan", session_id="ses_1")
    pending.add(
        PendingRequest(
            id="p1",
            kind=RequestKind.PERMISSION,
            session_id="ses_1",
            created_at=clock.now,
            permission_id="per_1",
            command="rm file.txt",
        )
    )
    clock.advance(200)
    assert await relay.stall.check() == StallAction.NONE
    assert agent_server.calls("POST", "/session/ses_1/prompt_async") == []


@pytest.mark.anyio
async def test_dispatch_failure_still_counts_retry(relay, control, agent_server, chat, clock) -> None:
    control.start_takeover("plan", session_id="ses_1")
    agent_server.fail_status = 500
    clock.advance(91)

    assert await relay.stall.check() == StallAction.RETRIED
    assert control.load().retry_count == 1
    assert "failed" in chat.notifications[-1]


@pytest.mark.anyio
async def test_retry_without_session_picks_latest(relay, control, agent_server, clock) -> None:
    agent_server.sessions = [
        {"id": "ses_old", "time": {"updated": 1}},
        {"id": "ses_new", "time": {"updated": 99}},
    ]
    control.start_takeover("plan")
    clock.advance(91)

    assert await relay.stall.check() == StallAction.RETRIED
    assert agent_server.calls("POST", "/session/ses_new/prompt_async")
    assert control.load().active_session_id == "ses_new"

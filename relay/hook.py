"""Agent-side handling of permission, question and session events."""

import logging
from typing import Any

from .agent_api import AgentAPIError
from .approvals import Relay
from .lifecycle import WaitResult
from .messages import MAX_NOTIFICATION, truncate
from .state import QuestionOption
from .waiter import BlockingWaiter, Diagnosis, Phase, Trace, TraceSink

logger = logging.getLogger(__name__)


def _session_id(event: dict[str, Any]) -> str:
    props = event.get("properties") or {}
    return (
        props.get("sessionID")
        or event.get("sessionID")
        or event.get("sessionId")
        or (event.get("session") or {}).get("id")
        or ""
    )


class AgentEventHandler:
    """Dispatches one agent event; only ``question.asked`` blocks."""

    def __init__(self, relay: Relay, waiter: BlockingWaiter, trace_sink: TraceSink | None = None):
        self.relay = relay
        self.waiter = waiter
        self.trace_sink = trace_sink

    async def handle(self, event: dict[str, Any]) -> WaitResult | None:
        event_type = event.get("type", "")
        if event_type == "permission.asked":
            await self.on_permission_asked(event)
        elif event_type == "question.asked":
            return await self.on_question_asked(event)
        elif event_type == "session.idle":
            await self.on_session_idle(event)
        elif event_type == "session.error":
            await self.on_session_error(event)
        else:
            logger.debug(f"Ignoring event {event_type!r}")
        return None

    async def on_permission_asked(self, event: dict[str, Any]) -> None:
        props = event.get("properties") or {}
        permission_id = props.get("id", "")
        session_id = props.get("sessionID", "")
        if not session_id or not permission_id:
            missing = [name for name, value in (("sessionId", session_id), ("permissionId", permission_id)) if not value]
            logger.warning(f"Skipping permission event without {', '.join(missing)}")
            return

        patterns = props.get("patterns") or []
        always = props.get("always") or []
        self.relay.note_progress(session_id)
        await self.relay.register_permission(
            session_id=session_id,
            permission_id=permission_id,
            permission_type=props.get("permission", "unknown"),
            command=" ; ".join(patterns) if patterns else "Unknown command",
            always_pattern=", ".join(always),
        )

    async def on_question_asked(self, event: dict[str, Any]) -> WaitResult:
        """Ask the human and block until answered, timed out or invalidated."""
        trace = Trace(self.trace_sink)
        trace.record(Phase.HOOK_ENTER, event=event.get("type"))
        completed = False
        try:
            props = event.get("properties") or {}
            questions = props.get("questions") or []
            first = questions[0] if questions else {}
            session_id = _session_id(event)
            call_id = (props.get("tool") or {}).get("callID") or props.get("callID", "")
            options = [
                QuestionOption(label=str(o.get("label", "")), value=str(o.get("label", "")))
                for o in first.get("options") or []
                if o.get("label")
            ]
            trace.record(
                Phase.PARAMS_EXTRACTED,
                session_id=session_id,
                call_id=call_id,
                options=len(options),
            )

            request = self.relay.create_question(
                session_id=session_id,
                call_id=call_id,
                question=first.get("question", ""),
                options=options,
                request_id=props.get("id"),
            )
            self.relay.note_progress(session_id)
            trace.record(Phase.DELIVERY_START, request_id=request.id)
            delivered = await self.relay.deliver_question(request)
            trace.record(Phase.DELIVERY_DONE, request_id=request.id, delivered=delivered)
            if not delivered:
                # Nobody can answer; let the agent fall back to its own prompt
                self.relay.pending.remove(request.id)
                completed = True
                return WaitResult.invalidated()

            result = await self.waiter.wait(request.id, trace)
            completed = True
            return result
        except Exception as e:
            trace.record(Phase.CATCH_ERROR, error=repr(e))
            raise
        finally:
            if not completed:
                trace.record(Phase.FINALLY_EXIT)
                diagnosis = trace.diagnose()
                if diagnosis != Diagnosis.NORMAL:
                    logger.warning(f"Question wait ended abnormally: {diagnosis.value} ({' > '.join(trace.phases)})")

    async def on_session_idle(self, event: dict[str, Any]) -> None:
        session_id = _session_id(event)
        if not session_id:
            logger.info("Skipping idle event without a session id")
            return

        question_id = self.relay.pending.active_question_id(session_id)
        if question_id is not None:
            # The session is idle because it is waiting on our question
            Trace(self.trace_sink).record(Phase.IDLE_CHECK, session_id=session_id, question_id=question_id)
            return

        self.relay.note_progress(session_id)
        try:
            content = await self.relay.agent.last_assistant_text(session_id)
        except AgentAPIError as e:
            logger.warning(f"Failed to fetch last message for {session_id}: {e}")
            content = ""
        if len(content.strip()) < 5:
            logger.info("Skipping empty idle event")
            return
        await self.relay.chat.notify(f"📋 Phase complete\n\n{truncate(content, MAX_NOTIFICATION)}")

    async def on_session_error(self, event: dict[str, Any]) -> None:
        props = event.get("properties") or event
        error = props.get("error") or props.get("message") or "Unknown error"
        if isinstance(error, dict):
            error = (error.get("data") or {}).get("message") or error.get("name") or str(error)
        await self.relay.chat.notify(f"❌ Agent error: {truncate(str(error), 500)}")

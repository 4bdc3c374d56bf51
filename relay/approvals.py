"""Moves permission and question requests between the agent, the store and the chat."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .agent_api import AgentAPIError, AgentClient
from .callbacks import action_to_response, permission_callback, question_custom_callback, question_option_callback
from .config import AutoApprovePolicy
from .control import ControlCommand, ControlState, ControlStore, build_task_envelope
from .lifecycle import request_state
from .messages import permission_text, question_text, truncate, with_result
from .risk import assess_risk, should_auto_approve
from .stall import DEFAULT_RETRY_LIMIT, DEFAULT_STALL_THRESHOLD, StallAction, StallDetector
from .state import PendingRequest, PendingStore, QuestionOption, RequestKind, new_request_id
from .telegram_bot import ChatTransport

logger = logging.getLogger(__name__)

PERMISSION_RESULTS = {
    "run": "✅ approved (once)",
    "always": "✅ approved (always)",
    "reject": "❌ rejected",
}
STALE_REQUEST = "⚠️ Request expired or already handled"
DEFAULT_ANSWER_HANDOFF_GRACE = 15.0


@dataclass
class MaintenanceResult:
    expired: list[PendingRequest] = field(default_factory=list)
    handed_off: list[PendingRequest] = field(default_factory=list)
    stall: StallAction = StallAction.NONE


class Relay:
    """Approval and question relay.

    Runs in both processes: the agent-side hook registers requests and the
    listener resolves them from button presses. All shared state lives in
    the stores, so every resolution re-reads the record first.
    """

    def __init__(
        self,
        pending: PendingStore,
        control: ControlStore,
        agent: AgentClient,
        chat: ChatTransport,
        *,
        auto_approve: AutoApprovePolicy = AutoApprovePolicy.OFF,
        auto_approve_mode: str = "delegate",
        directory: str | None = None,
        question_match_attempts: int = 3,
        stall_threshold: float = DEFAULT_STALL_THRESHOLD,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        answer_handoff_grace: float = DEFAULT_ANSWER_HANDOFF_GRACE,
        clock: Callable[[], float] = time.time,
    ):
        self.pending = pending
        self.control = control
        self.agent = agent
        self.chat = chat
        self.auto_approve = auto_approve
        self.auto_approve_mode = auto_approve_mode
        self.directory = directory
        self.question_match_attempts = question_match_attempts
        self.answer_handoff_grace = answer_handoff_grace
        self._clock = clock
        self.stall = StallDetector(
            control,
            pending,
            self.dispatch_goal,
            chat.notify,
            threshold=stall_threshold,
            retry_limit=retry_limit,
            clock=clock,
        )

    # --- Permissions ---

    async def register_permission(
        self,
        *,
        session_id: str,
        permission_id: str,
        command: str,
        permission_type: str = "",
        always_pattern: str = "",
    ) -> PendingRequest | None:
        """Auto-approve a low-risk permission or ask the human.

        Returns the stored request, or ``None`` when it was auto-approved.
        """
        request = PendingRequest(
            id=new_request_id(),
            kind=RequestKind.PERMISSION,
            session_id=session_id,
            created_at=self._clock(),
            permission_id=permission_id,
            permission_type=permission_type,
            command=command,
            always_pattern=always_pattern,
        )
        risk = assess_risk(command)
        mode = self.control.load().mode.value

        if should_auto_approve(self.auto_approve, mode, self.auto_approve_mode, risk):
            request.auto_approve_attempted = True
            try:
                await self.agent.reply_permission(session_id, permission_id, "once")
            except AgentAPIError as e:
                logger.error(f"Auto-approve failed for {permission_id}: {e}")
                request.auto_approve_error = str(e)
            else:
                logger.info(f"Auto-approved low-risk permission {permission_id}")
                await self.chat.notify(f"🤖 Auto-approved ({mode}, low risk): {truncate(command, 200)}")
                return None

        await asyncio.to_thread(self.pending.add, request)
        sent = await self.chat.send_message(
            permission_text(request, risk.value),
            buttons=[
                [
                    ("✅ Run once", permission_callback("run", request.id)),
                    ("✅ Always", permission_callback("always", request.id)),
                ],
                [("❌ Reject", permission_callback("reject", request.id))],
            ],
        )
        if sent is None:
            logger.error(f"Permission {request.id} could not be delivered to chat")
            return request

        request.chat_id, request.message_id = sent.chat_id, sent.message_id
        await asyncio.to_thread(self.pending.update, request.id, chat_id=sent.chat_id, message_id=sent.message_id)
        return request

    async def resolve_permission(self, request_id: str, action: str) -> str:
        """Relay a button decision to the agent; returns the callback answer text."""
        response = action_to_response(action)
        if response is None:
            return "Unknown action"

        request = self.pending.get(request_id)
        if request is None or request.kind != RequestKind.PERMISSION:
            return STALE_REQUEST

        try:
            await self.agent.reply_permission(request.session_id, request.permission_id, response)
        except AgentAPIError as e:
            logger.error(f"Permission {request.permission_id} reply failed: {e}")
            await self.chat.notify(f"❌ Permission action failed: {e}")
            return f"Agent error: {e.status_code or 'unreachable'}"

        if await asyncio.to_thread(self.pending.remove, request_id) is None:
            return STALE_REQUEST
        result = PERMISSION_RESULTS[action]
        logger.info(f"Permission {request.permission_id} {result}")
        if request.chat_id and request.message_id:
            text = permission_text(request, assess_risk(request.command).value)
            await self.chat.edit_message(request.chat_id, request.message_id, with_result(text, result))
        await asyncio.to_thread(self.note_progress, request.session_id)
        return result

    # --- Questions ---

    def create_question(
        self,
        *,
        session_id: str,
        call_id: str,
        question: str,
        options: list[QuestionOption],
        request_id: str | None = None,
    ) -> PendingRequest:
        request = PendingRequest(
            id=new_request_id(),
            kind=RequestKind.QUESTION,
            session_id=session_id,
            created_at=self._clock(),
            call_id=call_id,
            question=question,
            options=options,
            request_id=request_id,
        )
        self.pending.add(request)
        return request

    async def deliver_question(self, request: PendingRequest) -> bool:
        buttons = [
            [(option.label[:60], question_option_callback(request.id, index))]
            for index, option in enumerate(request.options)
        ]
        buttons.append([("✏️ Type an answer", question_custom_callback(request.id))])
        sent = await self.chat.send_message(question_text(request), buttons=buttons)
        if sent is None:
            return False
        request.chat_id, request.message_id = sent.chat_id, sent.message_id
        await asyncio.to_thread(self.pending.update, request.id, chat_id=sent.chat_id, message_id=sent.message_id)
        return True

    async def answer_option(self, request_id: str, index: int) -> str:
        request = self.pending.get(request_id)
        if request is None or request.kind != RequestKind.QUESTION:
            return STALE_REQUEST
        if not 0 <= index < len(request.options):
            return "Unknown option"

        option = request.options[index]
        if await asyncio.to_thread(self.pending.answer, request_id, option.value) is None:
            return STALE_REQUEST
        await self._show_answer(request, option.label)
        return f"Answered: {option.label}"

    async def request_free_text(self, request_id: str) -> str:
        request = await asyncio.to_thread(self.pending.await_free_text, request_id)
        if request is None:
            return STALE_REQUEST
        await self.chat.notify(f"✏️ Type your answer to: {truncate(request.question, 200)}")
        return "Type your answer in the chat"

    async def answer_free_text(self, text: str) -> str | None:
        """Answer the question awaiting typed input; ``None`` if there is none."""
        target = self.pending.free_text_target()
        if target is None:
            return None
        if await asyncio.to_thread(self.pending.answer, target.id, text) is None:
            return "⚠️ Question expired or already answered."
        await self._show_answer(target, text)
        return "✅ Answer sent."

    async def _show_answer(self, request: PendingRequest, label: str) -> None:
        if request.chat_id and request.message_id:
            await self.chat.edit_message(
                request.chat_id, request.message_id, with_result(question_text(request), f"✅ Answered: {label}")
            )

    async def _question_request_id(self, request: PendingRequest) -> str | None:
        if request.request_id:
            return request.request_id
        request_id = await self.agent.find_question_request(
            request.call_id,
            request.session_id,
            directory=self.directory,
            attempts=self.question_match_attempts,
        )
        if not request_id:
            logger.warning(f"No open question-request matches call {request.call_id or '-'}")
        return request_id

    async def reject_expired_question(self, request: PendingRequest) -> bool:
        """Tell the agent an unanswered question was given up on."""
        request_id = None
        try:
            request_id = await self._question_request_id(request)
            if not request_id:
                return False
            await self.agent.reject_question(request_id)
        except AgentAPIError as e:
            logger.error(f"Failed to reject question {request_id or request.id}: {e}")
            return False
        logger.info(f"Rejected expired question-request {request_id}")
        return True

    async def hand_off_answer(self, request: PendingRequest) -> bool:
        """Reply to the agent directly with an answer no waiter collected.

        The record is claimed by removing it, so a late waiter sees it as
        invalidated. On an agent error it is put back for the next pass.
        """
        claimed = await asyncio.to_thread(self.pending.remove, request.id)
        if claimed is None:
            return False
        request_id = None
        try:
            request_id = await self._question_request_id(claimed)
            if not request_id:
                return False
            await self.agent.reply_question(request_id, [claimed.answer])
        except AgentAPIError as e:
            logger.error(f"Failed to hand off answer for {request_id or claimed.id}: {e}")
            await asyncio.to_thread(self.pending.add, claimed)
            return False
        logger.info(f"Answer for question-request {request_id} delivered through the agent API")
        return True

    # --- Maintenance ---

    async def run_maintenance(self) -> MaintenanceResult:
        """Expire stale requests, hand off stranded answers, then check for a stall."""
        result = MaintenanceResult(expired=await asyncio.to_thread(self.pending.sweep_expired))
        for request in result.expired:
            if request.chat_id and request.message_id:
                await self.chat.edit_message(request.chat_id, request.message_id, clear_buttons=True)
            if request.kind == RequestKind.QUESTION and not request.answered:
                await self.reject_expired_question(request)
        for request in self.pending.unconsumed_answers(self.answer_handoff_grace):
            if await self.hand_off_answer(request):
                result.handed_off.append(request)
        result.stall = await self.stall.check()
        return result

    # --- Takeover ---

    async def dispatch_goal(self, state: ControlState) -> str:
        """Send the takeover goal to the agent; returns the session used."""
        session_id = state.active_session_id
        if not session_id:
            sessions = await self.agent.list_sessions()
            if sessions:
                latest = max(sessions, key=lambda s: (s.get("time") or {}).get("updated", 0))
                session_id = latest["id"]
            else:
                session_id = (await self.agent.create_session(title=truncate(state.takeover_goal, 50)))["id"]

        envelope = build_task_envelope(
            mode=state.mode,
            agent=state.selected_agent,
            skill_profile=state.selected_skill_profile,
            goal=state.takeover_goal,
        )
        await self.agent.prompt_async(session_id, envelope, agent=state.selected_agent)
        return session_id

    async def start_takeover(self, goal: str, session_id: str = "") -> str:
        state = await asyncio.to_thread(self.control.start_takeover, goal, session_id=session_id)
        try:
            session_id = await self.dispatch_goal(state)
        except AgentAPIError as e:
            logger.error(f"Takeover dispatch failed: {e}")
            await asyncio.to_thread(self.control.mark_blocked, f"dispatch failed: {e}")
            return f"❌ Failed to dispatch goal: {e}"
        await asyncio.to_thread(self.control.update, active_session_id=session_id)
        return (
            f"🚀 Takeover started\n"
            f"Agent: {state.selected_agent}\n"
            f"Skill: {state.selected_skill_profile.value}\n"
            f"Session: {session_id[:12]}"
        )

    def note_progress(self, session_id: str) -> None:
        """Count an agent signal from the takeover session as progress."""
        state = self.control.load()
        if not state.takeover_active:
            return
        if state.active_session_id and session_id and session_id != state.active_session_id:
            return
        self.control.mark_progress(session_id)

    def apply_control_command(self, command: ControlCommand) -> str:
        if command.type == "set_mode":
            return f"✅ Mode: {self.control.set_mode(command.value).mode.value}"
        if command.type == "set_agent":
            return f"✅ Agent: {self.control.set_selected_agent(command.value).selected_agent}"
        if command.type == "set_skill":
            state = self.control.set_selected_skill_profile(command.value)
            return f"✅ Skill profile: {state.selected_skill_profile.value}"
        if command.type == "invalid_mode":
            return f"⚠️ Unknown mode: {command.value}"
        return f"⚠️ Unknown skill profile: {command.value}"

    # --- Status ---

    def status_text(self) -> str:
        state = self.control.load()
        lines = [
            "🟢 Relay Status" if not state.blocked else "🔴 Relay Status",
            "",
            f"Mode: {state.mode.value}",
            f"Agent: {state.selected_agent}",
            f"Skill: {state.selected_skill_profile.value}",
            f"Pending requests: {self.pending.count()}",
            f"Takeover: {'active' if state.takeover_active else 'off'}",
        ]
        if state.takeover_active:
            lines.append(f"Goal: {truncate(state.takeover_goal, 200)}")
            lines.append(f"Retries: {state.retry_count}")
        if state.blocked:
            lines.append(f"Blocked: {state.blocked_reason}")
        return "\n".join(lines)

    def pending_text(self) -> str:
        requests = self.pending.all()
        if not requests:
            return "No pending requests."
        now = self._clock()
        lines = ["Pending Requests:", ""]
        for request in requests:
            state = request_state(request, now, self.pending.open_question_ttl, self.pending.request_ttl)
            subject = request.command if request.kind == RequestKind.PERMISSION else request.question
            lines.append(
                f"• [{request.kind.value}/{state.value}] {truncate(subject, 50)} ({int(request.age(now))}s)"
            )
        return "\n".join(lines)

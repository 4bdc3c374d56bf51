"""Builds stores and the relay from settings."""

from .agent_api import AgentClient
from .approvals import Relay
from .config import Settings
from .control import ControlStore
from .filestore import JsonFileStore
from .state import PendingStore
from .telegram_bot import ChatTransport
from .waiter import BlockingWaiter


def json_store(settings: Settings, path) -> JsonFileStore:
    return JsonFileStore(
        path,
        lock_wait=settings.store_lock_wait,
        retry_interval=settings.store_lock_retry_interval,
        file_mode=settings.store_file_mode,
    )


def build_pending_store(settings: Settings) -> PendingStore:
    return PendingStore(
        json_store(settings, settings.pending_store_path),
        open_question_ttl=settings.question_open_ttl,
        request_ttl=settings.request_ttl,
    )


def build_control_store(settings: Settings) -> ControlStore:
    return ControlStore(json_store(settings, settings.control_state_path))


def build_relay(settings: Settings, chat: ChatTransport, agent: AgentClient | None = None) -> Relay:
    agent = agent or AgentClient(settings.agent_api_url, timeout_seconds=settings.agent_api_timeout)
    return Relay(
        build_pending_store(settings),
        build_control_store(settings),
        agent,
        chat,
        auto_approve=settings.auto_approve,
        auto_approve_mode=settings.auto_approve_mode,
        directory=settings.agent_directory,
        question_match_attempts=settings.question_match_attempts,
        stall_threshold=settings.stall_threshold,
        retry_limit=settings.retry_limit,
        answer_handoff_grace=settings.answer_handoff_grace,
    )


def build_waiter(settings: Settings, relay: Relay) -> BlockingWaiter:
    return BlockingWaiter(
        relay.pending,
        relay.chat,
        poll_interval=settings.question_poll_interval,
        poll_timeout=settings.question_poll_timeout,
    )

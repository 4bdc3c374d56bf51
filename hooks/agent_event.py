#!/usr/bin/env python3
"""
Coding agent event hook.

Called by the agent with one event as JSON on stdin. Permission requests
are forwarded to Telegram; questions block until the human answers through
the relay, the wait times out, or the request disappears.

Only an answered question produces output. Anything else exits quietly so
the agent falls back to its own prompt.
"""

import asyncio
import json
import logging
import sys

from relay.config import settings
from relay.factory import build_relay, build_waiter
from relay.hook import AgentEventHandler
from relay.lifecycle import PollDecision
from relay.messages import question_answer_message
from relay.telegram_bot import TelegramBot
from relay.waiter import JsonlTraceSink

logging.basicConfig(
    level=logging.INFO,
    stream=sys.stderr,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("relay.hooks.agent_event")


async def run(event: dict):
    bot = TelegramBot(settings.telegram_bot_token, settings.telegram_chat_id)
    relay = build_relay(settings, bot)
    trace_sink = JsonlTraceSink(settings.question_trace_path) if settings.question_trace_path else None
    handler = AgentEventHandler(relay, build_waiter(settings, relay), trace_sink)

    await bot.initialize(polling=False)
    try:
        return await handler.handle(event)
    finally:
        await bot.shutdown()
        await relay.agent.aclose()


def main():
    """Process one agent event."""
    try:
        event = json.load(sys.stdin)
    except json.JSONDecodeError:
        sys.exit(0)

    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.warning("TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID not set, relay disabled")
        sys.exit(0)

    try:
        result = asyncio.run(run(event))
    except Exception as e:
        # Relay failure - fallback to the agent's own UI
        logger.error(f"Event handling failed: {e}")
        sys.exit(0)

    if result is not None and result.outcome == PollDecision.ANSWERED:
        questions = (event.get("properties") or {}).get("questions") or []
        question = questions[0].get("question", "") if questions else ""
        output_answer(question_answer_message([question], [result.answer]), result.answer)


def output_answer(message: str, answer: str):
    """Output the human's answer to the agent."""
    output = {
        "hookSpecificOutput": {
            "hookEventName": "QuestionAsked",
            "decision": {"behavior": "answer", "answer": answer, "message": message},
        }
    }
    print(json.dumps(output))


if __name__ == "__main__":
    main()

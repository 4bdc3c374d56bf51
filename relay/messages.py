"""Chat message text for requests and notifications (Telegram HTML)."""

from html import escape

from .state import PendingRequest

MAX_COMMAND_DISPLAY = 500
MAX_NOTIFICATION = 3500


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def permission_text(request: PendingRequest, risk: str) -> str:
    lines = [
        f"🔐 <b>Permission Request</b> [{escape(request.permission_type or 'unknown')}]",
        "",
        f"<b>Command:</b>\n<pre>{escape(truncate(request.command, MAX_COMMAND_DISPLAY))}</pre>",
        f"<b>Risk:</b> {escape(risk)}",
    ]
    if request.always_pattern:
        lines.append(f"<b>Always pattern:</b> <code>{escape(request.always_pattern)}</code>")
    if request.session_id:
        lines.append(f"<b>Session:</b> <code>{escape(request.session_id[:12])}</code>")
    return "\n".join(lines)


def question_text(request: PendingRequest) -> str:
    lines = [f"❓ <b>Question</b>\n\n{escape(request.question or '(no text)')}"]
    if request.options:
        lines.append("")
        lines.extend(f"{i}. {escape(option.label)}" for i, option in enumerate(request.options, 1))
    if request.session_id:
        lines.append(f"\n<b>Session:</b> <code>{escape(request.session_id[:12])}</code>")
    return "\n".join(lines)


def with_result(text: str, result: str) -> str:
    return f"{text}\n\n---\n{escape(result)}"


def question_answer_message(questions: list[str], answers: list[str]) -> str:
    """Answer text handed back to the agent in place of the question tool's result."""
    pairs = ", ".join(
        f'"{question}"="{answers[i] if i < len(answers) else ""}"' for i, question in enumerate(questions)
    )
    return f"User has answered your questions: {pairs}. You can now continue with the user's answers in mind."

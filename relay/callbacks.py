"""Inline button callback data.

Permission decisions are ``<run|always|reject>:<id>``; question picks are
``qopt:<id>:<index>`` and free-text prompts ``qcustom:<id>``. The two
namespaces never match the same string.
"""

from dataclasses import dataclass

PERMISSION_ACTIONS = {"run": "once", "always": "always", "reject": "reject"}
QUESTION_OPTION_PREFIX = "qopt:"
QUESTION_CUSTOM_PREFIX = "qcustom:"


@dataclass(frozen=True)
class PermissionCallback:
    action: str
    request_id: str


@dataclass(frozen=True)
class QuestionCallback:
    type: str  # "option" or "custom"
    request_id: str
    option_index: int | None = None


def permission_callback(action: str, request_id: str) -> str:
    if action not in PERMISSION_ACTIONS:
        raise ValueError(f"unknown permission action: {action}")
    return f"{action}:{request_id}"


def question_option_callback(request_id: str, index: int) -> str:
    return f"{QUESTION_OPTION_PREFIX}{request_id}:{index}"


def question_custom_callback(request_id: str) -> str:
    return f"{QUESTION_CUSTOM_PREFIX}{request_id}"


def parse_callback_data(data: str | None) -> PermissionCallback | None:
    """Split ``action:id``; the action is not validated here."""
    if not data or ":" not in data:
        return None
    action, request_id = data.split(":", 1)
    if not action or not request_id:
        return None
    return PermissionCallback(action=action, request_id=request_id)


def action_to_response(action: str) -> str | None:
    """Map a button action to the agent API permission response."""
    return PERMISSION_ACTIONS.get(action)


def parse_permission_callback(data: str | None) -> PermissionCallback | None:
    parsed = parse_callback_data(data)
    if parsed is None or action_to_response(parsed.action) is None:
        return None
    return parsed


def parse_question_callback(data: str | None) -> QuestionCallback | None:
    if not data:
        return None
    if data.startswith(QUESTION_OPTION_PREFIX):
        request_id, sep, index = data[len(QUESTION_OPTION_PREFIX):].rpartition(":")
        if not sep or not request_id or not index.isdigit():
            return None
        return QuestionCallback(type="option", request_id=request_id, option_index=int(index))
    if data.startswith(QUESTION_CUSTOM_PREFIX):
        request_id = data[len(QUESTION_CUSTOM_PREFIX):]
        if not request_id:
            return None
        return QuestionCallback(type="custom", request_id=request_id)
    return None


def is_question_callback(data: str | None) -> bool:
    return parse_question_callback(data) is not None

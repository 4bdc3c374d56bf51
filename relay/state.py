"""Shared store of pending permission and question requests."""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable

from .filestore import JsonFileStore

logger = logging.getLogger(__name__)

DEFAULT_OPEN_QUESTION_TTL = 6 * 60.0
DEFAULT_REQUEST_TTL = 30 * 60.0


class RequestKind(str, Enum):
    PERMISSION = "permission"
    QUESTION = "question"


@dataclass
class QuestionOption:
    label: str
    value: str


@dataclass
class PendingRequest:
    """A request waiting for a human decision.

    The persisted record has no ``answer`` key while a question is open. Any
    stored ``answer`` key marks it resolved, so :meth:`from_dict` maps a
    stored ``null`` to an empty answer and ``answered`` agrees with the store.
    """

    id: str
    kind: RequestKind
    session_id: str = ""
    created_at: float = field(default_factory=time.time)

    # Permission
    permission_id: str = ""
    permission_type: str = ""
    command: str = ""
    always_pattern: str = ""
    auto_approve_attempted: bool = False
    auto_approve_error: str | None = None

    # Question
    call_id: str = ""
    question: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    awaiting_free_text: bool = False
    answer: str | None = None
    answered_at: float | None = None
    request_id: str | None = None

    # Delivery
    chat_id: int | None = None
    message_id: int | None = None

    @property
    def answered(self) -> bool:
        return self.answer is not None

    def age(self, now: float) -> float:
        return now - self.created_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any], request_id: str | None = None) -> "PendingRequest":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if request_id is not None:
            values["id"] = request_id
        values.setdefault("id", "")
        values["kind"] = _parse_kind(values.get("kind"))
        options = values.get("options")
        values["options"] = [
            QuestionOption(label=str(o.get("label", "")), value=str(o.get("value", o.get("label", ""))))
            for o in (options if isinstance(options, list) else [])
            if isinstance(o, dict)
        ]
        if "answer" in values:
            answer = values["answer"]
            values["answer"] = "" if answer is None else str(answer)
        for key in ("created_at", "answered_at"):
            if key not in values:
                continue
            try:
                values[key] = float(values[key] or 0)
            except (TypeError, ValueError):
                values[key] = 0.0
        values.setdefault("created_at", 0.0)
        return cls(**values)


def new_request_id() -> str:
    """Short id that fits comfortably in Telegram callback data."""
    return uuid.uuid4().hex[:12]


def _parse_kind(value: Any) -> RequestKind:
    try:
        return RequestKind(value)
    except ValueError:
        # Unknown kinds fall back to the general TTL
        return RequestKind.PERMISSION


def _is_open_question(entry: dict[str, Any]) -> bool:
    return entry.get("kind") == RequestKind.QUESTION.value and "answer" not in entry


def _entry_age(entry: dict[str, Any], now: float) -> float:
    try:
        return now - float(entry.get("created_at") or 0)
    except (TypeError, ValueError):
        return float("inf")


class PendingStore:
    """Maps request id to :class:`PendingRequest`, persisted as one JSON object.

    Mutations run under the file lock. ``get``, ``all`` and the active
    question queries read without it and may lag a concurrent writer.
    """

    def __init__(
        self,
        store: JsonFileStore,
        *,
        open_question_ttl: float = DEFAULT_OPEN_QUESTION_TTL,
        request_ttl: float = DEFAULT_REQUEST_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.open_question_ttl = open_question_ttl
        self.request_ttl = request_ttl
        self._clock = clock

    def _entries(self, document: Any) -> dict[str, dict[str, Any]]:
        if not isinstance(document, dict):
            return {}
        return {key: value for key, value in document.items() if isinstance(value, dict)}

    def add(self, request: PendingRequest) -> None:
        """Insert or replace a request."""

        def apply(document):
            entries = self._entries(document)
            entries[request.id] = request.to_dict()
            return entries, None

        self._store.transaction(apply)
        logger.info(f"Pending {request.kind.value} {request.id} added (session {request.session_id or '-'})")

    def update(self, request_id: str, **changes: Any) -> PendingRequest | None:
        """Merge fields into an existing request; does nothing if it is gone.

        A ``None`` value drops the field from the record.
        """

        def apply(document):
            entries = self._entries(document)
            entry = entries.get(request_id)
            if entry is None:
                return None, None
            entry.update({key: value for key, value in changes.items() if value is not None})
            for key, value in changes.items():
                if value is None:
                    entry.pop(key, None)
            return entries, PendingRequest.from_dict(entry, request_id)

        return self._store.transaction(apply)

    def get(self, request_id: str) -> PendingRequest | None:
        """Unlocked read of one request."""
        entry = self._entries(self._store.read()).get(request_id)
        return PendingRequest.from_dict(entry, request_id) if entry is not None else None

    def remove(self, request_id: str) -> PendingRequest | None:
        """Delete a request, returning what was removed."""

        def apply(document):
            entries = self._entries(document)
            entry = entries.pop(request_id, None)
            if entry is None:
                return None, None
            return entries, PendingRequest.from_dict(entry, request_id)

        return self._store.transaction(apply)

    def all(self) -> list[PendingRequest]:
        """Unlocked snapshot of every request, oldest first."""
        entries = self._entries(self._store.read())
        requests = [PendingRequest.from_dict(entry, key) for key, entry in entries.items()]
        return sorted(requests, key=lambda r: r.created_at)

    def count(self) -> int:
        return len(self._entries(self._store.read()))

    def answer(self, request_id: str, answer: str) -> PendingRequest | None:
        """Record the answer to an open question.

        Returns ``None`` when the question is gone or was already answered, so
        a second button press cannot overwrite the first decision.
        """

        def apply(document):
            entries = self._entries(document)
            entry = entries.get(request_id)
            if entry is None or not _is_open_question(entry):
                return None, None
            entry["answer"] = answer
            entry["answered_at"] = self._clock()
            entry["awaiting_free_text"] = False
            return entries, PendingRequest.from_dict(entry, request_id)

        return self._store.transaction(apply)

    def await_free_text(self, request_id: str) -> PendingRequest | None:
        """Mark one open question as the target for the next free-text message."""

        def apply(document):
            entries = self._entries(document)
            entry = entries.get(request_id)
            if entry is None or not _is_open_question(entry):
                return None, None
            for other in entries.values():
                if other.get("awaiting_free_text"):
                    other["awaiting_free_text"] = False
            entry["awaiting_free_text"] = True
            return entries, PendingRequest.from_dict(entry, request_id)

        return self._store.transaction(apply)

    def free_text_target(self) -> PendingRequest | None:
        """Unlocked lookup of the open question awaiting a typed answer."""
        for request in reversed(self.all()):
            if request.kind == RequestKind.QUESTION and request.awaiting_free_text and not request.answered:
                return request
        return None

    def unconsumed_answers(self, grace: float, now: float | None = None) -> list[PendingRequest]:
        """Answered questions that no waiter picked up within ``grace`` seconds."""
        now = self._clock() if now is None else now
        return [
            request
            for request in self.all()
            if request.kind == RequestKind.QUESTION
            and request.answered
            and now - (request.answered_at or request.created_at) > grace
        ]

    def active_question_id(self, session_id: str, now: float | None = None) -> str | None:
        """Id of an unanswered, unexpired question for ``session_id``, if any."""
        now = self._clock() if now is None else now
        for request_id, entry in self._entries(self._store.read()).items():
            if (
                _is_open_question(entry)
                and entry.get("session_id", "") == session_id
                and _entry_age(entry, now) < self.open_question_ttl
            ):
                return request_id
        return None

    def is_question_active(self, session_id: str, now: float | None = None) -> bool:
        return self.active_question_id(session_id, now) is not None

    def has_outstanding(self, session_id: str, now: float | None = None) -> bool:
        """True while a permission or an open question for the session awaits a human."""
        now = self._clock() if now is None else now
        for entry in self._entries(self._store.read()).values():
            if entry.get("session_id", "") != session_id:
                continue
            if entry.get("kind") == RequestKind.QUESTION.value:
                if _is_open_question(entry) and _entry_age(entry, now) < self.open_question_ttl:
                    return True
            else:
                return True
        return False

    def ttl_for(self, entry: dict[str, Any]) -> float:
        return self.open_question_ttl if _is_open_question(entry) else self.request_ttl

    def sweep_expired(self, now: float | None = None) -> list[PendingRequest]:
        """Remove every request older than its TTL and return the removed ones."""
        now = self._clock() if now is None else now

        def apply(document):
            entries = self._entries(document)
            expired = {
                request_id: entry
                for request_id, entry in entries.items()
                if _entry_age(entry, now) > self.ttl_for(entry)
            }
            if not expired:
                return None, []
            kept = {key: value for key, value in entries.items() if key not in expired}
            return kept, [PendingRequest.from_dict(entry, key) for key, entry in expired.items()]

        removed = self._store.transaction(apply)
        for request in removed:
            logger.info(f"Expired {request.kind.value} {request.id} (session {request.session_id or '-'})")
        return removed

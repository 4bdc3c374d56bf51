"""Control state: operating mode, delegate selection and takeover bookkeeping."""

import logging
import re
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Callable

from .filestore import JsonFileStore

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    FORWARD = "forward"
    COPILOT = "copilot"
    DELEGATE = "delegate"


class SkillProfile(str, Enum):
    PLAN = "plan"
    EXECUTE = "execute"
    DEBUG = "debug"
    REVIEW = "review"


DEFAULT_MODE = Mode.FORWARD
DEFAULT_AGENT = "sisyphus"
DEFAULT_SKILL_PROFILE = SkillProfile.PLAN

SKILLS = {
    SkillProfile.PLAN: "superpowers/writing-plans",
    SkillProfile.EXECUTE: "superpowers/executing-plans",
    SkillProfile.DEBUG: "superpowers/systematic-debugging",
    SkillProfile.REVIEW: "superpowers/requesting-code-review",
}

# Checked in order; the first matching profile wins.
_PROFILE_KEYWORDS = [
    (SkillProfile.DEBUG, re.compile(r"debug|排查|报错|错误|故障|queue|卡住|trace|定位|异常|\bfix\b|\bbug\b|\berror\b|crash")),
    (SkillProfile.REVIEW, re.compile(r"review|审查|评审|检查质量|audit")),
    (SkillProfile.EXECUTE, re.compile(r"执行计划|execute plan|落地计划|实现方案|按计划|implement the plan")),
    (SkillProfile.PLAN, re.compile(r"plan|规划|方案|设计|roadmap|拆解|brainstorm")),
]

DEFAULT_CONSTRAINTS = [
    "High-risk operations must be confirmed through the permission buttons, never bypassed",
    "When the question tool is used, wait for the user's answer instead of answering yourself",
    "Report progress as milestones and state blockers explicitly",
]
DEFAULT_ACCEPTANCE = [
    "Give a short execution plan before starting",
    "Produce a verifiable result after each stage",
    "If blocked, propose the smallest next step",
]


def normalize_mode(value: Any) -> Mode:
    if isinstance(value, Enum):
        value = value.value
    try:
        return Mode(str(value or "").strip().lower())
    except ValueError:
        return DEFAULT_MODE


def normalize_skill_profile(value: Any) -> SkillProfile:
    if isinstance(value, Enum):
        value = value.value
    try:
        return SkillProfile(str(value or "").strip().lower())
    except ValueError:
        return DEFAULT_SKILL_PROFILE


def infer_skill_profile(goal: str | None) -> SkillProfile:
    """Pick a skill profile from keywords in a free-text goal."""
    text = (goal or "").lower()
    for profile, pattern in _PROFILE_KEYWORDS:
        if pattern.search(text):
            return profile
    return DEFAULT_SKILL_PROFILE


def skill_profile_to_skill(profile: Any) -> str:
    return SKILLS[normalize_skill_profile(profile)]


def build_task_envelope(
    *,
    mode: Any,
    agent: str | None,
    skill_profile: Any,
    goal: str,
    constraints: list[str] | None = None,
    acceptance: list[str] | None = None,
) -> str:
    """Prompt used to dispatch (and re-dispatch) a takeover goal to the agent."""
    profile = normalize_skill_profile(skill_profile) if skill_profile else infer_skill_profile(goal)
    skill = skill_profile_to_skill(profile)
    lines = [
        "[RELAY_TASK_ENVELOPE]",
        f"RELAY_MODE: {normalize_mode(mode).value}",
        f"RELAY_AGENT: {agent or DEFAULT_AGENT}",
        f"RELAY_SKILL: {skill}",
        f"RELAY_GOAL: {goal.strip()}",
        "RELAY_CONSTRAINTS:",
        *(f"{i}. {item}" for i, item in enumerate(constraints or DEFAULT_CONSTRAINTS, 1)),
        "RELAY_ACCEPTANCE:",
        *(f"{i}. {item}" for i, item in enumerate(acceptance or DEFAULT_ACCEPTANCE, 1)),
        "",
        f"Use the skill explicitly: {skill}",
        "Report back by milestone when done.",
    ]
    return "\n".join(lines)


@dataclass
class ControlCommand:
    type: str  # set_mode, set_agent, set_skill, invalid_mode, invalid_skill
    value: str


_CONTROL_COMMAND = re.compile(r"^\s*[(（]\s*(mode|agent|skill)\s*[:：]\s*([^)）]*?)\s*[)）]\s*$", re.IGNORECASE)


def parse_control_command(text: str | None) -> ControlCommand | None:
    """Parse ``(mode:x)``, ``(agent:x)`` or ``(skill:x)``, ASCII or full-width."""
    match = _CONTROL_COMMAND.match(text or "")
    if not match:
        return None
    key, raw = match.group(1).lower(), match.group(2).strip()
    if key == "agent":
        return ControlCommand("set_agent", raw) if raw else None
    if key == "mode":
        if raw.lower() in {m.value for m in Mode}:
            return ControlCommand("set_mode", raw.lower())
        return ControlCommand("invalid_mode", raw)
    if raw.lower() in {p.value for p in SkillProfile}:
        return ControlCommand("set_skill", raw.lower())
    return ControlCommand("invalid_skill", raw)


@dataclass
class ControlState:
    """The single control record of a deployment."""

    chat_id: str = ""
    mode: Mode = DEFAULT_MODE
    selected_agent: str = DEFAULT_AGENT
    selected_skill_profile: SkillProfile = DEFAULT_SKILL_PROFILE
    takeover_active: bool = False
    takeover_goal: str = ""
    last_progress_at: float = 0.0
    active_session_id: str = ""
    retry_count: int = 0
    blocked: bool = False
    blocked_reason: str = ""
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["selected_skill_profile"] = self.selected_skill_profile.value
        return data

    @classmethod
    def normalize(cls, raw: Any) -> "ControlState":
        """Build a state from an untrusted mapping, filling defaults."""
        data = raw if isinstance(raw, dict) else {}
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        return cls(
            chat_id=str(values.get("chat_id") or ""),
            mode=normalize_mode(values.get("mode")),
            selected_agent=str(values.get("selected_agent") or DEFAULT_AGENT),
            selected_skill_profile=normalize_skill_profile(values.get("selected_skill_profile")),
            takeover_active=bool(values.get("takeover_active")),
            takeover_goal=str(values.get("takeover_goal") or ""),
            last_progress_at=_number(values.get("last_progress_at"), float),
            active_session_id=str(values.get("active_session_id") or ""),
            retry_count=_number(values.get("retry_count"), int),
            blocked=bool(values.get("blocked")),
            blocked_reason=str(values.get("blocked_reason") or ""),
            updated_at=_number(values.get("updated_at"), float),
        )


def _number(value: Any, kind: type):
    try:
        return kind(value or 0)
    except (TypeError, ValueError):
        return kind(0)


class ControlStore:
    """Lock-protected load-merge-write access to the control record."""

    def __init__(self, store: JsonFileStore, *, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    def load(self) -> ControlState:
        """Unlocked read; callers that mutate go through :meth:`update`."""
        return ControlState.normalize(self._store.read())

    def update(self, **patch: Any) -> ControlState:
        def apply(document):
            current = ControlState.normalize(document).to_dict()
            current.update(patch)
            current["updated_at"] = self._clock()
            state = ControlState.normalize(current)
            return state.to_dict(), state

        return self._store.transaction(apply)

    def set_mode(self, mode: Any) -> ControlState:
        return self.update(mode=normalize_mode(mode).value)

    def set_selected_agent(self, agent: str | None) -> ControlState:
        return self.update(selected_agent=agent or DEFAULT_AGENT)

    def set_selected_skill_profile(self, profile: Any) -> ControlState:
        return self.update(selected_skill_profile=normalize_skill_profile(profile).value)

    def start_takeover(
        self,
        goal: str,
        *,
        session_id: str = "",
        skill_profile: Any = None,
        **patch: Any,
    ) -> ControlState:
        goal = (goal or "").strip()
        profile = normalize_skill_profile(skill_profile) if skill_profile else infer_skill_profile(goal)
        logger.info(f"Takeover started ({profile.value}): {goal[:80]}")
        return self.update(
            takeover_active=True,
            takeover_goal=goal,
            selected_skill_profile=profile.value,
            last_progress_at=self._clock(),
            active_session_id=session_id,
            retry_count=0,
            blocked=False,
            blocked_reason="",
            **patch,
        )

    def stop_takeover(self, **patch: Any) -> ControlState:
        logger.info("Takeover stopped")
        return self.update(
            takeover_active=False,
            takeover_goal="",
            retry_count=0,
            blocked=False,
            blocked_reason="",
            **patch,
        )

    def mark_progress(self, session_id: str = "", **patch: Any) -> ControlState:
        """Record a progress signal; this also clears any blocked flag."""
        changes = dict(last_progress_at=self._clock(), blocked=False, blocked_reason="")
        if session_id:
            changes["active_session_id"] = session_id
        changes.update(patch)
        return self.update(**changes)

    def mark_blocked(self, reason: str, **patch: Any) -> ControlState:
        logger.warning(f"Takeover blocked: {reason}")
        return self.update(blocked=True, blocked_reason=reason or "unknown", **patch)

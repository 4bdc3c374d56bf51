"""Risk classification for shell commands under review."""

import re
import shlex
from enum import Enum

from .config import AutoApprovePolicy


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_CONTROL_OPERATORS = re.compile(r"[;|&`<>]|\$\(")

_HIGH_RISK_COMMANDS = {
    "curl", "wget", "nc", "ncat", "ssh", "scp", "rsync", "ftp",
    "dd", "mkfs", "fdisk", "format", "shutdown", "reboot", "sudo", "su",
    "chown", "kill", "pkill", "killall",
}
_HIGH_RISK_PATTERNS = [
    re.compile(r"^rm\s+-[a-z]*r[a-z]*f|^rm\s+-[a-z]*f[a-z]*r"),
    re.compile(r"^chmod\s+-r\s+777"),
    re.compile(r"^git\s+push\b.*--force"),
]

_LOW_RISK_COMMANDS = {"pwd", "ls", "cat", "head", "tail", "wc", "echo", "which", "whoami", "date", "tree", "grep", "rg", "find"}
_LOW_RISK_GIT = {"status", "log", "diff", "show", "branch"}


def assess_risk(command: str | None) -> Risk:
    """Classify a command string as low, medium or high risk."""
    cmd = (command or "").strip().lower()
    if not cmd:
        return Risk.LOW
    if _CONTROL_OPERATORS.search(cmd):
        return Risk.HIGH
    if any(p.search(cmd) for p in _HIGH_RISK_PATTERNS):
        return Risk.HIGH

    try:
        words = shlex.split(cmd)
    except ValueError:
        return Risk.HIGH
    if not words:
        return Risk.LOW

    program = words[0].rsplit("/", 1)[-1]
    if program in _HIGH_RISK_COMMANDS:
        return Risk.HIGH
    if program == "git" and len(words) > 1 and words[1] in _LOW_RISK_GIT:
        return Risk.LOW
    if program in _LOW_RISK_COMMANDS:
        return Risk.LOW
    return Risk.MEDIUM


def should_auto_approve(policy: AutoApprovePolicy, mode: str, required_mode: str, risk: Risk) -> bool:
    """Whether a permission may be approved without asking the human."""
    if risk != Risk.LOW:
        return False
    if policy == AutoApprovePolicy.ANY:
        return True
    if policy == AutoApprovePolicy.MODE:
        return mode == required_mode
    return False

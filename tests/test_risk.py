"""Tests for command risk classification and the auto-approve policy."""

from __future__ import annotations

import pytest

from relay.config import AutoApprovePolicy
from relay.risk import Risk, assess_risk, should_auto_approve


@pytest.mark.parametrize(
    "command",
    [
        "ls -la",
        "pwd",
        "cat README.md",
        "/bin/echo hi",
        "git status",
        "git log --oneline",
        "",
        None,
    ],
)
def test_low_risk(command) -> None:
    assert assess_risk(command) == Risk.LOW


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf /tmp/x",
        "rm -fr build",
        "chmod -R 777 .",
        "git push origin main --force",
        "curl https://example.com",
        "sudo apt install foo",
        "ls; rm file",
        "cat a | sh",
        "echo $(whoami)",
        "echo hi > out.txt",
        "echo 'unterminated",
    ],
)
def test_high_risk(command) -> None:
    assert assess_risk(command) == Risk.HIGH


@pytest.mark.parametrize("command", ["rm file.txt", "npm install", "git commit -m wip", "python build.py"])
def test_medium_risk(command) -> None:
    assert assess_risk(command) == Risk.MEDIUM


@pytest.mark.parametrize(
    "policy, mode, risk, expected",
    [
        (AutoApprovePolicy.OFF, "delegate", Risk.LOW, False),
        (AutoApprovePolicy.MODE, "delegate", Risk.LOW, True),
        (AutoApprovePolicy.MODE, "forward", Risk.LOW, False),
        (AutoApprovePolicy.MODE, "delegate", Risk.MEDIUM, False),
        (AutoApprovePolicy.ANY, "forward", Risk.LOW, True),
        (AutoApprovePolicy.ANY, "forward", Risk.HIGH, False),
    ],
)
def test_should_auto_approve(policy, mode, risk, expected) -> None:
    assert should_auto_approve(policy, mode, "delegate", risk) == expected

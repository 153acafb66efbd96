"""Shared test fixtures."""

from __future__ import annotations

import shlex
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from git_agent.executor import CommandExecutor
from git_agent.git.repository import GitRepository
from git_agent.runs.state import RunnerStateStore

ECHO_AGENT = f"{shlex.quote(sys.executable)} -m git_agent.runs.echo_agent"

_ECHO_DEFINITION = """---
name: echo
description: Appends the task text to a file
tools: Read, Write
---
Append the task to AGENT_OUTPUT.md.
"""


def run_git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@pytest.fixture()
def git() -> Callable[..., str]:
    return run_git


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Git repository on ``main`` with one commit and an ``echo`` agent definition."""

    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    root = tmp_path / "repo"
    root.mkdir()
    run_git(root, "init", "--quiet")
    run_git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(root, "config", "user.email", "agent@example.com")
    run_git(root, "config", "user.name", "Agent Tests")
    run_git(root, "config", "commit.gpgsign", "false")
    agents_dir = root / ".claude" / "agents"
    agents_dir.mkdir(parents=True)
    (agents_dir / "echo.md").write_text(_ECHO_DEFINITION, encoding="utf-8")
    (root / "README.md").write_text("demo\n", encoding="utf-8")
    run_git(root, "add", "--all")
    run_git(root, "commit", "--quiet", "-m", "initial")
    return root


@pytest.fixture()
def executor() -> CommandExecutor:
    return CommandExecutor(default_timeout_seconds=30, kill_grace_seconds=2)


@pytest.fixture()
def repository(repo: Path, executor: CommandExecutor) -> GitRepository:
    return GitRepository(repo, executor)


@pytest.fixture()
def state_store(tmp_path: Path) -> RunnerStateStore:
    return RunnerStateStore(tmp_path / "state" / "runner-state.json")

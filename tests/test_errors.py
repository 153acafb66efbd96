from __future__ import annotations

import json

import allure
import pytest

from git_agent.errors import (
    AgentNotFoundError,
    BranchExistsError,
    CommandFailedError,
    CommandTimeoutError,
    DirtyWorkingDirectoryError,
    ErrorCode,
    GitAgentError,
    MergeConflictError,
    ProcessError,
    VerificationError,
)
from git_agent.models import MergeResult
from git_agent.result import Err, Ok

pytestmark = [
    allure.epic("Result and Errors"),
    allure.feature("Error Taxonomy"),
]


def test_ok_and_err_are_discriminated_by_success() -> None:
    ok: Ok[int] = Ok(5)
    err: Err[GitAgentError] = Err(BranchExistsError("agent/x/1"))

    assert ok.success is True
    assert ok.unwrap() == 5
    assert err.success is False
    with pytest.raises(BranchExistsError):
        err.unwrap()


def test_each_kind_fixes_its_code() -> None:
    errors = [
        CommandFailedError("git status", 128, "fatal"),
        MergeConflictError("agent/a/b", ["a.py"]),
        DirtyWorkingDirectoryError(["a.py"]),
        AgentNotFoundError("ghost", ["/x/ghost.md"]),
        BranchExistsError("agent/a/b"),
        VerificationError("lint", "E501", "agent/a/b"),
        CommandTimeoutError("sleep 10", 1.5),
        ProcessError("claude", "failed to start"),
    ]

    assert [error.code for error in errors] == [
        ErrorCode.GIT_COMMAND_FAILED,
        ErrorCode.MERGE_CONFLICT,
        ErrorCode.DIRTY_WORKING_DIRECTORY,
        ErrorCode.AGENT_NOT_FOUND,
        ErrorCode.BRANCH_EXISTS,
        ErrorCode.VERIFICATION_FAILED,
        ErrorCode.TIMEOUT,
        ErrorCode.PROCESS_ERROR,
    ]
    assert all(isinstance(error, GitAgentError) for error in errors)


def test_format_renders_context_and_recovery() -> None:
    error = MergeConflictError("agent/echo/20260101-000000-fix-abc123", ["src/a.py", "README.md"])

    rendered = error.format()

    assert rendered.splitlines()[0] == (
        "[MERGE_CONFLICT] Merging agent/echo/20260101-000000-fix-abc123 conflicts in 2 file(s)"
    )
    assert "  conflicting_files: src/a.py, README.md" in rendered
    assert "  Recovery: Rebase agent/echo/20260101-000000-fix-abc123" in rendered


def test_to_dict_is_json_serializable() -> None:
    error = CommandTimeoutError("claude --print task", 30).with_context(worktree="/tmp/w")

    payload = json.loads(json.dumps(error.to_dict()))

    assert payload["code"] == "TIMEOUT"
    assert payload["context"]["timeout_seconds"] == 30
    assert payload["context"]["worktree"] == "/tmp/w"
    assert payload["recovery_action"]


def test_command_failed_message_includes_stderr() -> None:
    error = CommandFailedError("git merge x", 1, "CONFLICT (content)\n")

    assert error.message.startswith("Command failed with exit code 1: git merge x")
    assert "CONFLICT (content)" in error.message


def test_verification_error_carries_merge_result() -> None:
    merge_result = MergeResult(merged=True, commit_sha="abc123")

    error = VerificationError("test", "1 failed", "agent/a/b", merge_result)

    assert error.merge_result is merge_result
    assert error.context["commit"] == "abc123"
    assert "fix forward" in (error.recovery_action or "")


def test_process_error_has_no_recovery_hint() -> None:
    assert ProcessError("claude", "broken pipe").recovery_action is None

"""Closed error taxonomy with machine-readable codes and recovery hints.

Every failure surfaced by the executor and the coordinators is a
``GitAgentError``. The concrete classes below only fix the ``code`` and fill
the shared payload (message, context, recovery action); callers branch on
``error.code``, never on the class.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from git_agent.models import MergeResult

_OUTPUT_EXCERPT_CHARS = 2_000


class ErrorCode(str, Enum):
    """Discriminant of the error taxonomy."""

    GIT_COMMAND_FAILED = "GIT_COMMAND_FAILED"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    DIRTY_WORKING_DIRECTORY = "DIRTY_WORKING_DIRECTORY"
    AGENT_CONFIG_INVALID = "AGENT_CONFIG_INVALID"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    WORKTREE_ERROR = "WORKTREE_ERROR"
    BRANCH_EXISTS = "BRANCH_EXISTS"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    TIMEOUT = "TIMEOUT"
    PROCESS_ERROR = "PROCESS_ERROR"


class GitAgentError(Exception):
    """Base failure with code, context and an optional recovery hint."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        context: Mapping[str, Any] | None = None,
        recovery_action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.recovery_action = recovery_action

    def with_context(self, **extra: Any) -> GitAgentError:
        """Attach more debugging context and return the same error."""

        self.context.update(extra)
        return self

    def format(self) -> str:
        """Render a multi-line human-readable description."""

        lines = [f"[{self.code.value}] {self.message}"]
        for key, value in self.context.items():
            if isinstance(value, (list, tuple)):
                rendered = ", ".join(str(item) for item in value) or "-"
            else:
                rendered = str(value)
            lines.append(f"  {key}: {rendered}")
        if self.recovery_action:
            lines.append(f"  Recovery: {self.recovery_action}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "context": {key: _jsonable(value) for key, value in self.context.items()},
            "recovery_action": self.recovery_action,
        }


class CommandFailedError(GitAgentError):
    """A command ran to completion but exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str) -> None:
        detail = stderr.strip()
        message = f"Command failed with exit code {exit_code}: {command}"
        if detail:
            message = f"{message}\n{_excerpt(detail)}"
        super().__init__(
            ErrorCode.GIT_COMMAND_FAILED,
            message,
            context={"command": command, "exit_code": exit_code},
            recovery_action="Run the command manually to inspect the failure.",
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class MergeConflictError(GitAgentError):
    """Integrating the branch would conflict with the main line."""

    def __init__(self, branch_name: str, conflicting_files: Sequence[str]) -> None:
        files = list(conflicting_files)
        super().__init__(
            ErrorCode.MERGE_CONFLICT,
            f"Merging {branch_name} conflicts in {len(files)} file(s)",
            context={"branch": branch_name, "conflicting_files": files},
            recovery_action=(
                f"Rebase {branch_name} onto the main line and resolve the conflicts, "
                "then request the merge again."
            ),
        )
        self.branch_name = branch_name
        self.conflicting_files = files


class DirtyWorkingDirectoryError(GitAgentError):
    """The source working copy has uncommitted changes."""

    def __init__(self, changed_files: Sequence[str]) -> None:
        files = list(changed_files)
        super().__init__(
            ErrorCode.DIRTY_WORKING_DIRECTORY,
            f"Working directory has {len(files)} uncommitted change(s)",
            context={"changed_files": files},
            recovery_action="Commit or stash your changes first: git stash push -u",
        )
        self.changed_files = files


class AgentConfigError(GitAgentError):
    """The agent definition or run options are invalid."""

    def __init__(self, agent_name: str, config_path: str | None, reason: str) -> None:
        super().__init__(
            ErrorCode.AGENT_CONFIG_INVALID,
            f"Invalid configuration for agent {agent_name!r}: {reason}",
            context={"agent": agent_name, "config_path": config_path or "-"},
            recovery_action="Fix the agent definition front matter or the run options.",
        )
        self.agent_name = agent_name
        self.config_path = config_path
        self.reason = reason


class AgentNotFoundError(GitAgentError):
    """No definition file exists for the requested agent."""

    def __init__(self, agent_name: str, searched_paths: Sequence[str]) -> None:
        paths = list(searched_paths)
        super().__init__(
            ErrorCode.AGENT_NOT_FOUND,
            f"Agent definition not found: {agent_name}",
            context={"agent": agent_name, "searched_paths": paths},
            recovery_action=f"Create {agent_name}.md with a 'description' in its front matter.",
        )
        self.agent_name = agent_name
        self.searched_paths = paths


class WorktreeError(GitAgentError):
    """A worktree could not be created, inspected or removed."""

    def __init__(self, worktree_path: str, reason: str) -> None:
        super().__init__(
            ErrorCode.WORKTREE_ERROR,
            f"Worktree error at {worktree_path}: {_excerpt(reason.strip())}",
            context={"worktree": worktree_path},
            recovery_action="Inspect with 'git worktree list' and prune stale entries.",
        )
        self.worktree_path = worktree_path
        self.reason = reason


class BranchExistsError(GitAgentError):
    """The derived branch name is already taken."""

    def __init__(self, branch_name: str) -> None:
        super().__init__(
            ErrorCode.BRANCH_EXISTS,
            f"Branch already exists: {branch_name}",
            context={"branch": branch_name},
            recovery_action="Wait a second and retry, or delete the stale branch.",
        )
        self.branch_name = branch_name


class VerificationError(GitAgentError):
    """A verification step failed after the merge was applied."""

    def __init__(
        self,
        step: str,
        output: str,
        branch_name: str,
        merge_result: MergeResult | None = None,
    ) -> None:
        context: dict[str, Any] = {"step": step, "branch": branch_name}
        if merge_result is not None and merge_result.commit_sha:
            context["commit"] = merge_result.commit_sha
        super().__init__(
            ErrorCode.VERIFICATION_FAILED,
            f"Verification step {step!r} failed after merging {branch_name}",
            context=context,
            recovery_action=(
                "The merge stays on the main line; fix forward with a new commit "
                "instead of reverting."
            ),
        )
        self.step = step
        self.output = output
        self.branch_name = branch_name
        self.merge_result = merge_result


class CommandTimeoutError(GitAgentError):
    """A command did not finish within its timeout and was terminated."""

    def __init__(self, command: str, timeout_seconds: float) -> None:
        super().__init__(
            ErrorCode.TIMEOUT,
            f"Command timed out after {timeout_seconds:g}s: {command}",
            context={"command": command, "timeout_seconds": timeout_seconds},
            recovery_action="Increase the timeout or split the work into smaller tasks.",
        )
        self.command = command
        self.timeout_seconds = timeout_seconds


class ProcessError(GitAgentError):
    """A process could not be started or broke while running."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(
            ErrorCode.PROCESS_ERROR,
            f"Process failure for {command}: {reason}",
            context={"command": command},
        )
        self.command = command
        self.reason = reason


def _excerpt(text: str) -> str:
    if len(text) <= _OUTPUT_EXCERPT_CHARS:
        return text
    return text[:_OUTPUT_EXCERPT_CHARS] + "..."


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return str(value)

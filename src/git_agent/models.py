"""Domain models for agent runs, merges and verification."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class RunPhase(str, Enum):
    """Lifecycle states of a single agent run."""

    INITIATED = "initiated"
    WORKTREE_ALLOCATED = "worktree_allocated"
    AGENT_INVOKED = "agent_invoked"
    SUCCEEDED_WITH_CHANGES = "succeeded_with_changes"
    SUCCEEDED_NO_CHANGES = "succeeded_no_changes"
    AGENT_FAILED = "agent_failed"
    TIMED_OUT = "timed_out"
    DEALLOCATED = "deallocated"


class MergePhase(str, Enum):
    """Lifecycle states of a merge request."""

    REQUESTED = "requested"
    CONFLICT_CHECK = "conflict_check"
    CONFLICT_DETECTED = "conflict_detected"
    CLEAN = "clean"
    MERGE_APPLIED = "merge_applied"
    VERIFICATION_PENDING = "verification_pending"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"
    DONE = "done"


class VerificationStep(str, Enum):
    """Verification steps in their fixed execution order."""

    TYPE_CHECK = "type_check"
    LINT = "lint"
    TEST = "test"


@dataclass(frozen=True, slots=True)
class AgentRunOptions:
    """Caller input for one agent run."""

    agent_name: str
    task: str
    timeout_seconds: float | None = None
    cwd: Path | None = None


@dataclass(frozen=True, slots=True)
class AgentRunResult:
    """Outcome of a successful agent run."""

    branch_name: str
    worktree_path: Path
    commit_sha: str | None
    has_changes: bool
    duration_ms: int
    phase: RunPhase

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_name": self.branch_name,
            "worktree_path": str(self.worktree_path),
            "commit_sha": self.commit_sha,
            "has_changes": self.has_changes,
            "duration_ms": self.duration_ms,
            "phase": self.phase.value,
        }


@dataclass(frozen=True, slots=True)
class MergeOptions:
    """Caller input for one merge request."""

    branch_name: str
    squash: bool = False
    auto_resolve: bool = False
    skip_verification: bool = False
    delete_branch: bool = True


@dataclass(frozen=True, slots=True)
class VerificationStepResult:
    """Pass/fail and diagnostics for one verification step."""

    passed: bool
    output: str
    duration_ms: int
    executed: bool = True

    @classmethod
    def not_run(cls) -> VerificationStepResult:
        return cls(passed=False, output="", duration_ms=0, executed=False)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Results of the type-check, lint and test steps."""

    type_check: VerificationStepResult
    lint: VerificationStepResult
    test: VerificationStepResult

    @property
    def passed(self) -> bool:
        return self.type_check.passed and self.lint.passed and self.test.passed

    @property
    def failed_step(self) -> VerificationStep | None:
        """First executed step that failed, if any."""

        for step in VerificationStep:
            result = self.step(step)
            if result.executed and not result.passed:
                return step
        return None

    def step(self, step: VerificationStep) -> VerificationStepResult:
        return getattr(self, step.value)  # type: ignore[no-any-return]

    def to_dict(self) -> dict[str, Any]:
        return {step.value: asdict(self.step(step)) for step in VerificationStep}


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Outcome of a merge request."""

    merged: bool
    commit_sha: str | None = None
    conflicting_files: tuple[str, ...] = ()
    verification: VerificationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged": self.merged,
            "commit_sha": self.commit_sha,
            "conflicting_files": list(self.conflicting_files),
            "verification": self.verification.to_dict() if self.verification else None,
        }


@dataclass(frozen=True, slots=True)
class AgentBranchInfo:
    """Read-only summary of an agent branch, recomputed from the repository."""

    branch_name: str
    agent_name: str
    timestamp: datetime
    slug: str
    commit_count: int = 0
    last_commit_sha: str = ""
    last_commit_message: str = ""

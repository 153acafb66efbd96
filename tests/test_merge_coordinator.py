from __future__ import annotations

import asyncio
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

import allure
import pytest

from conftest import run_git
from git_agent.errors import ErrorCode, VerificationError
from git_agent.executor import CommandExecutor
from git_agent.git.repository import GitRepository
from git_agent.merge.coordinator import MergeCoordinator
from git_agent.merge.verification import VerificationCommands, VerificationPipeline
from git_agent.models import MergeOptions

pytestmark = [
    allure.epic("Merging"),
    allure.feature("Merge Coordinator"),
]

PASS = (sys.executable, "-c", "pass")
LINT_FAILURE = (sys.executable, "-c", "import sys; print('E501 line too long'); sys.exit(1)")
BRANCH = "agent/echo/20260101-000000-update-readme-abc123"
OTHER_BRANCH = "agent/echo/20260101-000001-add-notes-def456"


class TheirsResolver:
    async def resolve(
        self,
        repository: GitRepository,
        branch_name: str,
        conflicting_files: Sequence[str],
    ) -> bool:
        for path in conflicting_files:
            await repository.run("checkout", "--theirs", "--", path)
            await repository.run("add", "--", path)
        return True


class BrokenResolver:
    async def resolve(
        self,
        repository: GitRepository,
        branch_name: str,
        conflicting_files: Sequence[str],
    ) -> bool:
        raise RuntimeError("resolver crashed")


def _coordinator(
    repository: GitRepository,
    executor: CommandExecutor,
    *,
    lint: Sequence[str] = PASS,
    resolver=None,
) -> MergeCoordinator:
    pipeline = VerificationPipeline(
        executor,
        VerificationCommands(type_check=PASS, lint=lint, test=PASS),
        step_timeout_seconds=30,
    )
    return MergeCoordinator(repository, pipeline, resolver=resolver)


def _commit_on_branch(repo: Path, branch: str, files: dict[str, str], message: str) -> None:
    run_git(repo, "checkout", "--quiet", "-B", branch)
    for name, content in files.items():
        (repo / name).write_text(content, encoding="utf-8")
    run_git(repo, "add", "--all")
    run_git(repo, "commit", "--quiet", "-m", message)
    run_git(repo, "checkout", "--quiet", "main")


def _conflicting_branch(repo: Path) -> None:
    _commit_on_branch(repo, BRANCH, {"README.md": "agent version\n"}, "agent edit")
    _commit_on_branch(repo, "main", {"README.md": "main version\n"}, "main edit")


def _branch_exists(repo: Path, branch: str) -> bool:
    completed = subprocess.run(
        ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
        cwd=repo,
        check=False,
    )
    return completed.returncode == 0


def _parents(repo: Path, ref: str = "main") -> list[str]:
    return run_git(repo, "rev-list", "--parents", "-n", "1", ref).split()[1:]


def test_clean_merge_is_verified_and_branch_deleted(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")

    result = asyncio.run(_coordinator(repository, executor).merge(MergeOptions(BRANCH)))

    assert result.success, result.error
    merged = result.data
    assert merged.merged is True
    assert merged.commit_sha == run_git(repo, "rev-parse", "main")
    assert merged.conflicting_files == ()
    assert merged.verification is not None
    assert merged.verification.passed
    assert len(_parents(repo)) == 2
    assert run_git(repo, "log", "-1", "--format=%s", "main") == f"Merge agent branch {BRANCH}"
    assert (repo / "notes.md").read_text(encoding="utf-8") == "notes\n"
    assert not _branch_exists(repo, BRANCH)


def test_squash_merge_creates_single_parent_commit(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")

    result = asyncio.run(
        _coordinator(repository, executor).merge(MergeOptions(BRANCH, squash=True)),
    )

    assert result.success, result.error
    assert len(_parents(repo)) == 1
    message = run_git(repo, "log", "-1", "--format=%B", "main")
    assert message.splitlines()[0] == f"feat(echo): merge agent branch {BRANCH}"
    assert "- add notes" in message
    assert not _branch_exists(repo, BRANCH)


def test_conflict_leaves_main_untouched_and_is_reproducible(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _conflicting_branch(repo)
    coordinator = _coordinator(repository, executor)
    main_before = run_git(repo, "rev-parse", "main")

    first_check = asyncio.run(coordinator.check_conflicts(BRANCH))
    result = asyncio.run(coordinator.merge(MergeOptions(BRANCH)))
    second_check = asyncio.run(coordinator.check_conflicts(BRANCH))

    assert first_check.success, first_check.error
    assert first_check.data == ["README.md"]
    assert second_check.data == first_check.data
    assert not result.success
    assert result.error.code is ErrorCode.MERGE_CONFLICT
    assert result.error.context["conflicting_files"] == ["README.md"]
    assert run_git(repo, "rev-parse", "main") == main_before
    assert run_git(repo, "status", "--porcelain") == ""
    assert _branch_exists(repo, BRANCH)


def test_failed_verification_keeps_merge_and_branch(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")
    coordinator = _coordinator(repository, executor, lint=LINT_FAILURE)

    result = asyncio.run(coordinator.merge(MergeOptions(BRANCH)))

    assert not result.success
    error = result.error
    assert isinstance(error, VerificationError)
    assert error.code is ErrorCode.VERIFICATION_FAILED
    assert error.step == "lint"
    assert "E501" in error.output
    merged = error.merge_result
    assert merged is not None
    assert merged.merged is True
    assert merged.commit_sha == run_git(repo, "rev-parse", "main")
    verification = merged.verification
    assert verification is not None
    assert verification.type_check.passed
    assert not verification.lint.passed
    assert verification.lint.executed
    assert not verification.test.executed
    assert _branch_exists(repo, BRANCH)


def test_skip_verification_does_not_run_steps(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")
    coordinator = _coordinator(repository, executor, lint=LINT_FAILURE)

    result = asyncio.run(coordinator.merge(MergeOptions(BRANCH, skip_verification=True)))

    assert result.success, result.error
    assert result.data.verification is None
    assert not _branch_exists(repo, BRANCH)


def test_keep_branch_after_merge(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")

    result = asyncio.run(
        _coordinator(repository, executor).merge(MergeOptions(BRANCH, delete_branch=False)),
    )

    assert result.success, result.error
    assert _branch_exists(repo, BRANCH)


def test_dirty_working_directory_blocks_merge(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")
    (repo / "README.md").write_text("local edit\n", encoding="utf-8")

    result = asyncio.run(_coordinator(repository, executor).merge(MergeOptions(BRANCH)))

    assert not result.success
    assert result.error.code is ErrorCode.DIRTY_WORKING_DIRECTORY
    assert _branch_exists(repo, BRANCH)


def test_missing_branch_is_a_git_failure_with_hint(
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    result = asyncio.run(
        _coordinator(repository, executor).merge(MergeOptions("agent/echo/nope")),
    )

    assert not result.success
    assert result.error.code is ErrorCode.GIT_COMMAND_FAILED
    assert "git-agent branches" in (result.error.recovery_action or "")


@pytest.mark.parametrize("resolver", [None, BrokenResolver()])
def test_auto_resolve_without_working_policy_reports_conflict(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
    resolver,
) -> None:
    _conflicting_branch(repo)
    main_before = run_git(repo, "rev-parse", "main")
    coordinator = _coordinator(repository, executor, resolver=resolver)

    result = asyncio.run(coordinator.merge(MergeOptions(BRANCH, auto_resolve=True)))

    assert not result.success
    assert result.error.code is ErrorCode.MERGE_CONFLICT
    assert run_git(repo, "rev-parse", "main") == main_before
    assert run_git(repo, "status", "--porcelain") == ""


@pytest.mark.parametrize("squash", [False, True])
def test_auto_resolve_with_policy_merges(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
    squash: bool,
) -> None:
    _conflicting_branch(repo)
    coordinator = _coordinator(repository, executor, resolver=TheirsResolver())

    result = asyncio.run(
        coordinator.merge(MergeOptions(BRANCH, squash=squash, auto_resolve=True)),
    )

    assert result.success, result.error
    assert result.data.conflicting_files == ("README.md",)
    assert (repo / "README.md").read_text(encoding="utf-8") == "agent version\n"
    assert len(_parents(repo)) == (1 if squash else 2)
    assert run_git(repo, "status", "--porcelain") == ""


def test_previous_branch_is_restored_when_merge_fails(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _conflicting_branch(repo)
    run_git(repo, "checkout", "--quiet", "-b", "feature/local")

    result = asyncio.run(_coordinator(repository, executor).merge(MergeOptions(BRANCH)))

    assert not result.success
    assert run_git(repo, "symbolic-ref", "--short", "HEAD") == "feature/local"


def test_concurrent_merges_into_main_are_serialized(
    repo: Path,
    repository: GitRepository,
    executor: CommandExecutor,
) -> None:
    _commit_on_branch(repo, BRANCH, {"notes.md": "notes\n"}, "add notes")
    _commit_on_branch(repo, OTHER_BRANCH, {"todo.md": "todo\n"}, "add todo")
    coordinator = _coordinator(repository, executor)

    async def _scenario():
        return await asyncio.gather(
            coordinator.merge(MergeOptions(BRANCH)),
            coordinator.merge(MergeOptions(OTHER_BRANCH)),
        )

    first, second = asyncio.run(_scenario())

    assert first.success, first.error
    assert second.success, second.error
    assert (repo / "notes.md").exists()
    assert (repo / "todo.md").exists()
    assert run_git(repo, "rev-parse", "main") == second.data.commit_sha

"""Merge agent branches into the main line and verify the result."""

from __future__ import annotations

import asyncio
import logging

from git_agent.errors import (
    CommandFailedError,
    DirtyWorkingDirectoryError,
    GitAgentError,
    MergeConflictError,
    VerificationError,
)
from git_agent.git.branches import parse_branch_name, sanitize_name
from git_agent.git.repository import GitRepository
from git_agent.merge.resolution import AbortingResolver, ConflictResolver
from git_agent.merge.verification import VerificationPipeline
from git_agent.models import MergeOptions, MergePhase, MergeResult
from git_agent.result import Err, Ok, Result

logger = logging.getLogger(__name__)


class MergeCoordinator:
    """Conflict check, squash or regular merge, then verification.

    A merge that fails verification stays on the main line: the caller gets
    a ``VerificationError`` carrying the full ``MergeResult`` and fixes
    forward with a new commit.
    """

    def __init__(
        self,
        repository: GitRepository,
        pipeline: VerificationPipeline,
        *,
        main_branch: str | None = None,
        resolver: ConflictResolver | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.main_branch = main_branch
        self.resolver: ConflictResolver = resolver or AbortingResolver()
        self._locks: dict[str, asyncio.Lock] = {}

    async def merge(self, options: MergeOptions) -> Result[MergeResult, GitAgentError]:
        """Integrate ``options.branch_name`` into the main line."""

        try:
            main = await self.repository.default_branch(self.main_branch)
        except GitAgentError as error:
            return Err(error)
        lock = self._locks.setdefault(main, asyncio.Lock())
        if lock.locked():
            logger.info("Waiting for the in-flight merge into %s", main)
        async with lock:
            try:
                return Ok(await self._merge(options, main))
            except GitAgentError as error:
                return Err(error)

    async def check_conflicts(self, branch_name: str) -> Result[list[str], GitAgentError]:
        """Dry-run the merge and list conflicting paths; nothing is mutated."""

        try:
            main = await self.repository.default_branch(self.main_branch)
            return Ok(await self._conflicts(main, branch_name))
        except GitAgentError as error:
            return Err(error)

    async def _merge(self, options: MergeOptions, main: str) -> MergeResult:
        repository = self.repository
        branch = options.branch_name
        logger.info("Merge %s: %s into %s", MergePhase.REQUESTED.value, branch, main)

        changed = await repository.changed_files()
        if changed:
            raise DirtyWorkingDirectoryError(changed)
        if not await repository.branch_exists(branch):
            error = CommandFailedError(
                f"git show-ref --verify refs/heads/{branch}",
                1,
                f"Branch does not exist: {branch}",
            )
            error.recovery_action = "List agent branches with: git-agent branches"
            raise error

        previous = await repository.current_branch()
        if previous != main:
            await repository.checkout(main)
        merged = False
        try:
            logger.info("Merge %s: %s", MergePhase.CONFLICT_CHECK.value, branch)
            conflicts = await self._conflicts(main, branch)
            if conflicts and not options.auto_resolve:
                logger.warning(
                    "Merge %s: %s conflicts in %s",
                    MergePhase.CONFLICT_DETECTED.value,
                    branch,
                    ", ".join(conflicts),
                )
                raise MergeConflictError(branch, conflicts)
            if conflicts:
                commit_sha = await self._resolve(branch, conflicts, options.squash)
            else:
                logger.info("Merge %s: %s", MergePhase.CLEAN.value, branch)
                commit_sha = await self._apply(branch, options.squash)
            merged = True
        finally:
            if not merged and previous and previous != main:
                await self._restore(previous)

        logger.info("Merge %s: %s as %s", MergePhase.MERGE_APPLIED.value, branch, commit_sha)
        if options.skip_verification:
            logger.info("Skipping verification of %s", branch)
            await self._cleanup(branch, options.delete_branch)
            return MergeResult(
                merged=True,
                commit_sha=commit_sha,
                conflicting_files=tuple(conflicts),
            )

        logger.info("Merge %s: %s", MergePhase.VERIFICATION_PENDING.value, branch)
        verification = await self.pipeline.run(repository.root)
        result = MergeResult(
            merged=True,
            commit_sha=commit_sha,
            conflicting_files=tuple(conflicts),
            verification=verification,
        )
        failed_step = verification.failed_step
        if failed_step is not None:
            logger.warning(
                "Merge %s: %s failed %s, merge %s stays on %s",
                MergePhase.VERIFICATION_FAILED.value,
                branch,
                failed_step.value,
                commit_sha,
                main,
            )
            raise VerificationError(
                failed_step.value,
                verification.step(failed_step).output,
                branch,
                result,
            )
        logger.info("Merge %s: %s", MergePhase.VERIFIED.value, branch)
        await self._cleanup(branch, options.delete_branch)
        logger.info("Merge %s: %s", MergePhase.DONE.value, branch)
        return result

    async def _conflicts(self, main: str, branch: str) -> list[str]:
        conflicts = await self.repository.merge_tree_conflicts(main, branch)
        if conflicts is not None:
            return conflicts
        clean = await self.repository.start_merge(branch)
        try:
            return [] if clean else await self.repository.unmerged_files()
        finally:
            await self.repository.abort_merge()

    async def _apply(self, branch: str, squash: bool) -> str:
        if squash:
            return await self.repository.squash_merge(branch, await self._squash_message(branch))
        return await self.repository.regular_merge(branch, f"Merge agent branch {branch}")

    async def _resolve(self, branch: str, conflicts: list[str], squash: bool) -> str:
        repository = self.repository
        logger.info("Attempting conflict resolution for %s", branch)
        if await repository.start_merge(branch, squash=squash):
            return await repository.commit_merge(await self._merge_message(branch, squash))
        try:
            resolved = await self.resolver.resolve(repository, branch, conflicts)
            remaining = await repository.unmerged_files() if resolved else conflicts
        except Exception:
            logger.exception("Conflict resolver failed for %s", branch)
            resolved, remaining = False, conflicts
        if not resolved or remaining:
            await repository.abort_merge()
            raise MergeConflictError(branch, remaining or conflicts)
        return await repository.commit_merge(await self._merge_message(branch, squash))

    async def _merge_message(self, branch: str, squash: bool) -> str:
        if squash:
            return await self._squash_message(branch)
        return f"Merge agent branch {branch}"

    async def _squash_message(self, branch: str) -> str:
        parsed = parse_branch_name(branch)
        agent = parsed.agent_name if parsed else sanitize_name(branch) or "agent"
        subjects = await self.repository.commit_subjects("HEAD", branch)
        lines = [f"feat({agent}): merge agent branch {branch}"]
        if subjects:
            lines.append("")
            lines.extend(f"- {subject}" for subject in subjects)
        return "\n".join(lines)

    async def _restore(self, branch: str) -> None:
        try:
            await self.repository.checkout(branch)
        except GitAgentError as error:
            logger.warning("Could not restore branch %s: %s", branch, error.message)

    async def _cleanup(self, branch: str, delete_branch: bool) -> None:
        if not delete_branch:
            return
        try:
            await self.repository.delete_branch(branch, force=True)
        except GitAgentError as error:
            logger.warning("Could not delete merged branch %s: %s", branch, error.message)
            return
        logger.info("Deleted merged branch %s", branch)

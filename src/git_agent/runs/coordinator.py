"""Agent run lifecycle: worktree and branch per task, registry bookkeeping."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shlex
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from git_agent.config import DEFAULT_AGENT_COMMAND_TEMPLATE, DEFAULT_AGENT_DEFINITION_DIRS
from git_agent.errors import (
    AgentConfigError,
    BranchExistsError,
    CommandTimeoutError,
    DirtyWorkingDirectoryError,
    ErrorCode,
    GitAgentError,
    ProcessError,
    WorktreeError,
)
from git_agent.executor import CommandOutput, render_command
from git_agent.git.branches import (
    AGENT_BRANCH_NAMESPACES,
    BranchNamer,
    branch_leaf,
    make_branch_name,
    parse_branch_name,
    sanitize_name,
    task_slug,
)
from git_agent.git.repository import GitRepository
from git_agent.models import AgentBranchInfo, AgentRunOptions, AgentRunResult, RunPhase
from git_agent.result import Err, Ok, Result
from git_agent.runs.agents import load_agent_definition
from git_agent.runs.state import (
    ActiveRunInfo,
    RunnerStateStore,
    RunReconciliation,
    RunStatus,
    pid_alive,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2_000
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class AgentRunCoordinator:
    """Starts agent runs, each in its own worktree on its own branch.

    Runs never share a branch: a derived name that already exists in the
    repository, or is reserved by another in-flight run of this coordinator,
    fails the run with ``BranchExistsError`` before anything is allocated.
    Failed runs keep their worktree and branch for inspection.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: GitRepository,
        state_store: RunnerStateStore,
        *,
        main_branch: str | None = None,
        worktree_dir: str = ".agent-worktrees",
        command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE,
        default_timeout_seconds: float = 1_800.0,
        definition_dirs: Sequence[str] = DEFAULT_AGENT_DEFINITION_DIRS,
        require_definition: bool = True,
        commit_changes: bool = True,
        keep_worktree_on_success: bool = False,
        branch_namer: BranchNamer = make_branch_name,
    ) -> None:
        self.repository = repository
        self.state_store = state_store
        self.main_branch = main_branch
        self.worktree_dir = worktree_dir
        self.command_template = command_template
        self.default_timeout_seconds = default_timeout_seconds
        self.definition_dirs = tuple(definition_dirs)
        self.require_definition = require_definition
        self.commit_changes = commit_changes
        self.keep_worktree_on_success = keep_worktree_on_success
        self.branch_namer = branch_namer
        self._reserved: set[str] = set()
        self._abandon_events: dict[str, asyncio.Event] = {}

    async def start_run(self, options: AgentRunOptions) -> Result[AgentRunResult, GitAgentError]:
        """Run one agent task to a terminal state."""

        started = time.monotonic()
        try:
            return Ok(await self._run(options, started))
        except GitAgentError as error:
            return Err(error)

    def abandon(self, branch_name: str) -> bool:
        """Ask the in-flight run on ``branch_name`` to stop; False if there is none."""

        event = self._abandon_events.get(branch_name)
        if event is None:
            return False
        logger.info("Abandoning run %s", branch_name)
        event.set()
        return True

    def in_flight(self) -> list[str]:
        return sorted(self._abandon_events)

    async def reconcile(self) -> Result[list[RunReconciliation], GitAgentError]:
        """Compare the registry with reality and report every registered run.

        Nothing is deleted here; ``forget`` is the explicit cleanup step.
        """

        try:
            worktrees = {path.resolve() for path in await self.repository.worktree_paths()}
            reports: list[RunReconciliation] = []
            for run in self.state_store.active_runs():
                if run.pid == os.getpid():
                    owner_alive = run.branch_name in self._abandon_events
                else:
                    owner_alive = pid_alive(run.pid)
                report = RunReconciliation(
                    run=run,
                    status=RunStatus.ACTIVE if owner_alive else RunStatus.ORPHANED,
                    owner_alive=owner_alive,
                    worktree_exists=run.worktree_path.resolve() in worktrees
                    or run.worktree_path.exists(),
                    branch_exists=await self.repository.branch_exists(run.branch_name),
                )
                if report.status is RunStatus.ORPHANED:
                    logger.warning(
                        "Orphaned run %s (pid=%s, worktree_exists=%s, branch_exists=%s)",
                        run.branch_name,
                        run.pid,
                        report.worktree_exists,
                        report.branch_exists,
                    )
                reports.append(report)
        except GitAgentError as error:
            return Err(error)
        return Ok(reports)

    def forget(self, branch_name: str) -> bool:
        """Drop a registry entry without touching its worktree or branch."""

        return self.state_store.deregister(branch_name)

    async def list_agent_branches(self) -> Result[list[AgentBranchInfo], GitAgentError]:
        """Summaries of all agent branches, newest first."""

        try:
            main = await self.repository.default_branch(self.main_branch)
            infos: list[AgentBranchInfo] = []
            for name in await self.repository.list_branches(AGENT_BRANCH_NAMESPACES):
                parsed = parse_branch_name(name)
                if parsed is None:
                    logger.debug("Skipping branch with unrecognized layout: %s", name)
                    continue
                sha, subject = await self.repository.last_commit(name)
                infos.append(
                    AgentBranchInfo(
                        branch_name=name,
                        agent_name=parsed.agent_name,
                        timestamp=parsed.timestamp,
                        slug=parsed.slug,
                        commit_count=await self.repository.count_commits(main, name),
                        last_commit_sha=sha,
                        last_commit_message=subject,
                    ),
                )
        except GitAgentError as error:
            return Err(error)
        return Ok(sorted(infos, key=lambda info: info.timestamp, reverse=True))

    async def _run(self, options: AgentRunOptions, started: float) -> AgentRunResult:
        agent = options.agent_name.strip()
        task = options.task.strip()
        if not agent:
            raise AgentConfigError(options.agent_name, None, "agent name must not be empty")
        if not task:
            raise AgentConfigError(agent, None, "task must not be empty")
        timeout = (
            self.default_timeout_seconds
            if options.timeout_seconds is None
            else options.timeout_seconds
        )
        if timeout <= 0:
            raise AgentConfigError(agent, None, f"timeout must be positive, got {timeout}")

        source = await self._source_repository(options.cwd)
        if self.require_definition:
            load_agent_definition(agent, source.root, self.definition_dirs)

        try:
            branch = self.branch_namer(agent, task)
        except ValueError as error:
            raise AgentConfigError(agent, None, str(error)) from error
        if branch in self._reserved:
            raise BranchExistsError(branch)
        self._reserved.add(branch)
        try:
            logger.info("Run %s: %s", RunPhase.INITIATED.value, branch)
            if await source.branch_exists(branch):
                raise BranchExistsError(branch)
            return await self._allocate_and_invoke(source, agent, task, branch, timeout, started)
        finally:
            self._reserved.discard(branch)

    async def _allocate_and_invoke(  # noqa: PLR0913
        self,
        source: GitRepository,
        agent: str,
        task: str,
        branch: str,
        timeout: float,
        started: float,
    ) -> AgentRunResult:
        changed = await source.changed_files()
        if changed:
            raise DirtyWorkingDirectoryError(changed)

        main = await source.default_branch(self.main_branch)
        base_sha = await source.rev_parse(main)
        worktree = (
            self.repository.root / self.worktree_dir / sanitize_name(agent) / branch_leaf(branch)
        )
        if worktree.exists():
            raise WorktreeError(str(worktree), "path already exists")
        try:
            argv = render_agent_command(
                self.command_template,
                agent=agent,
                task=task,
                worktree=str(worktree),
                branch=branch,
            )
        except ValueError as error:
            raise AgentConfigError(agent, None, f"bad agent command template: {error}") from error

        await self.repository.ensure_excluded(self.worktree_dir)
        await source.add_worktree(worktree, branch, base_sha)
        logger.info("Run %s: %s at %s", RunPhase.WORKTREE_ALLOCATED.value, branch, worktree)

        self.state_store.register(
            ActiveRunInfo(
                branch_name=branch,
                worktree_path=worktree,
                agent_name=agent,
                task=task,
                started_at=datetime.now(UTC),
                pid=os.getpid(),
            ),
        )
        abandoned = asyncio.Event()
        self._abandon_events[branch] = abandoned
        try:
            logger.info(
                "Run %s: %s",
                RunPhase.AGENT_INVOKED.value,
                render_command(argv[0], argv[1:]),
            )
            output = await self._invoke(argv, worktree, branch, agent, task, timeout, abandoned)
            phase, commit_sha = await self._finalize(
                source,
                agent,
                task,
                branch,
                worktree,
                base_sha,
            )
        except GitAgentError as error:
            self._preserve(error, agent, branch, worktree)
            raise
        finally:
            self._abandon_events.pop(branch, None)
            self.state_store.deregister(branch)

        logger.debug("Agent output for %s:\n%s", branch, output.stdout[-_STDERR_TAIL_CHARS:])
        await self._deallocate(source, worktree, branch)
        return AgentRunResult(
            branch_name=branch,
            worktree_path=worktree,
            commit_sha=commit_sha,
            has_changes=commit_sha is not None,
            duration_ms=int((time.monotonic() - started) * 1000),
            phase=phase,
        )

    async def _invoke(  # noqa: PLR0913
        self,
        argv: list[str],
        worktree: Path,
        branch: str,
        agent: str,
        task: str,
        timeout: float,
        abandoned: asyncio.Event,
    ) -> CommandOutput:
        display = render_command(argv[0], argv[1:])
        execution = asyncio.create_task(
            self.repository.executor.execute(
                argv[0],
                argv[1:],
                cwd=worktree,
                timeout_seconds=timeout,
                env={
                    "GIT_AGENT_NAME": agent,
                    "GIT_AGENT_BRANCH": branch,
                    "GIT_AGENT_TASK": task,
                },
            ),
        )
        abandon_wait = asyncio.create_task(abandoned.wait())
        try:
            await asyncio.wait({execution, abandon_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abandon_wait.cancel()
            if not execution.done():
                # The executor stops the agent process when its task is cancelled.
                execution.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await execution

        if execution.cancelled():
            logger.warning("Run %s: %s", RunPhase.AGENT_FAILED.value, branch)
            raise ProcessError(display, "run abandoned").with_context(
                phase=RunPhase.AGENT_FAILED.value,
            )
        result = execution.result()
        if not result.success:
            error = result.error
            if error.code is ErrorCode.TIMEOUT:
                logger.warning("Run %s: %s after %ss", RunPhase.TIMED_OUT.value, branch, timeout)
                raise CommandTimeoutError(display, timeout).with_context(
                    phase=RunPhase.TIMED_OUT.value,
                )
            raise error.with_context(phase=RunPhase.AGENT_FAILED.value)
        output = result.data
        if output.exit_code != 0:
            logger.warning(
                "Run %s: %s exited with code %s",
                RunPhase.AGENT_FAILED.value,
                branch,
                output.exit_code,
            )
            raise ProcessError(display, f"agent exited with code {output.exit_code}").with_context(
                phase=RunPhase.AGENT_FAILED.value,
                exit_code=output.exit_code,
                stderr=output.stderr.strip()[-_STDERR_TAIL_CHARS:],
            )
        return output

    async def _finalize(  # noqa: PLR0913
        self,
        source: GitRepository,
        agent: str,
        task: str,
        branch: str,
        worktree: Path,
        base_sha: str,
    ) -> tuple[RunPhase, str | None]:
        if self.commit_changes:
            committed = await source.commit_all(commit_message(agent, task), cwd=worktree)
            if committed:
                logger.info("Committed uncommitted agent changes on %s as %s", branch, committed)
        if await source.count_commits(base_sha, branch) == 0:
            logger.info("Run %s: %s", RunPhase.SUCCEEDED_NO_CHANGES.value, branch)
            return RunPhase.SUCCEEDED_NO_CHANGES, None
        commit_sha = await source.rev_parse(branch)
        logger.info("Run %s: %s at %s", RunPhase.SUCCEEDED_WITH_CHANGES.value, branch, commit_sha)
        return RunPhase.SUCCEEDED_WITH_CHANGES, commit_sha

    async def _deallocate(self, source: GitRepository, worktree: Path, branch: str) -> None:
        if self.keep_worktree_on_success:
            return
        try:
            leftover = await source.changed_files(cwd=worktree)
            if leftover:
                logger.warning(
                    "Keeping worktree %s of %s: %s uncommitted change(s)",
                    worktree,
                    branch,
                    len(leftover),
                )
                return
            await source.remove_worktree(worktree, force=True)
        except GitAgentError as error:
            logger.warning("Could not deallocate worktree %s: %s", worktree, error.message)
            return
        logger.info("Run %s: %s", RunPhase.DEALLOCATED.value, branch)

    def _preserve(self, error: GitAgentError, agent: str, branch: str, worktree: Path) -> None:
        error.with_context(agent=agent, branch=branch, worktree=str(worktree))
        error.recovery_action = (
            f"The worktree {worktree} and branch {branch} were kept for inspection. "
            f"Remove them with: git worktree remove --force {worktree} && git branch -D {branch}"
        )
        logger.warning("Preserved worktree %s after failed run of %s", worktree, agent)

    async def _source_repository(self, cwd: Path | None) -> GitRepository:
        if cwd is None:
            return self.repository
        if not cwd.is_dir():
            raise AgentConfigError("-", None, f"working directory does not exist: {cwd}")
        source = await GitRepository.discover(cwd, self.repository.executor)
        if await source.common_dir() != await self.repository.common_dir():
            raise AgentConfigError(
                "-",
                None,
                f"{cwd} does not belong to the repository at {self.repository.root}",
            )
        return source


def render_agent_command(template: str, **values: str) -> list[str]:
    """Split ``template`` into argv and substitute ``{name}`` placeholders per token.

    All placeholders are replaced in one pass, so substituted values are kept
    verbatim. They never go through a shell and never split into extra
    arguments.
    """

    def _substitute(match: re.Match[str]) -> str:
        return values.get(match.group(1), match.group(0))

    argv = [_PLACEHOLDER_RE.sub(_substitute, token) for token in shlex.split(template)]
    if not argv:
        raise ValueError("Agent command template is empty")
    return argv


def commit_message(agent: str, task: str) -> str:
    return f"feat({agent}): {task_slug(task)}\n\nTask: {task}\n\nAgent: {agent}"

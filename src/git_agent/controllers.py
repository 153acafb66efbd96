"""Controllers for git-agent CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from git_agent.config import Settings
from git_agent.errors import GitAgentError, VerificationError
from git_agent.executor import CommandExecutor
from git_agent.git.repository import GitRepository
from git_agent.merge.coordinator import MergeCoordinator
from git_agent.merge.verification import VerificationCommands, VerificationPipeline
from git_agent.models import (
    AgentBranchInfo,
    AgentRunOptions,
    AgentRunResult,
    MergeOptions,
    MergeResult,
    VerificationResult,
    VerificationStep,
)
from git_agent.runs.coordinator import AgentRunCoordinator
from git_agent.runs.state import RunnerStateStore, RunStatus, default_state_path
from git_agent.waves import load_waves, run_wave, wave_branches

_OUTPUT_EXCERPT_CHARS = 2_000


@dataclass(slots=True)
class CommandResult:
    """Printable lines plus the overall success flag of one CLI command."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


@dataclass(slots=True)
class RunCommand:
    """CLI input for one agent run."""

    repo_root: Path | None
    agent_name: str
    task: str
    timeout_seconds: float | None = None
    cwd: Path | None = None
    as_json: bool = False


@dataclass(slots=True)
class MergeCommand:
    """CLI input for merging one agent branch."""

    repo_root: Path | None
    branch_name: str
    squash: bool = False
    auto_resolve: bool = False
    skip_verification: bool = False
    keep_branch: bool = False
    as_json: bool = False


@dataclass(slots=True)
class BranchesCommand:
    repo_root: Path | None
    as_json: bool = False


@dataclass(slots=True)
class StateCommand:
    """CLI input for run registry inspection and cleanup."""

    repo_root: Path | None
    branch_name: str | None = None


@dataclass(slots=True)
class WaveCommand:
    """CLI input for wave listing, status and execution."""

    repo_root: Path | None
    waves_file: Path | None = None
    number: int | None = None
    timeout_seconds: float | None = None
    max_parallel: int | None = None


@dataclass(slots=True)
class _Services:
    settings: Settings
    repository: GitRepository
    state_store: RunnerStateStore
    runs: AgentRunCoordinator
    merges: MergeCoordinator


class GitAgentCliController:
    """Coordinates run, merge, registry and wave CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            result = await services.runs.start_run(
                AgentRunOptions(
                    agent_name=command.agent_name,
                    task=command.task,
                    timeout_seconds=command.timeout_seconds,
                    cwd=command.cwd,
                ),
            )
            if not result.success:
                return _error_result(result.error, as_json=command.as_json)
            if command.as_json:
                return _json_result(result.data.to_dict())
            return CommandResult(lines=_run_lines(result.data))

        return self._execute(command.repo_root, _operation)

    def merge(self, command: MergeCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            result = await services.merges.merge(
                MergeOptions(
                    branch_name=command.branch_name,
                    squash=command.squash,
                    auto_resolve=command.auto_resolve,
                    skip_verification=command.skip_verification,
                    delete_branch=services.settings.merge.delete_merged_branch
                    and not command.keep_branch,
                ),
            )
            if not result.success:
                return _merge_error_result(result.error, as_json=command.as_json)
            if command.as_json:
                return _json_result(result.data.to_dict())
            return CommandResult(lines=_merge_lines(command.branch_name, result.data))

        return self._execute(command.repo_root, _operation)

    def branches(self, command: BranchesCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            result = await services.runs.list_agent_branches()
            if not result.success:
                return _error_result(result.error, as_json=command.as_json)
            if command.as_json:
                return _json_result([_branch_dict(info) for info in result.data])
            if not result.data:
                return CommandResult(
                    lines=[
                        "No agent branches found.",
                        'Create one with: git-agent run <agent-name> "<task>"',
                    ],
                )
            lines = [f"Agent branches: {len(result.data)}"]
            lines.extend(_branch_line(info) for info in result.data)
            lines.append("To merge a branch: git-agent merge <branch-name>")
            return CommandResult(lines=lines)

        return self._execute(command.repo_root, _operation)

    def state_show(self, command: StateCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            runs = services.state_store.active_runs()
            lines = [f"Runner state: {services.state_store.path}", f"Active runs: {len(runs)}"]
            lines.extend(
                f"- {run.branch_name} agent={run.agent_name} pid={run.pid} "
                f"started_at={run.started_at.isoformat()} worktree={run.worktree_path}"
                for run in runs
            )
            return CommandResult(lines=lines)

        return self._execute(command.repo_root, _operation)

    def state_recover(self, command: StateCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            result = await services.runs.reconcile()
            if not result.success:
                return _error_result(result.error, as_json=False)
            orphaned = [item for item in result.data if item.status is RunStatus.ORPHANED]
            lines = [f"Registered runs: {len(result.data)} orphaned={len(orphaned)}"]
            for item in result.data:
                lines.append(
                    f"[{item.status.value}] {item.run.branch_name} pid={item.run.pid} "
                    f"worktree={'present' if item.worktree_exists else 'missing'} "
                    f"branch={'present' if item.branch_exists else 'missing'}",
                )
            if orphaned:
                lines.append("Inspect the worktrees, then drop entries with:")
                lines.extend(
                    f"  git-agent state forget {item.run.branch_name}" for item in orphaned
                )
            return CommandResult(lines=lines)

        return self._execute(command.repo_root, _operation)

    def state_forget(self, command: StateCommand) -> CommandResult:
        async def _operation(services: _Services) -> CommandResult:
            branch = command.branch_name or ""
            if services.runs.forget(branch):
                return CommandResult(lines=[f"Forgot active run: {branch}"])
            return CommandResult(lines=[f"No active run registered for {branch}"], success=False)

        return self._execute(command.repo_root, _operation)

    def wave_list(self, command: WaveCommand) -> CommandResult:
        settings, problem = _load_settings(command.repo_root)
        if settings is None:
            return problem
        try:
            waves = load_waves(_waves_file(settings, command))
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)
        lines: list[str] = []
        for wave in waves.values():
            lines.append(f"Wave {wave.number}: {wave.name} ({len(wave.agents)} agent(s))")
            lines.extend(f"  - {member.agent}: {member.task}" for member in wave.agents)
        return CommandResult(lines=lines or ["No waves defined."])

    def wave_status(self, command: WaveCommand) -> CommandResult:
        number = command.number or 0

        async def _operation(services: _Services) -> CommandResult:
            result = await services.runs.list_agent_branches()
            if not result.success:
                return _error_result(result.error, as_json=False)
            branches = wave_branches(result.data, number)
            if not branches:
                return CommandResult(lines=[f"Wave {number}: no agent branches found."])
            lines = [f"Wave {number}: {len(branches)} branch(es)"]
            lines.extend(_branch_line(info) for info in branches)
            return CommandResult(lines=lines)

        return self._execute(command.repo_root, _operation)

    def wave_run(self, command: WaveCommand) -> CommandResult:
        number = command.number or 0

        async def _operation(services: _Services) -> CommandResult:
            try:
                waves = load_waves(_waves_file(services.settings, command))
            except ValueError as error:
                return CommandResult(lines=[str(error)], success=False)
            wave = waves.get(number)
            if wave is None:
                return CommandResult(lines=[f"Wave {number} is not defined."], success=False)
            outcomes = await run_wave(
                services.runs,
                wave,
                max_parallel=command.max_parallel or services.settings.waves.max_parallel,
                timeout_seconds=command.timeout_seconds,
            )
            lines = [f"Wave {wave.number}: {wave.name}"]
            for outcome in outcomes:
                if outcome.result.success:
                    data = outcome.result.data
                    lines.append(
                        f"  ok {outcome.agent.agent}: branch={data.branch_name} "
                        f"has_changes={str(data.has_changes).lower()}",
                    )
                else:
                    error = outcome.result.error
                    lines.append(
                        f"  failed {outcome.agent.agent}: [{error.code.value}] {error.message}",
                    )
            succeeded = sum(1 for outcome in outcomes if outcome.result.success)
            lines.append(f"Succeeded: {succeeded}/{len(outcomes)}")
            return CommandResult(lines=lines, success=succeeded == len(outcomes))

        return self._execute(command.repo_root, _operation)

    def _execute(
        self,
        repo_root: Path | None,
        operation: Callable[[_Services], Awaitable[CommandResult]],
    ) -> CommandResult:
        settings, problem = _load_settings(repo_root)
        if settings is None:
            return problem

        async def _main() -> CommandResult:
            try:
                services = await _build_services(settings)
            except GitAgentError as error:
                return _error_result(error, as_json=False)
            return await operation(services)

        return asyncio.run(_main())


def _load_settings(repo_root: Path | None) -> tuple[Settings | None, CommandResult]:
    try:
        settings = Settings.from_env(repo_root=repo_root)
        settings.validate()
    except ValueError as error:
        return None, CommandResult(lines=[f"Configuration error: {error}"], success=False)
    return settings, CommandResult()


async def _build_services(settings: Settings) -> _Services:
    executor = CommandExecutor(
        default_timeout_seconds=settings.executor.command_timeout_seconds,
        kill_grace_seconds=settings.executor.kill_grace_seconds,
        max_output_bytes=settings.executor.max_output_bytes,
    )
    repository = await GitRepository.discover(settings.repository.root, executor)
    state_path = settings.repository.state_path or default_state_path(
        await repository.common_dir(),
    )
    state_store = RunnerStateStore(state_path)
    runs = AgentRunCoordinator(
        repository,
        state_store,
        main_branch=settings.repository.main_branch,
        worktree_dir=settings.repository.worktree_dir,
        command_template=settings.agents.command_template,
        default_timeout_seconds=settings.agents.timeout_seconds,
        definition_dirs=settings.agents.definition_dirs,
        require_definition=settings.agents.require_definition,
        commit_changes=settings.agents.commit_changes,
        keep_worktree_on_success=settings.agents.keep_worktree_on_success,
    )
    pipeline = VerificationPipeline(
        executor,
        VerificationCommands.from_command_lines(
            settings.verification.typecheck_command,
            settings.verification.lint_command,
            settings.verification.test_command,
        ),
        step_timeout_seconds=settings.verification.timeout_seconds,
    )
    merges = MergeCoordinator(repository, pipeline, main_branch=settings.repository.main_branch)
    return _Services(
        settings=settings,
        repository=repository,
        state_store=state_store,
        runs=runs,
        merges=merges,
    )


def _waves_file(settings: Settings, command: WaveCommand) -> Path:
    path = command.waves_file or settings.waves.waves_file
    if path.is_absolute():
        return path
    return Path(settings.repository.root) / path


def _run_lines(result: AgentRunResult) -> list[str]:
    lines = [
        "Run finished: "
        f"branch={result.branch_name} phase={result.phase.value} "
        f"has_changes={str(result.has_changes).lower()} duration_ms={result.duration_ms}",
    ]
    if result.commit_sha:
        lines.append(f"Commit: {result.commit_sha}")
        lines.append(f"Next: git-agent merge {result.branch_name}")
    if result.worktree_path.exists():
        lines.append(f"Worktree kept: {result.worktree_path}")
    return lines


def _merge_lines(branch: str, result: MergeResult) -> list[str]:
    lines = [f"Merged {branch}: commit={result.commit_sha}"]
    if result.conflicting_files:
        lines.append(f"Resolved conflicts: {', '.join(result.conflicting_files)}")
    if result.verification is None:
        lines.append("Verification: skipped")
    else:
        lines.extend(_verification_lines(result.verification))
    return lines


def _verification_lines(verification: VerificationResult) -> list[str]:
    lines = ["Verification:"]
    for step in VerificationStep:
        outcome = verification.step(step)
        if not outcome.executed:
            status = "not run"
        else:
            status = f"{'passed' if outcome.passed else 'FAILED'} ({outcome.duration_ms}ms)"
        lines.append(f"  {step.value}: {status}")
    return lines


def _merge_error_result(error: GitAgentError, *, as_json: bool) -> CommandResult:
    result = _error_result(error, as_json=as_json)
    if as_json or not isinstance(error, VerificationError):
        return result
    if error.merge_result is not None and error.merge_result.verification is not None:
        result.lines.extend(_verification_lines(error.merge_result.verification))
    if error.output.strip():
        result.lines.append(f"{error.step} output:")
        result.lines.append(error.output.strip()[:_OUTPUT_EXCERPT_CHARS])
    return result


def _error_result(error: GitAgentError, *, as_json: bool) -> CommandResult:
    if as_json:
        payload: dict[str, Any] = {"success": False, "error": error.to_dict()}
        if isinstance(error, VerificationError) and error.merge_result is not None:
            payload["data"] = error.merge_result.to_dict()
        return CommandResult(lines=[json.dumps(payload, indent=2)], success=False)
    return CommandResult(lines=error.format().splitlines(), success=False)


def _json_result(data: Any) -> CommandResult:
    return CommandResult(lines=[json.dumps({"success": True, "data": data}, indent=2)])


def _branch_dict(info: AgentBranchInfo) -> dict[str, Any]:
    return {
        "branch_name": info.branch_name,
        "agent_name": info.agent_name,
        "timestamp": info.timestamp.isoformat(),
        "slug": info.slug,
        "commit_count": info.commit_count,
        "last_commit_sha": info.last_commit_sha,
        "last_commit_message": info.last_commit_message,
    }


def _branch_line(info: AgentBranchInfo) -> str:
    return (
        f"- {info.branch_name} agent={info.agent_name} commits={info.commit_count} "
        f"created={info.timestamp.strftime('%Y-%m-%d %H:%M:%S')} "
        f"last={info.last_commit_sha[:8]} {info.last_commit_message}"
    )

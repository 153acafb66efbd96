"""CLI entrypoint for git-agent."""

import logging
import os
from pathlib import Path

import rich_click as click

from git_agent import __version__
from git_agent.controllers import (
    BranchesCommand,
    CommandResult,
    GitAgentCliController,
    MergeCommand,
    RunCommand,
    StateCommand,
    WaveCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GitAgentCliController()

_REPO_ROOT_HELP = "Repository root (default: GIT_AGENT_REPO_ROOT or the current directory)."


@click.group()
@click.version_option(version=__version__, prog_name="git-agent")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (default: GIT_AGENT_LOG_LEVEL or WARNING).",
)
def git_agent(log_level: str | None) -> None:
    """Run coding agents in isolated worktrees and merge their branches with verification."""

    level = (log_level or os.getenv("GIT_AGENT_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@git_agent.command("run")
@click.argument("agent_name")
@click.argument("task")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Agent timeout (default: GIT_AGENT_AGENT_TIMEOUT_SECONDS or 1800).",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Source working copy to branch from (a directory of the same repository).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
def run_agent(  # noqa: PLR0913
    agent_name: str,
    task: str,
    repo_root: Path | None,
    timeout_seconds: float | None,
    cwd: Path | None,
    as_json: bool,
) -> None:
    """Run AGENT_NAME on TASK in a fresh worktree and branch."""

    _finish(
        CONTROLLER.run(
            RunCommand(
                repo_root=repo_root,
                agent_name=agent_name,
                task=task,
                timeout_seconds=timeout_seconds,
                cwd=cwd,
                as_json=as_json,
            ),
        ),
        failure="Agent run failed.",
    )


@git_agent.command("merge")
@click.argument("branch_name")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
@click.option("--squash", is_flag=True, default=False, help="Squash the branch into one commit.")
@click.option(
    "--auto-resolve",
    is_flag=True,
    default=False,
    help="Hand conflicts to the configured resolution policy instead of failing at once.",
)
@click.option("--skip-verify", is_flag=True, default=False, help="Skip type-check, lint and test.")
@click.option("--keep-branch", is_flag=True, default=False, help="Do not delete the merged branch.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
def merge_branch(  # noqa: PLR0913
    branch_name: str,
    repo_root: Path | None,
    squash: bool,
    auto_resolve: bool,
    skip_verify: bool,
    keep_branch: bool,
    as_json: bool,
) -> None:
    """Merge BRANCH_NAME into the main line and verify the result.

    A merge that fails verification is **not** reverted: fix forward on the main line.
    """

    _finish(
        CONTROLLER.merge(
            MergeCommand(
                repo_root=repo_root,
                branch_name=branch_name,
                squash=squash,
                auto_resolve=auto_resolve,
                skip_verification=skip_verify,
                keep_branch=keep_branch,
                as_json=as_json,
            ),
        ),
        failure="Merge failed.",
    )


@git_agent.command("branches")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
def list_branches(repo_root: Path | None, as_json: bool) -> None:
    """List agent branches, newest first."""

    _finish(
        CONTROLLER.branches(BranchesCommand(repo_root=repo_root, as_json=as_json)),
        failure="Could not list agent branches.",
    )


@git_agent.group()
def state() -> None:
    """Active-run registry commands."""


@state.command("show")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
def state_show(repo_root: Path | None) -> None:
    """Show runs registered as in flight."""

    _finish(CONTROLLER.state_show(StateCommand(repo_root=repo_root)), failure="State read failed.")


@state.command("recover")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
def state_recover(repo_root: Path | None) -> None:
    """Report registered runs whose owner is gone. Nothing is deleted."""

    _finish(
        CONTROLLER.state_recover(StateCommand(repo_root=repo_root)),
        failure="State reconciliation failed.",
    )


@state.command("forget")
@click.argument("branch_name")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
def state_forget(branch_name: str, repo_root: Path | None) -> None:
    """Drop the registry entry of BRANCH_NAME; its worktree and branch stay."""

    _finish(
        CONTROLLER.state_forget(StateCommand(repo_root=repo_root, branch_name=branch_name)),
        failure="Nothing to forget.",
    )


@git_agent.group()
def wave() -> None:
    """Wave commands: groups of agent tasks from a YAML file."""


@wave.command("list")
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
@click.option(
    "--waves-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Wave definitions (default: GIT_AGENT_WAVES_FILE or waves.yaml).",
)
def wave_list(repo_root: Path | None, waves_file: Path | None) -> None:
    """List defined waves and their agents."""

    _finish(
        CONTROLLER.wave_list(WaveCommand(repo_root=repo_root, waves_file=waves_file)),
        failure="Could not read waves.",
    )


@wave.command("status")
@click.argument("number", type=click.IntRange(min=0))
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
def wave_status(number: int, repo_root: Path | None) -> None:
    """Show agent branches of wave NUMBER."""

    _finish(
        CONTROLLER.wave_status(WaveCommand(repo_root=repo_root, number=number)),
        failure="Could not read wave status.",
    )


@wave.command("run")
@click.argument("number", type=click.IntRange(min=0))
@click.option("--repo-root", type=click.Path(path_type=Path), default=None, help=_REPO_ROOT_HELP)
@click.option(
    "--waves-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Wave definitions (default: GIT_AGENT_WAVES_FILE or waves.yaml).",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-agent timeout.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent agents (default: GIT_AGENT_WAVE_MAX_PARALLEL or 4).",
)
def wave_run(
    number: int,
    repo_root: Path | None,
    waves_file: Path | None,
    timeout_seconds: float | None,
    max_parallel: int | None,
) -> None:
    """Run every agent of wave NUMBER concurrently."""

    _finish(
        CONTROLLER.wave_run(
            WaveCommand(
                repo_root=repo_root,
                waves_file=waves_file,
                number=number,
                timeout_seconds=timeout_seconds,
                max_parallel=max_parallel,
            ),
        ),
        failure="Wave run had failures.",
    )


def _finish(result: CommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    git_agent()

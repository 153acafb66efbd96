"""Runtime configuration for agent runs, merges and waves."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude --agent {agent} --print {task}"
DEFAULT_AGENT_DEFINITION_DIRS = (".claude/agents", ".github/agents")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class RepositorySettings:
    """Where the repository, its worktrees and the run registry live."""

    root: Path = Path(".")
    main_branch: str | None = None
    worktree_dir: str = ".agent-worktrees"
    state_path: Path | None = None


@dataclass(slots=True)
class AgentSettings:
    """How agent processes are located, launched and finalized."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    timeout_seconds: float = 1_800.0
    definition_dirs: tuple[str, ...] = DEFAULT_AGENT_DEFINITION_DIRS
    require_definition: bool = True
    commit_changes: bool = True
    keep_worktree_on_success: bool = False


@dataclass(slots=True)
class ExecutorSettings:
    """Process supervision limits."""

    command_timeout_seconds: float = 60.0
    kill_grace_seconds: float = 5.0
    max_output_bytes: int = 10 * 1024 * 1024


@dataclass(slots=True)
class VerificationSettings:
    """Command lines of the post-merge verification steps."""

    typecheck_command: str = "mypy ."
    lint_command: str = "ruff check ."
    test_command: str = "pytest -q"
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class MergeSettings:
    """Merge behavior defaults."""

    delete_merged_branch: bool = True


@dataclass(slots=True)
class WaveSettings:
    """Wave file location and fan-out limit."""

    waves_file: Path = Path("waves.yaml")
    max_parallel: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    repository: RepositorySettings = field(default_factory=RepositorySettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    waves: WaveSettings = field(default_factory=WaveSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, repo_root: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        state_path = os.getenv("GIT_AGENT_STATE_PATH", "").strip()
        return cls(
            repository=RepositorySettings(
                root=repo_root or Path(os.getenv("GIT_AGENT_REPO_ROOT", ".")),
                main_branch=os.getenv("GIT_AGENT_MAIN_BRANCH", "").strip() or None,
                worktree_dir=os.getenv("GIT_AGENT_WORKTREE_DIR", ".agent-worktrees"),
                state_path=Path(state_path) if state_path else None,
            ),
            agents=AgentSettings(
                command_template=os.getenv(
                    "GIT_AGENT_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=float(os.getenv("GIT_AGENT_AGENT_TIMEOUT_SECONDS", "1800")),
                definition_dirs=_env_csv(
                    "GIT_AGENT_AGENT_DEFINITION_DIRS",
                    DEFAULT_AGENT_DEFINITION_DIRS,
                ),
                require_definition=_env_bool("GIT_AGENT_REQUIRE_AGENT_DEFINITION", default=True),
                commit_changes=_env_bool("GIT_AGENT_COMMIT_AGENT_CHANGES", default=True),
                keep_worktree_on_success=_env_bool(
                    "GIT_AGENT_KEEP_WORKTREE_ON_SUCCESS",
                    default=False,
                ),
            ),
            executor=ExecutorSettings(
                command_timeout_seconds=float(
                    os.getenv("GIT_AGENT_COMMAND_TIMEOUT_SECONDS", "60"),
                ),
                kill_grace_seconds=float(os.getenv("GIT_AGENT_KILL_GRACE_SECONDS", "5")),
                max_output_bytes=int(
                    os.getenv("GIT_AGENT_MAX_OUTPUT_BYTES", str(10 * 1024 * 1024)),
                ),
            ),
            verification=VerificationSettings(
                typecheck_command=os.getenv("GIT_AGENT_TYPECHECK_COMMAND", "mypy ."),
                lint_command=os.getenv("GIT_AGENT_LINT_COMMAND", "ruff check ."),
                test_command=os.getenv("GIT_AGENT_TEST_COMMAND", "pytest -q"),
                timeout_seconds=float(os.getenv("GIT_AGENT_VERIFY_TIMEOUT_SECONDS", "300")),
            ),
            merge=MergeSettings(
                delete_merged_branch=_env_bool("GIT_AGENT_DELETE_MERGED_BRANCH", default=True),
            ),
            waves=WaveSettings(
                waves_file=Path(os.getenv("GIT_AGENT_WAVES_FILE", "waves.yaml")),
                max_parallel=int(os.getenv("GIT_AGENT_WAVE_MAX_PARALLEL", "4")),
            ),
            log_level=os.getenv("GIT_AGENT_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values no component can work with."""

        if not self.repository.worktree_dir.strip():
            raise ValueError("GIT_AGENT_WORKTREE_DIR must not be empty.")
        if Path(self.repository.worktree_dir).is_absolute():
            raise ValueError("GIT_AGENT_WORKTREE_DIR must be relative to the repository root.")
        if self.agents.timeout_seconds <= 0:
            raise ValueError("GIT_AGENT_AGENT_TIMEOUT_SECONDS must be > 0.")
        if "{task}" not in self.agents.command_template:
            raise ValueError("GIT_AGENT_AGENT_COMMAND_TEMPLATE must contain {task}.")
        _validate_command_line("GIT_AGENT_AGENT_COMMAND_TEMPLATE", self.agents.command_template)
        if self.executor.command_timeout_seconds <= 0:
            raise ValueError("GIT_AGENT_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.executor.kill_grace_seconds <= 0:
            raise ValueError("GIT_AGENT_KILL_GRACE_SECONDS must be > 0.")
        if self.executor.max_output_bytes <= 0:
            raise ValueError("GIT_AGENT_MAX_OUTPUT_BYTES must be > 0.")
        _validate_command_line("GIT_AGENT_TYPECHECK_COMMAND", self.verification.typecheck_command)
        _validate_command_line("GIT_AGENT_LINT_COMMAND", self.verification.lint_command)
        _validate_command_line("GIT_AGENT_TEST_COMMAND", self.verification.test_command)
        if self.verification.timeout_seconds <= 0:
            raise ValueError("GIT_AGENT_VERIFY_TIMEOUT_SECONDS must be > 0.")
        if self.waves.max_parallel < 1:
            raise ValueError("GIT_AGENT_WAVE_MAX_PARALLEL must be >= 1.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid GIT_AGENT_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(sorted(_LOG_LEVELS))}.",
            )


def _validate_command_line(name: str, value: str) -> None:
    try:
        parts = shlex.split(value)
    except ValueError as error:
        raise ValueError(f"{name} is not a valid command line: {error}") from error
    if not parts:
        raise ValueError(f"{name} must not be empty.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

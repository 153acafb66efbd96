"""Sequential post-merge verification: type-check, lint, test."""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from git_agent.executor import CommandExecutor
from git_agent.models import VerificationResult, VerificationStep, VerificationStepResult

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True, slots=True)
class VerificationCommands:
    """Command line of each verification step."""

    type_check: Sequence[str] = ("mypy", ".")
    lint: Sequence[str] = ("ruff", "check", ".")
    test: Sequence[str] = ("pytest", "-q")

    @classmethod
    def from_command_lines(cls, type_check: str, lint: str, test: str) -> VerificationCommands:
        return cls(
            type_check=tuple(shlex.split(type_check)),
            lint=tuple(shlex.split(lint)),
            test=tuple(shlex.split(test)),
        )

    def for_step(self, step: VerificationStep) -> Sequence[str]:
        return getattr(self, step.value)  # type: ignore[no-any-return]


class VerificationPipeline:
    """Runs the verification steps in order and stops at the first failure."""

    def __init__(
        self,
        executor: CommandExecutor,
        commands: VerificationCommands | None = None,
        *,
        step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    ) -> None:
        self.executor = executor
        self.commands = commands or VerificationCommands()
        self.step_timeout_seconds = step_timeout_seconds

    async def run(self, cwd: Path) -> VerificationResult:
        results: dict[VerificationStep, VerificationStepResult] = {}
        failed = False
        for step in VerificationStep:
            if failed:
                results[step] = VerificationStepResult.not_run()
                continue
            results[step] = await self._run_step(step, cwd)
            failed = not results[step].passed
        return VerificationResult(
            type_check=results[VerificationStep.TYPE_CHECK],
            lint=results[VerificationStep.LINT],
            test=results[VerificationStep.TEST],
        )

    async def _run_step(self, step: VerificationStep, cwd: Path) -> VerificationStepResult:
        command = list(self.commands.for_step(step))
        started = time.monotonic()
        logger.info("Verification step %s: %s", step.value, shlex.join(command))
        if not command:
            return VerificationStepResult(passed=False, output="empty command", duration_ms=0)
        result = await self.executor.execute(
            command[0],
            command[1:],
            cwd=cwd,
            timeout_seconds=self.step_timeout_seconds,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        if not result.success:
            logger.warning("Verification step %s could not run: %s", step.value, result.error)
            return VerificationStepResult(
                passed=False,
                output=result.error.format(),
                duration_ms=duration_ms,
            )
        output = result.data
        combined = "\n".join(part for part in (output.stdout, output.stderr) if part.strip())
        passed = output.exit_code == 0
        if passed:
            logger.info("Verification step %s passed in %sms", step.value, duration_ms)
        else:
            logger.warning(
                "Verification step %s failed with exit code %s",
                step.value,
                output.exit_code,
            )
        return VerificationStepResult(passed=passed, output=combined, duration_ms=duration_ms)

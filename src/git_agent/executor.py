"""Supervised execution of one external process without a shell."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from git_agent.errors import (
    CommandFailedError,
    CommandTimeoutError,
    GitAgentError,
    ProcessError,
)
from git_agent.result import Err, Ok, Result

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
KILL_GRACE_SECONDS = 5.0
MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True, slots=True)
class CommandOutput:
    """Captured result of one finished process."""

    stdout: str
    stderr: str
    exit_code: int


class _BoundedBuffer:
    """Byte sink that keeps the first ``limit`` bytes and drops the rest."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.size = 0
        self.dropped = 0
        self._chunks: list[bytes] = []

    def feed(self, chunk: bytes) -> None:
        room = self.limit - self.size
        kept = chunk[:room] if room > 0 else b""
        if kept:
            self._chunks.append(kept)
            self.size += len(kept)
        self.dropped += len(chunk) - len(kept)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class CommandExecutor:
    """Spawns processes from argv lists and enforces timeouts.

    A process that outlives its timeout receives SIGTERM; if it is still
    alive ``kill_grace_seconds`` later it receives SIGKILL. Timed-out runs
    always resolve to ``CommandTimeoutError``, whatever they printed.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.max_output_bytes = max_output_bytes

    async def execute(  # noqa: PLR0913
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
        capture_output: bool = True,
    ) -> Result[CommandOutput, GitAgentError]:
        """Run ``command`` with ``args`` and capture its output."""

        display = render_command(command, args)
        timeout = self.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        problem = _validate_invocation(command, args, cwd, timeout)
        if problem is not None:
            return Err(ProcessError(display, problem))

        stream = asyncio.subprocess.PIPE if capture_output else None
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd) if cwd is not None else None,
                env=_merge_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stream,
                stderr=stream,
            )
        except OSError as error:
            return Err(ProcessError(display, f"failed to start: {error}"))

        logger.debug("Spawned pid=%s: %s", process.pid, display)
        stdout_buffer = _BoundedBuffer(self.max_output_bytes)
        stderr_buffer = _BoundedBuffer(self.max_output_bytes)
        readers: list[asyncio.Task[None]] = []
        if capture_output:
            assert process.stdout is not None
            assert process.stderr is not None
            readers = [
                asyncio.create_task(_drain(process.stdout, stdout_buffer)),
                asyncio.create_task(_drain(process.stderr, stderr_buffer)),
            ]

        try:
            timed_out = await self._wait(process, timeout=timeout, display=display)
            await self._collect(readers)
        except asyncio.CancelledError:
            logger.warning("Execution cancelled, stopping pid=%s: %s", process.pid, display)
            await self._terminate(process, display=display)
            _cancel_all(readers)
            raise
        except OSError as error:
            await self._terminate(process, display=display)
            _cancel_all(readers)
            return Err(ProcessError(display, f"failed while running: {error}"))

        if timed_out:
            return Err(CommandTimeoutError(display, timeout))

        for name, buffer in (("stdout", stdout_buffer), ("stderr", stderr_buffer)):
            if buffer.dropped:
                logger.debug(
                    "Dropped %s bytes of %s beyond cap for pid=%s",
                    buffer.dropped,
                    name,
                    process.pid,
                )
        exit_code = process.returncode if process.returncode is not None else -1
        logger.debug("pid=%s exited with %s", process.pid, exit_code)
        return Ok(
            CommandOutput(
                stdout=stdout_buffer.text(),
                stderr=stderr_buffer.text(),
                exit_code=exit_code,
            ),
        )

    async def execute_strict(
        self,
        command: str,
        args: Sequence[str] = (),
        **options: object,
    ) -> CommandOutput:
        """Run a command that has no legitimate non-zero exit.

        Raises the execution error itself, or ``CommandFailedError`` built
        from stderr (stdout when stderr is empty) on a non-zero exit.
        """

        result = await self.execute(command, args, **options)  # type: ignore[arg-type]
        if not result.success:
            raise result.error
        output = result.data
        if output.exit_code != 0:
            detail = output.stderr if output.stderr.strip() else output.stdout
            raise CommandFailedError(render_command(command, args), output.exit_code, detail)
        return output

    async def execute_succeeds(
        self,
        command: str,
        args: Sequence[str] = (),
        **options: object,
    ) -> bool:
        """True iff the command ran and exited with code 0."""

        result = await self.execute(command, args, **options)  # type: ignore[arg-type]
        return result.success and result.data.exit_code == 0

    async def _wait(
        self,
        process: asyncio.subprocess.Process,
        *,
        timeout: float,
        display: str,
    ) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timeout after %ss, terminating pid=%s: %s",
                f"{timeout:g}",
                process.pid,
                display,
            )
            await self._terminate(process, display=display)
            return True
        return False

    async def _terminate(self, process: asyncio.subprocess.Process, *, display: str) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "pid=%s still alive %ss after SIGTERM, killing: %s",
                process.pid,
                f"{self.kill_grace_seconds:g}",
                display,
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _collect(self, readers: list[asyncio.Task[None]]) -> None:
        if not readers:
            return
        # Grandchildren may inherit the pipes and keep them open after exit.
        _, pending = await asyncio.wait(readers, timeout=self.kill_grace_seconds)
        _cancel_all(list(pending))
        for reader in readers:
            if reader.done() and not reader.cancelled() and reader.exception() is not None:
                raise reader.exception()  # type: ignore[misc]


def render_command(command: str, args: Sequence[str]) -> str:
    """Shell-quoted preview of an argv list, for logs and errors only."""

    try:
        return shlex.join([command, *args])
    except TypeError:
        return " ".join(str(part) for part in (command, *args))


async def _drain(stream: asyncio.StreamReader, buffer: _BoundedBuffer) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        buffer.feed(chunk)


def _cancel_all(tasks: list[asyncio.Task[None]]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()


def _merge_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def _validate_invocation(
    command: object,
    args: Sequence[object],
    cwd: Path | str | None,
    timeout: float,
) -> str | None:
    if not isinstance(command, str) or not command.strip():
        return "command must be a non-empty string"
    if isinstance(args, str):
        return "arguments must be a sequence, not a single string"
    for arg in args:
        if not isinstance(arg, str):
            return f"argument {arg!r} is not a string"
        if "\x00" in arg:
            return "arguments must not contain NUL bytes"
    if timeout <= 0:
        return f"timeout must be positive, got {timeout}"
    if cwd is not None and not Path(cwd).is_dir():
        return f"working directory does not exist: {cwd}"
    return None

"""Crash-recoverable registry of in-flight agent runs.

The registry is one JSON document rewritten atomically (temp file, fsync,
rename) on every mutation, so an orchestrator that dies mid-write leaves
either the old or the new document behind, never a torn one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_VERSION = 1
STATE_DIR_NAME = "git-agent"
STATE_FILE_NAME = "runner-state.json"


@dataclass(frozen=True, slots=True)
class ActiveRunInfo:
    """Durable record of one in-flight run."""

    branch_name: str
    worktree_path: Path
    agent_name: str
    task: str
    started_at: datetime
    pid: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_name": self.branch_name,
            "worktree_path": str(self.worktree_path),
            "agent_name": self.agent_name,
            "task": self.task,
            "started_at": self.started_at.isoformat(),
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ActiveRunInfo:
        return cls(
            branch_name=str(payload["branch_name"]),
            worktree_path=Path(payload["worktree_path"]),
            agent_name=str(payload["agent_name"]),
            task=str(payload["task"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            pid=int(payload["pid"]),
        )


@dataclass(frozen=True, slots=True)
class RunnerState:
    """Whole persisted state of the orchestrator."""

    version: int = STATE_VERSION
    active_runs: tuple[ActiveRunInfo, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "active_runs": [run.to_dict() for run in self.active_runs],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> RunnerState:
        if not isinstance(payload, dict):
            raise ValueError("Runner state must be a JSON object")
        version = payload.get("version")
        runs = payload.get("active_runs", [])
        if not isinstance(version, int) or not isinstance(runs, list):
            raise ValueError("Runner state needs an integer 'version' and an 'active_runs' list")
        try:
            active_runs = tuple(ActiveRunInfo.from_dict(item) for item in runs)
        except (KeyError, TypeError, ValueError) as error:
            raise ValueError(f"Malformed active run entry in runner state: {error}") from error
        return cls(version=version, active_runs=active_runs)


class RunStatus(str, Enum):
    """Reconciliation verdict for a registered run."""

    ACTIVE = "active"
    ORPHANED = "orphaned"


@dataclass(frozen=True, slots=True)
class RunReconciliation:
    """What is left in the repository of one registered run."""

    run: ActiveRunInfo
    status: RunStatus
    owner_alive: bool
    worktree_exists: bool
    branch_exists: bool


class RunnerStateStore:
    """Load/save access to the registry file, safe for concurrent runs in one process.

    File access is synchronous and runs on the event loop of the calling
    coordinator. Each write is one small JSON document, written once when a
    run starts and once when it ends.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> RunnerState:
        """Read the registry; a missing file is an empty registry.

        Raises ``ValueError`` for unreadable content.
        """

        if not self.path.exists():
            return RunnerState()
        raw = self.path.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise ValueError(f"Runner state {self.path} is not valid JSON: {error}") from error
        state = RunnerState.from_dict(payload)
        if state.version > STATE_VERSION:
            logger.warning(
                "Runner state %s has version %s, newer than supported %s; reading known fields",
                self.path,
                state.version,
                STATE_VERSION,
            )
        return state

    def save(self, state: RunnerState) -> None:
        """Atomically replace the registry document."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def active_runs(self) -> list[ActiveRunInfo]:
        return list(self.load().active_runs)

    def register(self, run: ActiveRunInfo) -> None:
        with self._lock:
            state = self.load()
            remaining = tuple(
                item for item in state.active_runs if item.branch_name != run.branch_name
            )
            self.save(replace(state, version=STATE_VERSION, active_runs=(*remaining, run)))
        logger.debug("Registered active run %s", run.branch_name)

    def deregister(self, branch_name: str) -> bool:
        """Drop the entry for ``branch_name``; False when it was not registered."""

        with self._lock:
            state = self.load()
            remaining = tuple(item for item in state.active_runs if item.branch_name != branch_name)
            if len(remaining) == len(state.active_runs):
                return False
            self.save(replace(state, version=STATE_VERSION, active_runs=remaining))
        logger.debug("Deregistered active run %s", branch_name)
        return True


def default_state_path(git_common_dir: Path) -> Path:
    return git_common_dir / STATE_DIR_NAME / STATE_FILE_NAME


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True

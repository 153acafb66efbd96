"""Waves: named groups of agent tasks launched together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from git_agent.errors import GitAgentError
from git_agent.models import AgentBranchInfo, AgentRunOptions, AgentRunResult
from git_agent.result import Result
from git_agent.runs.coordinator import AgentRunCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WaveAgent:
    agent: str
    task: str


@dataclass(frozen=True, slots=True)
class Wave:
    number: int
    name: str
    agents: tuple[WaveAgent, ...]


@dataclass(frozen=True, slots=True)
class WaveRunOutcome:
    """Result of one agent run started as part of a wave."""

    agent: WaveAgent
    result: Result[AgentRunResult, GitAgentError]


def load_waves(path: Path) -> dict[int, Wave]:
    """Parse a wave file.

    Expected layout::

        waves:
          1:
            name: Foundation
            agents:
              - agent: wave1-auth
                task: Add the login form
    """

    if not path.is_file():
        raise ValueError(f"Wave file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as error:
        raise ValueError(f"Wave file {path} is not valid YAML: {error}") from error
    raw_waves = payload.get("waves") if isinstance(payload, dict) else None
    if not isinstance(raw_waves, dict):
        raise ValueError(f"Wave file {path} must contain a 'waves' mapping")

    waves: dict[int, Wave] = {}
    for key, body in raw_waves.items():
        number = _wave_number(key, path)
        waves[number] = _parse_wave(number, body, path)
    return dict(sorted(waves.items()))


def wave_branches(branches: Sequence[AgentBranchInfo], number: int) -> list[AgentBranchInfo]:
    prefix = f"wave{number}-"
    return [branch for branch in branches if branch.agent_name.startswith(prefix)]


async def run_wave(
    coordinator: AgentRunCoordinator,
    wave: Wave,
    *,
    max_parallel: int = 4,
    timeout_seconds: float | None = None,
) -> list[WaveRunOutcome]:
    """Start every agent of ``wave`` concurrently, at most ``max_parallel`` at a time."""

    semaphore = asyncio.Semaphore(max_parallel)
    logger.info("Starting wave %s (%s) with %s agent(s)", wave.number, wave.name, len(wave.agents))

    async def _run(member: WaveAgent) -> WaveRunOutcome:
        async with semaphore:
            result = await coordinator.start_run(
                AgentRunOptions(
                    agent_name=member.agent,
                    task=member.task,
                    timeout_seconds=timeout_seconds,
                ),
            )
        if not result.success:
            logger.warning("Wave %s agent %s failed: %s", wave.number, member.agent, result.error)
        return WaveRunOutcome(agent=member, result=result)

    return list(await asyncio.gather(*(_run(member) for member in wave.agents)))


def _wave_number(key: Any, path: Path) -> int:
    text = str(key).strip().lower().removeprefix("wave")
    if not text.isdigit():
        raise ValueError(f"Wave file {path}: wave key {key!r} is not a number")
    return int(text)


def _parse_wave(number: int, body: Any, path: Path) -> Wave:
    if not isinstance(body, dict):
        raise ValueError(f"Wave file {path}: wave {number} must be a mapping")
    agents_raw = body.get("agents") or []
    if not isinstance(agents_raw, list):
        raise ValueError(f"Wave file {path}: wave {number} 'agents' must be a list")
    agents: list[WaveAgent] = []
    for item in agents_raw:
        if not isinstance(item, dict) or not item.get("agent") or not item.get("task"):
            raise ValueError(
                f"Wave file {path}: every agent of wave {number} needs 'agent' and 'task'",
            )
        agents.append(WaveAgent(agent=str(item["agent"]).strip(), task=str(item["task"]).strip()))
    return Wave(number=number, name=str(body.get("name") or f"Wave {number}"), agents=tuple(agents))

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from conftest import ECHO_AGENT
from git_agent.errors import ErrorCode
from git_agent.git.repository import GitRepository
from git_agent.models import AgentBranchInfo
from git_agent.runs.coordinator import AgentRunCoordinator
from git_agent.runs.state import RunnerStateStore
from git_agent.waves import Wave, WaveAgent, load_waves, run_wave, wave_branches

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Waves"),
]

WAVES_YAML = """\
waves:
  wave2:
    agents:
      - agent: wave2-search
        task: Add search
  1:
    name: Foundation
    agents:
      - agent: wave1-auth
        task: "  Add the login form  "
      - agent: wave1-ui
        task: Style the header
"""


def test_load_waves_sorts_and_normalizes(tmp_path: Path) -> None:
    path = tmp_path / "waves.yaml"
    path.write_text(WAVES_YAML, encoding="utf-8")

    waves = load_waves(path)

    assert list(waves) == [1, 2]
    assert waves[1].name == "Foundation"
    assert waves[1].agents == (
        WaveAgent("wave1-auth", "Add the login form"),
        WaveAgent("wave1-ui", "Style the header"),
    )
    assert waves[2].name == "Wave 2"


@pytest.mark.parametrize(
    "content",
    [
        "waves: [1, 2]\n",
        "other: {}\n",
        "waves:\n  first:\n    agents: []\n",
        "waves:\n  1:\n    agents:\n      - agent: wave1-a\n",
        "waves:\n  1: [oops]\n",
        "waves: {1: {agents: [}\n",
    ],
)
def test_load_waves_rejects_bad_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "waves.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError):
        load_waves(path)


def test_load_waves_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not found"):
        load_waves(tmp_path / "absent.yaml")


def test_wave_branches_filters_by_agent_prefix() -> None:
    def _info(agent: str) -> AgentBranchInfo:
        return AgentBranchInfo(
            branch_name=f"branch-{agent}",
            agent_name=agent,
            timestamp=datetime(2026, 1, 1, tzinfo=UTC),
            slug="x",
        )

    branches = [_info("wave1-auth"), _info("wave10-big"), _info("wave1-ui"), _info("echo")]

    assert [info.agent_name for info in wave_branches(branches, 1)] == ["wave1-auth", "wave1-ui"]


def test_run_wave_runs_every_agent_and_reports_each_outcome(
    repository: GitRepository,
    state_store: RunnerStateStore,
) -> None:
    coordinator = AgentRunCoordinator(
        repository,
        state_store,
        command_template=f"{ECHO_AGENT} --file {{agent}}.md {{task}}",
        require_definition=False,
    )
    wave = Wave(
        number=1,
        name="Foundation",
        agents=(
            WaveAgent("wave1-auth", "Add login"),
            WaveAgent("wave1-ui", "Style header"),
            WaveAgent("???", "Unnameable"),
        ),
    )

    outcomes = asyncio.run(run_wave(coordinator, wave, max_parallel=2))

    assert [outcome.agent.agent for outcome in outcomes] == ["wave1-auth", "wave1-ui", "???"]
    auth, ui, broken = (outcome.result for outcome in outcomes)
    assert auth.success, auth.error
    assert auth.data.branch_name.startswith("claude/wave1/auth/")
    assert ui.success, ui.error
    assert ui.data.branch_name.startswith("claude/wave1/ui/")
    assert not broken.success
    assert broken.error.code is ErrorCode.AGENT_CONFIG_INVALID

    listed = asyncio.run(coordinator.list_agent_branches())
    assert sorted(info.agent_name for info in wave_branches(listed.data, 1)) == [
        "wave1-auth",
        "wave1-ui",
    ]

from __future__ import annotations

from pathlib import Path

import allure
import pytest

from git_agent.config import DEFAULT_AGENT_DEFINITION_DIRS
from git_agent.errors import AgentConfigError, AgentNotFoundError, ErrorCode
from git_agent.runs.agents import load_agent_definition

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Agent Definitions"),
]


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_loads_definition_with_defaults(tmp_path: Path) -> None:
    _write(
        tmp_path / ".claude" / "agents" / "reviewer.md",
        "---\ndescription: Reviews code\n---\nBe thorough.\n",
    )

    definition = load_agent_definition("reviewer", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert definition.name == "reviewer"
    assert definition.description == "Reviews code"
    assert definition.model == "inherit"
    assert definition.permission_mode == "default"
    assert definition.tools == ()
    assert definition.instructions == "Be thorough."


def test_finds_agent_md_in_github_dir_and_parses_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path / ".github" / "agents" / "writer.agent.md",
        "---\n"
        "name: Docs Writer\n"
        'description: "Writes docs"\n'
        "tools: Read, Write,  Edit\n"
        "model: sonnet\n"
        "permissionMode: acceptEdits\n"
        "---\n",
    )

    definition = load_agent_definition("writer", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert definition.path == path
    assert definition.name == "Docs Writer"
    assert definition.tools == ("Read", "Write", "Edit")
    assert definition.model == "sonnet"
    assert definition.permission_mode == "acceptEdits"


def test_tools_may_be_a_yaml_list(tmp_path: Path) -> None:
    _write(
        tmp_path / ".claude" / "agents" / "lister.md",
        "---\ndescription: Lists\ntools:\n  - Read\n  - Grep\n---\n",
    )

    definition = load_agent_definition("lister", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert definition.tools == ("Read", "Grep")


def test_missing_definition_lists_every_searched_path(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError) as raised:
        load_agent_definition("ghost", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert raised.value.code is ErrorCode.AGENT_NOT_FOUND
    assert raised.value.searched_paths == [
        str(tmp_path / ".claude" / "agents" / "ghost.md"),
        str(tmp_path / ".claude" / "agents" / "ghost.agent.md"),
        str(tmp_path / ".github" / "agents" / "ghost.md"),
        str(tmp_path / ".github" / "agents" / "ghost.agent.md"),
    ]


@pytest.mark.parametrize(
    "content",
    [
        "no front matter at all\n",
        "---\nname: nodesc\n---\n",
        "---\n: [unbalanced\n---\n",
        "---\n- just\n- a list\n---\n",
    ],
)
def test_invalid_front_matter_is_a_config_error(tmp_path: Path, content: str) -> None:
    _write(tmp_path / ".claude" / "agents" / "broken.md", content)

    with pytest.raises(AgentConfigError) as raised:
        load_agent_definition("broken", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert raised.value.code is ErrorCode.AGENT_CONFIG_INVALID


def test_undecodable_definition_is_a_config_error(tmp_path: Path) -> None:
    path = tmp_path / ".claude" / "agents" / "garbled.md"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"---\ndescription: \xff\xfe\n---\n")

    with pytest.raises(AgentConfigError) as raised:
        load_agent_definition("garbled", tmp_path, DEFAULT_AGENT_DEFINITION_DIRS)

    assert raised.value.context["config_path"] == str(path)
    assert "unreadable definition" in raised.value.message

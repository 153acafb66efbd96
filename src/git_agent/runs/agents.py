"""Agent definition discovery and front matter parsing."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from git_agent.errors import AgentConfigError, AgentNotFoundError

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".md", ".agent.md")
_FRONT_MATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---(?:\r?\n|\Z)", re.DOTALL)


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """Parsed agent definition file."""

    name: str
    description: str
    path: Path
    tools: tuple[str, ...] = ()
    model: str = "inherit"
    permission_mode: str = "default"
    instructions: str = ""


def definition_candidates(
    agent_name: str,
    repo_root: Path,
    definition_dirs: Sequence[str],
) -> list[Path]:
    """All paths searched for ``agent_name``, in lookup order."""

    return [
        repo_root / directory / f"{agent_name}{suffix}"
        for directory in definition_dirs
        for suffix in DEFINITION_SUFFIXES
    ]


def load_agent_definition(
    agent_name: str,
    repo_root: Path,
    definition_dirs: Sequence[str],
) -> AgentDefinition:
    """Find and parse the definition of ``agent_name``.

    Raises ``AgentNotFoundError`` when no candidate file exists and
    ``AgentConfigError`` when the front matter is unusable.
    """

    candidates = definition_candidates(agent_name, repo_root, definition_dirs)
    for path in candidates:
        if path.is_file():
            logger.debug("Loading agent definition %s", path)
            return parse_agent_definition(agent_name, path)
    raise AgentNotFoundError(agent_name, [str(path) for path in candidates])


def parse_agent_definition(agent_name: str, path: Path) -> AgentDefinition:
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise AgentConfigError(agent_name, str(path), f"unreadable definition: {error}") from error
    match = _FRONT_MATTER_RE.match(content)
    if match is None:
        raise AgentConfigError(agent_name, str(path), "missing YAML front matter")
    try:
        front_matter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as error:
        raise AgentConfigError(
            agent_name,
            str(path),
            f"invalid YAML front matter: {error}",
        ) from error
    if not isinstance(front_matter, dict):
        raise AgentConfigError(agent_name, str(path), "front matter must be a mapping")

    description = _as_text(front_matter.get("description"))
    if not description:
        raise AgentConfigError(agent_name, str(path), "missing 'description' in front matter")

    return AgentDefinition(
        name=_as_text(front_matter.get("name")) or agent_name,
        description=description,
        path=path,
        tools=_parse_tools(front_matter.get("tools")),
        model=_as_text(front_matter.get("model")) or "inherit",
        permission_mode=_as_text(front_matter.get("permissionMode")) or "default",
        instructions=content[match.end() :].strip(),
    )


def _parse_tools(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, list):
        items = value
    else:
        items = [value]
    return tuple(str(item).strip() for item in items if str(item).strip())


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()

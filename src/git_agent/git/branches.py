"""Agent branch naming and parsing."""

from __future__ import annotations

import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

AGENT_BRANCH_NAMESPACES = ("agent", "claude", "cursor")
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
MAX_NAME_CHARS = 50
MAX_SLUG_CHARS = 30
SUFFIX_CHARS = 6
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

_WAVE_AGENT_RE = re.compile(r"^wave(\d+)-(.+)$")
_AGENT_BRANCH_RE = re.compile(r"^agent/([^/]+)/(\d{8}-\d{6})-(.+)-([a-z0-9]{6})$")
_WAVE_BRANCH_RE = re.compile(r"^claude/wave(\d+)/([^/]+)/(\d{8}-\d{6})-(.+)-([a-z0-9]{6})$")
_CURSOR_BRANCH_RE = re.compile(r"^cursor/wave(\d+)/([^/]+)$")

BranchNamer = Callable[[str, str], str]


@dataclass(frozen=True, slots=True)
class ParsedBranch:
    """Agent name, creation time and task slug encoded in a branch name."""

    agent_name: str
    timestamp: datetime
    slug: str


def sanitize_name(value: str, max_chars: int = MAX_NAME_CHARS) -> str:
    """Lowercase ``value`` and keep only ``[a-z0-9-]`` with single dashes."""

    cleaned = re.sub(r"[^a-z0-9-]", "-", value.lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned[:max_chars].rstrip("-")


def task_slug(task: str) -> str:
    return sanitize_name(task, MAX_SLUG_CHARS) or "task"


def random_suffix() -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(SUFFIX_CHARS))


def make_branch_name(
    agent_name: str,
    task: str,
    *,
    now: datetime | None = None,
    suffix: str | None = None,
) -> str:
    """Derive a fresh branch name for one run of ``agent_name`` on ``task``.

    ``wave<N>-<feature>`` agents are grouped under ``claude/wave<N>/<feature>``,
    every other agent under ``agent/<agent>``.
    """

    agent = sanitize_name(agent_name)
    if not agent:
        raise ValueError(f"Agent name {agent_name!r} has no usable characters")
    stamp = (now or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)
    leaf = f"{stamp}-{task_slug(task)}-{suffix or random_suffix()}"
    wave = _WAVE_AGENT_RE.match(agent)
    if wave is not None:
        return f"claude/wave{wave.group(1)}/{wave.group(2)}/{leaf}"
    return f"agent/{agent}/{leaf}"


def branch_leaf(branch_name: str) -> str:
    return branch_name.rsplit("/", 1)[-1]


def parse_branch_name(branch_name: str, *, now: datetime | None = None) -> ParsedBranch | None:
    """Decode an agent branch name, or return None for foreign branches."""

    match = _AGENT_BRANCH_RE.match(branch_name)
    if match is not None:
        return ParsedBranch(
            agent_name=match.group(1),
            timestamp=_parse_timestamp(match.group(2)),
            slug=match.group(3),
        )
    match = _WAVE_BRANCH_RE.match(branch_name)
    if match is not None:
        return ParsedBranch(
            agent_name=f"wave{match.group(1)}-{match.group(2)}",
            timestamp=_parse_timestamp(match.group(3)),
            slug=match.group(4),
        )
    match = _CURSOR_BRANCH_RE.match(branch_name)
    if match is not None:
        return ParsedBranch(
            agent_name=f"wave{match.group(1)}-{match.group(2)}",
            timestamp=now or datetime.now(UTC),
            slug=match.group(2),
        )
    return None


def _parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)

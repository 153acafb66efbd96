from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from git_agent.git.branches import (
    make_branch_name,
    parse_branch_name,
    random_suffix,
    sanitize_name,
    task_slug,
)

pytestmark = [
    allure.epic("Version Control"),
    allure.feature("Branch Naming"),
]

NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC)


def test_sanitize_name_keeps_lowercase_alnum_and_single_dashes() -> None:
    assert sanitize_name("  Fix: the Login_Form!! ") == "fix-the-login-form"
    assert sanitize_name("---a---b---") == "a-b"
    assert len(sanitize_name("x" * 80)) == 50


def test_task_slug_is_short_and_never_empty() -> None:
    assert task_slug("Add a very long description of the work to be done") == (
        "add-a-very-long-description-of"
    )
    assert task_slug("!!!") == "task"


def test_make_branch_name_for_plain_agent() -> None:
    branch = make_branch_name("Code Reviewer", "Fix login bug", now=NOW, suffix="a1b2c3")

    assert branch == "agent/code-reviewer/20260304-050607-fix-login-bug-a1b2c3"


def test_make_branch_name_groups_wave_agents() -> None:
    branch = make_branch_name("wave2-registration", "Build form", now=NOW, suffix="zz9zz9")

    assert branch == "claude/wave2/registration/20260304-050607-build-form-zz9zz9"


def test_make_branch_name_rejects_unusable_agent_name() -> None:
    with pytest.raises(ValueError):
        make_branch_name("???", "task", now=NOW)


def test_random_suffix_shape() -> None:
    suffix = random_suffix()

    assert len(suffix) == 6
    assert suffix.isalnum()
    assert suffix == suffix.lower()


def test_parse_branch_name_keeps_multi_word_slugs() -> None:
    parsed = parse_branch_name("agent/echo/20260304-050607-fix-login-bug-a1b2c3")

    assert parsed is not None
    assert parsed.agent_name == "echo"
    assert parsed.slug == "fix-login-bug"
    assert parsed.timestamp == NOW


def test_parse_branch_name_wave_layouts() -> None:
    claude = parse_branch_name("claude/wave2/registration/20260304-050607-build-form-zz9zz9")
    cursor = parse_branch_name("cursor/wave3/search", now=NOW)

    assert claude is not None
    assert claude.agent_name == "wave2-registration"
    assert claude.slug == "build-form"
    assert cursor is not None
    assert cursor.agent_name == "wave3-search"
    assert cursor.slug == "search"
    assert cursor.timestamp == NOW


def test_parse_branch_name_ignores_foreign_branches() -> None:
    assert parse_branch_name("main") is None
    assert parse_branch_name("agent/echo/not-a-timestamp") is None
    assert parse_branch_name("feature/agent/echo/20260304-050607-x-a1b2c3") is None


def test_generated_names_parse_back() -> None:
    branch = make_branch_name("echo", "Write the docs", now=NOW)

    parsed = parse_branch_name(branch)

    assert parsed is not None
    assert (parsed.agent_name, parsed.slug, parsed.timestamp) == ("echo", "write-the-docs", NOW)

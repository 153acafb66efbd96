"""Pluggable conflict resolution used when a merge asks for auto-resolve."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from git_agent.git.repository import GitRepository

logger = logging.getLogger(__name__)


class ConflictResolver(Protocol):
    """Policy that tries to resolve a merge stopped on conflicts.

    Called with the merge in progress in the repository root. Returning True
    means every conflicted path was resolved and staged; the coordinator then
    checks for leftover unmerged paths before committing. Returning False or
    raising makes the coordinator abort the merge and report the conflict.
    """

    async def resolve(
        self,
        repository: GitRepository,
        branch_name: str,
        conflicting_files: Sequence[str],
    ) -> bool: ...


class AbortingResolver:
    """Default policy: decline, so the conflict is reported for manual resolution."""

    async def resolve(
        self,
        repository: GitRepository,
        branch_name: str,
        conflicting_files: Sequence[str],
    ) -> bool:
        logger.info(
            "No conflict resolution policy configured, declining %s conflicted path(s) of %s",
            len(conflicting_files),
            branch_name,
        )
        return False

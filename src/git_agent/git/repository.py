"""Async wrappers over the ``git`` CLI.

Every call goes through ``CommandExecutor`` with an argv list. Wrappers
raise ``GitAgentError`` subclasses; the coordinators convert them into
``Err`` results at their public boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from git_agent.errors import CommandFailedError, GitAgentError, WorktreeError
from git_agent.executor import CommandExecutor, CommandOutput, render_command

logger = logging.getLogger(__name__)

GIT = "git"
_MERGE_TREE_CONFLICTS_EXIT = 1


class GitRepository:
    """One git repository addressed by its top-level working directory."""

    def __init__(self, root: Path, executor: CommandExecutor) -> None:
        self.root = root
        self.executor = executor

    @classmethod
    async def discover(cls, path: Path, executor: CommandExecutor) -> GitRepository:
        """Locate the repository containing ``path``."""

        output = await executor.execute_strict(
            GIT,
            ["rev-parse", "--show-toplevel"],
            cwd=path,
        )
        return cls(Path(output.stdout.strip()).resolve(), executor)

    async def run(
        self,
        *args: str,
        cwd: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandOutput:
        """Run git and raise ``CommandFailedError`` on a non-zero exit."""

        return await self.executor.execute_strict(
            GIT,
            list(args),
            cwd=cwd or self.root,
            timeout_seconds=timeout_seconds,
        )

    async def probe(self, *args: str, cwd: Path | None = None) -> CommandOutput:
        """Run git where a non-zero exit is a legitimate answer."""

        result = await self.executor.execute(GIT, list(args), cwd=cwd or self.root)
        if not result.success:
            raise result.error
        return result.data

    async def succeeds(self, *args: str, cwd: Path | None = None) -> bool:
        return await self.executor.execute_succeeds(GIT, list(args), cwd=cwd or self.root)

    async def common_dir(self) -> Path:
        output = await self.run("rev-parse", "--git-common-dir")
        path = Path(output.stdout.strip())
        return path if path.is_absolute() else (self.root / path).resolve()

    async def git_path(self, name: str) -> Path:
        output = await self.run("rev-parse", "--git-path", name)
        path = Path(output.stdout.strip())
        return path if path.is_absolute() else (self.root / path).resolve()

    async def current_branch(self) -> str | None:
        output = await self.probe("symbolic-ref", "--quiet", "--short", "HEAD")
        if output.exit_code != 0:
            return None
        return output.stdout.strip() or None

    async def default_branch(self, configured: str | None = None) -> str:
        """Resolve the main line: configured, ``init.defaultBranch``, main, master."""

        candidates: list[str] = []
        if configured:
            candidates.append(configured)
        output = await self.probe("config", "--get", "init.defaultBranch")
        if output.exit_code == 0 and output.stdout.strip():
            candidates.append(output.stdout.strip())
        candidates.extend(["main", "master"])
        for candidate in candidates:
            if await self.branch_exists(candidate):
                return candidate
        current = await self.current_branch()
        if current:
            logger.warning("No main or master branch found, using current branch %s", current)
            return current
        raise CommandFailedError(
            "git symbolic-ref --short HEAD",
            1,
            f"Could not determine the main branch (tried {', '.join(candidates)})",
        )

    async def changed_files(self, cwd: Path | None = None) -> list[str]:
        """Paths with staged, unstaged or untracked changes."""

        output = await self.run("status", "--porcelain", "--untracked-files=all", cwd=cwd)
        return [line[3:] for line in output.stdout.splitlines() if len(line) > 3]

    async def branch_exists(self, name: str) -> bool:
        return await self.succeeds("show-ref", "--verify", "--quiet", f"refs/heads/{name}")

    async def rev_parse(self, ref: str, cwd: Path | None = None) -> str:
        output = await self.run("rev-parse", "--verify", f"{ref}^{{commit}}", cwd=cwd)
        return output.stdout.strip()

    async def head_sha(self, cwd: Path | None = None) -> str:
        return await self.rev_parse("HEAD", cwd=cwd)

    async def list_branches(self, namespaces: Sequence[str]) -> list[str]:
        output = await self.run(
            "for-each-ref",
            "--format=%(refname:short)",
            *(f"refs/heads/{namespace}/" for namespace in namespaces),
        )
        return [line.strip() for line in output.stdout.splitlines() if line.strip()]

    async def count_commits(self, base: str, tip: str) -> int:
        output = await self.run("rev-list", "--count", f"{base}..{tip}")
        return int(output.stdout.strip() or 0)

    async def commit_subjects(self, base: str, tip: str) -> list[str]:
        output = await self.run("log", "--reverse", "--format=%s", f"{base}..{tip}")
        return [line for line in output.stdout.splitlines() if line.strip()]

    async def last_commit(self, ref: str) -> tuple[str, str]:
        """SHA and subject of the tip commit of ``ref``."""

        output = await self.run("log", "-1", "--format=%H%x00%s", ref)
        sha, _, subject = output.stdout.strip().partition("\x00")
        return sha, subject

    async def checkout(self, branch: str) -> None:
        await self.run("checkout", "--quiet", branch)

    async def delete_branch(self, name: str, *, force: bool = True) -> None:
        await self.run("branch", "-D" if force else "-d", name)

    async def add_worktree(self, path: Path, branch: str, start_point: str) -> None:
        command = ["worktree", "add", "-b", branch, str(path), start_point]
        try:
            await self.run(*command)
        except GitAgentError as error:
            raise WorktreeError(str(path), error.message) from error
        logger.info("Allocated worktree %s on branch %s", path, branch)

    async def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        command = ["worktree", "remove", *(["--force"] if force else []), str(path)]
        try:
            await self.run(*command)
        except GitAgentError as error:
            raise WorktreeError(str(path), error.message) from error
        logger.info("Removed worktree %s", path)

    async def worktree_paths(self) -> list[Path]:
        output = await self.run("worktree", "list", "--porcelain")
        return [
            Path(line.removeprefix("worktree ").strip())
            for line in output.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    async def ensure_excluded(self, relative_dir: str) -> None:
        """Hide ``relative_dir`` from status via the repository's info/exclude."""

        pattern = "/" + relative_dir.strip("/") + "/"
        exclude = await self.git_path("info/exclude")
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{pattern}\n")
        logger.debug("Added %s to %s", pattern, exclude)

    async def commit_all(self, message: str, cwd: Path) -> str | None:
        """Stage everything in ``cwd`` and commit; None when nothing changed."""

        await self.run("add", "--all", cwd=cwd)
        if await self.succeeds("diff", "--cached", "--quiet", cwd=cwd):
            return None
        await self.run("commit", "--quiet", "-m", message, cwd=cwd)
        return await self.head_sha(cwd=cwd)

    async def merge_tree_conflicts(self, ours: str, theirs: str) -> list[str] | None:
        """Dry-run merge via ``merge-tree``; None when git lacks ``--write-tree``."""

        args = ["merge-tree", "--write-tree", "--name-only", "--no-messages", ours, theirs]
        output = await self.probe(*args)
        if output.exit_code == 0:
            return []
        if output.exit_code == _MERGE_TREE_CONFLICTS_EXIT:
            lines = [line.strip() for line in output.stdout.splitlines()[1:]]
            return list(dict.fromkeys(line for line in lines if line))
        logger.debug(
            "%s exited %s, falling back to a trial merge: %s",
            render_command(GIT, args),
            output.exit_code,
            output.stderr.strip(),
        )
        return None

    async def start_merge(self, branch: str, *, squash: bool = False) -> bool:
        """Apply ``branch`` to the index without committing.

        Returns False when the merge stopped on conflicts.
        """

        if squash:
            args = ["merge", "--squash", branch]
        else:
            args = ["merge", "--no-commit", "--no-ff", branch]
        output = await self.probe(*args)
        if output.exit_code == 0:
            return True
        if await self.merge_in_progress() or await self.unmerged_files():
            return False
        raise CommandFailedError(
            render_command(GIT, args),
            output.exit_code,
            output.stderr or output.stdout,
        )

    async def merge_in_progress(self) -> bool:
        return await self.succeeds("rev-parse", "-q", "--verify", "MERGE_HEAD")

    async def unmerged_files(self) -> list[str]:
        output = await self.run("diff", "--name-only", "--diff-filter=U")
        return [line.strip() for line in output.stdout.splitlines() if line.strip()]

    async def abort_merge(self) -> None:
        if await self.merge_in_progress():
            await self.run("merge", "--abort")
            return
        # A squash merge leaves no MERGE_HEAD behind.
        await self.run("reset", "--merge")

    async def squash_merge(self, branch: str, message: str) -> str:
        await self.run("merge", "--squash", branch)
        return await self._commit_staged(message)

    async def regular_merge(self, branch: str, message: str) -> str:
        await self.run("merge", "--no-ff", "--no-edit", "-m", message, branch)
        return await self.head_sha()

    async def commit_merge(self, message: str) -> str:
        """Conclude a merge started with ``start_merge``."""

        return await self._commit_staged(message)

    async def _commit_staged(self, message: str) -> str:
        nothing_staged = await self.succeeds("diff", "--cached", "--quiet")
        if nothing_staged and not await self.merge_in_progress():
            logger.info("Nothing to commit after merge, main line already contains the changes")
            return await self.head_sha()
        await self.run("commit", "--quiet", "--no-edit", "-m", message)
        return await self.head_sha()

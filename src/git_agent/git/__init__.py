"""Version-control collaborator: git CLI wrappers and branch naming."""

from git_agent.git.branches import BranchNamer, make_branch_name, parse_branch_name
from git_agent.git.repository import GitRepository

__all__ = ["BranchNamer", "GitRepository", "make_branch_name", "parse_branch_name"]

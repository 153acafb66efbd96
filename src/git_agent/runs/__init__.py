"""Agent runs: definitions, worktree lifecycle and the active-run registry."""

from git_agent.runs.coordinator import AgentRunCoordinator
from git_agent.runs.state import ActiveRunInfo, RunnerState, RunnerStateStore

__all__ = ["ActiveRunInfo", "AgentRunCoordinator", "RunnerState", "RunnerStateStore"]

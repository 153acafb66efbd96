"""Merge coordination: conflict check, integration and verification."""

from git_agent.merge.coordinator import MergeCoordinator
from git_agent.merge.resolution import AbortingResolver, ConflictResolver
from git_agent.merge.verification import VerificationCommands, VerificationPipeline

__all__ = [
    "AbortingResolver",
    "ConflictResolver",
    "MergeCoordinator",
    "VerificationCommands",
    "VerificationPipeline",
]

"""Workspace integrations: git, addressing, command execution and validation."""

from .gates import ValidationPhase, ValidationStep, phases_from_config, run_validation
from .runner import run_command
from .tree_address import (
    StabilityCheck,
    TreeState,
    check_worktree_stability,
    compute_address,
    compute_tree_state,
    has_working_tree_changes,
    head_tree_address,
)
from .vcs import GitError, GitRepository, GitTimeoutError

__all__ = [
    "GitError",
    "GitRepository",
    "GitTimeoutError",
    "StabilityCheck",
    "TreeState",
    "ValidationPhase",
    "ValidationStep",
    "check_worktree_stability",
    "compute_address",
    "compute_tree_state",
    "has_working_tree_changes",
    "head_tree_address",
    "phases_from_config",
    "run_command",
    "run_validation",
]

"""Workspace tooling used by the iteration loop."""

from .applier import ApplyOutcome, PartialApplyFailure, apply_change_set
from .patch import MalformedChange, PatchEngine, PatchError, PatchOutcome, apply_change
from .vcs import GitError, GitRepository
from .verification import (
    CommandVerificationRunner,
    RawVerification,
    VerificationResult,
    VerificationTimeout,
    interpret,
    interpret_raw,
)
from .workspace import GitWorkspaceProvider, RepoSummary, WorkspaceProvider, summarize_repository

__all__ = [
    "ApplyOutcome",
    "CommandVerificationRunner",
    "GitError",
    "GitRepository",
    "GitWorkspaceProvider",
    "MalformedChange",
    "PartialApplyFailure",
    "PatchEngine",
    "PatchError",
    "PatchOutcome",
    "RawVerification",
    "RepoSummary",
    "VerificationResult",
    "VerificationTimeout",
    "WorkspaceProvider",
    "apply_change",
    "apply_change_set",
    "interpret",
    "interpret_raw",
    "summarize_repository",
]

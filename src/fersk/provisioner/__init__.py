"""Workspace provisioning.

This module materialises clean copies of a source repository:
- Source validation (exists, is a git work tree, has a commit)
- Collision-free workspace path allocation
- Clone-then-checkout extraction, including submodules
- Optional carry-over of uncommitted tracked changes
"""

from fersk.provisioner.git import (
    Git,
    GitCommandError,
    GitError,
    GitExecutableNotFoundError,
    SourceHead,
)
from fersk.provisioner.workspace import (
    ExtractionFailedError,
    ProvisionedWorkspace,
    SnapshotMode,
    SourceInvalidError,
    SourceNotFoundError,
    TargetUnavailableError,
    WorkspaceConfig,
    WorkspaceProvisionError,
    WorkspaceProvisioner,
    hash_source_path,
)

__all__ = [
    # Git collaborator
    "Git",
    "GitCommandError",
    "GitError",
    "GitExecutableNotFoundError",
    "SourceHead",
    # Provisioner
    "ExtractionFailedError",
    "ProvisionedWorkspace",
    "SnapshotMode",
    "SourceInvalidError",
    "SourceNotFoundError",
    "TargetUnavailableError",
    "WorkspaceConfig",
    "WorkspaceProvisionError",
    "WorkspaceProvisioner",
    "hash_source_path",
]

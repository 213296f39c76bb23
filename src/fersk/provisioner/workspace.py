"""Workspace provisioning for isolated command execution.

Materialises the committed state of a source repository into a fresh
directory. The source is only ever read: the workspace is produced by cloning
the source and checking out its current commit inside the clone, so the
source's HEAD, index and working tree are never touched.

Workspace directories are named after a hash of the source root plus a random
token, so concurrent invocations against the same repository never share a
directory while workspaces of one repository still sort together.
"""

import hashlib
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog

from fersk.provisioner.git import (
    Git,
    GitCommandError,
    GitError,
    GitExecutableNotFoundError,
    SourceHead,
)

logger = structlog.get_logger(__name__)

WORKSPACE_DIR_PERMISSIONS = 0o700
SOURCE_HASH_LENGTH = 12


class SnapshotMode(str, Enum):
    """Which state of the source repository a workspace reproduces.

    Attributes:
        COMMITTED: Only the tree of the checked-out commit.
        WORKING_TREE: The committed tree plus staged and unstaged changes
            to tracked files. Untracked files are never copied.
    """

    COMMITTED = "committed"
    WORKING_TREE = "working-tree"


@dataclass
class WorkspaceConfig:
    """Configuration for workspace provisioning.

    Attributes:
        base_path: Root directory under which workspaces are created.
        snapshot_mode: Whether uncommitted tracked changes are carried over.
        submodules: Check out submodules recursively inside the workspace.
    """

    base_path: Path
    snapshot_mode: SnapshotMode = SnapshotMode.COMMITTED
    submodules: bool = True


@dataclass
class ProvisionedWorkspace:
    """Result of a successful provisioning.

    Attributes:
        path: Directory holding the checked-out copy.
        source_root: Top-level directory of the source repository.
        head: Commit (and branch) the copy was taken from.
        snapshot_mode: Snapshot mode used to populate the copy.
    """

    path: Path
    source_root: Path
    head: SourceHead
    snapshot_mode: SnapshotMode = SnapshotMode.COMMITTED


class WorkspaceProvisionError(Exception):
    """Raised when a workspace cannot be provisioned.

    Attributes:
        path: The path the failure relates to.
        cause: Underlying exception, if any.
    """

    def __init__(self, message: str, path: Path, cause: Optional[Exception] = None):
        self.path = path
        self.cause = cause
        super().__init__(message)


class SourceNotFoundError(WorkspaceProvisionError):
    """Raised when the source path does not exist."""

    def __init__(self, path: Path):
        super().__init__(f"Source repository not found: {path}", path)


class SourceInvalidError(WorkspaceProvisionError):
    """Raised when the source is not a git work tree or has no commits."""

    def __init__(self, path: Path, reason: str, cause: Optional[Exception] = None):
        self.reason = reason
        super().__init__(f"Invalid source repository {path}: {reason}", path, cause)


class TargetUnavailableError(WorkspaceProvisionError):
    """Raised when the target directory is non-empty or cannot be created."""

    def __init__(self, path: Path, reason: str, cause: Optional[Exception] = None):
        self.reason = reason
        super().__init__(f"Workspace target unavailable {path}: {reason}", path, cause)


class ExtractionFailedError(WorkspaceProvisionError):
    """Raised when git fails while populating the workspace."""

    def __init__(self, path: Path, cause: Exception):
        super().__init__(f"Failed to extract repository into {path}: {cause}", path, cause)


class WorkspaceProvisioner:
    """Creates clean copies of a repository's committed state.

    Attributes:
        config: Workspace configuration.
        git: Version-control collaborator used for all repository access.
    """

    def __init__(self, config: WorkspaceConfig, git: Optional[Git] = None):
        self.config = config
        self.git = git or Git()

    def build_workspace_path(self, source_path: Path) -> Path:
        """Return a fresh, collision-free workspace path for source_path.

        The directory is not created here.
        """
        source_hash = hash_source_path(source_path)[:SOURCE_HASH_LENGTH]
        token = uuid.uuid4().hex
        return self.config.base_path / f"{source_hash}-{token}"

    async def provision(self, source_path: Path, target_dir: Path) -> ProvisionedWorkspace:
        """Populate target_dir with the current commit of source_path.

        Args:
            source_path: Any path inside the source repository's work tree.
            target_dir: Directory to populate. Must be absent or empty.

        Returns:
            ProvisionedWorkspace describing the populated directory.

        Raises:
            SourceNotFoundError: If source_path does not exist.
            SourceInvalidError: If source_path is not a git work tree or
                HEAD has no commit.
            TargetUnavailableError: If target_dir is non-empty or cannot be
                created.
            ExtractionFailedError: If git fails while populating target_dir.
        """
        source_root = await self._resolve_source_root(Path(source_path))
        head = await self._resolve_head(source_root)

        self._prepare_target_directory(target_dir)

        logger.info(
            "Provisioning workspace",
            source=str(source_root),
            workspace=str(target_dir),
            head=str(head),
            snapshot_mode=self.config.snapshot_mode.value,
        )

        try:
            await self.git.clone(source_root, target_dir)
            await self.git.checkout_detached(target_dir, head.commit)
            if self.config.submodules:
                await self.git.update_submodules(target_dir)
            if self.config.snapshot_mode is SnapshotMode.WORKING_TREE:
                await self._apply_uncommitted_changes(source_root, target_dir)
        except GitError as exc:
            raise ExtractionFailedError(target_dir, exc) from exc

        return ProvisionedWorkspace(
            path=target_dir,
            source_root=source_root,
            head=head,
            snapshot_mode=self.config.snapshot_mode,
        )

    async def _resolve_source_root(self, source_path: Path) -> Path:
        try:
            exists = source_path.exists()
            is_dir = exists and source_path.is_dir()
        except OSError as exc:
            raise SourceInvalidError(source_path, f"cannot be accessed: {exc}", exc) from exc

        if not exists:
            raise SourceNotFoundError(source_path)
        if not is_dir:
            raise SourceInvalidError(source_path, "not a directory")

        try:
            return await self.git.get_repository_root(source_path)
        except GitCommandError as exc:
            raise SourceInvalidError(source_path, "not a git work tree", exc) from exc
        except GitExecutableNotFoundError as exc:
            raise ExtractionFailedError(source_path, exc) from exc

    async def _resolve_head(self, source_root: Path) -> SourceHead:
        try:
            return await self.git.get_current_head(source_root)
        except GitCommandError as exc:
            raise SourceInvalidError(source_root, "HEAD does not point at a commit", exc) from exc
        except GitExecutableNotFoundError as exc:
            raise ExtractionFailedError(source_root, exc) from exc

    def _prepare_target_directory(self, target_dir: Path) -> None:
        """Create target_dir with private permissions, or accept it if empty.

        Raises:
            TargetUnavailableError: If target_dir holds content or cannot be
                created.
        """
        try:
            exists = target_dir.exists()
            if exists:
                is_dir = target_dir.is_dir()
                is_empty = is_dir and not any(target_dir.iterdir())
        except OSError as exc:
            raise TargetUnavailableError(target_dir, f"cannot be inspected: {exc}", exc) from exc

        if exists:
            if not is_dir:
                raise TargetUnavailableError(target_dir, "path exists and is not a directory")
            if not is_empty:
                raise TargetUnavailableError(target_dir, "directory is not empty")
            return

        try:
            target_dir.parent.mkdir(parents=True, exist_ok=True)
            target_dir.mkdir(mode=WORKSPACE_DIR_PERMISSIONS)
        except OSError as exc:
            raise TargetUnavailableError(target_dir, str(exc), exc) from exc

    async def _apply_uncommitted_changes(self, source_root: Path, target_dir: Path) -> None:
        patch = await self.git.diff_against_head(source_root)
        if not patch:
            logger.debug("No uncommitted changes to carry over", source=str(source_root))
            return

        await self.git.apply_patch(target_dir, patch)
        logger.info(
            "Applied uncommitted changes",
            workspace=str(target_dir),
            patch_bytes=len(patch),
        )


def hash_source_path(source_path: Path) -> str:
    """Return the hex SHA-256 digest of a normalised source path."""
    normalized = str(Path(source_path).expanduser().absolute())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

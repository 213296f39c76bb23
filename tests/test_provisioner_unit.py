"""Unit tests for workspace provisioner.

Tests workspace path allocation, source validation, target directory
preparation and extraction for the WorkspaceProvisioner, using a mocked git
collaborator as well as real repositories.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from conftest import commit_file, init_repository, requires_git, run_git
from fersk.provisioner.git import Git, GitCommandError, GitExecutableNotFoundError, SourceHead
from fersk.provisioner.workspace import (
    SOURCE_HASH_LENGTH,
    WORKSPACE_DIR_PERMISSIONS,
    ExtractionFailedError,
    SnapshotMode,
    SourceInvalidError,
    SourceNotFoundError,
    TargetUnavailableError,
    WorkspaceConfig,
    WorkspaceProvisioner,
    hash_source_path,
)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def workspace_config(work_root):
    return WorkspaceConfig(base_path=work_root)


@pytest.fixture
def provisioner(workspace_config):
    return WorkspaceProvisioner(config=workspace_config)


@pytest.fixture
def mock_git(tmp_path):
    git = AsyncMock(spec=Git)
    git.get_repository_root.return_value = tmp_path / "source"
    git.get_current_head.return_value = SourceHead(commit="c0ffee" * 6 + "abcd", branch="main")
    git.diff_against_head.return_value = b""
    return git


@pytest.fixture
def source_dir(tmp_path):
    source = tmp_path / "source"
    source.mkdir()
    return source


class TestWorkspacePathAllocation:

    def test_path_is_under_base(self, provisioner, work_root):
        path = provisioner.build_workspace_path(Path("/repos/project"))
        assert path.parent == work_root

    def test_path_starts_with_source_hash(self, provisioner):
        path = provisioner.build_workspace_path(Path("/repos/project"))
        prefix = hash_source_path(Path("/repos/project"))[:SOURCE_HASH_LENGTH]
        assert path.name.startswith(prefix + "-")

    def test_paths_are_unique_per_call(self, provisioner):
        paths = {provisioner.build_workspace_path(Path("/repos/project")) for _ in range(50)}
        assert len(paths) == 50

    def test_path_is_not_created(self, provisioner):
        path = provisioner.build_workspace_path(Path("/repos/project"))
        assert not path.exists()

    def test_hash_is_stable_for_equivalent_paths(self):
        assert hash_source_path(Path("/repos/project")) == hash_source_path("/repos/project")


class TestTargetDirectory:

    def test_creates_missing_directory_with_parents(self, provisioner, work_root):
        target = work_root / "nested" / "workspace"
        provisioner._prepare_target_directory(target)
        assert target.is_dir()

    def test_created_directory_is_private(self, provisioner, work_root):
        target = work_root / "private"
        provisioner._prepare_target_directory(target)
        assert target.stat().st_mode & 0o077 == 0
        assert target.stat().st_mode & 0o700 == WORKSPACE_DIR_PERMISSIONS

    def test_accepts_existing_empty_directory(self, provisioner, work_root):
        target = work_root / "empty"
        target.mkdir(parents=True)
        provisioner._prepare_target_directory(target)
        assert target.is_dir()

    def test_rejects_non_empty_directory(self, provisioner, work_root):
        target = work_root / "used"
        target.mkdir(parents=True)
        (target / "leftover.txt").write_text("x")
        with pytest.raises(TargetUnavailableError, match="not empty"):
            provisioner._prepare_target_directory(target)

    def test_rejects_file_in_place(self, provisioner, work_root):
        work_root.mkdir()
        target = work_root / "file"
        target.write_text("x")
        with pytest.raises(TargetUnavailableError, match="not a directory"):
            provisioner._prepare_target_directory(target)

    def test_uncreatable_directory(self, provisioner, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        with pytest.raises(TargetUnavailableError):
            provisioner._prepare_target_directory(blocker / "workspace")

    def test_unreadable_directory(self, provisioner, work_root):
        target = work_root / "locked"
        target.mkdir(parents=True)
        with patch.object(Path, "iterdir", side_effect=PermissionError("denied")):
            with pytest.raises(TargetUnavailableError, match="denied") as excinfo:
                provisioner._prepare_target_directory(target)
        assert isinstance(excinfo.value.cause, PermissionError)


class TestSourceValidation:

    def test_missing_source(self, provisioner, tmp_path, work_root):
        with pytest.raises(SourceNotFoundError):
            run_async(provisioner.provision(tmp_path / "missing", work_root / "ws"))
        assert not (work_root / "ws").exists()

    def test_source_is_a_file(self, provisioner, tmp_path, work_root):
        source = tmp_path / "file.txt"
        source.write_text("x")
        with pytest.raises(SourceInvalidError, match="not a directory"):
            run_async(provisioner.provision(source, work_root / "ws"))

    def test_inaccessible_source(self, provisioner, source_dir):
        with patch.object(Path, "exists", side_effect=PermissionError("denied")):
            with pytest.raises(SourceInvalidError, match="cannot be accessed") as excinfo:
                run_async(provisioner._resolve_source_root(source_dir))
        assert isinstance(excinfo.value.cause, PermissionError)

    def test_source_not_a_repository(self, workspace_config, mock_git, source_dir, work_root):
        mock_git.get_repository_root.side_effect = GitCommandError(
            ["rev-parse", "--show-toplevel"], 128, "fatal: not a git repository"
        )
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        with pytest.raises(SourceInvalidError, match="not a git work tree"):
            run_async(provisioner.provision(source_dir, work_root / "ws"))
        mock_git.clone.assert_not_awaited()

    def test_source_without_commit(self, workspace_config, mock_git, source_dir, work_root):
        mock_git.get_current_head.side_effect = GitCommandError(["rev-parse"], 1, "")
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        with pytest.raises(SourceInvalidError, match="HEAD"):
            run_async(provisioner.provision(source_dir, work_root / "ws"))
        assert not (work_root / "ws").exists()

    def test_git_missing_is_extraction_failure(self, workspace_config, mock_git, source_dir, work_root):
        mock_git.get_repository_root.side_effect = GitExecutableNotFoundError(
            "git", FileNotFoundError("git")
        )
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        with pytest.raises(ExtractionFailedError):
            run_async(provisioner.provision(source_dir, work_root / "ws"))


class TestExtraction:

    def test_clones_then_checks_out_head(self, workspace_config, mock_git, source_dir, work_root):
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        target = work_root / "ws"
        workspace = run_async(provisioner.provision(source_dir, target))

        mock_git.clone.assert_awaited_once_with(source_dir, target)
        head = mock_git.get_current_head.return_value
        mock_git.checkout_detached.assert_awaited_once_with(target, head.commit)
        assert workspace.path == target
        assert workspace.head == head
        assert workspace.snapshot_mode is SnapshotMode.COMMITTED

    def test_updates_submodules_by_default(self, workspace_config, mock_git, source_dir, work_root):
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        run_async(provisioner.provision(source_dir, work_root / "ws"))
        mock_git.update_submodules.assert_awaited_once()

    def test_submodules_can_be_disabled(self, work_root, mock_git, source_dir):
        config = WorkspaceConfig(base_path=work_root, submodules=False)
        provisioner = WorkspaceProvisioner(config, git=mock_git)
        run_async(provisioner.provision(source_dir, work_root / "ws"))
        mock_git.update_submodules.assert_not_awaited()

    def test_committed_mode_does_not_read_changes(self, workspace_config, mock_git, source_dir, work_root):
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        run_async(provisioner.provision(source_dir, work_root / "ws"))
        mock_git.diff_against_head.assert_not_awaited()

    def test_working_tree_mode_applies_patch(self, work_root, mock_git, source_dir):
        mock_git.diff_against_head.return_value = b"diff --git a/a.txt b/a.txt\n"
        config = WorkspaceConfig(base_path=work_root, snapshot_mode=SnapshotMode.WORKING_TREE)
        provisioner = WorkspaceProvisioner(config, git=mock_git)
        target = work_root / "ws"
        run_async(provisioner.provision(source_dir, target))
        mock_git.apply_patch.assert_awaited_once_with(target, b"diff --git a/a.txt b/a.txt\n")

    def test_working_tree_mode_skips_empty_patch(self, work_root, mock_git, source_dir):
        config = WorkspaceConfig(base_path=work_root, snapshot_mode=SnapshotMode.WORKING_TREE)
        provisioner = WorkspaceProvisioner(config, git=mock_git)
        run_async(provisioner.provision(source_dir, work_root / "ws"))
        mock_git.apply_patch.assert_not_awaited()

    def test_clone_failure_is_extraction_failure(self, workspace_config, mock_git, source_dir, work_root):
        mock_git.clone.side_effect = GitCommandError(["clone"], 128, "fatal: disk full")
        provisioner = WorkspaceProvisioner(workspace_config, git=mock_git)
        with pytest.raises(ExtractionFailedError, match="disk full") as excinfo:
            run_async(provisioner.provision(source_dir, work_root / "ws"))
        assert isinstance(excinfo.value.cause, GitCommandError)


@requires_git
class TestRealRepository:

    def test_workspace_contains_committed_tree(self, provisioner, git_repo, work_root):
        target = work_root / "ws"
        workspace = run_async(provisioner.provision(git_repo, target))
        assert (target / "a.txt").read_text() == "hello"
        assert workspace.head.branch == "main"
        assert run_git("rev-parse", "HEAD", cwd=target) == workspace.head.commit

    def test_source_subdirectory_resolves_to_root(self, provisioner, git_repo, work_root):
        commit_file(git_repo, "docs/readme.md", "docs")
        target = work_root / "ws"
        workspace = run_async(provisioner.provision(git_repo / "docs", target))
        assert workspace.source_root.resolve() == git_repo.resolve()
        assert (target / "a.txt").exists()

    def test_uncommitted_changes_are_excluded(self, provisioner, git_repo, work_root):
        (git_repo / "a.txt").write_text("edited")
        (git_repo / "untracked.txt").write_text("new")
        target = work_root / "ws"
        run_async(provisioner.provision(git_repo, target))
        assert (target / "a.txt").read_text() == "hello"
        assert not (target / "untracked.txt").exists()

    def test_working_tree_mode_carries_tracked_changes(self, work_root, git_repo):
        (git_repo / "a.txt").write_text("edited")
        (git_repo / "untracked.txt").write_text("new")
        config = WorkspaceConfig(base_path=work_root, snapshot_mode=SnapshotMode.WORKING_TREE)
        target = work_root / "ws"
        run_async(WorkspaceProvisioner(config).provision(git_repo, target))
        assert (target / "a.txt").read_text() == "edited"
        assert not (target / "untracked.txt").exists()

    def test_working_tree_mode_with_prefixless_diff_configuration(self, work_root, git_repo):
        commit_file(git_repo, "pkg/b.txt", "bee")
        for key in ("diff.noprefix", "diff.mnemonicPrefix", "diff.relative"):
            run_git("config", key, "true", cwd=git_repo)
        (git_repo / "a.txt").write_text("edited")
        (git_repo / "pkg" / "b.txt").write_text("buzz")
        config = WorkspaceConfig(base_path=work_root, snapshot_mode=SnapshotMode.WORKING_TREE)
        target = work_root / "ws"
        run_async(WorkspaceProvisioner(config).provision(git_repo / "pkg", target))
        assert (target / "a.txt").read_text() == "edited"
        assert (target / "pkg" / "b.txt").read_text() == "buzz"

    def test_detached_source_head(self, provisioner, git_repo, work_root):
        first = run_git("rev-parse", "HEAD", cwd=git_repo)
        commit_file(git_repo, "a.txt", "second")
        run_git("checkout", "--quiet", "--detach", first, cwd=git_repo)
        target = work_root / "ws"
        workspace = run_async(provisioner.provision(git_repo, target))
        assert workspace.head.is_detached
        assert (target / "a.txt").read_text() == "hello"

    def test_checks_out_submodules(self, provisioner, git_repo, tmp_path, work_root):
        library = init_repository(tmp_path / "library")
        commit_file(library, "lib.txt", "library")
        run_git(
            "-c", "protocol.file.allow=always",
            "submodule", "--quiet", "add", str(library), "vendor/library",
            cwd=git_repo,
        )
        run_git("commit", "--quiet", "-m", "add submodule", cwd=git_repo)

        target = work_root / "ws"
        run_async(provisioner.provision(git_repo, target))
        assert (target / "vendor" / "library" / "lib.txt").read_text() == "library"

    def test_plain_directory_is_invalid(self, provisioner, tmp_path, work_root):
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(SourceInvalidError):
            run_async(provisioner.provision(plain, work_root / "ws"))

    def test_empty_repository_is_invalid(self, provisioner, tmp_path, work_root):
        repo = init_repository(tmp_path / "empty")
        with pytest.raises(SourceInvalidError):
            run_async(provisioner.provision(repo, work_root / "ws"))

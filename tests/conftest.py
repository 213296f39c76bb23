"""Pytest configuration for all tests."""

import hashlib
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

# Add src directory to Python path for all tests
src_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def pytest_configure(config):
    config.addinivalue_line("markers", "git: test drives a real git executable")


@pytest.fixture(autouse=True)
def isolated_git_environment(tmp_path_factory, monkeypatch):
    """Keep git away from the developer's own configuration and repositories."""
    home = tmp_path_factory.mktemp("home")
    global_config = home / ".gitconfig"
    global_config.write_text("")

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "fersk tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@fersk.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "fersk tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@fersk.invalid")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path_factory.getbasetemp()))
    for name in list(os.environ):
        if name.startswith("FERSK_"):
            monkeypatch.delenv(name, raising=False)


def run_git(*args: str, cwd: Path) -> str:
    """Run git synchronously for fixture setup and assertions."""
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
        env={**os.environ, "GIT_OPTIONAL_LOCKS": "0"},
    )
    return completed.stdout.strip()


def init_repository(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    run_git("init", "--quiet", cwd=path)
    run_git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    run_git("config", "commit.gpgsign", "false", cwd=path)
    return path


def commit_file(repo: Path, name: str, content: str, message: str = "update") -> str:
    target = repo / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    run_git("add", name, cwd=repo)
    run_git("commit", "--quiet", "-m", message, cwd=repo)
    return run_git("rev-parse", "HEAD", cwd=repo)


def repository_fingerprint(repo: Path) -> dict:
    """Capture HEAD, index bytes and working tree contents of repo.

    Reads files directly so taking the fingerprint never touches the index.
    """
    git_dir = repo / ".git"
    files = {}
    for path in sorted(repo.rglob("*")):
        if git_dir in path.parents or path == git_dir or not path.is_file():
            continue
        files[str(path.relative_to(repo))] = path.read_bytes()

    index_file = git_dir / "index"
    return {
        "head": (git_dir / "HEAD").read_text(),
        "refs": {
            str(p.relative_to(git_dir)): p.read_text()
            for p in sorted((git_dir / "refs").rglob("*"))
            if p.is_file()
        },
        "index": hashlib.sha256(index_file.read_bytes()).hexdigest() if index_file.exists() else None,
        "index_mtime": index_file.stat().st_mtime_ns if index_file.exists() else None,
        "files": files,
    }


@pytest.fixture
def git_repo(tmp_path):
    """A repository with one commit containing a.txt = "hello"."""
    repo = init_repository(tmp_path / "source")
    commit_file(repo, "a.txt", "hello", message="initial")
    return repo


@pytest.fixture
def work_root(tmp_path):
    return tmp_path / "workspaces"

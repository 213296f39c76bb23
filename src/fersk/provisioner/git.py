"""Async wrapper around the git executable.

All repository access goes through this module. Commands run against the
user's source repository are read-only, and every invocation sets
GIT_OPTIONAL_LOCKS=0 so that git never refreshes the source index as a side
effect of an otherwise read-only query.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)

# Variables binding git to one repository (`git rev-parse --local-env-vars`).
# Git hooks export them; they must never reach commands run in a workspace.
REPOSITORY_ENV_VARS = frozenset({
    "GIT_ALTERNATE_OBJECT_DIRECTORIES",
    "GIT_COMMON_DIR",
    "GIT_CONFIG",
    "GIT_CONFIG_COUNT",
    "GIT_CONFIG_PARAMETERS",
    "GIT_DIR",
    "GIT_GRAFT_FILE",
    "GIT_IMPLICIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_INTERNAL_SUPER_PREFIX",
    "GIT_NO_REPLACE_OBJECTS",
    "GIT_OBJECT_DIRECTORY",
    "GIT_PREFIX",
    "GIT_REPLACE_REF_BASE",
    "GIT_SHALLOW_FILE",
    "GIT_WORK_TREE",
})


class GitError(Exception):
    """Base class for failures reported by the git collaborator."""


class GitExecutableNotFoundError(GitError):
    """Raised when the git executable cannot be started."""

    def __init__(self, git_path: str, cause: OSError):
        self.git_path = git_path
        self.cause = cause
        super().__init__(f"Failed to execute {git_path}: {cause}")


class GitCommandError(GitError):
    """Raised when a git command exits with a non-zero status.

    Attributes:
        args: Arguments passed to git (without the executable).
        returncode: Exit status reported by git.
        stderr: Decoded standard error output.
    """

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        message = f"git {' '.join(self.command)} exited with code {returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


@dataclass(frozen=True)
class SourceHead:
    """The commit checked out in a repository.

    Attributes:
        commit: Full SHA of HEAD.
        branch: Short branch name, or None when HEAD is detached.
    """

    commit: str
    branch: Optional[str] = None

    @property
    def is_detached(self) -> bool:
        return self.branch is None

    def __str__(self) -> str:
        return self.branch or self.commit


class Git:
    """Runs git subcommands as asyncio subprocesses.

    Attributes:
        git_path: Executable name or path of git.
        quiet: Pass --quiet to commands that report progress.
    """

    def __init__(self, git_path: str = "git", quiet: bool = True):
        self.git_path = git_path
        self.quiet = quiet

    async def get_repository_root(self, path: Path) -> Path:
        """Return the top-level directory of the work tree containing path."""
        output = await self._run(["rev-parse", "--show-toplevel"], cwd=path)
        return Path(output.decode("utf-8", errors="replace").strip())

    async def get_current_head(self, path: Path) -> SourceHead:
        """Resolve HEAD to a commit and, when attached, its branch name.

        Raises:
            GitCommandError: If HEAD does not point at a commit (for example
                a freshly initialised repository without commits).
        """
        output = await self._run(
            ["rev-parse", "--verify", "--quiet", "HEAD^{commit}"], cwd=path
        )
        commit = output.decode("utf-8", errors="replace").strip()

        try:
            branch_output = await self._run(
                ["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=path
            )
        except GitCommandError:
            return SourceHead(commit=commit)

        branch = branch_output.decode("utf-8", errors="replace").strip()
        return SourceHead(commit=commit, branch=branch or None)

    async def clone(self, source: Path, destination: Path) -> None:
        """Clone source into destination without checking out a tree."""
        args = ["clone", "--no-checkout"]
        if self.quiet:
            args.append("--quiet")
        args.extend(["--", str(source), str(destination)])
        await self._run(args)

    async def checkout_detached(self, path: Path, commit: str) -> None:
        """Check out commit in path with a detached HEAD."""
        args = ["-c", "advice.detachedHead=false", "checkout", "--detach"]
        if self.quiet:
            args.append("--quiet")
        args.append(commit)
        await self._run(args, cwd=path)

    async def update_submodules(self, path: Path) -> None:
        """Initialise and check out all submodules recursively."""
        # Relative submodule URLs resolve against the local source clone.
        args = ["-c", "protocol.file.allow=always", "submodule", "update"]
        if self.quiet:
            args.append("--quiet")
        args.extend(["--init", "--recursive"])
        await self._run(args, cwd=path)

    async def diff_against_head(self, path: Path) -> bytes:
        """Return a binary patch of tracked changes relative to HEAD."""
        # Explicit prefixes and paths so diff.noprefix, diff.mnemonicPrefix and
        # diff.relative in the user's config cannot produce a patch apply rejects.
        return await self._run(
            [
                "-c", "diff.noprefix=false",
                "-c", "diff.mnemonicPrefix=false",
                "diff",
                "--binary",
                "--no-color",
                "--no-ext-diff",
                "--no-textconv",
                "--no-relative",
                "--submodule=short",
                "--src-prefix=a/",
                "--dst-prefix=b/",
                "HEAD",
            ],
            cwd=path,
        )

    async def apply_patch(self, path: Path, patch: bytes) -> None:
        """Apply a patch produced by diff_against_head inside path."""
        await self._run(
            ["apply", "--binary", "--whitespace=nowarn", "-"],
            cwd=path,
            stdin=patch,
        )

    async def _run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        stdin: Optional[bytes] = None,
    ) -> bytes:
        """Run git with args and return its standard output.

        Raises:
            GitExecutableNotFoundError: If git cannot be started.
            GitCommandError: If git exits with a non-zero status.
        """
        logger.debug("Running git", args=list(args), cwd=str(cwd) if cwd else None)

        try:
            process = await asyncio.create_subprocess_exec(
                self.git_path,
                *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_git_environment(),
            )
        except OSError as exc:
            raise GitExecutableNotFoundError(self.git_path, exc) from exc

        try:
            stdout, stderr = await process.communicate(input=stdin)
        except asyncio.CancelledError:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await _reap(process)
            raise

        if process.returncode != 0:
            raise GitCommandError(
                args,
                process.returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )

        return stdout


def repository_free_environment() -> dict[str, str]:
    """Return a copy of os.environ without REPOSITORY_ENV_VARS."""
    return {
        name: value for name, value in os.environ.items() if name not in REPOSITORY_ENV_VARS
    }


def _git_environment() -> dict[str, str]:
    env = repository_free_environment()
    env["GIT_OPTIONAL_LOCKS"] = "0"
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Wait for process to exit, riding out further cancellations."""
    waiter = asyncio.ensure_future(process.wait())
    while not waiter.done():
        try:
            await asyncio.shield(waiter)
        except asyncio.CancelledError:
            continue

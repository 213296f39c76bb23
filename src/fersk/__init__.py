"""Run commands in fresh, disposable copies of a git repository.

This package provides:
- Workspace provisioning from a repository's committed state
- Command execution inside the workspace with transparent passthrough
- An invocation lifecycle that always removes the workspace
- A command-line interface (``fersk run -- COMMAND``)
"""

__version__ = "0.3.0"

"""Version-control backends."""

from taskweave.vcs.git_backend import CommandResult, GitBackend

__all__ = ["CommandResult", "GitBackend"]

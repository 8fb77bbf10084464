"""Shared exception types for gitdock."""


class GitDockError(Exception):
    """Base exception for all gitdock errors."""


class ConfigError(GitDockError):
    """Configuration is invalid or missing."""


class OperationError(GitDockError):
    """A version-control command failed.

    Carries the failing command text and whatever output the tool produced,
    so callers can still scrape informational content from a failed run.
    """

    def __init__(
        self,
        command: str,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.message = message
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        return f"{self.command}: {self.message}" if self.command else self.message


class RepositoryOpenError(GitDockError):
    """The backend could not open the repository."""


class AdapterNotOpenError(GitDockError):
    """An adapter was used before open() completed."""


class StashNotFoundError(GitDockError):
    """A stash entry could not be re-resolved in the current stash list."""


class BranchSwitchCancelled(GitDockError):
    """The local-changes decision for a branch switch was cancelled or timed out."""

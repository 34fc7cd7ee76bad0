"""Error types surfaced by stet.

Every error the core raises derives from StetError so the CLI can render it
with a single handler. Errors that have an obvious next step for the user
carry a ``hint``.
"""


class StetError(Exception):
    """Base class for all stet errors."""

    hint: str = ""

    def __init__(self, message: str = "", hint: str = ""):
        super().__init__(message)
        if hint:
            self.hint = hint


class ConfigError(StetError):
    """Missing or malformed configuration."""


class SessionLocked(StetError):
    hint = "Another stet run is active for this repository; wait for it or remove a stale lock."


class NoSession(StetError):
    hint = "Run 'stet start' first."


class DirtyWorktree(StetError):
    hint = "Commit or stash your changes, or pass --allow-dirty."


class InvalidRef(StetError):
    hint = "Check that the ref exists (git rev-parse <ref>)."


class BaselineNotAncestor(StetError):
    hint = "The baseline must be an ancestor of HEAD."


class WorktreeExists(StetError):
    hint = "Run 'stet finish' to clean up the previous review, or remove the worktree."


class GitError(StetError):
    """A git subprocess failed."""


class DiffError(StetError):
    """Computing or scoping a diff failed."""


class Unreachable(StetError):
    """The model server could not be reached after retries."""


class BadRequest(StetError):
    """The model server rejected the request (4xx); not retried."""


class ModelNotFound(StetError):
    hint = "Pull the model first (ollama pull <model>)."


class ParseError(StetError):
    """A model response could not be parsed into findings."""


class ValidationError(StetError):
    """A finding failed schema validation."""


class ReviewError(StetError):
    """Reviewing a hunk failed; the cause is chained."""

    def __init__(self, path: str, message: str = ""):
        super().__init__(message or f"Review failed for {path}")
        self.path = path


class Cancelled(StetError):
    """The run was cancelled; nothing was persisted."""


class SessionError(StetError):
    """The session file could not be read or written."""


class SessionExists(StetError):
    hint = "Run 'stet run' to continue the current review, or 'stet finish' to end it."

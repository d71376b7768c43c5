from typing import Optional

# Fixed body of every persisted error message. Internal causes never reach users.
ERROR_MESSAGE_BODY = "Something went wrong. Please try again."


class CoreError(Exception):
    """Base exception for errors raised by the generation workflow."""


class Unauthenticated(CoreError):
    """No identity was attached to the request."""


class ProjectNotFound(CoreError):
    """The project does not exist or is not owned by the caller."""


class QuotaExhausted(CoreError):
    """The credit ledger denied the turn; the caller should route to an upgrade flow."""

    def __init__(self, reset_at: Optional[str] = None, remaining: int = 0):
        self.reset_at = reset_at
        self.remaining = remaining
        super().__init__("You have run out of credits")


class CreditStorageError(CoreError):
    """The credit ledger could not reach its store. Safe to retry."""


class GenerationFailed(CoreError):
    """
    The generation loop ended without a usable summary and file set.

    Covers iteration-budget exhaustion, a summary with no files, an unavailable
    or timed-out session. Persisted as an ``error`` message.
    """

    def __init__(self, reason: str, iterations: int = 0):
        self.reason = reason
        self.iterations = iterations
        super().__init__(reason)


class ToolFailure(CoreError):
    """A single tool operation failed. Reported back to the agent, never to the user."""


class CommandFailed(ToolFailure):
    """A sandbox command exited non-zero. Carries the captured output streams."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class SessionUnavailable(CoreError):
    """The execution sandbox could not be opened."""


class PersistenceFailure(CoreError):
    """The turn outcome could not be written. The outcome is lost."""


class LLMError(CoreError):
    """An inference call failed or returned nothing usable."""


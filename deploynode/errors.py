"""Exception hierarchy for deploynode.

Library code raises these; only the CLI turns them into process exits.
"""


class DeployNodeError(Exception):
    """Base class for all deploynode failures."""


class ConfigurationError(DeployNodeError):
    """Malformed desired-state input. Raised before any provider or remote call."""


class ProviderError(DeployNodeError):
    """A cloud or DNS API call failed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ReadinessTimeout(DeployNodeError, TimeoutError):
    """An endpoint never returned an acceptable status before the deadline."""

    def __init__(self, message: str, *, pending: list[str] | None = None):
        super().__init__(message)
        self.pending = pending or []


class WaitCancelled(DeployNodeError):
    """A readiness wait was stopped before it finished."""


class RemoteCommandError(DeployNodeError):
    """A remote command exited non-zero or wrote disallowed stderr output."""

    def __init__(
        self,
        command: str,
        exit_status: int | None = None,
        stderr_lines: list[str] | None = None,
        message: str | None = None,
    ):
        self.command = command
        self.exit_status = exit_status
        self.stderr_lines = stderr_lines or []
        if message is None:
            message = f"Remote command failed (exit {exit_status}): {command}"
            if self.stderr_lines:
                message += "\n" + "\n".join(self.stderr_lines)
        super().__init__(message)


class RemoteConnectionError(RemoteCommandError):
    """The remote channel dropped or could not be opened."""


class RollbackError(DeployNodeError):
    """Rollback failed; the host is in an unknown state."""

    def __init__(self, message: str, *, original: BaseException):
        super().__init__(message)
        self.original = original

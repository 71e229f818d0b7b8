"""
Error types raised by the image build

Every fatal condition in a build is a BuildError subclass so the entry point
can report it uniformly. Context (stage, resource id, step) is attached as the
error travels up through the pipeline and orchestrator.
"""

from typing import Any, Dict, Optional


class BuildError(Exception):
    """Base class for all build failures."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context)

    def add_context(self, **fields: Any) -> "BuildError":
        """
        Attach diagnostic fields without overwriting ones set closer to the failure.

        Returns:
            The same error, so callers can `raise err.add_context(...)`
        """
        for key, value in fields.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ValidationError(BuildError):
    """Malformed build input, detected before any remote side effect where possible."""


class MissingSourceError(ValidationError):
    """A local script or file referenced by the provisioning plan does not exist."""

    def __init__(self, path: str, **context: Any) -> None:
        super().__init__(f"Local source not found: {path}", **context)
        self.path = path


class TransportError(BuildError):
    """Network, HTTP or SSH transport failure."""


class ConnectionTimeout(TransportError):
    """SSH connection could not be established within the retry budget."""

    def __init__(
        self,
        host: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        **context: Any
    ) -> None:
        message = f"Failed to connect to {host} after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message, **context)
        self.host = host
        self.attempts = attempts
        self.last_error = last_error


class APIError(BuildError):
    """The provider answered, but reported a failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.status_code = status_code
        self.body = body


class ReadinessTimeout(BuildError):
    """A polled resource never satisfied its readiness predicate."""

    def __init__(
        self,
        resource: str,
        attempts: int,
        last_status: Optional[str] = None,
        **context: Any
    ) -> None:
        super().__init__(
            f"{resource} did not become ready within {attempts} attempts "
            f"(last status: {last_status})",
            **context
        )
        self.resource = resource
        self.attempts = attempts
        self.last_status = last_status


class CommandError(BuildError):
    """A remote command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        command: str,
        exit_status: Optional[int] = None,
        **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.command = command
        self.exit_status = exit_status


class TransferError(BuildError):
    """A file could not be copied to the remote host."""

    def __init__(self, message: str, local_path: str, remote_path: str, **context: Any) -> None:
        super().__init__(message, **context)
        self.local_path = local_path
        self.remote_path = remote_path

"""Exception hierarchy for the lab controller."""

from typing import List, Optional

from nestedlab.schemas.models import CommandResult


class LabError(RuntimeError):
    """Base exception for lab automation failures."""


class ConfigError(LabError):
    """Raised when config.yaml or the secrets are missing or invalid."""


class CommandError(LabError):
    """Raised when a local command exits non-zero."""

    def __init__(self, message: str, result: Optional[CommandResult] = None):
        super().__init__(message)
        self.result = result


class TerraformError(CommandError):
    """Raised for terraform failures and unreadable outputs."""


class RemoteError(LabError):
    """Base exception for PowerShell remoting failures."""

    def __init__(self, message: str, host: str = ""):
        super().__init__(message)
        self.host = host


class RemoteAuthenticationError(RemoteError):
    """Raised when authentication to a node fails."""


class RemoteTransportError(RemoteError):
    """Raised for connection and WS-Man transport failures."""


class RemoteExecutionError(RemoteError):
    """Raised when a remote script writes to the error stream."""

    def __init__(
        self,
        message: str,
        host: str = "",
        script_preview: str = "",
        errors: Optional[List[str]] = None,
    ):
        super().__init__(message, host)
        self.script_preview = script_preview
        self.errors = errors or []


class RetryExhaustedError(LabError):
    """Raised when a bounded retry runs out of attempts."""

    def __init__(self, message: str, attempts: int, last_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class StepFailedError(LabError):
    """Raised when a workflow step fails fatally."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step

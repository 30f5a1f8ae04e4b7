"""Exception hierarchy for the orchestration core."""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigurationError(OrchestratorError, ValueError):
    """A plan could not be built from the given configuration."""


class ProviderOperationError(OrchestratorError):
    """The provider rejected a call or the operation ended in a failed state."""

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        name: Optional[str] = None,
        code: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.name = name
        self.code = code
        self.detail = detail

    def __str__(self):
        text = super().__str__()
        if self.code:
            text = f"{text} [{self.code}]"
        if self.detail:
            text = f"{text}: {self.detail}"
        return text


class OperationTimeoutError(OrchestratorError, TimeoutError):
    """A blocking wait exceeded its bound before reaching a terminal state."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class TeardownError(OrchestratorError):
    """Deleting the resource group failed. Logged, never propagated."""

    def __init__(self, resource_group: str, cause: BaseException):
        super().__init__(f"Failed to delete resource group {resource_group}: {cause}")
        self.resource_group = resource_group
        self.cause = cause

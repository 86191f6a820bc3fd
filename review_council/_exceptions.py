# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Exception hierarchy for the review engine.

All exceptions derive from Agent Framework's exception tree so callers that
already handle ``AgentFrameworkException`` keep working.
"""

from agent_framework.exceptions import (
    AgentFrameworkException,
    ServiceInitializationError,
    ServiceInvalidResponseError,
    ServiceResponseException,
)


class ReviewCouncilException(AgentFrameworkException):
    """Base exception for all review engine errors."""


class UnknownProviderError(ReviewCouncilException):
    """Raised when a provider id is not registered."""

    def __init__(self, provider_id: str, available: list[str]) -> None:
        self.provider_id = provider_id
        self.available = available
        super().__init__(
            f"Unknown AI provider: {provider_id}. "
            f"Available providers: {', '.join(available) or 'none'}"
        )


class ProcessSpawnError(ReviewCouncilException, ServiceInitializationError):
    """Raised when a provider executable cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        install_instructions: str | None = None,
    ) -> None:
        self.command = command
        self.install_instructions = install_instructions
        if install_instructions:
            message = f"{message} {install_instructions}"
        super().__init__(message)


class ProcessTimeoutError(ReviewCouncilException, ServiceResponseException):
    """Raised when a provider process does not finish within its timeout."""

    def __init__(self, timeout_seconds: float, *, level: str | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.level = level
        prefix = f"[Level {level}] " if level else ""
        super().__init__(f"{prefix}Process timed out after {timeout_seconds}s")


class ProcessExecutionError(ReviewCouncilException, ServiceResponseException):
    """Raised when a provider process exits with a non-zero code."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class ProtocolError(ReviewCouncilException, ServiceInvalidResponseError):
    """Raised for malformed JSON-RPC traffic or error responses.

    Attributes:
        code: JSON-RPC error code, when the server supplied one.
    """

    def __init__(self, message: str, *, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class BridgeStateError(ReviewCouncilException):
    """Raised when the agent bridge is used in the wrong state."""


class BridgeStartError(ReviewCouncilException):
    """Raised when the agent bridge fails before becoming ready."""


class CancellationError(ReviewCouncilException):
    """Raised when work stops because its analysis run was cancelled.

    Kept distinct from failures so cancelled work is never recorded as failed.
    """

    is_cancellation = True


class AnalysisSetupError(ReviewCouncilException):
    """Raised for fatal configuration errors before any provider runs."""


class RunSettledError(ReviewCouncilException):
    """Raised when mutating an analysis run that already reached a terminal status."""

    def __init__(self, run_id: str, status: str) -> None:
        self.run_id = run_id
        self.status = status
        super().__init__(f"Analysis {run_id} is already {status}")

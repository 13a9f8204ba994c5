"""
vertexpool errors - taxonomy shared by the provider, retry executor and reconciler.
"""

from typing import Any


class VertexPoolError(Exception):
    """Base exception for all vertexpool errors."""
    pass


class ConfigurationError(VertexPoolError):
    """Errors in configuration."""
    pass


class ValidationError(VertexPoolError):
    """Missing or invalid required input. Never retried."""
    pass


class ProviderError(VertexPoolError):
    """Failure reported by the remote control plane."""

    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class TransientProviderError(ProviderError):
    """Network, rate-limit or server-side failure worth retrying."""
    pass


class PermanentProviderError(ProviderError):
    """Quota exceeded, permission denied or another non-retryable rejection."""
    pass


class NotFoundError(PermanentProviderError):
    """The addressed remote resource does not exist."""
    pass


class ConflictError(ProviderError):
    """Resource or binding already exists."""
    pass


class IdCollisionError(ConflictError):
    """A project id is already taken; the caller should pick a new id."""
    pass


class RetryExhaustedError(VertexPoolError):
    """An operation still failed after its retry budget was spent."""

    def __init__(self, name: str, attempts: int, last_error: BaseException | None):
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{name} failed after {attempts} attempt(s): {last_error}")


class ProvisioningError(VertexPoolError):
    """A single project's pipeline stopped at a step.

    Carries enough context (project, step, attempts) to remediate by hand or
    to re-run safely.
    """

    def __init__(self, project_id: str, step: Any, attempts: int, cause: BaseException | None):
        self.project_id = project_id
        self.step = step
        self.attempts = attempts
        self.cause = cause
        step_name = getattr(step, "value", step)
        super().__init__(
            f"[{project_id}] step '{step_name}' failed after {attempts} attempt(s): {cause}"
        )


class ReconcileError(VertexPoolError):
    """One or more project pipelines failed during a reconcile run.

    ``pool`` holds the membership reached before the failure (already
    checkpointed); ``failures`` lists the per-project errors.
    """

    def __init__(self, message: str, pool: Any = None, failures: list[BaseException] | None = None):
        super().__init__(message)
        self.pool = pool
        self.failures = failures or []

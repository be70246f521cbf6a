"""Service error hierarchy for the model generation pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, provider outages, rate limits)
- PermanentError: Non-retryable errors (validation, authorization, missing records)
- RelocationError: Artifact-level copy failure, never fails a task on its own
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Provider returned 5xx or a non-zero business code
    - Rate limit exceeded (429)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Missing prompt / image token for the requested generation type
    - Disabled user
    - Task record no longer exists
    """

    pass


# Provider-specific errors
class ProviderError(TransientError):
    """Generation provider transport or business failure.

    Attributes:
        http_status: Upstream HTTP status (None when no response was received)
        trace_id: Provider-side trace identifier, when the provider sent one
        code: Provider business code, when the body carried one
    """

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        trace_id: str | None = None,
        code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.trace_id = trace_id
        self.code = code

    def __str__(self) -> str:
        parts = [self.message]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.trace_id:
            parts.append(f"trace_id={self.trace_id}")
        return " | ".join(parts)


class ValidationError(PermanentError):
    """Caller-supplied input is malformed (never sent to the provider)."""

    pass


class AuthorizationError(PermanentError):
    """User is unknown or disabled."""

    pass


class TaskNotFoundError(PermanentError):
    """Task record missing (or not owned by the requesting user)."""

    pass


class ConfigurationError(PermanentError):
    """Required client configuration is missing."""

    pass


# Storage-specific errors
class StorageError(ServiceError):
    """Object storage rejected an upload."""

    pass


class RelocationError(ServiceError):
    """An artifact could not be copied into owned storage.

    Download and upload failures are folded into this one error.

    Attributes:
        key: Destination object key
        cause: Underlying exception
    """

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Relocation to {key} failed: {type(cause).__name__}: {cause}")
        self.key = key
        self.cause = cause

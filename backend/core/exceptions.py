"""Custom exceptions for the workflow orchestration engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


# ─── Registration / scheduling ────────────────────────────────

class WorkflowDefinitionError(WorkflowEngineError):
    """A workflow definition is malformed."""


class WorkflowNotFoundError(WorkflowEngineError):
    """No workflow is registered under the requested name."""

    def __init__(self, name: str):
        self.workflow_name = name
        super().__init__(f"Workflow not found: {name}")


class WorkflowDisabledError(WorkflowEngineError):
    """The workflow exists but is disabled."""

    def __init__(self, name: str):
        self.workflow_name = name
        super().__init__(f"Workflow is disabled: {name}")


class QueueShutdownError(WorkflowEngineError):
    """The queue is shutting down and no longer accepts jobs."""

    def __init__(self, message: str = "Workflow queue is shutting down"):
        super().__init__(message)


class CascadeDepthExceededError(WorkflowEngineError):
    """An entity event cascade went deeper than allowed."""

    def __init__(self, depth: int, max_depth: int):
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"Cascade depth {depth} exceeds maximum of {max_depth}")


# ─── Step execution ───────────────────────────────────────────

class StepValidationError(WorkflowEngineError):
    """A step is missing a required field or has an invalid value."""


class ServiceNotConfiguredError(WorkflowEngineError):
    """A step needs a collaborator that was not provided."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} not configured")


class PluginNotFoundError(WorkflowEngineError):
    """Requested plugin is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Plugin not found: {name}")


class PluginActionNotFoundError(WorkflowEngineError):
    """Requested plugin does not expose the action."""

    def __init__(self, plugin: str, action: str):
        super().__init__(f"Action not found: {plugin}.{action}")


class NotificationError(WorkflowEngineError):
    """A notification could not be routed or delivered."""


# ─── Outbound HTTP ────────────────────────────────────────────

class HttpClientError(WorkflowEngineError):
    """Base class for resilient HTTP client failures."""

    retryable: bool = False


class InvalidUrlError(HttpClientError):
    """URL cannot be parsed or uses a forbidden scheme."""


class BlockedAddressError(HttpClientError):
    """Destination resolves to a loopback/private/link-local address."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(
            f"Cannot make requests to private IP addresses or localhost: {host}"
        )


class PayloadTooLargeError(HttpClientError):
    """Request or response body exceeds the configured cap."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Payload size ({size} bytes) exceeds maximum allowed size ({limit} bytes)"
        )


class CircuitOpenError(HttpClientError):
    """Destination host breaker is open."""

    def __init__(self, host: str, failures: int, threshold: int, retry_after: float):
        self.host = host
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open for {host}. "
            f"Too many failures ({failures}/{threshold}). "
            f"Will retry after {retry_after:.1f}s"
        )


class RequestTimeoutError(HttpClientError):
    """A single attempt exceeded its timeout."""

    retryable = True

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request timeout after {timeout}s")


class TransportError(HttpClientError):
    """Network-level failure (connection refused, reset, DNS...)."""

    retryable = True


class HttpStatusError(HttpClientError):
    """Server answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code}: {reason}".rstrip(": "))

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500


class RetriesExhaustedError(HttpClientError):
    """All attempts failed."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"HTTP request failed after {attempts} attempts: {last_error}"
        )

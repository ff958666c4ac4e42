"""Custom exceptions for the workflow execution engine."""

from typing import Optional


class EngineException(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class StructuralError(EngineException):
    """The workflow graph is malformed and cannot be executed.

    Raised before any step runs: missing or duplicate trigger,
    dangling edge, duplicate branch handle, or a cycle.
    """

    def __init__(self, message: str = "Invalid workflow graph"):
        super().__init__(message, 422)


class WorkflowInactiveError(EngineException):
    """The workflow exists but is switched off."""

    def __init__(self, message: str = "Workflow is not active"):
        super().__init__(message, 409)


class InvalidTransition(EngineException):
    """An execution record was asked to leave a terminal state."""

    def __init__(self, message: str = "Invalid execution status transition"):
        super().__init__(message, 409)


class ExecutionCancelled(EngineException):
    """Raised inside a run when cancellation has been requested."""

    def __init__(self, message: str = "Execution cancelled"):
        super().__init__(message, 409)


class WebhookSignatureError(EngineException):
    """Inbound webhook failed HMAC verification."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, 401)


class StepExecutionError(EngineException):
    """A single node's runner or collaborator call failed."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message, 500)


class RetryableTransportError(StepExecutionError):
    """Transient failure: network error, timeout, HTTP 5xx or 429."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status = status
        self.retry_after = retry_after
        super().__init__(message)


class NonRetryableHttpError(StepExecutionError):
    """HTTP response that retrying cannot fix (4xx other than 429)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SafetyLimitError(StepExecutionError):
    """A configured safety ceiling was hit.

    Always fatal to the branch, ``continueOnError`` does not apply.
    """

from __future__ import annotations

from typing import Optional


# Plain-language messages; these are the only failure text a user sees.
SERVICE_UNAVAILABLE_MESSAGE = (
    "I'm unable to reach the content service right now. Please try again in a moment."
)
CONTENT_UNAVAILABLE_MESSAGE = (
    "The website content is temporarily unavailable. Please try again shortly."
)
GENERATION_FAILED_MESSAGE = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Please try asking your question in a different way, or contact our support "
    "team if you need immediate assistance."
)
GENERIC_ERROR_MESSAGE = (
    "I encountered an error while processing your request. Please try again."
)


class ServiceError(Exception):
    """Base class for pipeline errors.

    Every error carries a stable ``error_code`` for operator logs and a
    ``user_message`` that is safe to stream to an end user. The raw
    ``message`` and ``detail`` stay server-side.
    """

    error_code: str = "server_error"
    user_message: str = GENERIC_ERROR_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ToolConnectionError(ServiceError, ConnectionError):
    """Tool subprocess failed to start or exited."""
    error_code = "tool_connection_error"
    user_message = SERVICE_UNAVAILABLE_MESSAGE


class ToolTimeoutError(ServiceError, TimeoutError):
    """No matching response arrived within the request timeout."""
    error_code = "tool_timeout"
    user_message = SERVICE_UNAVAILABLE_MESSAGE


class ProtocolError(ServiceError):
    """Malformed frame or corrupted subprocess state."""
    error_code = "protocol_error"
    user_message = SERVICE_UNAVAILABLE_MESSAGE


class ToolExecutionError(ServiceError):
    """An individual tool call returned an error."""
    error_code = "tool_execution_error"
    user_message = CONTENT_UNAVAILABLE_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        rpc_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.rpc_code = rpc_code


class SelectionError(ServiceError):
    """Selection model call failed or returned unusable output."""
    error_code = "selection_error"


class BudgetExceeded(ServiceError):
    """Rendered context does not fit the token budget."""
    error_code = "budget_exceeded"

    def __init__(self, message: str, *, tokens: int, budget: int) -> None:
        super().__init__(message, detail={"tokens": tokens, "budget": budget})
        self.tokens = tokens
        self.budget = budget


class ProviderError(ServiceError):
    """A generation provider call failed."""
    error_code = "provider_error"
    user_message = GENERATION_FAILED_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.provider = provider
        self.status_code = status_code


class SecurityViolation(ServiceError):
    """A tool outside the read-only allow-list reached execution."""
    error_code = "security_violation"

    def __init__(self, message: str, *, tool: str) -> None:
        super().__init__(message, detail={"tool": tool})
        self.tool = tool


__all__ = [
    "SERVICE_UNAVAILABLE_MESSAGE",
    "CONTENT_UNAVAILABLE_MESSAGE",
    "GENERATION_FAILED_MESSAGE",
    "GENERIC_ERROR_MESSAGE",
    "ServiceError",
    "ToolConnectionError",
    "ToolTimeoutError",
    "ProtocolError",
    "ToolExecutionError",
    "SelectionError",
    "BudgetExceeded",
    "ProviderError",
    "SecurityViolation",
]

"""
Typed failures surfaced by providers, the executor and the orchestrator.

Every error carries a ``category`` so callers can branch without string
matching (e.g. "enter an API key" for configuration/authentication,
"temporarily unavailable" for transient/circuit_open).
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    TRANSIENT = "transient"
    CIRCUIT_OPEN = "circuit_open"
    FORMAT = "format"
    BUDGET = "budget"
    RESOURCE = "resource"
    BUSY = "busy"
    PROVIDER = "provider"


class ProviderError(Exception):
    """Base exception for provider orchestration errors."""

    category: ErrorCategory = ErrorCategory.PROVIDER

    def __init__(self, message: str, provider_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.CIRCUIT_OPEN)


class MissingAPIKey(ProviderError):
    category = ErrorCategory.CONFIGURATION

    def __init__(self, provider_name: str, provider_id: Optional[str] = None):
        super().__init__(f"Missing API key for {provider_name}", provider_id=provider_id)


class InvalidConfiguration(ProviderError):
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, provider_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(f"Invalid configuration: {message}", provider_id=provider_id, status_code=status_code)


class ModelNotAvailable(ProviderError):
    category = ErrorCategory.CONFIGURATION

    def __init__(self, model_id: str, provider_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(f"Model not available: {model_id}", provider_id=provider_id, status_code=status_code)
        self.model_id = model_id


class UnsupportedOperation(ProviderError):
    category = ErrorCategory.CONFIGURATION

    def __init__(self, operation: str, provider_id: Optional[str] = None):
        super().__init__(f"Unsupported operation: {operation}", provider_id=provider_id)


class AuthenticationFailed(ProviderError):
    category = ErrorCategory.AUTHENTICATION

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("API authentication failed", provider_id=provider_id, status_code=401)


class RateLimitExceeded(ProviderError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("API rate limit exceeded", provider_id=provider_id, status_code=429)


class CircuitOpen(ProviderError):
    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, provider_id: str, retry_in: float = 0.0):
        super().__init__(
            f"Circuit breaker open for {provider_id}. Please retry in {retry_in:.0f}s.",
            provider_id=provider_id,
        )
        self.retry_in = retry_in


class NetworkError(ProviderError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, cause: BaseException, provider_id: Optional[str] = None):
        super().__init__(f"Network error: {cause}", provider_id=provider_id)
        self.cause = cause


class StreamInterrupted(NetworkError):
    """A stream that was already delivering text broke off."""


class ResponseFormatError(ProviderError):
    category = ErrorCategory.FORMAT


class ProviderSpecificError(ProviderError):
    pass


class BudgetExceeded(ProviderError):
    category = ErrorCategory.BUDGET


class ResourcePressure(ProviderError):
    category = ErrorCategory.RESOURCE


class ConversationBusy(ProviderError):
    category = ErrorCategory.BUSY

    def __init__(self):
        super().__init__("Another request is already in progress for this conversation")

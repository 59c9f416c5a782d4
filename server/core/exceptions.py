"""
Unified exception handling for the deep search server.

Endpoints raise AppException (or a subclass) for consistent error responses.
Pipeline stages raise the provider/output subclasses internally; the pipeline
boundary converts anything that escapes into an error-shaped answer.

Usage:
    from core.exceptions import AppException, ErrorCode, ProviderUnavailableError

    # A provider failed at the transport level
    raise ProviderUnavailableError("ollama", "connection refused")

    # A custom error
    raise AppException(
        code=ErrorCode.INTERNAL_ERROR,
        message="Something went wrong",
        status_code=500,
        details={"component": "synthesizer"}
    )
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """
    Standardized error codes across all endpoints.

    Code ranges:
    - 1xxx: Validation errors
    - 3xxx: Resource errors (not found, etc.)
    - 4xxx: Search pipeline errors
    - 5xxx: External service errors (completion/search providers)
    - 7xxx: Context cache errors
    - 9xxx: System errors (internal, unavailable)
    """

    # Validation errors (1xxx)
    VALIDATION_ERROR = "ERR_1001"
    INVALID_REQUEST = "ERR_1002"
    QUERY_TOO_SHORT = "ERR_1005"

    # Resource errors (3xxx)
    NOT_FOUND = "ERR_3001"
    SESSION_NOT_FOUND = "ERR_3005"

    # Search pipeline errors (4xxx)
    SEARCH_FAILED = "ERR_4001"
    SEARCH_TIMEOUT = "ERR_4002"
    NO_RESULTS = "ERR_4003"
    SYNTHESIS_FAILED = "ERR_4004"
    CLASSIFICATION_FAILED = "ERR_4007"
    ANALYSIS_FAILED = "ERR_4010"
    MALFORMED_OUTPUT = "ERR_4011"
    PIPELINE_FATAL = "ERR_4012"

    # External service errors (5xxx)
    PROVIDER_ERROR = "ERR_5000"
    OLLAMA_ERROR = "ERR_5001"
    OLLAMA_UNAVAILABLE = "ERR_5002"
    SEARXNG_ERROR = "ERR_5003"
    SEARXNG_UNAVAILABLE = "ERR_5004"
    GEMINI_ERROR = "ERR_5009"
    COMPANION_SEARCH_ERROR = "ERR_5010"
    PROVIDER_TIMEOUT = "ERR_5011"

    # Context cache errors (7xxx)
    CACHE_BACKEND_ERROR = "ERR_7001"
    CACHE_SERIALIZATION_ERROR = "ERR_7002"

    # System errors (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    SERVICE_UNAVAILABLE = "ERR_9002"
    CONFIGURATION_ERROR = "ERR_9005"


class AppException(Exception):
    """
    Base exception for all application errors.

    Provides unified error response format:
    {
        "success": false,
        "data": null,
        "meta": {...},
        "errors": [{"code": "ERR_xxxx", "message": "...", "details": {...}}]
    }

    Args:
        code: ErrorCode enum value
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        details: Additional error context (optional)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to error response format."""
        result = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Convenience subclasses for common error types
# =============================================================================

class ValidationError(AppException):
    """Raised when request validation fails."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **details
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details={"field": field, **details} if field else details
        )


class NotFoundError(AppException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
        **details
    ):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} not found: {identifier}"
        super().__init__(
            code=code,
            message=message,
            status_code=404,
            details={"resource": resource, "identifier": identifier, **details}
        )


class ProviderUnavailableError(AppException):
    """Raised when a search or completion provider fails at the transport level."""

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[ErrorCode] = None,
        **details
    ):
        # Auto-detect error code based on service name
        if code is None:
            code_map = {
                "ollama": ErrorCode.OLLAMA_UNAVAILABLE,
                "gemini": ErrorCode.GEMINI_ERROR,
                "searxng": ErrorCode.SEARXNG_UNAVAILABLE,
                "companion": ErrorCode.COMPANION_SEARCH_ERROR,
            }
            code = code_map.get(service.lower(), ErrorCode.PROVIDER_ERROR)

        self.service = service
        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            status_code=502,
            details={"service": service, **details}
        )


class ProviderTimeoutError(ProviderUnavailableError):
    """Raised when a provider call exceeds its deadline."""

    def __init__(
        self,
        service: str,
        timeout_seconds: Optional[float] = None,
        **details
    ):
        super().__init__(
            service=service,
            message=f"no response within {timeout_seconds}s",
            code=ErrorCode.PROVIDER_TIMEOUT,
            timeout_seconds=timeout_seconds,
            **details
        )
        self.status_code = 504


class MalformedOutputError(AppException):
    """Raised when a completion that must contain JSON does not."""

    def __init__(
        self,
        stage: str,
        message: str = "completion did not contain a usable JSON object",
        **details
    ):
        self.stage = stage
        super().__init__(
            code=ErrorCode.MALFORMED_OUTPUT,
            message=f"{stage}: {message}",
            status_code=502,
            details={"stage": stage, **details}
        )


class PipelineFatalError(AppException):
    """Raised when both primary providers are unreachable for a query."""

    def __init__(
        self,
        message: str,
        **details
    ):
        super().__init__(
            code=ErrorCode.PIPELINE_FATAL,
            message=message,
            status_code=503,
            details=details
        )


class CacheBackendError(AppException):
    """Raised when the key-value store behind the context cache fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.CACHE_BACKEND_ERROR,
        **details
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=500,
            details={"operation": operation, **details} if operation else details
        )

"""
Deep Search Server Core Components
Error taxonomy shared by the pipeline, the cache and the API
"""

from .exceptions import (
    AppException,
    CacheBackendError,
    ErrorCode,
    MalformedOutputError,
    NotFoundError,
    PipelineFatalError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationError,
)

__all__ = [
    "AppException",
    "CacheBackendError",
    "ErrorCode",
    "MalformedOutputError",
    "NotFoundError",
    "PipelineFatalError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ValidationError",
]

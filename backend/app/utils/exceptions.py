"""
Custom exception classes

HTTP-facing errors subclass ``ApiError`` and are rendered by the handler in
``app.main`` as ``{"error": ..., "details": ...}``. The plain exceptions are
raised inside services and mapped to responses by the endpoints.
"""
from typing import Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    """HTTP error with a user-facing ``error`` message and optional ``details``."""
    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(status_code=status_code, detail=error)
        self.error = error
        self.details = details

    def to_body(self) -> dict:
        body = {"error": self.error}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(ApiError):
    """Raised when a required setting (API key, storage) is missing"""
    def __init__(self, error: str):
        super().__init__(status_code=500, error=error)


class AuthenticationError(ApiError):
    """Raised when the bearer token is missing or invalid"""
    def __init__(self, error: str = "Unauthorized", details: Optional[str] = None):
        super().__init__(status_code=401, error=error, details=details)


class InvalidRequestError(ApiError):
    """Raised when the request body is unusable"""
    def __init__(self, error: str):
        super().__init__(status_code=400, error=error)


class NotFoundError(ApiError):
    def __init__(self, error: str):
        super().__init__(status_code=404, error=error)


class RateLimitExceededError(ApiError):
    """Raised when a user exceeds the per-minute chat allowance"""
    def __init__(self):
        super().__init__(
            status_code=429,
            error="Rate limit exceeded. Please wait and try again.",
        )


class ComplianceError(Exception):
    """Raised when a source URL is not on the approved domain list (before any fetch)"""


class ContentAcquisitionError(Exception):
    """Raised when a document cannot be fetched, downloaded or decoded"""


class LlmResponseError(Exception):
    """Raised when a model reply is not valid JSON or does not match the expected shape"""


class AllModelsFailedError(Exception):
    """Raised when every model in a fallback list failed"""
    def __init__(self, message: str = "All models failed to respond"):
        super().__init__(message)


class IngestionError(Exception):
    """Raised when an ingestion run cannot produce a usable document"""

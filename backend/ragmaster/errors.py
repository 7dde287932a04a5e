# ragmaster/errors.py
"""
Domain errors raised by the relay services.

Routes turn them into JSON responses through the exception handlers
registered in ``main.py``; the webhook relay catches them per message.
"""
from typing import Any, Optional


class RelayError(Exception):
    status_code = 500
    code        = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ServiceNotConfigured(RelayError):
    code = "not_configured"

    def __init__(self, message: str = "AI Service not initialized. Please configure API Key."):
        super().__init__(message)


class InvalidCredentials(RelayError):
    code = "invalid_credentials"

    def __init__(self, message: str = "Invalid API Key. Please update it in Settings."):
        super().__init__(message)


class UpstreamError(RelayError):
    """HTTP failure reported by an upstream provider."""
    code = "upstream_error"

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body   = body


class UnexpectedResponse(RelayError):
    status_code = 502
    code        = "unexpected_response"


class FileProcessingFailed(RelayError):
    code = "file_processing_failed"


class FileProcessingTimeout(RelayError):
    code = "file_processing_timeout"


class DuplicateDocument(RelayError):
    status_code = 409
    code        = "duplicate"

    def __init__(self, existing: Any):
        super().__init__("Duplicate file")
        self.existing = existing


class MediaTooLarge(RelayError):
    status_code = 413
    code        = "media_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Media too large: {size / 1024 / 1024:.2f}MB. Limit: {limit / 1024 / 1024:g}MB"
        )
        self.size  = size
        self.limit = limit


class WhatsAppAPIError(RelayError):
    status_code = 502
    code        = "whatsapp_error"

    def __init__(self, message: str, error_code: Any = "UNKNOWN", status: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code
        self.status     = status

from typing import Any


class PaperChatError(RuntimeError):
    """Base class for client-side failures."""
    pass


class ApiError(PaperChatError):
    """Raised when the remote service answers with a non-2xx status."""

    def __init__(self, status: int, message: str, details: Any = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details


class PipelineStreamError(PaperChatError):
    """Raised when the query stream reports an `error` event."""
    pass


class QueryInFlightError(PaperChatError):
    """Raised when a query is submitted while another one is still streaming."""
    pass


class UploadValidationError(PaperChatError):
    """Raised when a file set is rejected before anything is sent."""
    pass


class DuplicateCheckError(PaperChatError):
    """Raised when hashing or the duplicate lookup fails; aborts the upload attempt."""
    pass

from paperchat.core.config import Settings, get_settings
from paperchat.core.errors import (
    PaperChatError,
    ApiError,
    PipelineStreamError,
    QueryInFlightError,
    UploadValidationError,
    DuplicateCheckError,
)

__all__ = [
    "Settings",
    "get_settings",
    "PaperChatError",
    "ApiError",
    "PipelineStreamError",
    "QueryInFlightError",
    "UploadValidationError",
    "DuplicateCheckError",
]

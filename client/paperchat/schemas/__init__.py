from paperchat.schemas.schemas import (
    Source, CitationCheck, QueryRequest,
    ProgressEvent, CompleteEvent, ErrorEvent, StreamEvent, stream_event_adapter,
    DuplicateInfo, CheckDuplicatesResponse,
    UploadTaskResponse, BatchUploadInitResponse,
    UploadFileResponse, TaskActionResponse, BatchEvent,
    PaperResponse, PaperListResponse, DeletePaperResponse,
    ConversationMessageResponse, ConversationResponse, ConversationListResponse,
)

__all__ = [
    "Source", "CitationCheck", "QueryRequest",
    "ProgressEvent", "CompleteEvent", "ErrorEvent", "StreamEvent", "stream_event_adapter",
    "DuplicateInfo", "CheckDuplicatesResponse",
    "UploadTaskResponse", "BatchUploadInitResponse",
    "UploadFileResponse", "TaskActionResponse", "BatchEvent",
    "PaperResponse", "PaperListResponse", "DeletePaperResponse",
    "ConversationMessageResponse", "ConversationResponse", "ConversationListResponse",
]

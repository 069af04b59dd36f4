from paperchat.models.models import (
    MessageKind, StepStatus, TaskStatus, PaperStatus,
    TERMINAL_STEP_STATUSES, PIPELINE_STEPS, PIPELINE_STEP_NAMES, DEFAULT_CONVERSATION_TITLE,
    MessageMetadata, Message, Conversation,
    PipelineStepInfo, QueryOptions, QuerySession,
    UploadTask, BatchUpload,
    Paper, ProvisionalPaper,
    new_id,
)

__all__ = [
    "MessageKind", "StepStatus", "TaskStatus", "PaperStatus",
    "TERMINAL_STEP_STATUSES", "PIPELINE_STEPS", "PIPELINE_STEP_NAMES", "DEFAULT_CONVERSATION_TITLE",
    "MessageMetadata", "Message", "Conversation",
    "PipelineStepInfo", "QueryOptions", "QuerySession",
    "UploadTask", "BatchUpload",
    "Paper", "ProvisionalPaper",
    "new_id",
]

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, field_validator


# ---------------------------------------------------------------------------
# Query stream
# ---------------------------------------------------------------------------

class Source(BaseModel):
    paper_title: str = ""
    paper_id: str = ""
    section_name: str | None = None
    subsection_name: str | None = None
    chunk_type: str = "section"
    chunk_text: str = ""
    relevance_score: float = 0.0


class CitationCheck(BaseModel):
    citation_id: int
    claim: str = ""
    confidence: float = 0.0
    is_valid: bool = False
    explanation: str = ""


class QueryRequest(BaseModel):
    question: str
    top_k: int = 10
    temperature: float = 0.7
    paper_ids: list[str] | None = None
    max_chunks_per_paper: int | None = None
    conversation_id: str | None = None
    query_type: str | None = None
    enable_hyde: bool | None = None
    enable_expansion: bool | None = None
    enable_citation_check: bool | None = None
    response_mode: str | None = None
    enable_general_knowledge: bool | None = None
    enable_web_search: bool | None = None


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    step: str
    data: dict[str, Any] | None = None


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    answer: str = ""
    sources: list[Source] = []
    question: str | None = None
    query_type: str | None = None
    expanded_query: str | None = None
    retrieval_count: int = 0
    reranked_count: int = 0
    warnings: list[str] = []
    citation_checks: list[CitationCheck] = []

    @field_validator("sources", "warnings", "citation_checks", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str = "Failed to process query"


StreamEvent = Annotated[Union[ProgressEvent, CompleteEvent, ErrorEvent], Field(discriminator="type")]
stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------

class DuplicateInfo(BaseModel):
    hash: str
    paper_id: str
    title: str | None = None


class CheckDuplicatesResponse(BaseModel):
    duplicates: list[DuplicateInfo] = []
    unique_count: int = 0
    duplicate_count: int = 0


# ---------------------------------------------------------------------------
# Batch upload
# ---------------------------------------------------------------------------

class UploadTaskResponse(BaseModel):
    task_id: str = Field(alias="taskId")
    batch_id: str | None = Field(default=None, alias="batchId")
    filename: str = ""
    paper_id: str | None = Field(default=None, alias="paperId")
    status: str = "pending"
    current_step: str | None = Field(default=None, alias="currentStep")
    progress_percent: float = Field(default=0, alias="progressPercent")
    error_message: str | None = Field(default=None, alias="errorMessage")
    priority: int = 0
    file_size: int = Field(default=0, alias="fileSize")

    class Config:
        populate_by_name = True


class BatchUploadInitResponse(BaseModel):
    batch_id: str = Field(alias="batchId")
    tasks: list[UploadTaskResponse] = []

    class Config:
        populate_by_name = True


class UploadFileResponse(BaseModel):
    status: str
    task_id: str | None = Field(default=None, alias="taskId")
    file_size: int = Field(default=0, alias="fileSize")

    class Config:
        populate_by_name = True


class TaskActionResponse(BaseModel):
    status: str = ""
    task_id: str | None = Field(default=None, alias="taskId")
    message: str | None = None
    priority: int | None = None

    class Config:
        populate_by_name = True


class BatchEvent(BaseModel):
    type: Literal["status", "task_progress", "task_complete", "task_error", "batch_complete"]
    task_id: str | None = Field(default=None, alias="taskId")
    batch_id: str | None = Field(default=None, alias="batchId")
    status: str | None = None
    current_step: str | None = Field(default=None, alias="currentStep")
    progress_percent: float | None = Field(default=None, alias="progressPercent")
    paper_id: str | None = Field(default=None, alias="paperId")
    chunks: int | None = None
    error_message: str | None = Field(default=None, alias="errorMessage")
    succeeded: int | None = None
    failed: int | None = None
    total: int | None = None
    # Only on the initial `status` snapshot
    tasks: list[UploadTaskResponse] | None = None

    class Config:
        populate_by_name = True


# ---------------------------------------------------------------------------
# Paper library
# ---------------------------------------------------------------------------

class PaperResponse(BaseModel):
    paper_id: str
    title: str = ""
    authors: list[str] = []
    year: int | None = None
    filename: str = ""
    page_count: int = 0
    chunk_count: int = 0
    chunk_stats: dict[str, int] = {}
    indexed_at: datetime | None = None
    status: str = "indexed"
    error_message: str | None = None
    pdf_url: str = ""


class PaperListResponse(BaseModel):
    papers: list[PaperResponse] = []
    total: int = 0
    offset: int = 0
    limit: int = 50
    has_more: bool = False


class DeletePaperResponse(BaseModel):
    paper_id: str
    pdf_deleted: bool = False
    chunks_deleted: int = 0
    message: str = ""


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class ConversationMessageResponse(BaseModel):
    id: int | str
    role: Literal["user", "assistant"]
    content: str = ""
    metadata: dict[str, Any] | None = None
    created_at: datetime


class ConversationResponse(BaseModel):
    id: str
    title: str | None = None
    created_at: datetime
    updated_at: datetime
    messages: list[ConversationMessageResponse] | None = None


class ConversationListResponse(BaseModel):
    conversations: list[ConversationResponse] = []
    total: int = 0

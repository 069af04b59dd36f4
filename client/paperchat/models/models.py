import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from paperchat.core.config import Settings
from paperchat.schemas import CitationCheck, Source


class MessageKind(str, Enum):
    QUERY = "query"
    RESPONSE = "response"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED})


class TaskStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETE = "complete"
    ERROR = "error"


class PaperStatus(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    INDEXED = "indexed"
    ERROR = "error"


# Visible pipeline steps in canonical order: (name, label, description)
PIPELINE_STEPS: list[tuple[str, str, str]] = [
    ("rewriting", "Query Rewriting", "Correcting spelling and formatting"),
    ("entities", "Entity Extraction", "Identifying key terms"),
    ("classification", "Classification", "Determining query type"),
    ("expansion", "Query Expansion", "Adding synonyms"),
    ("hyde", "HyDE Embedding", "Generating hypothetical document"),
    ("retrieval", "Retrieval", "Searching documents"),
    ("reranking", "Reranking", "Ranking by relevance"),
    ("generation", "Generation", "Creating answer"),
    ("verification", "Verification", "Checking citations"),
    ("web_search", "Web Search", "Searching the web for additional context"),
]
PIPELINE_STEP_NAMES: list[str] = [name for name, _, _ in PIPELINE_STEPS]

DEFAULT_CONVERSATION_TITLE = "New Conversation"


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    from datetime import timezone
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@dataclass
class MessageMetadata:
    query_type: str | None = None
    expanded_query: str | None = None
    sources: list[Source] = field(default_factory=list)
    citation_checks: list[CitationCheck] = field(default_factory=list)
    retrieval_count: int | None = None
    reranked_count: int | None = None
    latency: float | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "MessageMetadata | None":
        """Build metadata from a persisted message (camelCase or snake_case keys)."""
        if not raw:
            return None

        def pick(*keys: str) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return None

        return cls(
            query_type=pick("queryType", "query_type"),
            expanded_query=pick("expandedQuery", "expanded_query"),
            sources=[Source.model_validate(s) for s in pick("sources") or []],
            citation_checks=[
                CitationCheck.model_validate(c) for c in pick("citationChecks", "citation_checks") or []
            ],
            retrieval_count=pick("retrievalCount", "retrieval_count"),
            reranked_count=pick("rerankedCount", "reranked_count"),
            latency=pick("latency"),
            warnings=list(pick("warnings") or []),
        )


@dataclass
class Message:
    id: str
    kind: MessageKind
    content: str = ""
    timestamp: datetime = field(default_factory=_utc_now)
    metadata: MessageMetadata | None = None


@dataclass
class Conversation:
    id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def get_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


# ---------------------------------------------------------------------------
# Query session
# ---------------------------------------------------------------------------

@dataclass
class PipelineStepInfo:
    name: str
    label: str
    description: str
    status: StepStatus = StepStatus.PENDING
    data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def transition(self, status: StepStatus, data: dict[str, Any] | None = None) -> bool:
        """Move to `status` unless that would leave a terminal status. Returns True if applied."""
        if self.is_terminal and status != self.status:
            return False
        self.status = status
        if data is not None:
            self.data = data
        return True


@dataclass
class QueryOptions:
    query_type: str = "auto"
    top_k: int = 15
    temperature: float = 0.3
    paper_filter: list[str] = field(default_factory=list)
    # None lets the service decide
    max_chunks_per_paper: int | None = None
    enable_hyde: bool = True
    enable_expansion: bool = True
    enable_citation_check: bool = True
    response_mode: str = "detailed"
    enable_general_knowledge: bool = True
    enable_web_search: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueryOptions":
        return cls(
            top_k=settings.default_top_k,
            temperature=settings.default_temperature,
            enable_hyde=settings.default_enable_hyde,
            enable_expansion=settings.default_enable_expansion,
            enable_citation_check=settings.default_enable_citation_check,
            response_mode=settings.default_response_mode,
            enable_general_knowledge=settings.default_enable_general_knowledge,
            enable_web_search=settings.default_enable_web_search,
        )


@dataclass
class QuerySession:
    """The single in-flight query: its bound placeholder, streamed answer and step list."""

    conversation_id: str | None = None
    message_id: str | None = None
    content: str = ""
    citation_checks: list[CitationCheck] = field(default_factory=list)
    steps: list[PipelineStepInfo] = field(default_factory=list)
    # Steps already resolved to a terminal status
    completed_steps: set[str] = field(default_factory=set)
    web_search_progress: str | None = None
    is_streaming: bool = False
    started_at: float = field(default_factory=time.perf_counter)

    @classmethod
    def start(cls) -> "QuerySession":
        steps = [PipelineStepInfo(name=name, label=label, description=desc) for name, label, desc in PIPELINE_STEPS]
        return cls(steps=steps)

    def bind(self, conversation_id: str, message_id: str) -> None:
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.is_streaming = True

    def get_step(self, name: str) -> PipelineStepInfo | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None


# ---------------------------------------------------------------------------
# Batch upload
# ---------------------------------------------------------------------------

@dataclass
class UploadTask:
    task_id: str
    batch_id: str
    filename: str
    file_size: int = 0
    data: bytes | None = field(default=None, repr=False)
    status: TaskStatus = TaskStatus.PENDING
    progress_percent: float = 0
    current_step: str | None = None
    error_message: str | None = None
    priority: int = 0
    paper_id: str | None = None

    @property
    def can_cancel(self) -> bool:
        return self.status in (TaskStatus.PENDING, TaskStatus.UPLOADING)

    @property
    def can_retry(self) -> bool:
        return self.status == TaskStatus.ERROR


@dataclass
class BatchUpload:
    batch_id: str
    tasks: list[UploadTask] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    skipped_duplicates: int = 0

    def get_task(self, task_id: str) -> UploadTask | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def count(self, status: TaskStatus) -> int:
        return sum(1 for t in self.tasks if t.status == status)


# ---------------------------------------------------------------------------
# Paper library projection
# ---------------------------------------------------------------------------

@dataclass
class Paper:
    """A paper as reported by the authoritative library listing."""

    id: str
    title: str
    authors: list[str] = field(default_factory=list)
    year: int | None = None
    filename: str = ""
    page_count: int = 0
    chunk_count: int = 0
    chunk_stats: dict[str, int] = field(default_factory=dict)
    indexed_at: datetime | None = None
    status: PaperStatus = PaperStatus.INDEXED
    error_message: str | None = None
    pdf_url: str = ""

    is_provisional = False


@dataclass
class ProvisionalPaper:
    """Placeholder for an uploading paper, keyed by its upload task until the listing confirms it."""

    task_id: str
    title: str
    filename: str
    status: PaperStatus = PaperStatus.PENDING
    progress: float = 0
    error_message: str | None = None
    paper_id: str | None = None
    # Set once the task completed; dropped at the next library refresh
    reconciled: bool = False

    is_provisional = True

    @property
    def id(self) -> str:
        return self.task_id

"""Shared client state.

All mutation goes through the named transition methods below. They are plain
synchronous methods, so on the single event loop each one runs to completion
before any other coroutine can observe the state.
"""
import logging
from dataclasses import fields
from typing import Any
from paperchat.core.config import Settings, get_settings
from paperchat.models import (
    Conversation, Message, BatchUpload, UploadTask, TaskStatus,
    Paper, ProvisionalPaper, PaperStatus, QueryOptions, QuerySession, PipelineStepInfo,
)
from paperchat.models.models import _utc_now

logger = logging.getLogger(__name__)

_TASK_FIELDS = {f.name for f in fields(UploadTask)}
_PROVISIONAL_FIELDS = {f.name for f in fields(ProvisionalPaper)}


class ConversationStore:
    def __init__(self) -> None:
        # Newest first
        self.conversations: list[Conversation] = []
        self.active_conversation_id: str | None = None

    @property
    def active(self) -> Conversation | None:
        if not self.active_conversation_id:
            return None
        return self.get(self.active_conversation_id)

    def get(self, conversation_id: str) -> Conversation | None:
        for conv in self.conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def get_message(self, conversation_id: str | None, message_id: str | None) -> Message | None:
        if not conversation_id or not message_id:
            return None
        conv = self.get(conversation_id)
        return conv.get_message(message_id) if conv else None

    def create(self, conversation: Conversation) -> None:
        self.conversations.insert(0, conversation)
        self.active_conversation_id = conversation.id

    def set_active(self, conversation_id: str | None) -> None:
        self.active_conversation_id = conversation_id

    def add_message(self, conversation_id: str, message: Message) -> None:
        conv = self.get(conversation_id)
        if not conv:
            logger.warning("Dropping message %s for unknown conversation %s", message.id, conversation_id)
            return
        conv.messages.append(message)
        conv.updated_at = _utc_now()

    def update_message(self, conversation_id: str, message: Message) -> None:
        conv = self.get(conversation_id)
        if not conv:
            return
        for idx, existing in enumerate(conv.messages):
            if existing.id == message.id:
                conv.messages[idx] = message
                conv.updated_at = _utc_now()
                return

    def update_title(self, conversation_id: str, title: str) -> None:
        conv = self.get(conversation_id)
        if conv:
            conv.title = title

    def delete(self, conversation_id: str) -> None:
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = self.conversations[0].id if self.conversations else None

    def load(self, conversations: list[Conversation]) -> None:
        # A freshly loaded list starts without a selection
        self.conversations = list(conversations)
        self.active_conversation_id = None

    def set_messages(self, conversation_id: str, messages: list[Message]) -> None:
        conv = self.get(conversation_id)
        if conv:
            conv.messages = list(messages)


class LibraryStore:
    """Paper library view: provisional upload placeholders plus the confirmed listing."""

    def __init__(self) -> None:
        self.papers: list[Paper] = []
        self.provisional: dict[str, ProvisionalPaper] = {}
        self.total = 0
        self.has_more = False
        self.is_loading_more = False

    @property
    def items(self) -> list[Paper | ProvisionalPaper]:
        pending = list(reversed(self.provisional.values()))
        return [*pending, *self.papers]

    def add_provisional(self, paper: ProvisionalPaper) -> None:
        self.provisional[paper.task_id] = paper

    def update_provisional(self, task_id: str, **updates: Any) -> bool:
        paper = self.provisional.get(task_id)
        if not paper:
            return False
        for key, value in updates.items():
            if key not in _PROVISIONAL_FIELDS:
                raise AttributeError(f"ProvisionalPaper has no field {key!r}")
            setattr(paper, key, value)
        return True

    def drop_provisional(self, task_ids: list[str]) -> None:
        for task_id in task_ids:
            self.provisional.pop(task_id, None)

    def _reconcile(self) -> None:
        confirmed_ids = {p.id for p in self.papers}
        for task_id, paper in list(self.provisional.items()):
            if paper.reconciled or (paper.paper_id and paper.paper_id in confirmed_ids):
                del self.provisional[task_id]

    def set_papers(self, papers: list[Paper], total: int, has_more: bool) -> None:
        self.papers = list(papers)
        self.total = total
        self.has_more = has_more
        self._reconcile()

    def append_papers(self, papers: list[Paper], has_more: bool) -> None:
        known = {p.id for p in self.papers}
        self.papers.extend(p for p in papers if p.id not in known)
        self.has_more = has_more
        self.is_loading_more = False
        self._reconcile()

    def set_loading_more(self, value: bool) -> None:
        self.is_loading_more = value

    def remove_paper(self, paper_id: str) -> None:
        before = len(self.papers)
        self.papers = [p for p in self.papers if p.id != paper_id]
        if len(self.papers) < before:
            self.total = max(0, self.total - 1)


class UploadStore:
    def __init__(self) -> None:
        self.active_batch: BatchUpload | None = None
        self.is_panel_open = False
        self.is_panel_minimized = False

    def start(self, batch: BatchUpload) -> None:
        self.active_batch = batch
        self.is_panel_open = True
        self.is_panel_minimized = False

    def get_task(self, task_id: str) -> UploadTask | None:
        if not self.active_batch:
            return None
        return self.active_batch.get_task(task_id)

    def update_task(self, task_id: str, **updates: Any) -> bool:
        """Apply field updates to a task of the active batch. Unknown tasks are a no-op."""
        task = self.get_task(task_id)
        if not task:
            return False
        for key, value in updates.items():
            if key not in _TASK_FIELDS:
                raise AttributeError(f"UploadTask has no field {key!r}")
            setattr(task, key, value)
        return True

    def cancel_task(self, task_id: str) -> bool:
        return self.update_task(task_id, status=TaskStatus.ERROR, error_message="Cancelled")

    def clear(self) -> BatchUpload | None:
        batch = self.active_batch
        self.active_batch = None
        self.is_panel_open = False
        self.is_panel_minimized = False
        return batch

    def set_panel_minimized(self, value: bool) -> None:
        self.is_panel_minimized = value


class AppStore:
    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.conversations = ConversationStore()
        self.library = LibraryStore()
        self.uploads = UploadStore()
        self.query_options = QueryOptions.from_settings(settings)
        self.current_query = ""
        self.is_loading = False
        self.stats: dict[str, Any] | None = None
        self.session: QuerySession | None = None

    @property
    def pipeline_progress(self) -> list[PipelineStepInfo] | None:
        return self.session.steps if self.session else None

    @property
    def web_search_progress(self) -> str | None:
        return self.session.web_search_progress if self.session else None

    @property
    def papers(self) -> list[Paper | ProvisionalPaper]:
        return self.library.items

    def set_loading(self, value: bool) -> None:
        self.is_loading = value

    def set_current_query(self, query: str) -> None:
        self.current_query = query

    def set_query_options(self, **updates: Any) -> None:
        for key, value in updates.items():
            if not hasattr(self.query_options, key):
                raise AttributeError(f"QueryOptions has no field {key!r}")
            setattr(self.query_options, key, value)

    def set_stats(self, stats: dict[str, Any] | None) -> None:
        self.stats = stats

    def start_session(self, session: QuerySession) -> None:
        self.session = session

    def end_session(self) -> None:
        self.session = None

    def provisional_status_for(self, task_status: TaskStatus) -> PaperStatus:
        if task_status == TaskStatus.ERROR:
            return PaperStatus.ERROR
        if task_status == TaskStatus.COMPLETE:
            return PaperStatus.INDEXED
        if task_status in (TaskStatus.PENDING, TaskStatus.UPLOADING):
            return PaperStatus.PENDING
        return PaperStatus.INDEXING

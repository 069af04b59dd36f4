"""Interpretation of the query event stream.

The remote pipeline may skip stages and does not promise an event for every
stage, so a step that never reports is resolved when a later step fires.
"""
import logging
from typing import Any
from pydantic import ValidationError
from paperchat.core.errors import PipelineStreamError
from paperchat.models import (
    Message, MessageMetadata, QuerySession, StepStatus, PIPELINE_STEP_NAMES,
)
from paperchat.schemas import CitationCheck, CompleteEvent, ErrorEvent, ProgressEvent, StreamEvent
from paperchat.services.store import AppStore

logger = logging.getLogger(__name__)

ANSWER_CHUNK = "answer_chunk"
ANSWER_COMPLETE = "answer_complete"
CITATION_VERIFIED = "citation_verified"
WEB_SEARCH = "web_search"
WEB_SEARCH_PROGRESS = "web_search_progress"


def build_citation_check_map(checks: list[CitationCheck]) -> dict[int, CitationCheck]:
    """Resolve each citation id to its lowest-confidence check."""
    result: dict[int, CitationCheck] = {}
    for check in checks:
        current = result.get(check.citation_id)
        if current is None or check.confidence < current.confidence:
            result[check.citation_id] = check
    return result


class StreamingAnswerAccumulator:
    """Appends answer fragments and citation checks to the session and its bound message."""

    def __init__(self, store: AppStore, session: QuerySession):
        self.store = store
        self.session = session

    def _bound_message(self) -> Message | None:
        return self.store.conversations.get_message(self.session.conversation_id, self.session.message_id)

    def append_chunk(self, chunk: str) -> None:
        self.session.content += chunk
        message = self._bound_message()
        if message is not None:
            message.content = self.session.content

    def append_citation(self, check: CitationCheck) -> None:
        self.session.citation_checks.append(check)
        message = self._bound_message()
        if message is None:
            return
        if message.metadata is None:
            message.metadata = MessageMetadata()
        message.metadata.citation_checks = list(self.session.citation_checks)


class PipelineEventInterpreter:
    def __init__(self, store: AppStore, session: QuerySession):
        self.store = store
        self.session = session
        self.accumulator = StreamingAnswerAccumulator(store, session)

    def handle(self, event: StreamEvent) -> CompleteEvent | None:
        """Apply one stream event. Returns the terminal event on completion.

        Raises PipelineStreamError for an `error` event.
        """
        if isinstance(event, ProgressEvent):
            self._handle_progress(event.step, event.data)
            return None
        if isinstance(event, CompleteEvent):
            self.session.is_streaming = False
            return event
        if isinstance(event, ErrorEvent):
            self.session.is_streaming = False
            raise PipelineStreamError(event.message)
        raise TypeError(f"Unhandled stream event: {event!r}")

    def _handle_progress(self, step: str, data: dict[str, Any] | None) -> None:
        if step == ANSWER_CHUNK:
            chunk = data.get("chunk") if data else None
            if chunk:
                self.accumulator.append_chunk(str(chunk))
            return

        if step == CITATION_VERIFIED:
            if data:
                try:
                    check = CitationCheck.model_validate(data)
                except ValidationError:
                    logger.warning("Ignoring malformed citation check: %s", str(data)[:200])
                    return
                self.accumulator.append_citation(check)
            return

        if step == ANSWER_COMPLETE:
            return

        if step == WEB_SEARCH_PROGRESS:
            if data and data.get("message"):
                self.session.web_search_progress = str(data["message"])
            return

        if step == WEB_SEARCH and data and data.get("status") == "complete":
            self.session.web_search_progress = None

        if step not in PIPELINE_STEP_NAMES:
            logger.debug("Ignoring unknown pipeline step %r", step)
            return

        self._advance(step, data)

    def _advance(self, step_name: str, data: dict[str, Any] | None) -> None:
        session = self.session
        current_idx = PIPELINE_STEP_NAMES.index(step_name)

        for step in session.steps:
            if step.name == step_name:
                step.transition(StepStatus.ACTIVE, data)
            elif step.name in session.completed_steps:
                continue
            elif PIPELINE_STEP_NAMES.index(step.name) < current_idx:
                # Resolve steps the stream jumped over
                session.completed_steps.add(step.name)
                skipped = bool(step.data and step.data.get("skipped"))
                step.transition(StepStatus.SKIPPED if skipped else StepStatus.COMPLETED)

        if data and data.get("status") != "starting":
            session.completed_steps.add(step_name)
            if data.get("success") is False:
                status = StepStatus.FAILED
            elif data.get("skipped"):
                status = StepStatus.SKIPPED
            else:
                status = StepStatus.COMPLETED
            current = session.get_step(step_name)
            if current is not None:
                current.transition(status, data)

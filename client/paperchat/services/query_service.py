import logging
import time
from contextlib import aclosing
from paperchat.core.errors import QueryInFlightError
from paperchat.models import (
    Conversation, Message, MessageKind, MessageMetadata, QuerySession,
    DEFAULT_CONVERSATION_TITLE, new_id,
)
from paperchat.schemas import CompleteEvent, ConversationResponse, QueryRequest
from paperchat.services.api_client import ApiClient
from paperchat.services.library_service import LibraryService
from paperchat.services.pipeline import PipelineEventInterpreter
from paperchat.services.store import AppStore
from paperchat.utils.text import make_title

logger = logging.getLogger(__name__)


def _conversation_from_response(conv: ConversationResponse) -> Conversation:
    messages = [
        Message(
            id=str(msg.id),
            kind=MessageKind.QUERY if msg.role == "user" else MessageKind.RESPONSE,
            content=msg.content,
            timestamp=msg.created_at,
            metadata=MessageMetadata.from_dict(msg.metadata),
        )
        for msg in conv.messages or []
    ]
    return Conversation(
        id=conv.id,
        title=conv.title or "Untitled",
        messages=messages,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
    )


class QueryService:
    """Submits questions to the query stream and owns the single in-flight session."""

    def __init__(self, api: ApiClient, store: AppStore, library: LibraryService | None = None):
        self.api = api
        self.store = store
        self.library = library or LibraryService(api, store)

    def _build_request(self, question: str, conversation_id: str) -> QueryRequest:
        options = self.store.query_options
        return QueryRequest(
            question=question,
            top_k=options.top_k,
            temperature=options.temperature,
            paper_ids=list(options.paper_filter) or None,
            max_chunks_per_paper=options.max_chunks_per_paper,
            conversation_id=conversation_id,
            query_type=options.query_type,
            enable_hyde=options.enable_hyde,
            enable_expansion=options.enable_expansion,
            enable_citation_check=options.enable_citation_check,
            response_mode=options.response_mode,
            enable_general_knowledge=options.enable_general_knowledge,
            enable_web_search=options.enable_web_search,
        )

    async def _ensure_conversation(self, question: str) -> str:
        active = self.store.conversations.active
        if active:
            return active.id

        title = make_title(question)
        conversation = Conversation(id=new_id(), title=title)
        self.store.conversations.create(conversation)
        try:
            await self.api.create_conversation(conversation.id, title)
        except Exception as e:
            # The local conversation is used regardless
            logger.warning("Failed to persist conversation %s: %s", conversation.id, e)
        return conversation.id

    def _finalize(self, session: QuerySession, event: CompleteEvent | None) -> Message | None:
        message = self.store.conversations.get_message(session.conversation_id, session.message_id)
        if message is None:
            logger.warning("Response message %s vanished before completion", session.message_id)
            return None

        latency = (time.perf_counter() - session.started_at) * 1000
        if event is None:
            # Stream ended without a terminal event
            message.content = session.content
            metadata = message.metadata or MessageMetadata()
            metadata.citation_checks = list(session.citation_checks)
            metadata.latency = latency
            message.metadata = metadata
        else:
            message.content = session.content or event.answer
            message.metadata = MessageMetadata(
                query_type=event.query_type,
                expanded_query=event.expanded_query,
                sources=list(event.sources),
                citation_checks=list(session.citation_checks or event.citation_checks),
                retrieval_count=event.retrieval_count,
                reranked_count=event.reranked_count,
                latency=latency,
                warnings=list(event.warnings),
            )
        self.store.conversations.update_message(session.conversation_id, message)
        return message

    async def _retitle(self, conversation_id: str, question: str) -> None:
        conversation = self.store.conversations.get(conversation_id)
        if conversation is None or conversation.title != DEFAULT_CONVERSATION_TITLE:
            return
        title = make_title(question)
        self.store.conversations.update_title(conversation_id, title)
        try:
            await self.api.update_conversation(conversation_id, title)
        except Exception as e:
            logger.warning("Failed to rename conversation %s: %s", conversation_id, e)

    async def submit_query(self, query: str) -> Message | None:
        """Run one query to completion and return the final response message.

        Blank input is ignored. Raises QueryInFlightError while another
        query is still streaming. Stream failures are turned into an
        ``Error: ...`` response message instead of being raised.
        """
        question = query.strip()
        if not question:
            return None
        if self.store.session is not None:
            raise QueryInFlightError("A query is already in progress")

        # Claimed before the first suspension point
        session = QuerySession.start()
        self.store.start_session(session)
        self.store.set_loading(True)
        self.store.set_current_query(question)
        conversation_id: str | None = None

        try:
            conversation_id = await self._ensure_conversation(question)
            self.store.conversations.add_message(
                conversation_id, Message(id=new_id(), kind=MessageKind.QUERY, content=question)
            )
            response = Message(id=new_id(), kind=MessageKind.RESPONSE, metadata=MessageMetadata())
            self.store.conversations.add_message(conversation_id, response)
            session.bind(conversation_id, response.id)

            interpreter = PipelineEventInterpreter(self.store, session)
            completion: CompleteEvent | None = None
            request = self._build_request(question, conversation_id)
            async with aclosing(self.api.stream_query(request)) as events:
                async for event in events:
                    completion = interpreter.handle(event)
                    if completion is not None:
                        break

            session.is_streaming = False
            self.store.end_session()
            message = self._finalize(session, completion)
            await self._retitle(conversation_id, question)
            return message
        except Exception as e:
            logger.exception("Query failed")
            self.store.end_session()
            if conversation_id is None:
                return None
            error_message = Message(
                id=new_id(),
                kind=MessageKind.RESPONSE,
                content=f"Error: {str(e) or 'Failed to process query'}",
            )
            self.store.conversations.add_message(conversation_id, error_message)
            return error_message
        finally:
            self.store.set_loading(False)
            self.store.set_current_query("")
            self.store.end_session()
            await self.library.refresh_stats()

    # ------------------------------------------------------------------
    # Conversation actions
    # ------------------------------------------------------------------

    def new_conversation(self) -> None:
        # The conversation itself is created by the next submission
        self.store.conversations.set_active(None)

    async def refresh_conversations(self) -> None:
        try:
            response = await self.api.get_conversations()
        except Exception as e:
            logger.debug("Failed to fetch conversations: %s", e)
            return
        conversations = [
            Conversation(
                id=conv.id,
                title=conv.title or "Untitled",
                created_at=conv.created_at,
                updated_at=conv.updated_at,
            )
            for conv in response.conversations
        ]
        self.store.conversations.load(conversations)

    async def select_conversation(self, conversation_id: str) -> None:
        self.store.conversations.set_active(conversation_id)
        conv = self.store.conversations.get(conversation_id)
        if conv and conv.messages:
            return

        try:
            full = await self.api.get_conversation(conversation_id)
        except Exception:
            logger.exception("Failed to load messages for conversation %s", conversation_id)
            return
        self.store.conversations.set_messages(conversation_id, _conversation_from_response(full).messages)

    async def delete_conversation(self, conversation_id: str) -> None:
        try:
            await self.api.delete_conversation(conversation_id)
        except Exception:
            logger.exception("Failed to delete conversation %s", conversation_id)
            return
        self.store.conversations.delete(conversation_id)

    async def clear_conversation(self) -> None:
        try:
            await self.api.clear_conversation()
        except Exception:
            logger.exception("Failed to clear conversation")
            return
        if self.store.conversations.active_conversation_id:
            self.store.conversations.delete(self.store.conversations.active_conversation_id)

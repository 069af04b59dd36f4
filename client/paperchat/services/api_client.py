import json
import logging
from typing import Any, AsyncGenerator
import httpx
from pydantic import ValidationError
from paperchat.core.config import Settings, get_settings
from paperchat.core.errors import ApiError
from paperchat.schemas import (
    QueryRequest, StreamEvent, stream_event_adapter,
    CheckDuplicatesResponse,
    BatchUploadInitResponse, UploadFileResponse, TaskActionResponse, BatchEvent,
    PaperListResponse, DeletePaperResponse,
    ConversationResponse, ConversationListResponse,
)

logger = logging.getLogger(__name__)


class ApiClient:
    """httpx transport for the remote retrieval and file-processing services."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_base_url
        # Injected in tests to serve a fake service in-process
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.settings.auth_headers(),
            timeout=timeout or self.settings.request_timeout_seconds,
            transport=self._transport,
        )

    @staticmethod
    def _error_from_body(status_code: int, text: str) -> ApiError:
        try:
            details: Any = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            details = text
        message = None
        if isinstance(details, dict):
            message = details.get("detail")
        if not isinstance(message, str) or not message:
            message = f"Request failed with status {status_code}"
        return ApiError(status_code, message, details)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self._client() as client:
            resp = await client.request(method, path, **kwargs)
        if resp.is_error:
            raise self._error_from_body(resp.status_code, resp.text)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _stream_payloads(
        self, method: str, path: str, *, json_body: dict | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield decoded `data:` payloads of a server-sent event stream in arrival order."""
        async with self._client(timeout=self.settings.stream_timeout_seconds) as client:
            async with client.stream(method, path, json=json_body) as resp:
                if resp.is_error:
                    body = await resp.aread()
                    raise self._error_from_body(resp.status_code, body.decode("utf-8", errors="replace"))

                async for line in resp.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data_str = line[6:].strip()
                    if not data_str:
                        continue
                    if data_str == "[DONE]":
                        break
                    try:
                        payload = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse SSE event on %s: %s", path, data_str[:200])
                        continue
                    if not isinstance(payload, dict):
                        logger.warning("Ignoring non-object SSE event on %s: %s", path, data_str[:200])
                        continue
                    yield payload

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def stream_query(self, request: QueryRequest) -> AsyncGenerator[StreamEvent, None]:
        async for payload in self._stream_payloads("POST", "/query/stream", json_body=request.model_dump()):
            try:
                event = stream_event_adapter.validate_python(payload)
            except ValidationError:
                logger.warning("Ignoring unrecognized query event: %s", str(payload)[:200])
                continue
            yield event

    async def get_stats(self) -> dict[str, Any]:
        return await self._request("GET", "/stats")

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    async def check_duplicates(self, hashes: list[str]) -> CheckDuplicatesResponse:
        data = await self._request("POST", "/papers/check-duplicates", json={"hashes": hashes})
        return CheckDuplicatesResponse.model_validate(data)

    # ------------------------------------------------------------------
    # Batch upload
    # ------------------------------------------------------------------

    async def init_batch(self, filenames: list[str]) -> BatchUploadInitResponse:
        data = await self._request("POST", "/papers/upload/batch/init", json={"filenames": filenames})
        return BatchUploadInitResponse.model_validate(data)

    async def upload_batch_file(self, batch_id: str, task_id: str, filename: str, content: bytes) -> UploadFileResponse:
        data = await self._request(
            "POST",
            f"/papers/upload/batch/{batch_id}/file",
            params={"taskId": task_id},
            files={"file": (filename, content, "application/pdf")},
        )
        return UploadFileResponse.model_validate(data)

    async def start_batch(self, batch_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/papers/upload/batch/{batch_id}/start")

    async def stream_batch_progress(self, batch_id: str) -> AsyncGenerator[BatchEvent, None]:
        async for payload in self._stream_payloads("GET", f"/papers/upload/batch/{batch_id}/stream"):
            try:
                event = BatchEvent.model_validate(payload)
            except ValidationError:
                logger.warning("Ignoring unrecognized batch event: %s", str(payload)[:200])
                continue
            yield event

    async def cancel_task(self, batch_id: str, task_id: str) -> TaskActionResponse:
        data = await self._request("DELETE", f"/papers/upload/batch/{batch_id}/task/{task_id}")
        return TaskActionResponse.model_validate(data or {})

    async def retry_task(self, batch_id: str, task_id: str) -> TaskActionResponse:
        data = await self._request("POST", f"/papers/upload/batch/{batch_id}/task/{task_id}/retry")
        return TaskActionResponse.model_validate(data or {})

    async def set_task_priority(self, batch_id: str, task_id: str, priority: int) -> TaskActionResponse:
        data = await self._request(
            "PUT",
            f"/papers/upload/batch/{batch_id}/task/{task_id}/priority",
            params={"priority": priority},
        )
        return TaskActionResponse.model_validate(data or {})

    # ------------------------------------------------------------------
    # Paper library
    # ------------------------------------------------------------------

    async def get_papers(self, offset: int = 0, limit: int = 50) -> PaperListResponse:
        data = await self._request("GET", "/papers", params={"offset": offset, "limit": limit})
        return PaperListResponse.model_validate(data)

    async def delete_paper(self, paper_id: str) -> DeletePaperResponse:
        data = await self._request("DELETE", f"/papers/{paper_id}")
        return DeletePaperResponse.model_validate(data)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_conversations(self) -> ConversationListResponse:
        data = await self._request("GET", "/conversations")
        return ConversationListResponse.model_validate(data)

    async def get_conversation(self, conversation_id: str) -> ConversationResponse:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        return ConversationResponse.model_validate(data)

    async def create_conversation(self, conversation_id: str, title: str | None = None) -> ConversationResponse:
        data = await self._request("POST", "/conversations", json={"id": conversation_id, "title": title})
        return ConversationResponse.model_validate(data)

    async def update_conversation(self, conversation_id: str, title: str) -> ConversationResponse:
        data = await self._request("PUT", f"/conversations/{conversation_id}", json={"title": title})
        return ConversationResponse.model_validate(data)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    async def clear_conversation(self) -> dict[str, Any]:
        return await self._request("POST", "/conversation/clear")

import asyncio
import json
from datetime import datetime, timezone
import unittest
from typing import Any, Callable
import httpx
from fastapi import Body, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from paperchat.core.config import Settings
from paperchat.services import ApiClient, AppStore, LibraryService


def sse_response(events: list[dict[str, Any]]) -> StreamingResponse:
    async def generate():
        for event in events:
            yield f"data: {json.dumps(event)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(generate(), media_type="text/event-stream")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeRemote:
    """In-process stand-in for the retrieval and file-processing services."""

    def __init__(self):
        self.query_events: list[dict[str, Any]] = []
        self.query_error: tuple[int, str] | None = None
        self.query_requests: list[dict[str, Any]] = []
        self.auth_headers: list[str | None] = []

        self.known_hashes: dict[str, tuple[str, str | None]] = {}
        self.fail_duplicates = False
        self.duplicate_requests: list[list[str]] = []

        self.batches: dict[str, list[dict[str, Any]]] = {}
        self.init_requests: list[list[str]] = []
        self.uploaded: list[tuple[str, str, str, int]] = []
        self.failing_uploads: set[str] = set()
        self.upload_delay = 0.01
        self.active_uploads = 0
        self.max_active_uploads = 0
        self.upload_observer: Callable[[], None] | None = None
        # Number of completed body uploads at each start call
        self.started: list[tuple[str, int]] = []
        self.batch_events: dict[str, list[dict[str, Any]]] = {}
        self.fail_batch_stream = False
        self.cancelled: list[str] = []
        self.retried: list[str] = []
        self.priorities: list[tuple[str, int]] = []

        self.papers: list[dict[str, Any]] = []
        self.paper_requests: list[tuple[int, int]] = []
        self.fail_papers = False
        self.stats_calls = 0
        self.fail_stats = False

        self.conversations: dict[str, dict[str, Any]] = {}
        self.fail_conversation_create = False
        self.cleared = 0

        self.app = self._build_app()

    def add_paper(self, paper_id: str, title: str) -> None:
        self.papers.append({
            "paper_id": paper_id,
            "title": title,
            "authors": ["A. Author"],
            "year": 2024,
            "filename": f"{title}.pdf",
            "page_count": 10,
            "chunk_count": 42,
            "chunk_stats": {"section": 40, "table": 2},
            "indexed_at": _now(),
            "status": "indexed",
            "pdf_url": f"/papers/{paper_id}/pdf",
        })

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        remote = self

        @app.post("/api/query/stream")
        async def query_stream(request: Request, body: dict[str, Any] = Body(...)):
            remote.auth_headers.append(request.headers.get("authorization"))
            remote.query_requests.append(body)
            if remote.query_error:
                status, detail = remote.query_error
                raise HTTPException(status_code=status, detail=detail)
            return sse_response(remote.query_events)

        @app.get("/api/stats")
        async def stats():
            remote.stats_calls += 1
            if remote.fail_stats:
                raise HTTPException(status_code=500, detail="stats unavailable")
            return {"total_papers": len(remote.papers), "total_queries": remote.stats_calls}

        @app.post("/api/papers/check-duplicates")
        async def check_duplicates(body: dict[str, Any] = Body(...)):
            hashes = body["hashes"]
            remote.duplicate_requests.append(hashes)
            if remote.fail_duplicates:
                raise HTTPException(status_code=503, detail="dedup index offline")
            duplicates = [
                {"hash": h, "paper_id": remote.known_hashes[h][0], "title": remote.known_hashes[h][1]}
                for h in hashes
                if h in remote.known_hashes
            ]
            return {
                "duplicates": duplicates,
                "unique_count": len(hashes) - len(duplicates),
                "duplicate_count": len(duplicates),
            }

        @app.post("/api/papers/upload/batch/init")
        async def init_batch(body: dict[str, Any] = Body(...)):
            filenames = body["filenames"]
            remote.init_requests.append(filenames)
            batch_id = f"batch-{len(remote.batches) + 1}"
            tasks = [
                {
                    "taskId": f"{batch_id}-t{i + 1}",
                    "batchId": batch_id,
                    "filename": name,
                    "status": "pending",
                    "progressPercent": 0,
                    "priority": 0,
                }
                for i, name in enumerate(filenames)
            ]
            remote.batches[batch_id] = tasks
            return {"batchId": batch_id, "tasks": tasks}

        @app.post("/api/papers/upload/batch/{batch_id}/file")
        async def upload_file(batch_id: str, taskId: str = Query(...), file: UploadFile = File(...)):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            content = await file.read()
            remote.active_uploads += 1
            remote.max_active_uploads = max(remote.max_active_uploads, remote.active_uploads)
            try:
                if remote.upload_observer:
                    remote.upload_observer()
                await asyncio.sleep(remote.upload_delay)
            finally:
                remote.active_uploads -= 1
            if file.filename in remote.failing_uploads:
                raise HTTPException(status_code=500, detail="disk full")
            remote.uploaded.append((batch_id, taskId, file.filename, len(content)))
            return {"status": "uploaded", "taskId": taskId, "fileSize": len(content)}

        @app.post("/api/papers/upload/batch/{batch_id}/start")
        async def start_batch(batch_id: str):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            remote.started.append((batch_id, len(remote.uploaded)))
            return {"status": "processing", "batchId": batch_id}

        @app.get("/api/papers/upload/batch/{batch_id}/stream")
        async def batch_stream(batch_id: str):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            if remote.fail_batch_stream:
                raise HTTPException(status_code=500, detail="progress feed unavailable")
            return sse_response(remote.batch_events.get(batch_id, []))

        @app.delete("/api/papers/upload/batch/{batch_id}/task/{task_id}")
        async def cancel_task(batch_id: str, task_id: str):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            remote.cancelled.append(task_id)
            return {"status": "cancelled", "taskId": task_id}

        @app.post("/api/papers/upload/batch/{batch_id}/task/{task_id}/retry")
        async def retry_task(batch_id: str, task_id: str):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            remote.retried.append(task_id)
            return {"status": "retrying", "taskId": task_id}

        @app.put("/api/papers/upload/batch/{batch_id}/task/{task_id}/priority")
        async def set_priority(batch_id: str, task_id: str, priority: int = Query(...)):
            if batch_id not in remote.batches:
                raise HTTPException(status_code=404, detail="Batch not found")
            remote.priorities.append((task_id, priority))
            return {"status": "updated", "taskId": task_id, "priority": priority}

        @app.get("/api/papers")
        async def list_papers(offset: int = 0, limit: int = 50):
            remote.paper_requests.append((offset, limit))
            if remote.fail_papers:
                raise HTTPException(status_code=500, detail="library unavailable")
            page = remote.papers[offset:offset + limit]
            return {
                "papers": page,
                "total": len(remote.papers),
                "offset": offset,
                "limit": limit,
                "has_more": offset + len(page) < len(remote.papers),
            }

        @app.delete("/api/papers/{paper_id}")
        async def delete_paper(paper_id: str):
            for idx, paper in enumerate(remote.papers):
                if paper["paper_id"] == paper_id:
                    del remote.papers[idx]
                    return {"paper_id": paper_id, "pdf_deleted": True, "chunks_deleted": 42, "message": "deleted"}
            raise HTTPException(status_code=404, detail="Paper not found")

        @app.get("/api/conversations")
        async def list_conversations():
            convs = [{k: v for k, v in c.items() if k != "messages"} for c in remote.conversations.values()]
            return {"conversations": convs, "total": len(convs)}

        @app.post("/api/conversations")
        async def create_conversation(body: dict[str, Any] = Body(...)):
            if remote.fail_conversation_create:
                raise HTTPException(status_code=500, detail="database unavailable")
            conv = {"id": body["id"], "title": body.get("title"), "created_at": _now(), "updated_at": _now(),
                    "messages": []}
            remote.conversations[conv["id"]] = conv
            return conv

        @app.get("/api/conversations/{conversation_id}")
        async def get_conversation(conversation_id: str):
            conv = remote.conversations.get(conversation_id)
            if conv is None:
                raise HTTPException(status_code=404, detail="Conversation not found")
            return conv

        @app.put("/api/conversations/{conversation_id}")
        async def update_conversation(conversation_id: str, body: dict[str, Any] = Body(...)):
            conv = remote.conversations.get(conversation_id)
            if conv is None:
                raise HTTPException(status_code=404, detail="Conversation not found")
            conv["title"] = body.get("title")
            conv["updated_at"] = _now()
            return conv

        @app.delete("/api/conversations/{conversation_id}", status_code=204)
        async def delete_conversation(conversation_id: str):
            if remote.conversations.pop(conversation_id, None) is None:
                raise HTTPException(status_code=404, detail="Conversation not found")
            return Response(status_code=204)

        @app.post("/api/conversation/clear")
        async def clear_conversation():
            remote.cleared += 1
            return {"status": "cleared"}

        return app


def make_settings(**overrides) -> Settings:
    values = {"api_base_url": "http://testserver/api/", "api_token": "test-token"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RemoteTestCase(unittest.IsolatedAsyncioTestCase):
    """Wires a client stack against a fresh FakeRemote for every test."""

    async def asyncSetUp(self):
        self.settings = make_settings()
        self.remote = FakeRemote()
        self.api = ApiClient(self.settings, transport=httpx.ASGITransport(app=self.remote.app))
        self.store = AppStore(self.settings)
        self.library = LibraryService(self.api, self.store, self.settings)

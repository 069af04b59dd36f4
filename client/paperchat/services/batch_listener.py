import asyncio
import logging
from contextlib import aclosing, suppress
from typing import Callable
from paperchat.models import TaskStatus, PaperStatus
from paperchat.schemas import BatchEvent, UploadTaskResponse
from paperchat.services.api_client import ApiClient
from paperchat.services.library_service import LibraryService
from paperchat.services.store import AppStore

logger = logging.getLogger(__name__)


def _coerce_task_status(value: str | None, default: TaskStatus = TaskStatus.PROCESSING) -> TaskStatus:
    if not value:
        return default
    try:
        return TaskStatus(value)
    except ValueError:
        logger.debug("Unknown task status %r, treating as %s", value, default.value)
        return default


class BatchProgressListener:
    """Follows the progress stream of one batch and applies its events to the store.

    Runs as a background task. A transport failure invokes ``on_error`` and
    never touches in-flight uploads.
    """

    def __init__(
        self,
        api: ApiClient,
        store: AppStore,
        library: LibraryService,
        batch_id: str,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.api = api
        self.store = store
        self.library = library
        self.batch_id = batch_id
        self.on_error = on_error
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"batch-progress-{self.batch_id}")

    async def _run(self) -> None:
        try:
            async with aclosing(self.api.stream_batch_progress(self.batch_id)) as events:
                async for event in events:
                    if self._closed:
                        break
                    await self.dispatch(event)
                    if event.type == "batch_complete":
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closed:
                logger.error("Batch %s progress stream failed: %s", self.batch_id, e)
                if self.on_error:
                    self.on_error(e)
        finally:
            self._closed = True

    async def close(self) -> None:
        """Stop dispatching events. Uploads in flight are not affected."""
        self._closed = True
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def _is_current_batch(self) -> bool:
        batch = self.store.uploads.active_batch
        return batch is not None and batch.batch_id == self.batch_id

    async def dispatch(self, event: BatchEvent) -> None:
        """Apply one batch event. Events for a cleared batch or an unknown task are ignored."""
        if not self._is_current_batch():
            logger.debug("Ignoring %s event for inactive batch %s", event.type, self.batch_id)
            return

        if event.type == "status":
            for snapshot in event.tasks or []:
                self._merge_snapshot(snapshot)
        elif event.type == "task_progress":
            self._on_task_progress(event)
        elif event.type == "task_complete":
            if self._on_task_complete(event):
                await self.library.refresh_papers()
        elif event.type == "task_error":
            self._on_task_error(event)
        elif event.type == "batch_complete":
            logger.info(
                "Batch %s complete: %s succeeded, %s failed", self.batch_id, event.succeeded, event.failed
            )
            await self.library.refresh_papers()
            await self.library.refresh_stats()
            self._closed = True

    def _merge_snapshot(self, snapshot: UploadTaskResponse) -> None:
        task = self.store.uploads.get_task(snapshot.task_id)
        if task is None:
            return
        status = _coerce_task_status(snapshot.status, default=task.status)
        self.store.uploads.update_task(
            snapshot.task_id,
            status=status,
            current_step=snapshot.current_step,
            progress_percent=snapshot.progress_percent,
            error_message=snapshot.error_message,
            paper_id=snapshot.paper_id or task.paper_id,
        )
        self.store.library.update_provisional(
            snapshot.task_id,
            status=self.store.provisional_status_for(status),
            progress=snapshot.progress_percent,
            error_message=snapshot.error_message,
        )

    def _on_task_progress(self, event: BatchEvent) -> None:
        if not event.task_id:
            return
        task = self.store.uploads.get_task(event.task_id)
        if task is None:
            return
        self.store.uploads.update_task(
            event.task_id,
            status=_coerce_task_status(event.status),
            current_step=event.current_step,
            progress_percent=event.progress_percent or 0,
            paper_id=event.paper_id or task.paper_id,
        )
        self.store.library.update_provisional(
            event.task_id,
            status=PaperStatus.INDEXING,
            progress=event.progress_percent or 0,
            paper_id=event.paper_id or task.paper_id,
        )

    def _on_task_complete(self, event: BatchEvent) -> bool:
        if not event.task_id:
            return False
        task = self.store.uploads.get_task(event.task_id)
        if task is None:
            return False
        paper_id = event.paper_id or task.paper_id
        self.store.uploads.update_task(
            event.task_id, status=TaskStatus.COMPLETE, progress_percent=100, paper_id=paper_id
        )
        self.store.library.update_provisional(
            event.task_id, status=PaperStatus.INDEXED, progress=100, paper_id=paper_id, reconciled=True
        )
        return True

    def _on_task_error(self, event: BatchEvent) -> None:
        if not event.task_id or self.store.uploads.get_task(event.task_id) is None:
            return
        self.store.uploads.update_task(event.task_id, status=TaskStatus.ERROR, error_message=event.error_message)
        self.store.library.update_provisional(
            event.task_id, status=PaperStatus.ERROR, error_message=event.error_message
        )

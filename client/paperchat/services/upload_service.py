import asyncio
import logging
from dataclasses import dataclass
from typing import Callable
from paperchat.core.config import Settings, get_settings
from paperchat.core.errors import UploadValidationError
from paperchat.models import BatchUpload, UploadTask, TaskStatus, PaperStatus, ProvisionalPaper
from paperchat.services.api_client import ApiClient
from paperchat.services.batch_listener import BatchProgressListener
from paperchat.services.dedup import DuplicatePartition, partition_duplicates
from paperchat.services.files import LocalFile
from paperchat.services.library_service import LibraryService
from paperchat.services.store import AppStore
from paperchat.utils.text import strip_pdf_extension

logger = logging.getLogger(__name__)


@dataclass
class UploadOutcome:
    batch: BatchUpload | None
    partition: DuplicatePartition
    # Set when every file was already in the library and nothing was uploaded
    message: str | None = None


class UploadService:
    """Batch upload: dedup, bounded-concurrency body transfer, per-task control."""

    def __init__(
        self,
        api: ApiClient,
        store: AppStore,
        library: LibraryService | None = None,
        settings: Settings | None = None,
    ):
        self.api = api
        self.store = store
        self.settings = settings or get_settings()
        self.library = library or LibraryService(api, store, self.settings)
        self.listener: BatchProgressListener | None = None

    async def start_batch_upload(
        self,
        files: list[LocalFile],
        on_stream_error: Callable[[Exception], None] | None = None,
    ) -> UploadOutcome | None:
        """Upload the files that are not already in the library.

        Raises UploadValidationError for too many files and DuplicateCheckError
        when the duplicate lookup fails. Individual transfer failures only mark
        their own task as failed.
        """
        if not files:
            return None
        if len(files) > self.settings.max_batch_files:
            raise UploadValidationError(f"Maximum {self.settings.max_batch_files} files per batch")

        partition = await partition_duplicates(self.api, files)
        if partition.all_duplicates:
            logger.info("All %d files are duplicates, nothing to upload", len(files))
            return UploadOutcome(batch=None, partition=partition, message=partition.summary())

        logger.info(
            "Uploading %d unique files (%d duplicates skipped)", len(partition.unique), partition.duplicate_count
        )
        try:
            init = await self.api.init_batch([f.name for f in partition.unique])
        except Exception:
            logger.exception("Failed to initialize batch upload")
            raise

        tasks = [
            UploadTask(
                task_id=t.task_id,
                batch_id=init.batch_id,
                filename=t.filename or local.name,
                file_size=local.size,
                data=local.data,
                priority=t.priority,
            )
            for t, local in zip(init.tasks, partition.unique)
        ]
        batch = BatchUpload(batch_id=init.batch_id, tasks=tasks, skipped_duplicates=partition.duplicate_count)
        await self._register_batch(batch, on_stream_error)

        await self._upload_bodies(batch)

        try:
            await self.api.start_batch(batch.batch_id)
        except Exception:
            logger.exception("Failed to start processing for batch %s", batch.batch_id)
            raise
        return UploadOutcome(batch=batch, partition=partition)

    async def _register_batch(
        self, batch: BatchUpload, on_stream_error: Callable[[Exception], None] | None
    ) -> None:
        if self.listener is not None:
            await self.listener.close()
        superseded = self.store.uploads.active_batch
        if superseded is not None:
            self.store.library.drop_provisional([t.task_id for t in superseded.tasks])
        self.store.uploads.start(batch)
        for task in batch.tasks:
            self.store.library.add_provisional(
                ProvisionalPaper(
                    task_id=task.task_id,
                    title=strip_pdf_extension(task.filename),
                    filename=task.filename,
                )
            )
        self.listener = BatchProgressListener(
            self.api, self.store, self.library, batch.batch_id, on_error=on_stream_error
        )
        self.listener.start()

    async def _upload_bodies(self, batch: BatchUpload) -> None:
        permits = asyncio.Semaphore(self.settings.upload_concurrency)

        async def upload_one(task: UploadTask) -> None:
            async with permits:
                current = self.store.uploads.get_task(task.task_id)
                # Cancelled while queued, or the batch was cleared
                if current is None or current.status != TaskStatus.PENDING or current.data is None:
                    return
                self.store.uploads.update_task(task.task_id, status=TaskStatus.UPLOADING)
                try:
                    resp = await self.api.upload_batch_file(
                        batch.batch_id, task.task_id, task.filename, current.data
                    )
                except Exception as e:
                    logger.error("Failed to upload %s: %s", task.filename, e)
                    if current.status == TaskStatus.UPLOADING:
                        reason = str(e) or "Upload failed"
                        self.store.uploads.update_task(task.task_id, status=TaskStatus.ERROR, error_message=reason)
                        self.store.library.update_provisional(
                            task.task_id, status=PaperStatus.ERROR, error_message=reason
                        )
                    return
                if current.status == TaskStatus.UPLOADING:
                    # Body transferred; processing starts with the batch
                    self.store.uploads.update_task(
                        task.task_id, status=TaskStatus.PENDING, file_size=resp.file_size or current.file_size
                    )

        await asyncio.gather(*(upload_one(task) for task in batch.tasks))

    # ------------------------------------------------------------------
    # Task control
    # ------------------------------------------------------------------

    async def cancel_task(self, task_id: str) -> bool:
        task = self.store.uploads.get_task(task_id)
        if task is None or not task.can_cancel:
            return False
        try:
            await self.api.cancel_task(task.batch_id, task_id)
        except Exception:
            logger.exception("Failed to cancel task %s", task_id)
            return False
        self.store.uploads.cancel_task(task_id)
        self.store.library.update_provisional(task_id, status=PaperStatus.ERROR, error_message="Cancelled")
        return True

    async def retry_task(self, task_id: str) -> bool:
        task = self.store.uploads.get_task(task_id)
        if task is None or not task.can_retry:
            return False
        try:
            await self.api.retry_task(task.batch_id, task_id)
        except Exception:
            logger.exception("Failed to retry task %s", task_id)
            return False
        self.store.uploads.update_task(task_id, status=TaskStatus.PENDING, error_message=None, progress_percent=0)
        self.store.library.update_provisional(task_id, status=PaperStatus.PENDING, error_message=None, progress=0)
        return True

    async def set_task_priority(self, task_id: str, priority: int) -> bool:
        task = self.store.uploads.get_task(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        try:
            await self.api.set_task_priority(task.batch_id, task_id, priority)
        except Exception:
            logger.exception("Failed to set priority for task %s", task_id)
            return False
        self.store.uploads.update_task(task_id, priority=priority)
        return True

    async def clear_batch(self) -> None:
        if self.listener is not None:
            await self.listener.close()
            self.listener = None
        batch = self.store.uploads.clear()
        if batch is not None:
            self.store.library.drop_provisional([t.task_id for t in batch.tasks])

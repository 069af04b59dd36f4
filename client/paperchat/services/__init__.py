from paperchat.services.api_client import ApiClient
from paperchat.services.files import LocalFile, load_local_file, load_local_files
from paperchat.services.store import AppStore
from paperchat.services.dedup import compute_file_hash, partition_duplicates, DuplicatePartition
from paperchat.services.pipeline import PipelineEventInterpreter, StreamingAnswerAccumulator, build_citation_check_map
from paperchat.services.library_service import LibraryService
from paperchat.services.batch_listener import BatchProgressListener
from paperchat.services.upload_service import UploadService, UploadOutcome
from paperchat.services.query_service import QueryService

__all__ = [
    "ApiClient",
    "LocalFile",
    "load_local_file",
    "load_local_files",
    "AppStore",
    "compute_file_hash",
    "partition_duplicates",
    "DuplicatePartition",
    "PipelineEventInterpreter",
    "StreamingAnswerAccumulator",
    "build_citation_check_map",
    "LibraryService",
    "BatchProgressListener",
    "UploadService",
    "UploadOutcome",
    "QueryService",
]

import hashlib
import logging
from dataclasses import dataclass, field
from paperchat.core.errors import DuplicateCheckError
from paperchat.schemas import DuplicateInfo
from paperchat.services.api_client import ApiClient
from paperchat.services.files import LocalFile
from paperchat.utils.text import format_duplicate_summary

logger = logging.getLogger(__name__)


def compute_file_hash(data: bytes) -> str:
    """SHA-256 hex digest of the raw file bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class DuplicatePartition:
    unique: list[LocalFile] = field(default_factory=list)
    duplicates: list[LocalFile] = field(default_factory=list)
    # Library entries the duplicate files matched, in file order
    known: list[DuplicateInfo] = field(default_factory=list)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicates)

    @property
    def all_duplicates(self) -> bool:
        return not self.unique

    def summary(self) -> str:
        return format_duplicate_summary([info.title for info in self.known])


async def partition_duplicates(api: ApiClient, files: list[LocalFile]) -> DuplicatePartition:
    """Split `files` into unique and already-known sets with one batched lookup.

    Any failure of the lookup is fatal to the upload attempt and surfaces as
    DuplicateCheckError.
    """
    if not files:
        return DuplicatePartition()

    hashes = [compute_file_hash(f.data) for f in files]
    try:
        result = await api.check_duplicates(hashes)
    except Exception as e:
        logger.exception("Duplicate check failed for %d files", len(files))
        raise DuplicateCheckError(f"Duplicate check failed: {e}") from e

    known = {d.hash: d for d in result.duplicates}
    partition = DuplicatePartition()
    for local_file, digest in zip(files, hashes):
        info = known.get(digest)
        if info is None:
            partition.unique.append(local_file)
        else:
            partition.duplicates.append(local_file)
            partition.known.append(info)

    if partition.duplicates:
        logger.info(
            "Skipping %d duplicate file(s): %s",
            partition.duplicate_count,
            ", ".join(f.name for f in partition.duplicates),
        )
    return partition

import aiofiles
import aiofiles.os
from dataclasses import dataclass, field
from pathlib import Path
from paperchat.core.config import get_settings
from paperchat.core.errors import UploadValidationError

PDF_MAGIC_HEADER = b"%PDF-"
READ_CHUNK_SIZE = 8192


@dataclass
class LocalFile:
    """A file selected for upload, held in memory until its body is transferred."""

    name: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


async def load_local_file(
    path: str | Path,
    max_size: int | None = None,
    *,
    magic_header: bytes | None = PDF_MAGIC_HEADER,
) -> LocalFile:
    """Read a file with size and magic header checks."""
    file_path = Path(path)
    if max_size is None:
        max_size = get_settings().max_upload_bytes

    if not await aiofiles.os.path.isfile(file_path):
        raise UploadValidationError(f"File not found: {file_path}")

    content = bytearray()
    async with aiofiles.open(file_path, "rb") as f:
        while chunk := await f.read(READ_CHUNK_SIZE):
            content.extend(chunk)
            if len(content) > max_size:
                raise UploadValidationError(f"{file_path.name} exceeds the {max_size // (1024 * 1024)}MB limit")

    if magic_header and bytes(content[: len(magic_header)]) != magic_header:
        raise UploadValidationError(f"{file_path.name} is not a valid PDF file")

    return LocalFile(name=file_path.name, data=bytes(content))


async def load_local_files(paths: list[str | Path], max_size: int | None = None) -> list[LocalFile]:
    return [await load_local_file(p, max_size) for p in paths]

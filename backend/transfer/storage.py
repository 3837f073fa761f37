"""File access for the transfer layer: reading outgoing files, writing received ones."""

import asyncio
import logging
import mimetypes
import os

from errors import StorageError
from transfer.models import FileManifestEntry, OutgoingFile

logger = logging.getLogger(__name__)


def describe_file(path: str) -> OutgoingFile:
    """Build the manifest entry for a local file."""
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise StorageError(f"cannot stat {path}: {e}") from e
    mime_type, _ = mimetypes.guess_type(path)
    manifest = FileManifestEntry(
        name=os.path.basename(path),
        size=size,
        mime_type=mime_type or "application/octet-stream",
    )
    return OutgoingFile(manifest=manifest, path=path)


async def read_chunks(path: str, chunk_size: int):
    """Yield the content of ``path`` in chunks of at most ``chunk_size`` bytes."""
    try:
        f = await asyncio.to_thread(open, path, "rb")
    except OSError as e:
        raise StorageError(f"cannot open {path}: {e}") from e

    try:
        while True:
            try:
                chunk = await asyncio.to_thread(f.read, chunk_size)
            except OSError as e:
                raise StorageError(f"cannot read {path}: {e}") from e
            if not chunk:
                break
            yield chunk
    finally:
        f.close()


async def write_file(path: str, data: bytes) -> bool:
    """Persist a received file. Returns False instead of raising on failure."""
    def _write() -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    try:
        await asyncio.to_thread(_write)
    except OSError as e:
        logger.error(f"Error saving file {path}: {e}")
        return False
    return True


def save_dir_destination(save_dir_getter):
    """Destination collaborator that drops every file into the current save directory."""
    async def destination(file_name: str) -> str | None:
        save_dir = save_dir_getter()
        if not save_dir:
            return None
        return os.path.join(save_dir, os.path.basename(file_name))
    return destination

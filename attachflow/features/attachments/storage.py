from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from attachflow.core.config import get_settings

from .schemas import Attachment
from .uploads import ProgressCallback

logger = logging.getLogger(__name__)

_FILES_DIR = "files"


def _default_root() -> Path:
    root = Path(get_settings().upload_storage_dir)
    if not root.is_absolute():
        project_root = Path(__file__).resolve().parents[3]
        root = project_root / root
    return root


class LocalFileStorage:
    """Writes attachment bytes under ``<root>/files`` and returns root-relative paths."""

    def __init__(self, root: Path | str | None = None, *, chunk_size: int | None = None):
        self.root = Path(root) if root is not None else _default_root()
        self.chunk_size = max(1, chunk_size or get_settings().upload_chunk_size_bytes)

    def resolve_storage_path(self, storage_path: str) -> Path:
        path = Path(storage_path)
        if not path.is_absolute():
            path = self.root / path
        resolved = path.resolve()
        if self.root.resolve() not in resolved.parents:
            raise ValueError(f"Storage path '{storage_path}' escapes the storage root.")
        return resolved

    async def upload(
        self,
        attachment: Attachment,
        data: bytes,
        on_progress: ProgressCallback,
    ) -> str:
        destination = f"{_FILES_DIR}/{attachment.id}{attachment.extension}"
        return await self.save(data, destination, on_progress=on_progress)

    async def save(
        self,
        data: bytes,
        destination: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        target = self.resolve_storage_path(destination)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)

        total = len(data)
        partial = target.with_name(f"{target.name}.part")
        handle = await asyncio.to_thread(partial.open, "wb")
        try:
            try:
                for offset in range(0, total, self.chunk_size):
                    chunk = data[offset : offset + self.chunk_size]
                    await asyncio.to_thread(handle.write, chunk)
                    if on_progress is not None and total:
                        on_progress(min(100.0, (offset + len(chunk)) * 100 / total))
            finally:
                handle.close()
            await asyncio.to_thread(partial.replace, target)
        except BaseException:
            # Failed or cancelled writes never leave a partial file behind.
            partial.unlink(missing_ok=True)
            raise

        relative = target.relative_to(self.root.resolve()).as_posix()
        logger.debug("Stored %d bytes at %s.", total, relative)
        return relative

    async def read(self, storage_path: str) -> bytes:
        return await asyncio.to_thread(self.resolve_storage_path(storage_path).read_bytes)

    async def delete(self, storage_path: str) -> bool:
        path = self.resolve_storage_path(storage_path)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        return True

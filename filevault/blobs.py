"""Filesystem blob storage keyed by storage key."""

from pathlib import Path
import uuid

import aiofiles
import aiofiles.os
from loguru import logger


class BlobStore:
    """Stores raw bytes under ``base_dir / storage_key``.

    Keys are flat relative names; anything resolving outside ``base_dir`` is
    rejected. Writes land in a temporary sibling and are renamed into place,
    so a key either holds the complete content or does not exist.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def ensure_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, storage_key: str) -> Path:
        storage_dir = self.base_dir.resolve()
        sp = Path(storage_key)
        # storage keys must be relative
        if not storage_key or sp.is_absolute():
            raise ValueError(f"invalid storage key: {storage_key!r}")
        abs_path = (storage_dir / sp).resolve()
        # ensure the file is inside base_dir to avoid path traversal
        if abs_path == storage_dir or not abs_path.is_relative_to(storage_dir):
            raise ValueError(f"invalid storage key: {storage_key!r}")
        return abs_path

    def exists(self, storage_key: str) -> bool:
        return self.path_for(storage_key).is_file()

    async def write(self, storage_key: str, content: bytes) -> Path:
        dest = self.path_for(storage_key)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
        try:
            async with aiofiles.open(tmp, "wb") as out_file:
                await out_file.write(content)
            await aiofiles.os.replace(tmp, dest)
        except BaseException:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass
            raise
        logger.debug("wrote blob {} ({} bytes)", storage_key, len(content))
        return dest

    async def read(self, storage_key: str) -> bytes:
        async with aiofiles.open(self.path_for(storage_key), "rb") as in_file:
            return await in_file.read()

    async def delete(self, storage_key: str) -> bool:
        """Remove a blob; returns False if it was already gone."""
        try:
            await aiofiles.os.remove(self.path_for(storage_key))
        except FileNotFoundError:
            return False
        return True

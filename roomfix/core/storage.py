"""Media storage for uploads, extracted frames and generated fixes.

Keys are relative, slash-separated paths such as
``media/{owner}/{resource}/original.jpg``; callers never see filesystem paths.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from roomfix.core.errors import NotFoundError

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type.lower(), "bin")


def media_prefix(owner_id: str, resource_id: str) -> str:
    return f"media/{owner_id}/{resource_id}"


def frame_key(owner_id: str, resource_id: str, key: str) -> str:
    """Key of the same extracted frame under another resource's prefix."""
    return f"{media_prefix(owner_id, resource_id)}/frames/{key.rsplit('/', 1)[-1]}"


class MediaStorage(Protocol):
    async def save(self, key: str, data: bytes) -> str: ...

    async def load(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> None: ...


def _write_bytes_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Optional[str] = None
    try:
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        with os.fdopen(tmp_fd, "wb") as f:
            f.write(data)
        Path(tmp_path).replace(path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            Path(tmp_path).unlink(missing_ok=True)


class LocalMediaStorage:
    def __init__(self, base_dir: str) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _abs_path(self, key: str) -> Path:
        rel = Path(str(key))
        if not key or rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Invalid media key: {key!r}")
        base = self.base_dir.resolve()
        full = (self.base_dir / rel).resolve()
        try:
            full.relative_to(base)
        except ValueError as e:
            raise ValueError(f"Invalid media key: {key!r}") from e
        return full

    async def save(self, key: str, data: bytes) -> str:
        await asyncio.to_thread(_write_bytes_atomic, self._abs_path(key), data)
        return key

    async def load(self, key: str) -> bytes:
        path = self._abs_path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError("media", key) from e

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._abs_path(key).unlink, True)

    async def delete_prefix(self, prefix: str) -> None:
        path = self._abs_path(prefix.rstrip("/"))
        if path.is_dir():
            await asyncio.to_thread(shutil.rmtree, path, True)
        elif path.exists():
            await asyncio.to_thread(path.unlink, True)

"""Filesystem-backed blob store."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """Stores blobs under ``root`` and hands out ``file://`` URLs."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("Stored blob %s (%s, %d bytes)", key, mime_type, len(data))
        return path.resolve().as_uri()

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.is_file():
            raise FileNotFoundError(f"Blob not found: {key}")
        return path.read_bytes()

    def _path_for(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*relative.parts)

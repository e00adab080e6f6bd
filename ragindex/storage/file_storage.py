"""Content-addressed storage for raw uploaded artifacts on the local disk."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from loguru import logger

from ragindex.errors import CorruptionError
from ragindex.utils.helpers import sha256_hex


class ArtifactStorage:
    """
    Stores each physical file once under `{root}/{hash[:2]}/{hash}{suffix}`.

    Deduplicated references share the original's path, so the file is only
    removed when the last reference is released.
    """

    def __init__(self, base_path: Union[str, Path]) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, content_hash: str, filename: str) -> Path:
        suffix = Path(filename).suffix.lower()
        return self.base_path / content_hash[:2] / f"{content_hash}{suffix}"

    def save(self, content: bytes, content_hash: str, filename: str) -> str:
        path = self.path_for(content_hash, filename)
        if path.exists():
            logger.debug(f"[Storage] {path.name} already present")
            return str(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(content)
        os.replace(tmp, path)
        logger.info(f"[Storage] Saved {len(content)} bytes to {path}")
        return str(path)

    def read(self, storage_path: str, expected_hash: str) -> bytes:
        """Read an artifact back, verifying it still hashes to `expected_hash`."""
        path = Path(storage_path)
        if not path.exists():
            raise CorruptionError(f"Stored artifact missing: {storage_path}")
        data = path.read_bytes()
        actual = sha256_hex(data)
        if actual != expected_hash:
            raise CorruptionError(f"Hash mismatch for {storage_path}: expected {expected_hash[:12]}, got {actual[:12]}")
        return data

    def delete(self, storage_path: str) -> int:
        """Remove an artifact; returns the number of bytes freed (0 if absent)."""
        path = Path(storage_path)
        if not path.exists():
            logger.warning(f"[Storage] Attempted to delete non-existent file: {path}")
            return 0
        size = path.stat().st_size
        path.unlink()
        logger.info(f"[Storage] Deleted {path} ({size} bytes)")
        return size

"""Filesystem helpers for dirdiff."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True, slots=True)
class FileMetadata:
    size: int
    mode: int
    mtime_ns: int


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def hash_file(path: Path) -> str:
    """Return the SHA-256 hex digest of ``path`` contents."""

    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def collect_metadata(path: Path) -> FileMetadata:
    """Return size, permission bits and mtime of ``path`` without following symlinks."""

    stat_result = path.lstat()
    return FileMetadata(
        size=stat_result.st_size,
        mode=stat_result.st_mode & 0o7777,
        mtime_ns=stat_result.st_mtime_ns,
    )


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a temp file next to ``path`` and publish it with ``os.replace``."""

    ensure_parent(path)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp-", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def write_stream_atomic(destination: Path, stream: BinaryIO, mode: int | None = None) -> int:
    """Copy ``stream`` into ``destination`` through a temp file; return bytes written."""

    ensure_parent(destination)
    fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}.dirdiff-tmp-", dir=destination.parent)
    temp_path = Path(temp_name)
    written = 0
    try:
        with os.fdopen(fd, "wb") as handle:
            for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                handle.write(chunk)
                written += len(chunk)
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return written


def copy_file_atomic(source: Path, destination: Path) -> None:
    """Copy ``source`` to ``destination`` preserving metadata, replacing atomically."""

    ensure_parent(destination)
    fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}.dirdiff-tmp-", dir=destination.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copy2(source, temp_path)
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty directories from ``start`` upwards, never removing ``stop``."""

    current = start
    stop = stop.resolve(strict=False)
    while current.resolve(strict=False) != stop and stop in current.resolve(strict=False).parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent

"""Revision store: append-only history of snapshots persisted as TOML."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
import threading
import time
import tomllib
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from tomli_w import dumps as toml_dumps

from .errors import RevisionNotFound, StoreCorruption
from .models import FileRecord, Snapshot

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
REVISIONS_DIRNAME = "revisions"
RESUME_DIRNAME = "resume"
STALE_TEMP_SECONDS = 3600

_REVISION_FILE = re.compile(r"^(\d{8})\.toml$")
_TEMP_PREFIX = ".commit-"


def records_checksum(records: Iterable[FileRecord]) -> str:
    """SHA-256 over the ordered ``(path, size, mtime_ns, fingerprint, mode)`` tuples."""

    hasher = hashlib.sha256()
    for record in records:
        hasher.update("\0".join(str(value) for value in record.as_tuple()).encode())
        hasher.update(b"\n")
    return hasher.hexdigest()


def snapshot_to_toml(snapshot: Snapshot) -> str:
    payload: dict[str, Any] = {
        "format": FORMAT_VERSION,
        "revision": snapshot.revision_id,
        "created_at": snapshot.created_at,
        "checksum": records_checksum(snapshot.records),
        "files": [
            {
                "path": record.path,
                "size": record.size,
                "mtime_ns": record.mtime_ns,
                "fingerprint": record.fingerprint,
                "mode": record.mode,
            }
            for record in snapshot.records
        ],
    }
    return toml_dumps(payload)


def snapshot_from_toml(text: str, *, source: str) -> Snapshot:
    try:
        data = tomllib.loads(text)
        if data["format"] != FORMAT_VERSION:
            raise StoreCorruption(f"{source}: unsupported format {data['format']!r}")
        records = tuple(
            FileRecord(
                path=_typed(item["path"], str),
                size=_typed(item["size"], int),
                mtime_ns=_typed(item["mtime_ns"], int),
                fingerprint=_typed(item["fingerprint"], str),
                mode=_typed(item["mode"], int),
            )
            for item in data.get("files", [])
        )
        created_at = _typed(data["created_at"], datetime)
        snapshot = Snapshot(records=records, revision_id=_typed(data["revision"], int), created_at=created_at)
    except StoreCorruption:
        raise
    except (tomllib.TOMLDecodeError, KeyError, TypeError, ValueError) as exc:
        raise StoreCorruption(f"{source}: malformed revision ({exc})") from exc

    if data.get("checksum") != records_checksum(snapshot.records):
        raise StoreCorruption(f"{source}: checksum mismatch")
    return snapshot


def _typed(value: Any, expected: type) -> Any:
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise TypeError(f"expected {expected.__name__}, got {type(value).__name__}")
    return value


class RevisionStore:
    """Ordered, append-only sequence of committed snapshots.

    Commits are written to a temporary file, fsynced, then published under
    their final name with a hard link that refuses to overwrite, so readers
    never observe a partially written revision. Commits are serialized;
    reads take no lock.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.revisions_dir = self.directory / REVISIONS_DIRNAME
        self._commit_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, directory: Path) -> "RevisionStore":
        store = cls(directory)
        store.revisions_dir.mkdir(parents=True, exist_ok=True)
        (store.directory / RESUME_DIRNAME).mkdir(parents=True, exist_ok=True)
        store._sweep_stale_temps()
        return store

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "RevisionStore":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def commit(self, snapshot: Snapshot) -> int:
        self._ensure_open()
        with self._commit_lock:
            self.revisions_dir.mkdir(parents=True, exist_ok=True)
            revision_id = self._latest_id() + 1
            while True:
                committed = snapshot.with_revision(revision_id)
                if self._publish(committed):
                    break
                revision_id += 1
        logger.info(f"Committed revision {revision_id} with {len(snapshot)} file(s)")
        return revision_id

    def get(self, revision_id: int) -> Snapshot:
        self._ensure_open()
        path = self._revision_path(revision_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise RevisionNotFound(revision_id) from None
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreCorruption(f"{path}: unreadable revision ({exc})") from exc

        snapshot = snapshot_from_toml(text, source=str(path))
        if snapshot.revision_id != revision_id:
            raise StoreCorruption(f"{path}: records revision {snapshot.revision_id}, expected {revision_id}")
        return snapshot

    def head(self) -> Snapshot:
        latest = self._latest_id()
        if latest == 0:
            raise RevisionNotFound(None)
        return self.get(latest)

    def revision_ids(self) -> list[int]:
        if not self.revisions_dir.exists():
            return []
        ids = []
        for child in self.revisions_dir.iterdir():
            match = _REVISION_FILE.match(child.name)
            if match:
                ids.append(int(match.group(1)))
        return sorted(ids)

    def previous(self, revision_id: int) -> int | None:
        earlier = [candidate for candidate in self.revision_ids() if candidate < revision_id]
        return earlier[-1] if earlier else None

    def resume_path(self, remote_name: str) -> Path:
        return self.directory / RESUME_DIRNAME / f"{remote_name}.toml"

    # ------------------------------------------------------------------
    # Internal helpers

    def _latest_id(self) -> int:
        ids = self.revision_ids()
        return ids[-1] if ids else 0

    def _revision_path(self, revision_id: int) -> Path:
        return self.revisions_dir / f"{revision_id:08d}.toml"

    def _publish(self, snapshot: Snapshot) -> bool:
        final_path = self._revision_path(snapshot.revision_id)
        fd, temp_name = tempfile.mkstemp(prefix=_TEMP_PREFIX, dir=self.revisions_dir)
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(snapshot_to_toml(snapshot).encode("utf-8"))
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(temp_path, final_path)
            except FileExistsError:
                logger.debug(f"Revision {snapshot.revision_id} was taken by another writer")
                return False
            return True
        finally:
            temp_path.unlink(missing_ok=True)

    def _sweep_stale_temps(self) -> None:
        cutoff = time.time() - STALE_TEMP_SECONDS
        for child in self.revisions_dir.glob(f"{_TEMP_PREFIX}*"):
            try:
                if child.stat().st_mtime < cutoff:
                    child.unlink()
                    logger.debug(f"Removed abandoned commit file {child}")
            except OSError:
                continue

    def _ensure_open(self) -> None:
        if self._closed:
            raise ValueError("RevisionStore is closed")

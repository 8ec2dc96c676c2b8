"""Directory scanning: walk a tree and fingerprint every regular file."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from pathlib import Path

from .errors import ScanError
from .filesystem import collect_metadata, hash_file
from .models import FileRecord, ScanResult, SkippedEntry, Snapshot

logger = logging.getLogger(__name__)

STORE_DIRNAME = ".dirdiff"
DEFAULT_WORKERS = 8


@dataclass(frozen=True, slots=True)
class ScanFilter:
    """Decides which entries of a tree take part in snapshots.

    Hidden entries (leading dot) are skipped unless ``include_hidden``;
    ``exclude`` holds ``fnmatch`` patterns tested against both the relative
    path and the bare name; ``reserved`` names are always skipped.
    """

    include_hidden: bool = False
    exclude: tuple[str, ...] = ()
    reserved: tuple[str, ...] = (STORE_DIRNAME,)

    def excludes(self, relative_path: str, name: str | None = None) -> bool:
        name = name if name is not None else relative_path.rsplit("/", 1)[-1]
        if name in self.reserved:
            return True
        if not self.include_hidden and name.startswith("."):
            return True
        return any(fnmatchcase(relative_path, pattern) or fnmatchcase(name, pattern) for pattern in self.exclude)

    def excludes_path(self, relative_path: str) -> bool:
        """Like ``excludes`` but also checks every ancestor directory of ``relative_path``."""

        parts = relative_path.split("/")
        for index in range(1, len(parts) + 1):
            if self.excludes("/".join(parts[:index]), parts[index - 1]):
                return True
        return False


class Scanner:
    """Produces snapshots of a directory tree.

    Directories are traversed with an explicit worklist; regular files are
    hashed on a bounded thread pool. Symlinks are never followed and, like
    other non-regular entries, end up in the skip manifest.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS, scan_filter: ScanFilter | None = None) -> None:
        self.workers = max(1, workers)
        self.scan_filter = scan_filter or ScanFilter()

    def scan(self, root: Path) -> ScanResult:
        root = Path(root)
        if not root.is_dir():
            raise ScanError(str(root), "root is not a directory")

        started = datetime.now(timezone.utc)
        files, skipped = self._walk(root)
        logger.debug(f"Hashing {len(files)} file(s) under {root} with {self.workers} worker(s)")

        records: list[FileRecord] = []
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [pool.submit(self._record_for, root, relative) for relative in files]
            for future in as_completed(futures):
                try:
                    records.append(future.result())
                except ScanError as exc:
                    logger.warning(f"Skipping {exc.path}: {exc.reason}")
                    skipped.append(SkippedEntry(exc.path, exc.reason))

        snapshot = Snapshot(records=tuple(records), created_at=started)
        logger.info(f"Scanned {len(snapshot)} file(s) under {root}, skipped {len(skipped)}")
        return ScanResult(snapshot=snapshot, skipped=tuple(sorted(skipped, key=lambda entry: entry.path)))

    def _walk(self, root: Path) -> tuple[list[str], list[SkippedEntry]]:
        files: list[str] = []
        skipped: list[SkippedEntry] = []
        pending: list[tuple[Path, str]] = [(root, "")]

        while pending:
            directory, prefix = pending.pop()
            try:
                with os.scandir(directory) as iterator:
                    entries = sorted(iterator, key=lambda entry: entry.name)
            except OSError as exc:
                reason = f"unreadable directory: {exc.strerror or exc}"
                logger.warning(f"Skipping {prefix or '.'}: {reason}")
                skipped.append(SkippedEntry(prefix or ".", reason))
                continue

            for entry in entries:
                relative = f"{prefix}/{entry.name}" if prefix else entry.name
                if self.scan_filter.excludes(relative, entry.name):
                    continue
                try:
                    if entry.is_symlink():
                        skipped.append(SkippedEntry(relative, "symlink"))
                    elif entry.is_dir(follow_symlinks=False):
                        pending.append((Path(entry.path), relative))
                    elif entry.is_file(follow_symlinks=False):
                        files.append(relative)
                    else:
                        skipped.append(SkippedEntry(relative, "not a regular file"))
                except OSError as exc:
                    skipped.append(SkippedEntry(relative, exc.strerror or str(exc)))

        return files, skipped

    @staticmethod
    def _record_for(root: Path, relative: str) -> FileRecord:
        path = root / relative
        try:
            metadata = collect_metadata(path)
            fingerprint = hash_file(path)
        except OSError as exc:
            raise ScanError(relative, exc.strerror or str(exc)) from exc
        return FileRecord(
            path=relative,
            size=metadata.size,
            mtime_ns=metadata.mtime_ns,
            fingerprint=fingerprint,
            mode=metadata.mode,
        )

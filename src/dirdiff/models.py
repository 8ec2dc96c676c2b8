"""Shared models and enums for dirdiff."""

from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Iterable, Iterator, Mapping

from .errors import DirdiffError, VerificationFailure


@dataclass(frozen=True, slots=True)
class FileRecord:
    """Recorded identity and metadata of a regular file."""

    path: str
    size: int
    mtime_ns: int
    fingerprint: str
    mode: int

    def as_tuple(self) -> tuple[str, int, int, str, int]:
        return (self.path, self.size, self.mtime_ns, self.fingerprint, self.mode)


@dataclass(frozen=True)
class Snapshot:
    """Immutable, path-ordered collection of file records.

    ``revision_id`` is ``0`` until the snapshot is committed to a store.
    """

    records: tuple[FileRecord, ...]
    revision_id: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.records, key=lambda record: record.path))
        for previous, current in zip(ordered, ordered[1:]):
            if previous.path == current.path:
                raise ValueError(f"Duplicate path '{current.path}' in snapshot")
        object.__setattr__(self, "records", ordered)

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(records=())

    @cached_property
    def by_path(self) -> Mapping[str, FileRecord]:
        return {record.path: record for record in self.records}

    @cached_property
    def by_fingerprint(self) -> Mapping[str, tuple[str, ...]]:
        index: dict[str, list[str]] = {}
        for record in self.records:
            index.setdefault(record.fingerprint, []).append(record.path)
        return {fingerprint: tuple(paths) for fingerprint, paths in index.items()}

    @cached_property
    def content_digest(self) -> str:
        """SHA-256 over the ordered ``(path, fingerprint)`` pairs."""

        hasher = hashlib.sha256()
        for record in self.records:
            hasher.update(record.path.encode())
            hasher.update(b"\0")
            hasher.update(record.fingerprint.encode())
            hasher.update(b"\n")
        return hasher.hexdigest()

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(record.path for record in self.records)

    @property
    def total_size(self) -> int:
        return sum(record.size for record in self.records)

    def get(self, path: str) -> FileRecord | None:
        return self.by_path.get(path)

    def with_revision(self, revision_id: int) -> "Snapshot":
        return replace(self, revision_id=revision_id)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(self.records)

    def __contains__(self, path: object) -> bool:
        return path in self.by_path


@dataclass(frozen=True, slots=True)
class SkippedEntry:
    """A path excluded from a scan, with the reason."""

    path: str
    reason: str


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Snapshot produced by a scan plus its skip manifest."""

    snapshot: Snapshot
    skipped: tuple[SkippedEntry, ...] = ()


class MoveKind(str, Enum):
    """How a moved file changed location."""

    RENAMED = "renamed"
    RELOCATED = "relocated"


@dataclass(frozen=True, slots=True)
class ModifiedEntry:
    path: str
    old_fingerprint: str
    new_fingerprint: str


@dataclass(frozen=True, slots=True)
class MovedEntry:
    old_path: str
    new_path: str
    fingerprint: str

    @property
    def kind(self) -> MoveKind:
        if posixpath.dirname(self.old_path) == posixpath.dirname(self.new_path):
            return MoveKind.RENAMED
        return MoveKind.RELOCATED


@dataclass(frozen=True, slots=True)
class DiffResult:
    """Structural difference between two snapshots."""

    removed: tuple[FileRecord, ...] = ()
    added: tuple[FileRecord, ...] = ()
    modified: tuple[ModifiedEntry, ...] = ()
    moved: tuple[MovedEntry, ...] = ()
    unchanged: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.removed or self.added or self.modified or self.moved)


class OperationKind(str, Enum):
    """Primitive operations of a sync plan."""

    KEEP = "keep"
    MOVE = "move"
    COPY = "copy"
    TRANSFER = "transfer"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class Operation:
    """One step of a sync plan.

    ``path`` is the remote path the operation produces (or deletes, or
    keeps). ``source`` is the remote source for move/copy and the local
    path for transfers.
    """

    kind: OperationKind
    path: str
    source: str | None = None
    fingerprint: str | None = None

    @classmethod
    def keep(cls, path: str) -> "Operation":
        return cls(OperationKind.KEEP, path)

    @classmethod
    def move(cls, source: str, destination: str) -> "Operation":
        return cls(OperationKind.MOVE, destination, source=source)

    @classmethod
    def copy(cls, existing: str, destination: str) -> "Operation":
        return cls(OperationKind.COPY, destination, source=existing)

    @classmethod
    def transfer(cls, local_path: str, destination: str, fingerprint: str) -> "Operation":
        return cls(OperationKind.TRANSFER, destination, source=local_path, fingerprint=fingerprint)

    @classmethod
    def delete(cls, path: str) -> "Operation":
        return cls(OperationKind.DELETE, path)

    def reads(self) -> frozenset[str]:
        """Remote paths whose current content this operation reads."""

        if self.kind in (OperationKind.MOVE, OperationKind.COPY):
            return frozenset({self.source})  # type: ignore[arg-type]
        return frozenset()

    def writes(self) -> frozenset[str]:
        """Remote paths this operation creates, overwrites, or removes."""

        if self.kind is OperationKind.KEEP:
            return frozenset()
        if self.kind is OperationKind.MOVE:
            return frozenset({self.source, self.path})  # type: ignore[arg-type]
        return frozenset({self.path})

    def touched(self) -> frozenset[str]:
        return self.reads() | self.writes()

    def parents(self) -> frozenset[str]:
        """Directories that must exist for this operation to run."""

        return frozenset(parent for path in self.touched() for parent in ancestors(path))

    def pruned(self) -> frozenset[str]:
        """Directories this operation may remove once they are left empty."""

        if self.kind is OperationKind.MOVE:
            return frozenset(ancestors(self.source))  # type: ignore[arg-type]
        if self.kind is OperationKind.DELETE:
            return frozenset(ancestors(self.path))
        return frozenset()

    def describe(self) -> str:
        if self.kind in (OperationKind.MOVE, OperationKind.COPY):
            return f"{self.kind.value} {self.source} -> {self.path}"
        return f"{self.kind.value} {self.path}"


@dataclass(frozen=True)
class SyncPlan:
    """Ordered operations that transform ``remote`` into ``target``."""

    operations: tuple[Operation, ...]
    target: Snapshot
    remote: Snapshot

    @property
    def actions(self) -> tuple[Operation, ...]:
        return tuple(op for op in self.operations if op.kind is not OperationKind.KEEP)

    @property
    def is_noop(self) -> bool:
        return not self.actions

    @property
    def transfer_bytes(self) -> int:
        total = 0
        for op in self.operations:
            if op.kind is OperationKind.TRANSFER:
                record = self.target.get(op.path)
                total += record.size if record is not None else 0
        return total

    @cached_property
    def plan_id(self) -> str:
        return operations_digest(self.operations)

    def counts(self) -> dict[OperationKind, int]:
        counts = {kind: 0 for kind in OperationKind}
        for op in self.operations:
            counts[op.kind] += 1
        return counts


def ancestors(path: str) -> list[str]:
    """Parent directories of a relative POSIX path, innermost first."""

    parents = []
    parent = posixpath.dirname(path)
    while parent:
        parents.append(parent)
        parent = posixpath.dirname(parent)
    return parents


def operations_digest(operations: Iterable[Operation]) -> str:
    hasher = hashlib.sha256()
    for op in operations:
        line = "\0".join((op.kind.value, op.source or "", op.path, op.fingerprint or ""))
        hasher.update(line.encode())
        hasher.update(b"\n")
    return hasher.hexdigest()


@dataclass(frozen=True, slots=True)
class OperationFailure:
    """The operation that halted a sync and the error it raised."""

    index: int
    operation: Operation
    error: DirdiffError


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    """Result of executing a sync plan."""

    completed: tuple[int, ...]
    remaining: tuple[int, ...]
    failed: OperationFailure | None = None
    cancelled: bool = False
    verification: VerificationFailure | None = None
    bytes_transferred: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.remaining and self.failed is None and self.verification is None

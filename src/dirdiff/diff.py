"""Snapshot comparison with content-based move detection."""

from __future__ import annotations

from .models import DiffResult, FileRecord, ModifiedEntry, MovedEntry, Snapshot


def diff(old: Snapshot, new: Snapshot) -> DiffResult:
    """Return the changes that transform ``old`` into ``new``.

    Paths present on one side only are paired into moves when their
    fingerprints match. With several candidates for one fingerprint, both
    sides are sorted by path and paired by rank, so the result never depends
    on scan order.
    """

    old_paths = old.by_path
    new_paths = new.by_path

    candidate_removed: list[FileRecord] = []
    candidate_added: list[FileRecord] = []
    modified: list[ModifiedEntry] = []
    unchanged: list[str] = []

    for record in old.records:
        counterpart = new_paths.get(record.path)
        if counterpart is None:
            candidate_removed.append(record)
        elif counterpart.fingerprint == record.fingerprint:
            unchanged.append(record.path)
        else:
            modified.append(ModifiedEntry(record.path, record.fingerprint, counterpart.fingerprint))

    for record in new.records:
        if record.path not in old_paths:
            candidate_added.append(record)

    removed_index = _index_by_fingerprint(candidate_removed)
    added_index = _index_by_fingerprint(candidate_added)

    moved: list[MovedEntry] = []
    paired_old: set[str] = set()
    paired_new: set[str] = set()
    for fingerprint, removed_candidates in removed_index.items():
        added_candidates = added_index.get(fingerprint)
        if not added_candidates:
            continue
        for source, target in zip(removed_candidates, added_candidates):
            moved.append(MovedEntry(source.path, target.path, fingerprint))
            paired_old.add(source.path)
            paired_new.add(target.path)

    return DiffResult(
        removed=tuple(record for record in candidate_removed if record.path not in paired_old),
        added=tuple(record for record in candidate_added if record.path not in paired_new),
        modified=tuple(modified),
        moved=tuple(sorted(moved, key=lambda entry: (entry.new_path, entry.old_path))),
        unchanged=tuple(unchanged),
    )


def _index_by_fingerprint(records: list[FileRecord]) -> dict[str, list[FileRecord]]:
    index: dict[str, list[FileRecord]] = {}
    for record in records:
        index.setdefault(record.fingerprint, []).append(record)
    for candidates in index.values():
        candidates.sort(key=lambda record: record.path)
    return index


class DiffEngine:
    """Object wrapper around :func:`diff` for callers that inject collaborators."""

    def diff(self, old: Snapshot, new: Snapshot) -> DiffResult:
        return diff(old, new)

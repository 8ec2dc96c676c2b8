from __future__ import annotations

import hashlib

from dirdiff.diff import DiffEngine, diff
from dirdiff.models import FileRecord, MoveKind, Snapshot


def _snap(files: dict[str, str]) -> Snapshot:
    return Snapshot(
        records=tuple(
            FileRecord(
                path=path,
                size=len(content),
                mtime_ns=0,
                fingerprint=hashlib.sha256(content.encode()).hexdigest(),
                mode=0o644,
            )
            for path, content in files.items()
        )
    )


def test_diff_of_identical_snapshots_is_empty() -> None:
    snapshot = _snap({"a": "1", "b/c": "2"})

    result = diff(snapshot, snapshot)

    assert result.is_empty
    assert result.unchanged == ("a", "b/c")


def test_single_rename_is_one_move() -> None:
    result = diff(_snap({"docs/a.txt": "hello"}), _snap({"docs/b.txt": "hello"}))

    assert result.added == ()
    assert result.removed == ()
    assert [(entry.old_path, entry.new_path) for entry in result.moved] == [("docs/a.txt", "docs/b.txt")]
    assert result.moved[0].kind is MoveKind.RENAMED


def test_move_across_directories_is_relocated() -> None:
    result = diff(_snap({"a/x.txt": "data"}), _snap({"b/x.txt": "data"}))

    assert result.moved[0].kind is MoveKind.RELOCATED


def test_categories_are_exclusive() -> None:
    old = _snap({"same": "s", "edit": "v1", "gone": "g", "from": "m"})
    new = _snap({"same": "s", "edit": "v2", "new": "n", "to": "m"})

    result = diff(old, new)

    assert result.unchanged == ("same",)
    assert [entry.path for entry in result.modified] == ["edit"]
    assert [record.path for record in result.removed] == ["gone"]
    assert [record.path for record in result.added] == ["new"]
    assert [(entry.old_path, entry.new_path) for entry in result.moved] == [("from", "to")]


def test_modified_path_is_not_paired_as_move() -> None:
    # "b" gets a's old content but still exists on both sides.
    result = diff(_snap({"a": "1", "b": "2"}), _snap({"a": "3", "b": "1"}))

    assert result.moved == ()
    assert [entry.path for entry in result.modified] == ["a", "b"]


def test_duplicate_content_pairs_by_path_rank() -> None:
    old = _snap({"z": "dup", "m": "dup", "a": "dup"})
    new = _snap({"y": "dup", "b": "dup"})

    result = diff(old, new)

    assert [(entry.old_path, entry.new_path) for entry in result.moved] == [("a", "b"), ("m", "y")]
    assert [record.path for record in result.removed] == ["z"]


def test_diff_engine_matches_function() -> None:
    old, new = _snap({"a": "1"}), _snap({"b": "1", "c": "2"})

    assert DiffEngine().diff(old, new) == diff(old, new)

from __future__ import annotations

import hashlib

import pytest

from dirdiff.errors import PlanConflict
from dirdiff.models import FileRecord, Operation, OperationKind, Snapshot, SyncPlan
from dirdiff.planner import STAGING_PREFIX, SyncPlanner, plan


def _fp(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


def _snap(files: dict[str, str]) -> Snapshot:
    return Snapshot(
        records=tuple(
            FileRecord(path=path, size=len(content), mtime_ns=0, fingerprint=_fp(content), mode=0o644)
            for path, content in files.items()
        )
    )


def _conflicts(state: dict[str, str], path: str) -> list[str]:
    return [other for other in state if other.startswith(f"{path}/") or path.startswith(f"{other}/")]


def _simulate(sync_plan: SyncPlan) -> dict[str, str]:
    """Apply a plan to an in-memory ``{path: fingerprint}`` tree, enforcing file/dir exclusivity."""

    state = {record.path: record.fingerprint for record in sync_plan.remote}
    for op in sync_plan.operations:
        if op.kind is OperationKind.KEEP:
            assert op.path in state
        elif op.kind is OperationKind.DELETE:
            state.pop(op.path, None)
        else:
            if op.kind is OperationKind.MOVE:
                content = state.pop(op.source)
            elif op.kind is OperationKind.COPY:
                content = state[op.source]
            else:
                content = op.fingerprint
            assert not _conflicts(state, op.path), f"{op.describe()} collides with {_conflicts(state, op.path)}"
            state[op.path] = content
    return state


def _expected(target: Snapshot) -> dict[str, str]:
    return {record.path: record.fingerprint for record in target}


def test_rename_becomes_single_move_without_transfer() -> None:
    sync_plan = plan(_snap({"a.txt": "h1"}), _snap({"b.txt": "h1"}))

    assert sync_plan.operations == (Operation.move("b.txt", "a.txt"),)
    assert sync_plan.transfer_bytes == 0


def test_identical_trees_plan_only_keeps() -> None:
    tree = _snap({"a": "1", "d/b": "2"})

    sync_plan = plan(tree, tree)

    assert sync_plan.is_noop
    assert sync_plan.operations == (Operation.keep("a"), Operation.keep("d/b"))


def test_duplicate_content_moves_lowest_path_and_deletes_the_rest() -> None:
    local = _snap({"c": "dup"})
    remote = _snap({"b": "dup", "a": "dup"})

    first = plan(local, remote)
    second = plan(local, remote)

    assert first.operations == (Operation.move("a", "c"), Operation.delete("b"))
    assert first.plan_id == second.plan_id


def test_existing_remote_content_is_copied_not_transferred() -> None:
    sync_plan = plan(_snap({"a": "h", "b": "h"}), _snap({"a": "h"}))

    assert sync_plan.operations == (Operation.keep("a"), Operation.copy("a", "b"))
    assert sync_plan.transfer_bytes == 0


def test_new_content_is_transferred_from_local_path() -> None:
    sync_plan = plan(_snap({"a": "new content"}), _snap({"a": "old"}))

    assert sync_plan.operations == (Operation.transfer("a", "a", _fp("new content")),)
    assert sync_plan.transfer_bytes == len("new content")


def test_swap_is_staged_through_temporary_path() -> None:
    local = _snap({"A": "h2", "B": "h1"})
    remote = _snap({"A": "h1", "B": "h2"})

    sync_plan = plan(local, remote)

    staging = f"{STAGING_PREFIX}0"
    assert sync_plan.operations == (
        Operation.move("B", staging),
        Operation.move("A", "B"),
        Operation.move(staging, "A"),
    )
    assert _simulate(sync_plan) == _expected(local)


def test_three_way_rotation_loses_no_data() -> None:
    local = _snap({"a": "3", "b": "1", "c": "2"})
    remote = _snap({"a": "1", "b": "2", "c": "3"})

    sync_plan = plan(local, remote)

    assert sync_plan.counts()[OperationKind.TRANSFER] == 0
    assert _simulate(sync_plan) == _expected(local)


def test_staging_name_avoids_existing_paths() -> None:
    local = _snap({"A": "h2", "B": "h1", f"{STAGING_PREFIX}0": "s"})
    remote = _snap({"A": "h1", "B": "h2", f"{STAGING_PREFIX}0": "s"})

    sync_plan = plan(local, remote)

    assert Operation.move("B", f"{STAGING_PREFIX}1") in sync_plan.operations
    assert _simulate(sync_plan) == _expected(local)


def test_reads_happen_before_sources_are_overwritten() -> None:
    local = _snap({"a": "h2", "b": "h3", "c": "h1"})
    remote = _snap({"a": "h1", "b": "h2"})

    sync_plan = plan(local, remote)

    assert sync_plan.counts()[OperationKind.TRANSFER] == 1
    assert _simulate(sync_plan) == _expected(local)


def test_file_moving_below_its_own_path_is_staged() -> None:
    local = _snap({"a/b": "h1"})
    remote = _snap({"a": "h1"})

    sync_plan = plan(local, remote)

    assert [op.kind for op in sync_plan.operations] == [OperationKind.MOVE, OperationKind.MOVE]
    assert _simulate(sync_plan) == _expected(local)


def test_directory_replaced_by_file_is_cleared_first() -> None:
    local = _snap({"x": "file now"})
    remote = _snap({"x/y": "nested", "x/z": "nested too"})

    sync_plan = plan(local, remote)

    assert sync_plan.operations[-1] == Operation.transfer("x", "x", _fp("file now"))
    assert _simulate(sync_plan) == _expected(local)


def test_file_replaced_by_directory_is_removed_first() -> None:
    local = _snap({"x/y": "inner"})
    remote = _snap({"x": "outer"})

    sync_plan = plan(local, remote)

    assert sync_plan.operations == (Operation.delete("x"), Operation.transfer("x/y", "x/y", _fp("inner")))
    assert _simulate(sync_plan) == _expected(local)


def test_mixed_changes_converge() -> None:
    remote = _snap(
        {
            "docs/readme.md": "readme",
            "docs/old.md": "old",
            "src/main.py": "main v1",
            "src/util.py": "util",
            "assets/logo.png": "logo",
        }
    )
    local = _snap(
        {
            "README.md": "readme",
            "src/main.py": "main v2",
            "src/helpers/util.py": "util",
            "assets/logo.png": "logo",
            "assets/logo-copy.png": "logo",
        }
    )

    sync_plan = SyncPlanner().plan(local, remote)

    counts = sync_plan.counts()
    assert counts[OperationKind.MOVE] == 2
    assert counts[OperationKind.COPY] == 1
    assert counts[OperationKind.TRANSFER] == 1
    assert counts[OperationKind.DELETE] == 1
    assert sync_plan.transfer_bytes == len("main v2")
    assert _simulate(sync_plan) == _expected(local)


def test_validate_rejects_shared_destination() -> None:
    operations = [Operation.transfer("a", "a", _fp("x")), Operation.copy("b", "a")]

    with pytest.raises(PlanConflict, match="share destination"):
        SyncPlanner._validate(operations)


def test_validate_rejects_delete_of_written_path() -> None:
    operations = [Operation.move("b", "a"), Operation.delete("a")]

    with pytest.raises(PlanConflict, match="both deleted and written"):
        SyncPlanner._validate(operations)


def test_validate_rejects_double_move_of_one_source() -> None:
    operations = [Operation.move("s", "a"), Operation.move("s", "b")]

    with pytest.raises(PlanConflict, match="both move"):
        SyncPlanner._validate(operations)

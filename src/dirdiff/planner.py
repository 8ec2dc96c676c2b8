"""Turn a snapshot diff into an ordered, conflict-free sync plan."""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Iterable, Sequence

from .diff import diff
from .errors import PlanConflict
from .models import DiffResult, Operation, OperationKind, Snapshot, SyncPlan, ancestors

logger = logging.getLogger(__name__)

STAGING_PREFIX = "dirdiff-stage."

_KIND_RANK = {
    OperationKind.KEEP: 0,
    OperationKind.COPY: 1,
    OperationKind.MOVE: 2,
    OperationKind.TRANSFER: 3,
    OperationKind.DELETE: 4,
}


def _sort_key(op: Operation) -> tuple[int, str, str]:
    return (_KIND_RANK[op.kind], op.path, op.source or "")


class SyncPlanner:
    """Computes the operations that make a remote tree match a local one.

    Content already present remotely is moved or copied instead of being
    transferred. Operations are ordered so that every read of a remote
    path's original content happens before that path is overwritten, moved
    away, or deleted; cycles are broken through staging paths.
    """

    def plan(self, local_head: Snapshot, remote_head: Snapshot) -> SyncPlan:
        changes = diff(remote_head, local_head)
        operations = self._select_operations(changes, remote_head)
        self._validate(operations)
        ordered = _OperationOrderer(operations, local_head, remote_head).order()
        self._validate(ordered)

        plan = SyncPlan(operations=tuple(ordered), target=local_head, remote=remote_head)
        counts = plan.counts()
        logger.info(
            f"Planned {counts[OperationKind.MOVE]} move(s), {counts[OperationKind.COPY]} copy(ies), "
            f"{counts[OperationKind.TRANSFER]} transfer(s), {counts[OperationKind.DELETE]} delete(s)"
        )
        return plan

    @staticmethod
    def _select_operations(changes: DiffResult, remote: Snapshot) -> list[Operation]:
        operations = [Operation.keep(path) for path in changes.unchanged]
        operations.extend(Operation.move(entry.old_path, entry.new_path) for entry in changes.moved)

        # Remote paths whose current content is not needed at that path any more.
        released: dict[str, list[str]] = defaultdict(list)
        for record in changes.removed:
            released[record.fingerprint].append(record.path)
        for entry in changes.modified:
            released[entry.old_fingerprint].append(entry.path)
        for paths in released.values():
            paths.sort()

        needs = [(record.path, record.fingerprint) for record in changes.added]
        needs.extend((entry.path, entry.new_fingerprint) for entry in changes.modified)
        needs.sort()

        claimed: set[str] = set()
        for destination, fingerprint in needs:
            source = next(
                (path for path in released.get(fingerprint, ()) if path not in claimed and path != destination),
                None,
            )
            if source is not None:
                claimed.add(source)
                operations.append(Operation.move(source, destination))
                continue

            holders = remote.by_fingerprint.get(fingerprint)
            if holders:
                operations.append(Operation.copy(holders[0], destination))
            else:
                operations.append(Operation.transfer(destination, destination, fingerprint))

        operations.extend(Operation.delete(record.path) for record in changes.removed if record.path not in claimed)
        return operations

    @staticmethod
    def _validate(operations: Sequence[Operation]) -> None:
        destinations: dict[str, Operation] = {}
        moved_sources: dict[str, Operation] = {}
        for op in operations:
            if op.kind is OperationKind.DELETE:
                continue
            previous = destinations.get(op.path)
            if previous is not None:
                raise PlanConflict(f"'{previous.describe()}' and '{op.describe()}' share destination '{op.path}'")
            destinations[op.path] = op
            if op.kind is OperationKind.MOVE:
                earlier = moved_sources.get(op.source)  # type: ignore[arg-type]
                if earlier is not None:
                    raise PlanConflict(f"'{earlier.describe()}' and '{op.describe()}' both move '{op.source}' away")
                moved_sources[op.source] = op  # type: ignore[index]

        for op in operations:
            if op.kind is OperationKind.DELETE and op.path in destinations:
                raise PlanConflict(f"'{op.path}' is both deleted and written by '{destinations[op.path].describe()}'")


class _OperationOrderer:
    """Deterministic topological ordering with staging-based cycle breaking."""

    def __init__(self, operations: Iterable[Operation], local: Snapshot, remote: Snapshot) -> None:
        self.operations = list(operations)
        self.remote = remote
        self.staging: set[str] = set()
        self._reserved = set(local.paths) | set(remote.paths)
        for path in list(self._reserved):
            self._reserved.update(ancestors(path))

        self._remote_below: dict[str, list[str]] = defaultdict(list)
        for path in remote.paths:
            for parent in ancestors(path):
                self._remote_below[parent].append(path)

    def order(self) -> list[Operation]:
        # A file cannot move into or out of a path below itself in one step.
        for index in reversed(range(len(self.operations))):
            op = self.operations[index]
            if op.kind in (OperationKind.MOVE, OperationKind.COPY) and (
                op.source in ancestors(op.path) or op.path in ancestors(op.source or "")
            ):
                self._split(index)

        for _ in range(len(self.operations) + 1):
            edges, indegree = self._build_graph()
            ordered, remaining = self._kahn(edges, indegree)
            if not remaining:
                return [self.operations[index] for index in ordered]
            index = self._split_candidate(remaining, edges)
            if index is None:
                break
            self._split(index)
        raise PlanConflict("Unresolvable dependency cycle between sync operations")

    def _build_graph(self) -> tuple[list[set[int]], list[int]]:
        count = len(self.operations)
        readers: dict[str, list[int]] = defaultdict(list)
        writers: dict[str, list[int]] = defaultdict(list)
        for index, op in enumerate(self.operations):
            for path in op.reads():
                readers[path].append(index)
            for path in op.writes():
                writers[path].append(index)

        edges: list[set[int]] = [set() for _ in range(count)]

        def add_edge(before: int, after: int) -> None:
            if before != after:
                edges[before].add(after)

        for path, path_readers in readers.items():
            if path in self.staging:
                producers = [index for index in writers[path] if self.operations[index].path == path]
                for producer in producers:
                    for reader in path_readers:
                        add_edge(producer, reader)
                continue
            for reader in path_readers:
                for writer in writers.get(path, ()):
                    add_edge(reader, writer)

        # A file and a directory cannot share a path: clear the old one first.
        for index, op in enumerate(self.operations):
            if op.kind in (OperationKind.KEEP, OperationKind.DELETE):
                continue
            blockers = [parent for parent in ancestors(op.path) if parent in self.remote]
            blockers.extend(self._remote_below.get(op.path, ()))
            for blocked in blockers:
                for writer in writers.get(blocked, ()):
                    if self.operations[writer].path != op.path:
                        add_edge(writer, index)

        indegree = [0] * count
        for successors in edges:
            for successor in successors:
                indegree[successor] += 1
        return edges, indegree

    def _kahn(self, edges: list[set[int]], indegree: list[int]) -> tuple[list[int], set[int]]:
        indegree = list(indegree)
        heap = [(_sort_key(op), index) for index, op in enumerate(self.operations) if indegree[index] == 0]
        heapq.heapify(heap)
        ordered: list[int] = []
        while heap:
            _, index = heapq.heappop(heap)
            ordered.append(index)
            for successor in edges[index]:
                indegree[successor] -= 1
                if indegree[successor] == 0:
                    heapq.heappush(heap, (_sort_key(self.operations[successor]), successor))
        remaining = set(range(len(self.operations))) - set(ordered)
        return ordered, remaining

    def _split_candidate(self, remaining: set[int], edges: list[set[int]]) -> int | None:
        candidates = []
        for index in remaining:
            op = self.operations[index]
            if op.kind not in (OperationKind.MOVE, OperationKind.COPY):
                continue
            if op.path in self.staging or op.source in self.staging:
                continue
            blocked_by_reader = any(
                index in edges[other] and op.path in self.operations[other].reads()
                for other in remaining
                if other != index
            )
            candidates.append((0 if blocked_by_reader else 1, _sort_key(op), index))
        return min(candidates)[2] if candidates else None

    def _split(self, index: int) -> None:
        op = self.operations[index]
        staging = self._allocate_staging()
        first = Operation(op.kind, staging, source=op.source)
        second = Operation.move(staging, op.path)
        logger.debug(f"Breaking cycle: {op.describe()} staged through {staging}")
        self.operations[index : index + 1] = [first, second]

    def _allocate_staging(self) -> str:
        counter = 0
        while True:
            candidate = f"{STAGING_PREFIX}{counter}"
            if candidate not in self._reserved and candidate not in self.staging:
                self.staging.add(candidate)
                return candidate
            counter += 1


def plan(local_head: Snapshot, remote_head: Snapshot) -> SyncPlan:
    """Shortcut for ``SyncPlanner().plan(local_head, remote_head)``."""

    return SyncPlanner().plan(local_head, remote_head)

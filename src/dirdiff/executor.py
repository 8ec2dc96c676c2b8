"""Apply a sync plan through a transport, with retries and resumability."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from .diff import diff
from .errors import DirdiffError, StaleSourceError, TransportError, VerificationFailure
from .filesystem import hash_file
from .models import Operation, OperationFailure, OperationKind, SyncOutcome, SyncPlan
from .resume import ResumeLog
from .retry import RetryPolicy, call_with_retry
from .transport import Transport

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Runs the operations of a plan in order against a transport.

    Consecutive operations that touch disjoint paths are dispatched together
    on a bounded thread pool; any operation sharing a path with the current
    batch waits for it to finish, so plan order holds wherever it matters.
    """

    def __init__(
        self,
        local_root: Path,
        retry: RetryPolicy | None = None,
        concurrency: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.local_root = Path(local_root)
        self.retry = retry or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self._sleep = sleep

    def execute(
        self,
        plan: SyncPlan,
        transport: Transport,
        resume_log: ResumeLog | None = None,
        cancel_event: threading.Event | None = None,
        verify: bool = True,
    ) -> SyncOutcome:
        completed: set[int] = set()
        if resume_log is not None:
            completed.update(index for index in resume_log.completed if index < len(plan.operations))
            if completed:
                logger.info(f"Resuming: {len(completed)} of {len(plan.operations)} operation(s) already applied")

        keeps = [
            index
            for index, op in enumerate(plan.operations)
            if op.kind is OperationKind.KEEP and index not in completed
        ]
        if keeps:
            completed.update(keeps)
            if resume_log is not None:
                resume_log.mark_completed(*keeps)

        pending = [index for index in range(len(plan.operations)) if index not in completed]
        failure: OperationFailure | None = None
        cancelled = False
        transferred = 0
        counter_lock = threading.Lock()

        def run(index: int) -> None:
            nonlocal transferred
            op = plan.operations[index]
            sent = call_with_retry(
                lambda: self._apply(op, plan, transport),
                self.retry,
                name=op.describe(),
                sleep=self._sleep,
            )
            with counter_lock:
                transferred += sent
                completed.add(index)
            if resume_log is not None:
                resume_log.mark_completed(index)
            logger.debug(f"Applied {op.describe()}")

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for batch in self._batches(plan.operations, pending):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.warning("Sync cancelled; remaining operations left for the next run")
                    break
                futures = {index: pool.submit(run, index) for index in batch}
                for index, future in futures.items():
                    try:
                        future.result()
                    except Exception as exc:
                        if failure is None:
                            op = plan.operations[index]
                            failure = OperationFailure(index, op, _as_dirdiff_error(op, exc))
                            logger.error(f"{op.describe()} failed: {exc}")
                if failure is not None:
                    break

        remaining = tuple(index for index in range(len(plan.operations)) if index not in completed)
        verification = None
        if verify and not remaining and failure is None:
            verification = self.verify(plan, transport)

        return SyncOutcome(
            completed=tuple(sorted(completed)),
            remaining=remaining,
            failed=failure,
            cancelled=cancelled,
            verification=verification,
            bytes_transferred=transferred,
        )

    def verify(self, plan: SyncPlan, transport: Transport) -> VerificationFailure | None:
        """Compare the remote tree with the plan target by path and fingerprint."""

        actual = call_with_retry(
            transport.list_remote_snapshot,
            self.retry,
            name="verification listing",
            sleep=self._sleep,
        )
        mismatch = diff(actual, plan.target)
        if mismatch.is_empty:
            logger.info("Verification passed: remote matches the target state")
            return None
        failure = VerificationFailure(mismatch)
        logger.warning(f"Verification failed: {failure}")
        return failure

    def _batches(self, operations: tuple[Operation, ...], pending: list[int]) -> list[list[int]]:
        # Paths an operation writes or prunes conflict with the same paths
        # and with any directory another operation in the batch relies on.
        batches: list[list[int]] = []
        current: list[int] = []
        claimed: set[str] = set()
        needed: set[str] = set()
        for index in pending:
            op = operations[index]
            claims = op.touched() | op.pruned()
            needs = op.parents()
            if current and (
                len(current) >= self.concurrency or claims & (claimed | needed) or needs & claimed
            ):
                batches.append(current)
                current, claimed, needed = [], set(), set()
            current.append(index)
            claimed |= claims
            needed |= needs
        if current:
            batches.append(current)
        return batches

    def _apply(self, op: Operation, plan: SyncPlan, transport: Transport) -> int:
        if op.kind is OperationKind.KEEP:
            return 0
        if op.kind in (OperationKind.MOVE, OperationKind.COPY):
            primitive = transport.move if op.kind is OperationKind.MOVE else transport.copy
            try:
                primitive(op.source, op.path)  # type: ignore[arg-type]
            except TransportError as exc:
                if exc.transient or not self._already_applied(op, plan, transport):
                    raise
                logger.info(f"{op.describe()} was already applied on the remote")
            return 0
        if op.kind is OperationKind.DELETE:
            transport.delete(op.path)
            return 0
        return self._transfer(op, plan, transport)

    def _already_applied(self, op: Operation, plan: SyncPlan, transport: Transport) -> bool:
        """True when the source is gone and the destination holds the planned content.

        This is the state left behind when a move succeeded remotely but its
        acknowledgement was lost, so the retry found nothing to move.
        """

        record = plan.target.get(op.path)
        if record is None and op.source is not None:
            record = plan.remote.get(op.source)
        if record is None:
            return False
        try:
            return (
                transport.fingerprint(op.source) is None  # type: ignore[arg-type]
                and transport.fingerprint(op.path) == record.fingerprint
            )
        except TransportError as exc:
            logger.debug(f"Could not inspect the result of {op.describe()}: {exc}")
            return False

    def _transfer(self, op: Operation, plan: SyncPlan, transport: Transport) -> int:
        local_path = self.local_root / op.source  # type: ignore[operator]
        try:
            current = hash_file(local_path)
        except OSError as exc:
            raise StaleSourceError(f"Local file '{op.source}' is no longer readable: {exc}") from exc
        if current != op.fingerprint:
            raise StaleSourceError(
                f"Local file '{op.source}' changed since the snapshot; take a new snapshot and sync again"
            )

        record = plan.target.get(op.path)
        mode = record.mode if record is not None else None
        try:
            with local_path.open("rb") as stream:
                return transport.write_bytes(op.path, stream, mode)
        except OSError as exc:
            raise TransportError(f"Reading '{op.source}' failed: {exc}") from exc


def _as_dirdiff_error(op: Operation, exc: Exception) -> DirdiffError:
    if isinstance(exc, DirdiffError):
        return exc
    return TransportError(f"{op.describe()}: unexpected {type(exc).__name__}: {exc}", transient=False)
